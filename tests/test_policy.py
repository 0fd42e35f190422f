"""Retry / completion policy: pure decisions plus the guarded persistence."""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import pytest

from conftest import add_job, add_project, add_run, load
from feedbackbot.db.models import Job, PipelineRun, Project
from feedbackbot.errors import CredentialsNotFoundError
from feedbackbot.services import run_service
from feedbackbot.worker.dispatch import PipelineRunNotFound
from feedbackbot.worker.policy import (
    after_job_failed,
    complete_job,
    decide_outcome,
    fail_job,
    is_permanent_error,
)


# ─────────────────────────────────────────────────────────────────────────────
# Pure decision
# ─────────────────────────────────────────────────────────────────────────────


class TestPermanentErrorSignature:
    @pytest.mark.parametrize(
        "message",
        [
            "invalid_grant: token expired",
            "authentication_error: invalid x-api-key",
            "Invalid API key provided",
            "GitHub API error: HTTP 401: Bad credentials",
            "implement strategy failed: HTTP 401",
            "agent returned status code 401",
            "Unauthorized",
            "OAuth token expired",
        ],
    )
    def test_auth_failures_are_permanent(self, message):
        assert is_permanent_error(message) is True

    @pytest.mark.parametrize(
        "message",
        [
            "network timeout",
            "HTTP 502",
            "job 4015 crashed",
            "rate limited",
            "issue #401",
            "No pipeline run for project p issue #401",
        ],
    )
    def test_other_failures_are_retryable(self, message):
        assert is_permanent_error(message) is False

    def test_permanent_job_error_instances_are_permanent(self):
        assert is_permanent_error(CredentialsNotFoundError("p1")) is True

    def test_pattern_override(self):
        with patch("feedbackbot.worker.policy.settings") as fake:
            fake.WORKER_PERMANENT_ERROR_PATTERN = r"quota exceeded"
            assert is_permanent_error("Monthly quota exceeded") is True
            assert is_permanent_error("invalid_grant") is False


class TestDecideOutcome:
    def test_first_failure_is_retried(self):
        outcome = decide_outcome(0, 3, RuntimeError("network timeout"))
        assert outcome.status == "pending"
        assert outcome.last_error == "network timeout"
        assert outcome.attempt_count == 1
        assert not outcome.is_terminal

    def test_last_attempt_fails(self):
        outcome = decide_outcome(2, 3, RuntimeError("network timeout"))
        assert outcome.status == "failed"
        assert outcome.last_error == "Failed after 3 attempts: network timeout"
        assert outcome.attempt_count == 3

    def test_permanent_error_fails_immediately(self):
        outcome = decide_outcome(0, 3, RuntimeError("invalid_grant: token expired"))
        assert outcome.status == "failed"
        assert outcome.last_error.startswith("Permanent error (no retry):")
        assert "invalid_grant" in outcome.last_error

    def test_missing_run_for_issue_401_is_retried(self):
        error = PipelineRunNotFound("No pipeline run for project p1 issue #401")
        outcome = decide_outcome(0, 3, error)
        assert outcome.status == "pending"
        assert outcome.attempt_count == 1

    def test_attempt_count_never_exceeds_max(self):
        for count in range(3):
            outcome = decide_outcome(count, 3, "boom")
            assert outcome.attempt_count <= 3

    def test_empty_message_uses_exception_name(self):
        outcome = decide_outcome(0, 3, TimeoutError())
        assert outcome.last_error == "TimeoutError"

    def test_long_messages_are_truncated(self):
        outcome = decide_outcome(0, 3, "x" * 5000)
        assert len(outcome.last_error) == 2000


# ─────────────────────────────────────────────────────────────────────────────
# Persistence
# ─────────────────────────────────────────────────────────────────────────────


async def _processing_job(session_factory, **overrides):
    project = await add_project(session_factory, github_repo=None)
    values = {"status": "processing", "worker_id": "w1"}
    values.update(overrides)
    job = await add_job(session_factory, project.id, **values)
    return project, job


class TestCompleteJob:
    @pytest.mark.asyncio
    async def test_marks_done(self, session_factory):
        _, job = await _processing_job(session_factory)

        assert await complete_job(job, "w1", session_factory) is True

        stored = await load(session_factory, Job, job.id)
        assert stored.status == "done"
        assert stored.completed_at is not None

    @pytest.mark.asyncio
    async def test_lost_claim_is_not_overwritten(self, session_factory):
        _, job = await _processing_job(session_factory, status="pending", worker_id=None)

        assert await complete_job(job, "w1", session_factory) is False
        assert (await load(session_factory, Job, job.id)).status == "pending"

    @pytest.mark.asyncio
    async def test_other_workers_claim_is_not_overwritten(self, session_factory):
        _, job = await _processing_job(session_factory, worker_id="w2")

        assert await complete_job(job, "w1", session_factory) is False
        assert (await load(session_factory, Job, job.id)).status == "processing"


class TestFailJob:
    @pytest.mark.asyncio
    async def test_retryable_failure_returns_job_to_pending(self, session_factory):
        _, job = await _processing_job(session_factory)

        with patch("feedbackbot.worker.policy.after_job_failed", new_callable=AsyncMock) as handler:
            outcome = await fail_job(job, "w1", RuntimeError("network timeout"), session_factory)

        assert outcome.status == "pending"
        handler.assert_not_awaited()
        stored = await load(session_factory, Job, job.id)
        assert stored.status == "pending"
        assert stored.worker_id is None
        assert stored.locked_at is None
        assert stored.last_error == "network timeout"
        assert stored.attempt_count == 1

    @pytest.mark.asyncio
    async def test_permanent_failure_invokes_failure_handling(self, session_factory):
        _, job = await _processing_job(session_factory)

        with patch("feedbackbot.worker.policy.after_job_failed", new_callable=AsyncMock) as handler:
            outcome = await fail_job(
                job, "w1", RuntimeError("invalid_grant: token expired"), session_factory
            )

        assert outcome.status == "failed"
        handler.assert_awaited_once()
        stored = await load(session_factory, Job, job.id)
        assert stored.status == "failed"
        assert stored.last_error.startswith("Permanent error (no retry):")
        assert stored.completed_at is not None

    @pytest.mark.asyncio
    async def test_exhausted_budget_fails(self, session_factory):
        _, job = await _processing_job(session_factory, attempt_count=2)

        with patch("feedbackbot.worker.policy.after_job_failed", new_callable=AsyncMock):
            await fail_job(job, "w1", RuntimeError("network timeout"), session_factory)

        stored = await load(session_factory, Job, job.id)
        assert stored.status == "failed"
        assert stored.last_error == "Failed after 3 attempts: network timeout"
        assert stored.attempt_count == 3

    @pytest.mark.asyncio
    async def test_lost_claim_discards_failure(self, session_factory):
        _, job = await _processing_job(session_factory, status="done")

        with patch("feedbackbot.worker.policy.after_job_failed", new_callable=AsyncMock) as handler:
            assert await fail_job(job, "w1", RuntimeError("boom"), session_factory) is None

        handler.assert_not_awaited()
        assert (await load(session_factory, Job, job.id)).status == "done"


class TestAfterJobFailed:
    @pytest.mark.asyncio
    async def test_implement_failure_closes_run_and_classifies(self, session_factory):
        project, job = await _processing_job(session_factory, status="failed", last_error="x")
        run = await add_run(session_factory, project.id, stage="running")

        with (
            patch("feedbackbot.worker.policy.handle_job_failure", new_callable=AsyncMock) as handle,
            patch("feedbackbot.worker.policy.fire_and_forget") as fire,
        ):
            await after_job_failed(job, session_factory)

        handle.assert_awaited_once()
        fire.assert_called_once()
        fire.call_args.args[0].close()
        stored = await load(session_factory, PipelineRun, run.id)
        assert stored.stage == "failed"
        assert stored.result == "failed"
        assert stored.completed_at is not None
        async with session_factory() as db:
            logs = await run_service.recent_logs(db, run.id)
        assert [(e.level, e.message) for e in logs] == [("error", "x")]

    @pytest.mark.asyncio
    async def test_setup_failure_is_recorded_on_project(self, session_factory):
        project, job = await _processing_job(
            session_factory,
            job_type="setup",
            status="failed",
            github_issue_number=0,
            last_error="Permanent error (no retry): no installation",
        )

        with (
            patch("feedbackbot.worker.policy.handle_job_failure", new_callable=AsyncMock),
            patch("feedbackbot.worker.policy.fire_and_forget") as fire,
        ):
            await after_job_failed(job, session_factory)

        fire.assert_not_called()
        stored = await load(session_factory, Project, project.id)
        assert stored.setup_status == "failed"
        assert "no installation" in stored.setup_error
