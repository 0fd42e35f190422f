"""Self-healing loop: verdicts recorded on runs and self_improve jobs spawned."""

from __future__ import annotations

import json
from contextlib import asynccontextmanager
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import select

from conftest import add_job, add_logs, add_project, add_run, load, utc
from feedbackbot.db.models import Job, PipelineRun
from feedbackbot.errors import JobConfigurationError
from feedbackbot.services.self_improvement import handle_job_failure, load_self_improve_payload


def _client(reply: dict | str):
    text = reply if isinstance(reply, str) else json.dumps(reply)
    client = AsyncMock()
    client.complete.return_value = {"text": text}
    return client


async def _jobs_of_type(session_factory, job_type):
    async with session_factory() as db:
        result = await db.execute(select(Job).where(Job.job_type == job_type))
        return result.scalars().all()


async def _failed_implement(session_factory, **job_overrides):
    project = await add_project(session_factory)
    run = await add_run(session_factory, project.id, stage="failed", result="failed")
    values = {
        "status": "failed",
        "last_error": "Failed after 3 attempts: build broke",
        "issue_body": "Add a dark mode toggle",
    }
    values.update(job_overrides)
    job = await add_job(session_factory, project.id, **values)
    return project, run, job


class TestHandleJobFailure:
    @pytest.mark.asyncio
    async def test_own_fault_spawns_self_improve_job(self, session_factory):
        _, run, job = await _failed_implement(session_factory)
        await add_logs(session_factory, run.id, [("info", "cloning"), ("error", "npm build failed")])
        client = _client(
            {
                "category": "docs_gap",
                "analysis": "install docs skip the CSS import",
                "fix_summary": "Document the CSS import step",
            }
        )

        spawned = await handle_job_failure(job, session_factory, llm_client=client)

        assert spawned is not None
        stored_run = await load(session_factory, PipelineRun, run.id)
        assert stored_run.failure_category == "docs_gap"
        assert stored_run.failure_analysis == "install docs skip the CSS import"

        queued = await _jobs_of_type(session_factory, "self_improve")
        assert [j.id for j in queued] == [spawned.id]
        new_job = queued[0]
        assert new_job.status == "pending"
        assert new_job.source_run_id == run.id
        assert new_job.github_issue_number == 0
        payload = json.loads(new_job.issue_body)
        assert payload["fix_summary"] == "Document the CSS import step"
        assert payload["original_issue_body"] == "Add a dark mode toggle"
        assert payload["log_excerpts"].endswith("[error] npm build failed")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("category", ["consumer_error", "transient"])
    async def test_external_fault_is_recorded_without_spawning(self, session_factory, category):
        _, run, job = await _failed_implement(session_factory)
        client = _client({"category": category, "analysis": "not ours", "fix_summary": "N/A"})

        assert await handle_job_failure(job, session_factory, llm_client=client) is None

        assert (await load(session_factory, PipelineRun, run.id)).failure_category == category
        assert await _jobs_of_type(session_factory, "self_improve") == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("job_type", ["self_improve", "setup"])
    async def test_excluded_job_types_are_never_classified(self, session_factory, job_type):
        _, _, job = await _failed_implement(session_factory, job_type=job_type)
        client = _client({"category": "agent_bug"})

        assert await handle_job_failure(job, session_factory, llm_client=client) is None

        client.complete.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unparseable_reply_leaves_run_untouched(self, session_factory):
        _, run, job = await _failed_implement(session_factory)

        result = await handle_job_failure(
            job, session_factory, llm_client=_client("probably a widget bug")
        )

        assert result is None
        assert (await load(session_factory, PipelineRun, run.id)).failure_category is None
        assert await _jobs_of_type(session_factory, "self_improve") == []

    @pytest.mark.asyncio
    async def test_missing_run_is_a_no_op(self, session_factory):
        project = await add_project(session_factory)
        job = await add_job(session_factory, project.id, status="failed", last_error="boom")
        client = _client({"category": "agent_bug"})

        assert await handle_job_failure(job, session_factory, llm_client=client) is None
        client.complete.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_no_session_is_held_during_classification(self, session_factory):
        _, run, job = await _failed_implement(session_factory)
        open_sessions = 0
        seen_during_call = []

        @asynccontextmanager
        async def counting_factory():
            nonlocal open_sessions
            async with session_factory() as db:
                open_sessions += 1
                try:
                    yield db
                finally:
                    open_sessions -= 1

        async def complete(*args, **kwargs):
            seen_during_call.append(open_sessions)
            return {"text": json.dumps({"category": "transient"})}

        client = AsyncMock()
        client.complete.side_effect = complete

        await handle_job_failure(job, counting_factory, llm_client=client)

        assert seen_during_call == [0]
        assert (await load(session_factory, PipelineRun, run.id)).failure_category == "transient"

    @pytest.mark.asyncio
    async def test_classifier_crash_is_swallowed(self, session_factory):
        _, _, job = await _failed_implement(session_factory)
        client = AsyncMock()
        client.complete.side_effect = RuntimeError("unexpected")

        assert await handle_job_failure(job, session_factory, llm_client=client) is None

    @pytest.mark.asyncio
    async def test_latest_run_for_issue_is_used(self, session_factory):
        project = await add_project(session_factory)
        older = await add_run(session_factory, project.id, started_at=utc(60))
        newer = await add_run(session_factory, project.id, started_at=utc(1))
        job = await add_job(session_factory, project.id, status="failed", last_error="boom")

        await handle_job_failure(
            job, session_factory, llm_client=_client({"category": "transient"})
        )

        assert (await load(session_factory, PipelineRun, newer.id)).failure_category == "transient"
        assert (await load(session_factory, PipelineRun, older.id)).failure_category is None


class TestLoadPayload:
    def test_parses_payload(self):
        payload = load_self_improve_payload('{"fix_summary": "fix it", "log_excerpts": "l"}')
        assert payload.fix_summary == "fix it"
        assert payload.original_issue_body == ""

    @pytest.mark.parametrize("body", [None, "", "not json", '{"log_excerpts": "no summary"}'])
    def test_malformed_payload_is_configuration_error(self, body):
        with pytest.raises(JobConfigurationError):
            load_self_improve_payload(body)
