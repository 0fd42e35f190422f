"""Terminal transitions for claimed jobs: success, retry, permanent failure.

``decide_outcome`` is pure; ``complete_job`` / ``fail_job`` persist the
decision with an UPDATE guarded on ``status='processing'`` and the claiming
worker, so a job the reaper already took back is never overwritten.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import update

from feedbackbot.config import settings
from feedbackbot.connectors.llm_client import LLMClient
from feedbackbot.db.models import Job, Project
from feedbackbot.errors import PermanentJobError
from feedbackbot.services import github_service, run_service
from feedbackbot.services.self_improvement import handle_job_failure
from feedbackbot.utils.background import fire_and_forget
from feedbackbot.worker.jobs import JobStatus, JobType

logger = logging.getLogger("feedbackbot.worker.policy")

LAST_ERROR_LIMIT = 2000

# Authentication failures never heal by retrying.
PERMANENT_ERROR_PATTERNS = (
    r"invalid_grant",
    r"authentication_error",
    r"invalid api key",
    r"invalid x-api-key",
    r"bad credentials",
    r"unauthorized",
    r"token expired",
    r"expired token",
    r"\bHTTP 401\b",
    r"\bstatus(?: code)?:? 401\b",
)

_DEFAULT_PERMANENT_RE = re.compile("|".join(PERMANENT_ERROR_PATTERNS), re.IGNORECASE)


def _permanent_re() -> re.Pattern[str]:
    if settings.WORKER_PERMANENT_ERROR_PATTERN:
        return re.compile(settings.WORKER_PERMANENT_ERROR_PATTERN, re.IGNORECASE)
    return _DEFAULT_PERMANENT_RE


def is_permanent_error(error: BaseException | str) -> bool:
    if isinstance(error, PermanentJobError):
        return True
    return bool(_permanent_re().search(str(error)))


@dataclass(frozen=True)
class Outcome:
    status: str  # pending | failed
    attempt_count: int
    last_error: str

    @property
    def is_terminal(self) -> bool:
        return self.status == JobStatus.FAILED.value


def decide_outcome(
    attempt_count: int,
    max_attempts: int,
    error: BaseException | str,
) -> Outcome:
    """Where a failed attempt sends the job.

    ``attempt_count`` counts attempts that already ended without success, so
    the attempt that just failed is number ``attempt_count + 1``.
    """
    message = str(error) or type(error).__name__
    attempt_no = attempt_count + 1

    if is_permanent_error(error):
        return Outcome(
            status=JobStatus.FAILED.value,
            attempt_count=attempt_no,
            last_error=f"Permanent error (no retry): {message}"[:LAST_ERROR_LIMIT],
        )

    if attempt_no < max_attempts:
        return Outcome(
            status=JobStatus.PENDING.value,
            attempt_count=attempt_no,
            last_error=message[:LAST_ERROR_LIMIT],
        )

    return Outcome(
        status=JobStatus.FAILED.value,
        attempt_count=attempt_no,
        last_error=f"Failed after {max_attempts} attempts: {message}"[:LAST_ERROR_LIMIT],
    )


def _guard(job: Job, worker_id: str):
    return (
        Job.id == job.id,
        Job.status == JobStatus.PROCESSING.value,
        Job.worker_id == worker_id,
    )


async def complete_job(job: Job, worker_id: str, session_factory) -> bool:
    """Mark *job* done.  Returns False when the claim was lost meanwhile."""
    now = datetime.now(timezone.utc)
    async with session_factory() as db:
        result = await db.execute(
            update(Job)
            .where(*_guard(job, worker_id))
            .values(status=JobStatus.DONE.value, completed_at=now, last_error=None)
        )
        await db.commit()

    if result.rowcount != 1:
        logger.warning("Job %s no longer held by %s; completion discarded", job.id, worker_id)
        return False

    job.status = JobStatus.DONE.value
    job.completed_at = now
    job.last_error = None
    logger.info("Job %s (%s) completed", job.id, job.job_type)
    return True


async def fail_job(
    job: Job,
    worker_id: str,
    exc: BaseException | str,
    session_factory,
    *,
    llm_client: LLMClient | None = None,
) -> Outcome | None:
    """Record a failed attempt: back to pending, or failed for good.

    Returns the applied outcome, or None when the claim was lost meanwhile.
    """
    max_attempts = job.max_attempts or settings.WORKER_MAX_ATTEMPTS
    outcome = decide_outcome(job.attempt_count or 0, max_attempts, exc)
    now = datetime.now(timezone.utc)

    values: dict = {
        "status": outcome.status,
        "attempt_count": outcome.attempt_count,
        "last_error": outcome.last_error,
    }
    if outcome.is_terminal:
        values["completed_at"] = now
    else:
        values["worker_id"] = None
        values["locked_at"] = None

    async with session_factory() as db:
        result = await db.execute(update(Job).where(*_guard(job, worker_id)).values(**values))
        await db.commit()

    if result.rowcount != 1:
        logger.warning("Job %s no longer held by %s; failure discarded", job.id, worker_id)
        return None

    for key, value in values.items():
        setattr(job, key, value)

    if outcome.is_terminal:
        logger.error("Job %s (%s) failed: %s", job.id, job.job_type, outcome.last_error)
        await after_job_failed(job, session_factory, llm_client=llm_client)
    else:
        logger.warning(
            "Job %s (%s) attempt %d/%d failed, re-queued: %s",
            job.id, job.job_type, outcome.attempt_count, max_attempts, outcome.last_error,
        )
    return outcome


# ── Failure side effects ────────────────────────────────────────


async def _label_issue_failed(job: Job, session_factory) -> None:
    async with session_factory() as db:
        await github_service.mark_issue_failed(
            db, job.project_id, job.github_issue_number, job.last_error or "unknown error"
        )


async def after_job_failed(
    job: Job,
    session_factory,
    *,
    llm_client: LLMClient | None = None,
) -> None:
    """Side effects of a job reaching ``failed``; shared by fail_job and the reaper.

    Nothing here may raise: the job is already terminal.
    """
    try:
        job_type = JobType.parse(job.job_type)
    except ValueError:
        job_type = None

    try:
        async with session_factory() as db:
            if job_type is JobType.IMPLEMENT:
                run = await run_service.find_latest_run(
                    db, job.project_id, job.github_issue_number
                )
                if run is not None:
                    await run_service.append_log(
                        db, run.id, job.last_error or "unknown error", level="error"
                    )
                    await run_service.mark_run_finished(db, run.id, succeeded=False)
            elif job_type is JobType.SETUP:
                project = await db.get(Project, job.project_id)
                if project is not None:
                    project.setup_status = "failed"
                    project.setup_error = job.last_error
            await db.commit()
    except Exception:
        logger.exception("Could not record failure of job %s on its records", job.id)

    if job_type is JobType.IMPLEMENT and job.github_issue_number:
        fire_and_forget(
            _label_issue_failed(job, session_factory),
            name=f"label-failed-{job.id}",
        )

    await handle_job_failure(job, session_factory, llm_client=llm_client)
