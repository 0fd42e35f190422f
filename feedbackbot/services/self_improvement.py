"""Self-healing loop: classify terminal failures and queue fixes for our own bugs.

``handle_job_failure`` is called after a job ends in ``failed`` (by the retry
policy or the stale-job reaper).  It looks up the job's pipeline run, asks
the classifier what went wrong, records the verdict on the run and, only
when the failure is the tool's own fault, enqueues a ``self_improve`` job
aimed at the tool's repository.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from feedbackbot.config import settings
from feedbackbot.connectors.llm_client import LLMClient
from feedbackbot.db.models import Job, PipelineRun, RunLog
from feedbackbot.errors import JobConfigurationError
from feedbackbot.schemas.classification import FailureClassification, SelfImprovePayload
from feedbackbot.services import run_service
from feedbackbot.services.failure_classifier import classify_failure, format_log_tail
from feedbackbot.worker.enqueue import enqueue_self_improve
from feedbackbot.worker.jobs import JobType, skips_failure_handling

logger = logging.getLogger("feedbackbot.self_improvement")

ORIGINAL_ISSUE_BODY_LIMIT = 2000
LOG_EXCERPT_LIMIT = 3000
LOG_EXCERPT_ROWS = 100


def build_self_improve_payload(
    classification: FailureClassification,
    issue_body: str | None,
    logs: Sequence[RunLog],
) -> str:
    """JSON for the new job's ``issue_body``; *logs* must be oldest-first."""
    payload = SelfImprovePayload(
        fix_summary=classification.fix_summary,
        original_issue_body=(issue_body or "")[:ORIGINAL_ISSUE_BODY_LIMIT],
        log_excerpts=format_log_tail(logs[-LOG_EXCERPT_ROWS:], LOG_EXCERPT_LIMIT),
    )
    return payload.model_dump_json()


async def spawn_from_classification(
    db: AsyncSession,
    run: PipelineRun,
    classification: FailureClassification,
    *,
    issue_body: str | None,
    logs: Sequence[RunLog],
) -> Job | None:
    """Persist the verdict on *run*; enqueue a self_improve job for own-fault categories.

    The caller commits.
    """
    run.failure_category = classification.category
    run.failure_analysis = classification.analysis

    if not classification.is_own_fault:
        logger.info(
            "Run %s failed with %s, no self-improvement queued", run.id, classification.category
        )
        return None

    job = enqueue_self_improve(
        db,
        project_id=run.project_id,
        source_run_id=run.id,
        payload=build_self_improve_payload(classification, issue_body, logs),
        title=f"Self-improvement: {classification.category} in run {run.id}",
    )
    logger.info(
        "Queued self_improve job %s for run %s (%s)", job.id, run.id, classification.category
    )
    return job


async def handle_job_failure(
    job: Job,
    session_factory: async_sessionmaker,
    *,
    llm_client: LLMClient | None = None,
) -> Job | None:
    """Failure-handling entry point.  Never raises; returns the spawned job, if any.

    No session is held while the classifier runs: the run and its log tail are
    read in one session and the verdict is written in another.
    """
    if skips_failure_handling(job.job_type):
        logger.debug("Skipping failure handling for %s job %s", job.job_type, job.id)
        return None

    try:
        async with session_factory() as db:
            run = await run_service.find_latest_run(db, job.project_id, job.github_issue_number)
            if run is None:
                logger.info(
                    "No pipeline run for job %s (issue #%s); nothing to classify",
                    job.id, job.github_issue_number,
                )
                return None
            run_id = run.id
            logs = await run_service.recent_logs(db, run_id, limit=settings.RUN_LOG_TAIL_LIMIT)

        classification = await classify_failure(
            logs=logs,
            last_error=job.last_error,
            issue_body=job.issue_body,
            job_type=job.job_type or JobType.IMPLEMENT.value,
            client=llm_client,
        )
        if classification is None:
            return None

        async with session_factory() as db:
            run = await db.get(PipelineRun, run_id)
            if run is None:
                logger.warning("Run %s vanished before job %s was classified", run_id, job.id)
                return None
            spawned = await spawn_from_classification(
                db, run, classification, issue_body=job.issue_body, logs=logs
            )
            await db.commit()
            return spawned
    except Exception:
        logger.exception("Failure handling for job %s failed", job.id)
        return None


def load_self_improve_payload(issue_body: str | None) -> SelfImprovePayload:
    """Parse a self_improve job's payload.  A malformed payload never heals on retry."""
    try:
        return SelfImprovePayload.model_validate_json(issue_body or "")
    except ValueError as exc:
        raise JobConfigurationError(f"Invalid self_improve payload: {exc}") from exc
