"""Route a claimed job to its execution strategy.

The dispatcher prepares what each job type needs (credentials, a freshly
minted access token, the linked pipeline run), runs the strategy and
records the result on the domain records.  Marking the job itself done or
failed is left to ``worker.policy``.
"""

from __future__ import annotations

import logging
from typing import assert_never

from sqlalchemy import update

from feedbackbot.config import settings
from feedbackbot.db.models import Job, Project
from feedbackbot.errors import GitHubAPIError, JobConfigurationError, RepositoryDetectionError
from feedbackbot.services import run_service
from feedbackbot.services.credential_service import resolve_credentials
from feedbackbot.services.github_service import detect_installation_repo, resolve_access_token
from feedbackbot.services.run_service import RunLogger
from feedbackbot.services.self_improvement import load_self_improve_payload
from feedbackbot.strategies.base import StrategyRequest, StrategyResult, StrategySet
from feedbackbot.utils.logger import ctx_run_id
from feedbackbot.worker.jobs import JobType

logger = logging.getLogger("feedbackbot.worker.dispatch")


class PipelineRunNotFound(LookupError):
    """The run row is written by the enqueuer; it may simply not be visible yet."""


async def dispatch_job(job: Job, strategies: StrategySet, *, session_factory) -> StrategyResult:
    """Execute *job* with the strategy for its type.  Raises on failure."""
    try:
        job_type = JobType.parse(job.job_type)
    except ValueError:
        raise JobConfigurationError(f"Unknown job type {job.job_type!r}") from None

    match job_type:
        case JobType.IMPLEMENT:
            return await _run_implement(job, strategies, session_factory)
        case JobType.SETUP:
            return await _run_setup(job, strategies, session_factory)
        case JobType.SELF_IMPROVE:
            return await _run_self_improve(job, strategies, session_factory)
        case _:
            assert_never(job_type)


# ── implement ───────────────────────────────────────────────────


async def _run_implement(job: Job, strategies: StrategySet, session_factory) -> StrategyResult:
    async with session_factory() as db:
        credentials = await resolve_credentials(db, job.project_id)
        project = await db.get(Project, job.project_id)
        if project is None:
            raise JobConfigurationError(f"Project {job.project_id} does not exist")
        if not project.github_repo:
            raise JobConfigurationError(f"Project {job.project_id} has no repository configured")

        # Installation tokens expire after an hour; always start with a fresh one.
        token = await resolve_access_token(db, job.project_id)

        run = await run_service.find_latest_run(db, job.project_id, job.github_issue_number)
        if run is None:
            raise PipelineRunNotFound(
                f"No pipeline run for project {job.project_id} issue #{job.github_issue_number}"
            )
        run.stage = "running"
        await db.commit()
        run_id = run.id
        repo = project.github_repo

    ctx_run_id.set(run_id)
    run_logger = RunLogger(session_factory, run_id)
    await run_logger.info(
        f"Attempt {(job.attempt_count or 0) + 1}/{job.max_attempts} started on {repo} "
        f"(token: {token.source})"
    )

    result = await strategies.implement.run(
        StrategyRequest(
            job_id=job.id,
            project_id=job.project_id,
            repo=repo,
            access_token=token.token,
            issue_number=job.github_issue_number,
            issue_title=job.issue_title or "",
            issue_body=job.issue_body or "",
            run_id=run_id,
            credentials=credentials,
        ),
        run_logger,
    )

    async with session_factory() as db:
        if result.pr_number is not None:
            await run_service.update_run(db, run_id, github_pr_number=result.pr_number)
        await run_service.mark_run_finished(db, run_id, succeeded=True)
        await db.commit()

    await run_logger.info(f"Implementation finished{_pr_suffix(result)}")
    return result


# ── setup ───────────────────────────────────────────────────────


async def _set_setup_status(session_factory, project_id: str, status: str, **extra) -> None:
    async with session_factory() as db:
        await db.execute(
            update(Project).where(Project.id == project_id).values(setup_status=status, **extra)
        )
        await db.commit()


async def _run_setup(job: Job, strategies: StrategySet, session_factory) -> StrategyResult:
    async with session_factory() as db:
        project = await db.get(Project, job.project_id)
        if project is None:
            raise JobConfigurationError(f"Project {job.project_id} does not exist")
        if not project.github_installation_id:
            raise JobConfigurationError(
                f"Project {job.project_id} has no GitHub App installation"
            )

        if not project.github_repo:
            try:
                repo = await detect_installation_repo(project.github_installation_id)
            except GitHubAPIError as exc:
                raise RepositoryDetectionError(
                    f"Could not list repositories for installation "
                    f"{project.github_installation_id}: {exc}"
                ) from exc
            project.github_repo = repo
            await db.commit()
            logger.info("Detected repository %s for project %s", repo, project.id)

        token = await resolve_access_token(db, job.project_id)
        repo = project.github_repo

    run_logger = RunLogger(session_factory, None)

    async def _on_progress(stage: str) -> None:
        logger.info("Setup of project %s: %s", job.project_id, stage)
        await _set_setup_status(session_factory, job.project_id, stage)

    result = await strategies.setup.run(
        StrategyRequest(
            job_id=job.id,
            project_id=job.project_id,
            repo=repo,
            access_token=token.token,
            issue_title=job.issue_title or "",
        ),
        run_logger,
        on_progress=_on_progress,
    )

    await _set_setup_status(
        session_factory,
        job.project_id,
        "pr_created",
        setup_pr_url=result.pr_url,
        setup_error=None,
    )
    logger.info("Setup of project %s finished%s", job.project_id, _pr_suffix(result))
    return result


# ── self_improve ────────────────────────────────────────────────


async def _run_self_improve(job: Job, strategies: StrategySet, session_factory) -> StrategyResult:
    if not job.source_run_id:
        raise JobConfigurationError(f"self_improve job {job.id} has no source run")

    payload = load_self_improve_payload(job.issue_body)

    async with session_factory() as db:
        source_run = await run_service.get_run(db, job.source_run_id)
        if source_run is None or not source_run.failure_category:
            raise JobConfigurationError(
                f"Source run {job.source_run_id} has no failure classification"
            )
        credentials = await resolve_credentials(db, job.project_id)
        # The fix targets this tool's own repository, not the consumer's.
        token = await resolve_access_token(db, None)
        guidance = {
            "failure_category": source_run.failure_category,
            "failure_analysis": source_run.failure_analysis or "",
            **payload.model_dump(),
        }

    run_logger = RunLogger(session_factory, None)
    result = await strategies.self_improve.run(
        StrategyRequest(
            job_id=job.id,
            project_id=job.project_id,
            repo=settings.SELF_REPO,
            access_token=token.token,
            issue_title=job.issue_title or "",
            issue_body=payload.fix_summary,
            credentials=credentials,
            guidance=guidance,
        ),
        run_logger,
    )

    if result.produced_pr:
        async with session_factory() as db:
            await run_service.update_run(db, job.source_run_id, improvement_job_id=job.id)
            await db.commit()
        logger.info(
            "Self-improvement for run %s finished%s", job.source_run_id, _pr_suffix(result)
        )
    return result


def _pr_suffix(result: StrategyResult) -> str:
    if result.pr_url:
        return f": {result.pr_url}"
    if result.pr_number is not None:
        return f": PR #{result.pr_number}"
    return ""
