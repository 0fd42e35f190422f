"""Helpers for adding jobs to the queue.

Every helper only adds rows to *db_session*; the caller commits so that the
job and whatever record triggered it (pipeline run, project update) land in
one transaction.

  enqueue_implement(db, ...)     issue-driven work on the consumer's repo
  enqueue_setup(db, project)     bootstrap the integration on a new project
  enqueue_self_improve(db, ...)  spawned by the self-healing loop
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from feedbackbot.config import settings
from feedbackbot.db.models import Job, Project
from feedbackbot.worker.jobs import JobStatus, JobType


def _uuid() -> str:
    return str(uuid.uuid4())


def _new_job(
    project_id: str,
    job_type: JobType,
    *,
    github_issue_number: int = 0,
    issue_title: str = "",
    issue_body: str = "",
    source_run_id: str | None = None,
    max_attempts: int | None = None,
) -> Job:
    return Job(
        id=_uuid(),
        project_id=project_id,
        job_type=job_type.value,
        status=JobStatus.PENDING.value,
        attempt_count=0,
        max_attempts=max_attempts if max_attempts is not None else settings.WORKER_MAX_ATTEMPTS,
        github_issue_number=github_issue_number,
        issue_title=issue_title,
        issue_body=issue_body,
        source_run_id=source_run_id,
        created_at=datetime.now(timezone.utc),
    )


def enqueue_implement(
    db_session,
    *,
    project_id: str,
    github_issue_number: int,
    issue_title: str = "",
    issue_body: str = "",
    max_attempts: int | None = None,
) -> Job:
    job = _new_job(
        project_id,
        JobType.IMPLEMENT,
        github_issue_number=github_issue_number,
        issue_title=issue_title,
        issue_body=issue_body,
        max_attempts=max_attempts,
    )
    db_session.add(job)
    return job


def enqueue_setup(db_session, project: Project, *, max_attempts: int | None = None) -> Job:
    """Queue the bootstrap job and flip the project's setup status to ``queued``."""
    job = _new_job(
        project.id,
        JobType.SETUP,
        issue_title=f"Set up feedback-chat for {project.name}",
        max_attempts=max_attempts,
    )
    project.setup_status = "queued"
    project.setup_error = None
    db_session.add(job)
    return job


def enqueue_self_improve(
    db_session,
    *,
    project_id: str,
    source_run_id: str,
    payload: str,
    title: str = "Self-improvement",
    max_attempts: int | None = None,
) -> Job:
    """A self_improve job is not tied to a consumer issue: issue number 0."""
    job = _new_job(
        project_id,
        JobType.SELF_IMPROVE,
        github_issue_number=0,
        issue_title=title,
        issue_body=payload,
        source_run_id=source_run_id,
        max_attempts=max_attempts,
    )
    db_session.add(job)
    return job
