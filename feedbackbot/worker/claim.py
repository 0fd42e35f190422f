"""Job claiming and stale-job recovery.

Claiming strategy (dialect-aware):
  PostgreSQL: ``SELECT … FOR UPDATE SKIP LOCKED`` + guarded UPDATE in a
               single transaction.  Correct under any number of workers.
  SQLite:     candidate scan, then ``UPDATE … WHERE id = ? AND
               status = 'pending'`` per candidate; a rowcount of 0 means
               another worker won and the next candidate is tried;
               an exhausted window is re-scanned until no pending
               row is left.

Either way no two callers ever receive the same job.

Stale jobs:
  reap_stale_jobs() finds ``status='processing' AND locked_at < now - threshold``
  (the owning worker died) and returns each to ``pending`` or, once its
  attempt budget is spent, to ``failed``.  Every transition is guarded by the
  status and lock stamp observed during the scan, so a worker that finishes
  while the reaper runs always wins.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from sqlalchemy import select, update

from feedbackbot.config import settings
from feedbackbot.db import engine as db_engine
from feedbackbot.db.models import Job
from feedbackbot.worker.jobs import JobStatus

logger = logging.getLogger("feedbackbot.worker.claim")

# How many pending rows the SQLite path considers per scan.  A scan whose
# candidates were all taken by other workers is repeated while pending rows
# remain, up to _SQLITE_MAX_ROUNDS scans per claim.
_SQLITE_CANDIDATES = 5
_SQLITE_MAX_ROUNDS = 50


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _factory(session_factory):
    return session_factory or db_engine.async_session


# ─────────────────────────────────────────────────────────────────────────────
# Claim
# ─────────────────────────────────────────────────────────────────────────────


def _claim_values(worker_id: str, now: datetime) -> dict:
    return {
        "status": JobStatus.PROCESSING.value,
        "worker_id": worker_id,
        "locked_at": now,
    }


async def _claim_postgres(worker_id: str, session_factory, now: datetime) -> Job | None:
    async with session_factory() as db:
        async with db.begin():
            result = await db.execute(
                select(Job.id)
                .where(Job.status == JobStatus.PENDING.value)
                .order_by(Job.created_at.asc(), Job.id.asc())
                .limit(1)
                .with_for_update(skip_locked=True)
            )
            job_id = result.scalar_one_or_none()
            if job_id is None:
                return None
            await db.execute(
                update(Job)
                .where(Job.id == job_id, Job.status == JobStatus.PENDING.value)
                .values(**_claim_values(worker_id, now))
            )
        return await db.get(Job, job_id)


async def _claim_sqlite(worker_id: str, session_factory, now: datetime) -> Job | None:
    async with session_factory() as db:
        for _ in range(_SQLITE_MAX_ROUNDS):
            result = await db.execute(
                select(Job.id)
                .where(Job.status == JobStatus.PENDING.value)
                .order_by(Job.created_at.asc(), Job.id.asc())
                .limit(_SQLITE_CANDIDATES)
            )
            candidate_ids = list(result.scalars().all())
            # End the read before writing so the UPDATE starts a fresh transaction.
            await db.commit()
            if not candidate_ids:
                return None

            for job_id in candidate_ids:
                update_result = await db.execute(
                    update(Job)
                    .where(Job.id == job_id, Job.status == JobStatus.PENDING.value)
                    .values(**_claim_values(worker_id, now))
                )
                await db.commit()
                if update_result.rowcount == 1:
                    return await db.get(Job, job_id)
                logger.debug("Job %s was claimed by another worker; trying next", job_id)

    # Every round lost every race; the next poll starts over.
    logger.warning("Worker %s lost %d claim rounds in a row", worker_id, _SQLITE_MAX_ROUNDS)
    return None


async def claim_next_job(
    worker_id: str,
    *,
    session_factory=None,
    now: datetime | None = None,
) -> Job | None:
    """Atomically claim the oldest pending job for *worker_id*, or return None."""
    factory = _factory(session_factory)
    now = now or _utcnow()
    if settings.is_postgres:
        job = await _claim_postgres(worker_id, factory, now)
    else:
        job = await _claim_sqlite(worker_id, factory, now)
    if job is not None:
        logger.info(
            "Worker %s claimed job %s (%s, issue #%s, attempt %d/%d)",
            worker_id, job.id, job.job_type, job.github_issue_number,
            (job.attempt_count or 0) + 1, job.max_attempts or settings.WORKER_MAX_ATTEMPTS,
        )
    return job


# ─────────────────────────────────────────────────────────────────────────────
# Stale-job recovery
# ─────────────────────────────────────────────────────────────────────────────


@dataclass
class ReapResult:
    reset: int = 0
    failed: list[Job] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.reset + len(self.failed)


async def reap_stale_jobs(
    *,
    session_factory=None,
    now: datetime | None = None,
    stale_after_seconds: float | None = None,
) -> ReapResult:
    """Reclaim processing jobs whose lock outlived the staleness threshold.

    The orphaned attempt counts against the budget: a job on its last attempt
    is failed with ``Stale after N attempts``, anything else goes back to
    ``pending``.  Failure handling for the failed jobs is the caller's job.
    """
    factory = _factory(session_factory)
    now = now or _utcnow()
    threshold = stale_after_seconds if stale_after_seconds is not None else settings.WORKER_STALE_AFTER_SECONDS
    cutoff = now - timedelta(seconds=threshold)
    outcome = ReapResult()

    async with factory() as db:
        result = await db.execute(
            select(Job).where(
                Job.status == JobStatus.PROCESSING.value,
                Job.locked_at < cutoff,
            )
        )
        stale = list(result.scalars().all())
        await db.commit()

        for job in stale:
            max_attempts = job.max_attempts or settings.WORKER_MAX_ATTEMPTS
            attempt_no = (job.attempt_count or 0) + 1

            if attempt_no >= max_attempts:
                values = {
                    "status": JobStatus.FAILED.value,
                    "attempt_count": attempt_no,
                    "last_error": f"Stale after {max_attempts} attempts",
                    "completed_at": now,
                }
            else:
                values = {
                    "status": JobStatus.PENDING.value,
                    "attempt_count": attempt_no,
                    "worker_id": None,
                    "locked_at": None,
                    "last_error": f"Reset by reaper (attempt {attempt_no}/{max_attempts})",
                }

            update_result = await db.execute(
                update(Job)
                .where(
                    Job.id == job.id,
                    Job.status == JobStatus.PROCESSING.value,
                    Job.locked_at == job.locked_at,
                )
                .values(**values)
            )
            await db.commit()

            if update_result.rowcount != 1:
                logger.info("Job %s changed during reap; left alone", job.id)
                continue

            for key, value in values.items():
                setattr(job, key, value)

            if job.status == JobStatus.FAILED.value:
                outcome.failed.append(job)
                logger.warning(
                    "Job %s (worker %s) permanently failed: stale after %d attempts",
                    job.id, job.worker_id, max_attempts,
                )
            else:
                outcome.reset += 1
                logger.info(
                    "Reset stale job %s to pending (attempt %d/%d)",
                    job.id, attempt_no, max_attempts,
                )

    return outcome
