"""Pipeline run lookup/mutation and the append-only run log."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from feedbackbot.db.models import PipelineRun, RunLog

logger = logging.getLogger("feedbackbot.runs")


async def create_run(
    db: AsyncSession,
    project_id: str,
    github_issue_number: int,
    triggered_by: str | None = None,
    stage: str = "queued",
) -> PipelineRun:
    run = PipelineRun(
        project_id=project_id,
        github_issue_number=github_issue_number,
        triggered_by=triggered_by,
        stage=stage,
    )
    db.add(run)
    await db.flush()
    return run


async def get_run(db: AsyncSession, run_id: str) -> PipelineRun | None:
    return await db.get(PipelineRun, run_id)


async def find_latest_run(
    db: AsyncSession, project_id: str, github_issue_number: int
) -> PipelineRun | None:
    """Most recent run for a project + issue number (jobs link to runs by recency)."""
    result = await db.execute(
        select(PipelineRun)
        .where(
            PipelineRun.project_id == project_id,
            PipelineRun.github_issue_number == github_issue_number,
        )
        .order_by(PipelineRun.started_at.desc())
        .limit(1)
    )
    return result.scalars().first()


async def update_run(db: AsyncSession, run_id: str, **values: Any) -> None:
    await db.execute(update(PipelineRun).where(PipelineRun.id == run_id).values(**values))


async def mark_run_finished(db: AsyncSession, run_id: str, *, succeeded: bool) -> None:
    """Close a run when its job terminates.  Leaves result set by a strategy alone."""
    now = datetime.now(timezone.utc)
    run = await db.get(PipelineRun, run_id)
    if run is None:
        return
    if run.completed_at is None:
        run.completed_at = now
    if succeeded:
        if run.result is None:
            run.result = "success"
    else:
        run.stage = "failed"
        run.result = "failed"


# ── Run logs ────────────────────────────────────────────────────


async def append_log(db: AsyncSession, run_id: str, message: str, level: str = "info") -> RunLog:
    entry = RunLog(run_id=run_id, level=level, message=message)
    db.add(entry)
    return entry


async def recent_logs(db: AsyncSession, run_id: str, limit: int = 100) -> list[RunLog]:
    """Return up to *limit* of the newest log rows, oldest first."""
    result = await db.execute(
        select(RunLog)
        .where(RunLog.run_id == run_id)
        .order_by(RunLog.timestamp.desc(), RunLog.id.desc())
        .limit(limit)
    )
    rows = list(result.scalars().all())
    rows.reverse()
    return rows


class RunLogger:
    """Writes strategy output to both the process log and ``run_logs``.

    A failed insert is logged and dropped; losing a log line must never fail
    the job that produced it.
    """

    def __init__(self, session_factory: async_sessionmaker, run_id: str | None):
        self._session_factory = session_factory
        self.run_id = run_id

    async def log(self, message: str, level: str = "info") -> None:
        logger.log(_LEVELS.get(level, logging.INFO), "[run %s] %s", self.run_id, message)
        if not self.run_id:
            return
        try:
            async with self._session_factory() as db:
                await append_log(db, self.run_id, message, level)
                await db.commit()
        except Exception:
            logger.warning("Could not persist run log for run %s", self.run_id, exc_info=True)

    async def info(self, message: str) -> None:
        await self.log(message, "info")

    async def warn(self, message: str) -> None:
        await self.log(message, "warn")

    async def error(self, message: str) -> None:
        await self.log(message, "error")


_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}
