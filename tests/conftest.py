"""Shared fixtures: a throwaway SQLite database per test plus row factories."""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from feedbackbot.db.engine import install_sqlite_pragmas
from feedbackbot.db.models import Base, Job, PipelineRun, Project, RunLog


@pytest.fixture
async def db_engine(tmp_path):
    """File-backed SQLite so several connections can contend like real workers."""
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", echo=False)
    install_sqlite_pragmas(eng)
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


# ── Row factories ───────────────────────────────────────────────


def _uid() -> str:
    return uuid.uuid4().hex[:8]


def utc(minutes_ago: float = 0) -> datetime:
    return datetime.now(timezone.utc) - timedelta(minutes=minutes_ago)


async def add_project(session_factory, **overrides) -> Project:
    values = {
        "id": f"proj-{_uid()}",
        "name": "Demo",
        "github_repo": "acme/widget",
        "webhook_secret": "s3cret",
    }
    values.update(overrides)
    project = Project(**values)
    async with session_factory() as db:
        db.add(project)
        await db.commit()
    return project


async def add_job(session_factory, project_id: str, **overrides) -> Job:
    values = {
        "id": str(uuid.uuid4()),
        "project_id": project_id,
        "job_type": "implement",
        "status": "pending",
        "attempt_count": 0,
        "max_attempts": 3,
        "github_issue_number": 7,
        "issue_title": "Button is misaligned",
        "issue_body": "The submit button overlaps the footer.",
        "created_at": utc(),
    }
    values.update(overrides)
    job = Job(**values)
    async with session_factory() as db:
        db.add(job)
        await db.commit()
    return job


async def add_run(session_factory, project_id: str, **overrides) -> PipelineRun:
    values = {
        "id": str(uuid.uuid4()),
        "project_id": project_id,
        "github_issue_number": 7,
        "stage": "queued",
        "started_at": utc(),
    }
    values.update(overrides)
    run = PipelineRun(**values)
    async with session_factory() as db:
        db.add(run)
        await db.commit()
    return run


async def add_logs(session_factory, run_id: str, messages: list[tuple[str, str]]) -> None:
    """*messages* is a list of (level, message), oldest first."""
    base = utc(minutes_ago=10)
    async with session_factory() as db:
        for i, (level, message) in enumerate(messages):
            db.add(
                RunLog(
                    run_id=run_id,
                    level=level,
                    message=message,
                    timestamp=base + timedelta(seconds=i),
                )
            )
        await db.commit()


async def load(session_factory, model, pk):
    async with session_factory() as db:
        return await db.get(model, pk)


def interleaved_session_factory(db_engine, on_first_commit):
    """Session factory whose first commit runs *on_first_commit* right after it.

    Lets a test slip a competing write between the scan and the write of a
    claim or reap pass.  The hook runs once, across all sessions.
    """
    pending_hook = [on_first_commit]

    class _InterleavedSession(AsyncSession):
        async def commit(self):
            await super().commit()
            if pending_hook:
                await pending_hook.pop()()

    return async_sessionmaker(db_engine, class_=_InterleavedSession, expire_on_commit=False)
