"""FastAPI application entry point."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from feedbackbot import __version__
from feedbackbot.api.webhook import router as webhook_router
from feedbackbot.config import settings
from feedbackbot.db.engine import engine
from feedbackbot.db.models import Base
from feedbackbot.utils.background import drain
from feedbackbot.utils.logger import setup_logger
from feedbackbot.utils.tracing import setup_tracing, shutdown_tracing

setup_logger(
    log_format=settings.LOG_FORMAT,
    log_level="DEBUG" if settings.DEBUG else settings.LOG_LEVEL,
)
logger = logging.getLogger("feedbackbot.main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    if settings.is_sqlite:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
    # else: for PostgreSQL, run `alembic upgrade head` before starting the server

    # Start embedded worker when configured (default for SQLite dev mode)
    stop_event = asyncio.Event()
    worker_task: asyncio.Task | None = None
    if settings.WORKER_EMBEDDED:
        from feedbackbot.worker.loop import stop_worker, worker_loop

        worker_task = asyncio.create_task(
            worker_loop(worker_id=settings.WORKER_ID, stop_event=stop_event),
            name="embedded-worker",
        )
        logger.info("Embedded worker started (poll_interval=%.1fs)", settings.WORKER_POLL_INTERVAL)

    logger.info("Application startup complete")
    try:
        yield
    finally:
        if worker_task is not None:
            await stop_worker(worker_task, stop_event)
        await drain(timeout=5)
        await engine.dispose()
        shutdown_tracing()


app = FastAPI(
    title="feedbackbot",
    description="Durable job-queue worker for automated code-change jobs",
    version=__version__,
    lifespan=lifespan,
)

app.include_router(webhook_router, prefix="/api", tags=["webhook"])


@app.get("/api/health")
async def health():
    return {"status": "ok"}


setup_tracing(app, settings.OTLP_ENDPOINT, service_version=__version__)
