"""Worker process entrypoint.

Run as a standalone process (production PostgreSQL mode):

    python -m feedbackbot.worker.worker_main

    # With a fixed worker ID:
    WORKER_ID=worker-1 python -m feedbackbot.worker.worker_main

The worker will:
1. Load feedbackbot.config.settings (honours .env file)
2. Block until the job_queue table exists (run ``alembic upgrade head`` first)
3. Start the poll loop
4. On SIGINT/SIGTERM finish the in-flight job, then exit
"""

from __future__ import annotations

import asyncio
import logging
import signal

from sqlalchemy import text

from feedbackbot.config import settings
from feedbackbot.db.engine import async_session, engine
from feedbackbot.utils.background import drain
from feedbackbot.utils.logger import setup_logger
from feedbackbot.utils.tracing import setup_tracing, shutdown_tracing
from feedbackbot.worker.loop import worker_loop

logger = logging.getLogger("feedbackbot.worker")


async def _wait_for_db(max_retries: int = 10, delay: float = 2.0) -> None:
    """Wait until the ``job_queue`` table is accessible."""
    for attempt in range(1, max_retries + 1):
        try:
            async with async_session() as db:
                await db.execute(text("SELECT 1 FROM job_queue LIMIT 1"))
            logger.info("Database ready after %d attempt(s)", attempt)
            return
        except Exception as exc:
            logger.warning("Database not ready (attempt %d/%d): %s", attempt, max_retries, exc)
            if attempt < max_retries:
                await asyncio.sleep(delay)

    raise RuntimeError(
        f"Database not accessible after {max_retries} attempts. "
        "Run `alembic upgrade head` before starting the worker."
    )


async def main() -> None:
    setup_logger(settings.LOG_FORMAT, settings.LOG_LEVEL)
    setup_tracing(otlp_endpoint=settings.OTLP_ENDPOINT, service_name="feedbackbot-worker")
    logger.info(
        "Starting feedbackbot worker (dialect=%s, embedded=%s)",
        settings.DB_DIALECT,
        settings.WORKER_EMBEDDED,
    )

    await _wait_for_db()

    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()

    def _handle_stop(*_):
        logger.info("Received shutdown signal; finishing current job")
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _handle_stop)
        except (NotImplementedError, AttributeError):
            # Windows has no add_signal_handler
            pass

    await worker_loop(worker_id=settings.WORKER_ID, stop_event=stop_event)

    await drain(timeout=10)
    await engine.dispose()
    shutdown_tracing()
    logger.info("Worker stopped cleanly")


if __name__ == "__main__":
    asyncio.run(main())
