"""Worker poll-and-execute loop.

Architecture
------------
One job at a time.  Every cycle:

  1. reap    - return orphaned ``processing`` jobs to ``pending`` / ``failed``
  2. claim   - atomically take the oldest ``pending`` job
  3. dispatch - run its strategy to completion
  4. finalize - ``done``, back to ``pending`` or ``failed`` (worker.policy)

The loop keeps no module-level state.  ``LoopState`` is threaded through the
iterations and ``next_delay`` maps (state, event) to (state, sleep) without
side effects.

Sleeping:
  idle        - nothing to claim: WORKER_POLL_INTERVAL
  worked      - a job was finalized: poll again immediately
  infra_error - the datastore round-trip failed: exponential backoff from
                WORKER_BACKOFF_BASE_SECONDS, doubling per consecutive error,
                capped at WORKER_BACKOFF_MAX_SECONDS; any successful cycle
                resets it.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import socket
import uuid
from dataclasses import dataclass, replace

from sqlalchemy.exc import SQLAlchemyError

from feedbackbot.config import settings
from feedbackbot.connectors.llm_client import LLMClient
from feedbackbot.db import engine as db_engine
from feedbackbot.db.models import Job
from feedbackbot.strategies.base import StrategySet
from feedbackbot.utils.logger import ctx_job_id, ctx_run_id, ctx_worker_id
from feedbackbot.utils.tracing import get_tracer
from feedbackbot.worker.claim import claim_next_job, reap_stale_jobs
from feedbackbot.worker.dispatch import dispatch_job
from feedbackbot.worker.policy import after_job_failed, complete_job, fail_job

logger = logging.getLogger("feedbackbot.worker.loop")
_tracer = get_tracer("feedbackbot.worker")


def default_worker_id() -> str:
    return f"{socket.gethostname()}-{uuid.uuid4().hex[:8]}"


# ─────────────────────────────────────────────────────────────────────────────
# Loop state
# ─────────────────────────────────────────────────────────────────────────────


class CycleEvent(str, enum.Enum):
    IDLE = "idle"
    WORKED = "worked"
    INFRA_ERROR = "infra_error"


@dataclass(frozen=True)
class LoopState:
    worker_id: str
    consecutive_errors: int = 0


def backoff_delay(consecutive_errors: int, base: float, cap: float) -> float:
    if consecutive_errors <= 0:
        return 0.0
    return min(base * 2 ** (consecutive_errors - 1), cap)


def next_delay(
    state: LoopState,
    event: CycleEvent,
    *,
    poll_interval: float | None = None,
    backoff_base: float | None = None,
    backoff_max: float | None = None,
) -> tuple[LoopState, float]:
    """Return the next state and how long to sleep before the next cycle."""
    if event is CycleEvent.INFRA_ERROR:
        errors = state.consecutive_errors + 1
        delay = backoff_delay(
            errors,
            backoff_base if backoff_base is not None else settings.WORKER_BACKOFF_BASE_SECONDS,
            backoff_max if backoff_max is not None else settings.WORKER_BACKOFF_MAX_SECONDS,
        )
        return replace(state, consecutive_errors=errors), delay

    reset = replace(state, consecutive_errors=0)
    if event is CycleEvent.WORKED:
        return reset, 0.0
    return reset, poll_interval if poll_interval is not None else settings.WORKER_POLL_INTERVAL


# ─────────────────────────────────────────────────────────────────────────────
# One cycle
# ─────────────────────────────────────────────────────────────────────────────


async def process_job(
    job: Job,
    strategies: StrategySet,
    worker_id: str,
    session_factory,
    *,
    llm_client: LLMClient | None = None,
) -> None:
    """Dispatch a claimed job and record the outcome.

    Datastore errors propagate so the loop backs off; the job stays
    ``processing`` until the reaper picks it up.  Every other exception is
    a failed attempt.
    """
    job_token = ctx_job_id.set(job.id)
    run_token = ctx_run_id.set(None)
    try:
        with _tracer.start_as_current_span(
            "job.process",
            attributes={
                "job.id": job.id,
                "job.type": job.job_type or "implement",
                "job.attempt": job.attempt_count + 1,
                "worker.id": worker_id,
            },
        ) as span:
            try:
                await dispatch_job(job, strategies, session_factory=session_factory)
            except SQLAlchemyError:
                raise
            except Exception as exc:
                logger.warning("Job %s attempt failed: %s", job.id, exc)
                span.record_exception(exc)
                outcome = await fail_job(job, worker_id, exc, session_factory, llm_client=llm_client)
                span.set_attribute("job.outcome", outcome.status if outcome else "lost")
                return
            done = await complete_job(job, worker_id, session_factory)
            span.set_attribute("job.outcome", "done" if done else "lost")
    finally:
        ctx_run_id.reset(run_token)
        ctx_job_id.reset(job_token)


async def run_cycle(
    state: LoopState,
    strategies: StrategySet,
    session_factory,
    *,
    llm_client: LLMClient | None = None,
) -> CycleEvent:
    """Reap, claim, dispatch, finalize.  Returns what happened."""
    reaped = await reap_stale_jobs(session_factory=session_factory)
    for failed in reaped.failed:
        await after_job_failed(failed, session_factory, llm_client=llm_client)
    if reaped.total:
        logger.debug("Reaped %d stale job(s)", reaped.total)

    job = await claim_next_job(state.worker_id, session_factory=session_factory)
    if job is None:
        return CycleEvent.IDLE

    await process_job(job, strategies, state.worker_id, session_factory, llm_client=llm_client)
    return CycleEvent.WORKED


# ─────────────────────────────────────────────────────────────────────────────
# Main worker loop
# ─────────────────────────────────────────────────────────────────────────────


async def _sleep(stop_event: asyncio.Event | None, delay: float) -> None:
    if delay <= 0:
        await asyncio.sleep(0)
        return
    if stop_event is None:
        await asyncio.sleep(delay)
        return
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=delay)
    except asyncio.TimeoutError:
        pass


async def worker_loop(
    worker_id: str | None = None,
    strategies: StrategySet | None = None,
    *,
    stop_event: asyncio.Event | None = None,
    session_factory=None,
    poll_interval: float | None = None,
    llm_client: LLMClient | None = None,
) -> None:
    """Poll for jobs until *stop_event* is set (or the task is cancelled).

    A stop request is honoured between cycles; an in-flight job always runs
    to completion first.

    Args:
        worker_id:       Unique identifier for this worker (default: hostname+uuid).
        strategies:      Execution strategies per job type (default: HTTP agent).
        stop_event:      Set to request a graceful stop.
        session_factory: Session factory (default: ``db.engine.async_session``).
        poll_interval:   Seconds between idle polls (default: WORKER_POLL_INTERVAL).
    """
    if strategies is None:
        from feedbackbot.strategies.http_agent import default_strategies

        strategies = default_strategies()

    factory = session_factory or db_engine.async_session
    state = LoopState(worker_id=worker_id or settings.WORKER_ID or default_worker_id())
    ctx_worker_id.set(state.worker_id)

    logger.info(
        "Worker %s started (poll_interval=%.1fs, dialect=%s)",
        state.worker_id,
        poll_interval if poll_interval is not None else settings.WORKER_POLL_INTERVAL,
        settings.DB_DIALECT,
    )

    while stop_event is None or not stop_event.is_set():
        try:
            event = await run_cycle(state, strategies, factory, llm_client=llm_client)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Worker %s cycle failed", state.worker_id)
            event = CycleEvent.INFRA_ERROR

        state, delay = next_delay(state, event, poll_interval=poll_interval)
        if event is CycleEvent.INFRA_ERROR:
            logger.warning(
                "Backing off %.1fs after %d consecutive error(s)", delay, state.consecutive_errors
            )
        await _sleep(stop_event, delay)

    logger.info("Worker %s stopped", state.worker_id)


async def stop_worker(
    task: asyncio.Task,
    stop_event: asyncio.Event,
    *,
    timeout: float | None = None,
) -> None:
    """Ask the loop in *task* to stop and wait for its in-flight job.

    The task is cancelled only when it has not stopped within *timeout*
    (default: WORKER_SHUTDOWN_TIMEOUT_SECONDS).
    """
    if timeout is None:
        timeout = settings.WORKER_SHUTDOWN_TIMEOUT_SECONDS

    stop_event.set()
    try:
        await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
        return
    except asyncio.TimeoutError:
        logger.warning("Worker did not stop within %.1fs; cancelling in-flight job", timeout)

    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
