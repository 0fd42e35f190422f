"""Supervised fire-and-forget tasks.

Best-effort side effects (issue labels, notifications) run as independent
asyncio tasks.  Their failures are logged at the task boundary and never
reach the caller.  Strong references are held until each task finishes so
the event loop cannot garbage-collect a task mid-flight.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Coroutine
from typing import Any

logger = logging.getLogger("feedbackbot.background")

_tasks: set[asyncio.Task] = set()


def _on_done(task: asyncio.Task) -> None:
    _tasks.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.warning("Background task %s failed: %s", task.get_name(), exc, exc_info=exc)


def fire_and_forget(coro: Coroutine[Any, Any, Any], *, name: str | None = None) -> asyncio.Task:
    """Schedule *coro* on the running loop and return its task."""
    task = asyncio.create_task(coro, name=name)
    _tasks.add(task)
    task.add_done_callback(_on_done)
    return task


def pending_tasks() -> set[asyncio.Task]:
    return set(_tasks)


async def drain(timeout: float | None = None) -> None:
    """Wait for outstanding background tasks (used on shutdown and in tests)."""
    if not _tasks:
        return
    await asyncio.wait(set(_tasks), timeout=timeout)
