"""Detached (fire-and-forget) tasks that stay off the request path.

The event loop only keeps weak references to tasks, so every spawned task is
held in ``_pending`` until it finishes. Failures are logged here; nothing is
re-raised to the spawner.
"""
from __future__ import annotations

import asyncio
from typing import Any, Coroutine

import structlog
from aiohttp import web

logger = structlog.get_logger(__name__)

_pending: set[asyncio.Task[Any]] = set()


def spawn_detached(coro: Coroutine[Any, Any, Any], *, name: str) -> asyncio.Task[Any]:
    task = asyncio.create_task(coro, name=name)
    _pending.add(task)
    task.add_done_callback(_on_done)
    return task


def _on_done(task: asyncio.Task[Any]) -> None:
    _pending.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error(
            "detached task failed",
            task=task.get_name(),
            exc_info=(type(exc), exc, exc.__traceback__),
        )


async def drain(timeout: float | None = None) -> None:
    """Wait for every detached task spawned so far."""
    if not _pending:
        return
    await asyncio.wait(set(_pending), timeout=timeout)


async def drain_on_cleanup(_app: web.Application) -> None:
    """``app.on_cleanup`` hook: give in-flight deliveries a chance to finish."""
    await drain(timeout=15.0)
    for task in list(_pending):
        task.cancel()
