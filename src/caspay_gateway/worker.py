"""Periodic background worker for the aiohttp app.

Usage::

    worker = BackgroundWorker(
        interval_seconds=60.0,
        tasks=[WorkerTask(name="webhook_retry_due", fn=webhook_retry_due)],
    )

    app.on_startup.append(worker.start)
    app.on_cleanup.append(worker.stop)
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, Sequence

import structlog
from aiohttp import web

logger = structlog.get_logger(__name__)

# A task receives the current UTC time and may return a summary to log.
TaskFn = Callable[[datetime], Awaitable[str | None]]


@dataclass
class WorkerTask:
    """A named periodic task executed by :class:`BackgroundWorker`."""

    name: str
    fn: TaskFn


@dataclass
class BackgroundWorker:
    """In-process async worker that runs a list of tasks in a loop.

    Each task runs independently; one failing never stops the others or the
    loop. Several workers can share an app as long as their ``name`` differs.
    """

    interval_seconds: float = 60.0
    tasks: Sequence[WorkerTask] = field(default_factory=list)
    name: str = "background_worker"

    @property
    def _task_key(self) -> str:
        return f"__{self.name}_task__"

    async def start(self, app: web.Application) -> None:
        """Create the worker asyncio task. Register with ``app.on_startup``."""
        app[self._task_key] = asyncio.create_task(self._loop())

    async def stop(self, app: web.Application) -> None:
        """Cancel the worker task. Register with ``app.on_cleanup``."""
        task = app.get(self._task_key)
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def run_once(self, now: datetime | None = None) -> None:
        now = now or datetime.now(timezone.utc)
        for task in self.tasks:
            try:
                summary = await task.fn(now)
                if summary:
                    logger.info(
                        "background_task completed",
                        worker=self.name,
                        task=task.name,
                        summary=summary,
                    )
            except Exception:
                logger.exception("background_task failed", worker=self.name, task=task.name)

    async def _loop(self) -> None:
        logger.info(
            "background_worker started",
            worker=self.name,
            interval_seconds=self.interval_seconds,
            tasks=[t.name for t in self.tasks],
        )
        while True:
            try:
                await asyncio.sleep(self.interval_seconds)
                await self.run_once()
            except asyncio.CancelledError:
                logger.info("background_worker stopped", worker=self.name)
                raise
            except Exception:
                logger.exception("background_worker sweep failed", worker=self.name)
