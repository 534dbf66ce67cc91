"""Periodic job runner -- asyncio loop that fires a coroutine on a fixed interval.

The pipeline runs two of these: the sync tick (every sync_interval seconds,
plus once immediately at start) and the daily retention sweep.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

JobFn = Callable[[], Awaitable[Any]]


class PeriodicJob:
    """Runs `fn` every `interval` seconds until stopped.

    Usage:
        job = PeriodicJob("sync", engine.tick, interval=60, run_immediately=True)
        await job.start()
        ...
        await job.stop()
    """

    def __init__(
        self,
        name: str,
        fn: JobFn,
        interval: float,
        run_immediately: bool = False,
    ) -> None:
        if interval <= 0:
            raise ValueError(f"Job interval must be positive, got {interval!r}")
        self._name = name
        self._fn = fn
        self._interval = interval
        self._run_immediately = run_immediately
        self._running = False
        self._task: asyncio.Task | None = None
        self._run_count = 0

    @property
    def name(self) -> str:
        return self._name

    @property
    def running(self) -> bool:
        return self._running

    @property
    def run_count(self) -> int:
        return self._run_count

    async def start(self) -> None:
        """Start the job loop."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._loop(), name=f"periodic:{self._name}")
        logger.info("Job %s started (every %gs)", self._name, self._interval)

    async def stop(self) -> None:
        """Cancel the job loop and wait for it to unwind."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Job %s stopped", self._name)

    async def _loop(self) -> None:
        if not self._run_immediately:
            await asyncio.sleep(self._interval)
        while self._running:
            try:
                await self._fn()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Error in job %s", self._name)
            self._run_count += 1
            await asyncio.sleep(self._interval)
