"""Periodic background tasks.

A ``PeriodicTask`` runs an async callable every ``interval`` seconds until
stopped.  The loop waits on a stop event rather than sleeping so shutdown is
immediate; ``run_once`` lets tests trigger a sweep without a timer.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

__all__ = ["PeriodicTask"]


class PeriodicTask:
    def __init__(
        self,
        name: str,
        interval_seconds: float,
        func: Callable[[], Awaitable[Any]],
        *,
        initial_delay: float = 0.0,
    ) -> None:
        self.name = name
        self.interval_seconds = max(0.01, float(interval_seconds))
        self.initial_delay = max(0.0, float(initial_delay))
        self._func = func
        self._stop_event: asyncio.Event | None = None
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> Any:
        return await self._func()

    async def _run_loop(self, stop_event: asyncio.Event) -> None:
        if self.initial_delay:
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.initial_delay)
                return
            except asyncio.TimeoutError:
                pass
        while not stop_event.is_set():
            try:
                await self._func()
            except Exception as e:
                logger.exception("%s iteration error: %s", self.name, e)
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                continue

    def start(self) -> None:
        if self.running:
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run_loop(self._stop_event), name=self.name)
        logger.info("%s started (interval=%ss)", self.name, self.interval_seconds)

    async def stop(self, timeout: float = 5.0) -> None:
        if self._task is None or self._stop_event is None:
            return
        self._stop_event.set()
        try:
            await asyncio.wait_for(self._task, timeout=timeout)
        except asyncio.TimeoutError:
            self._task.cancel()
            logger.warning("%s did not stop within %ss; cancelled", self.name, timeout)
        finally:
            self._task = None
            self._stop_event = None
        logger.info("%s stopped", self.name)
