"""
============================================================================
ChangeWLD Exchange - Periodic Worker
============================================================================

Reliability Level: L4 Standard
Input Constraints: interval_seconds must be positive
Side Effects: Owns one asyncio background task while running

Base class for the background jobs owned by the application lifespan.
run_once() is awaited to completion before the next sleep, so two runs of
the same worker never overlap. A failing run is logged and the loop keeps
going; stop() cancels the task and waits for it to finish.

============================================================================
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Optional

# Configure module logger
logger = logging.getLogger(__name__)


class PeriodicWorker(ABC):

    name = "worker"

    def __init__(self, interval_seconds: float, run_immediately: bool = True) -> None:
        if interval_seconds <= 0:
            raise ValueError(f"interval_seconds must be positive, got {interval_seconds}")
        self._interval_seconds = interval_seconds
        self._run_immediately = run_immediately
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._runs = 0
        self._failures = 0

    @property
    def interval_seconds(self) -> float:
        return self._interval_seconds

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def runs(self) -> int:
        return self._runs

    @property
    def failures(self) -> int:
        return self._failures

    async def start(self) -> None:
        if self._running:
            logger.warning(f"[{self.name.upper()}] Already running, ignoring start request")
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop())

        logger.info(
            f"[{self.name.upper()}] Started | interval_seconds={self._interval_seconds}"
        )

    async def stop(self) -> None:
        if not self._running:
            return

        self._running = False

        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        logger.info(f"[{self.name.upper()}] Stopped | runs={self._runs} | failures={self._failures}")

    async def _run_loop(self) -> None:
        if not self._run_immediately:
            await asyncio.sleep(self._interval_seconds)

        while self._running:
            try:
                await self.run_once()
                self._runs += 1
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._failures += 1
                logger.error(f"[{self.name.upper()}] Run failed | error={e}")

            await asyncio.sleep(self._interval_seconds)

    @abstractmethod
    async def run_once(self) -> None:
        ...


__all__ = ["PeriodicWorker"]
