"""Shared start/stop loop for timer-driven handlers."""

from __future__ import annotations

import asyncio
import logging

logger = logging.getLogger(__name__)


class PeriodicHandler:
    """Runs ``run_once`` every ``interval`` seconds until stopped.

    A failing iteration is logged and retried on the next tick; the loop
    itself only exits on stop().
    """

    name = "periodic-handler"

    def __init__(self, interval: float) -> None:
        self._interval = interval
        self._task: asyncio.Task | None = None
        self._running = False

    async def start(self) -> None:
        self._running = True
        self._task = asyncio.create_task(self._loop(), name=self.name)
        logger.info("%s started (interval=%ss)", self.name, self._interval)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("%s stopped", self.name)

    async def _loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self._interval)
                await self.run_once()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("%s iteration failed", self.name)

    async def run_once(self) -> int:
        """One sweep. Returns the number of items acted on."""
        raise NotImplementedError
