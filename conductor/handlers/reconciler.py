"""Reconciler -- periodic sweep that repairs drift between separate writes.

1. Restores report events lost after an agent state went terminal
2. Recomputes counters of running orchestrations from the event log
3. Finalises running orchestrations whose last task ended outside the
   normal report path
4. Completes pending outbox rows whose orchestration already started
5. Re-queues unpaused queued orchestrations that have no pending outbox row
   (e.g. the broker job was popped by a worker that then crashed)
6. Drops expired rate-limit counters
"""

from __future__ import annotations

import logging
from datetime import timedelta

from conductor.config import Settings
from conductor.dispatch.engine import OrchestrationEngine
from conductor.handlers.base import PeriodicHandler
from conductor.state.store import StateStore
from conductor.utils import utc_now

logger = logging.getLogger(__name__)


class Reconciler(PeriodicHandler):
    name = "reconciler"

    def __init__(
        self,
        store: StateStore,
        settings: Settings,
        engine: OrchestrationEngine | None = None,
    ) -> None:
        super().__init__(settings.reconcile_interval)
        self._store = store
        self._engine = engine
        self._stale_after = timedelta(seconds=settings.stale_start_timeout)

    async def run_once(self) -> int:
        fixed = 0

        for orchestration in await self._store.orchestrations.list_by_status("running"):
            if self._engine is not None:
                fixed += await self._engine.restore_lost_reports(orchestration.id)
            if await self._store.reconcile_counters(orchestration.id):
                fixed += 1
            if self._engine is not None and await self._finalise(orchestration.id):
                fixed += 1

        for job in await self._store.outbox.orphaned():
            if await self._store.outbox.complete(job.id):
                logger.info("Completed orphaned outbox job %s", job.id[:8])
                fixed += 1

        for orchestration in await self._store.orchestrations.stale_queued(utc_now() - self._stale_after):
            if await self._store.outbox.pending_for(orchestration.id):
                continue
            await self._store.outbox.create(orchestration.id)
            await self._store.events.append(
                orchestration.id,
                "requeued_stale",
                "queued with no pending dispatch; re-queued to outbox",
                level="warn",
            )
            fixed += 1

        await self._store.rate_limiter.cleanup()
        if fixed:
            logger.info("Reconciler fixed %d item(s)", fixed)
        return fixed

    async def _finalise(self, orchestration_id: str) -> bool:
        await self._engine.advance(orchestration_id)
        current = await self._store.orchestrations.get(orchestration_id)
        if current is None or current.status == "running":
            return False
        logger.info("Finalised stalled orchestration %s as %s", orchestration_id[:8], current.status)
        return True
