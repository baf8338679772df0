"""Outbox Processor -- drains pending start jobs from the durable outbox.

Runs a periodic loop that:
1. Selects pending rows whose next_run_at has passed
2. Leases each row, then hands it to the shared dispatch handler
3. Completes the row on success or duplicate delivery
4. Reschedules with exponential backoff on retryable failure, and fails the
   row (and its orchestration) at the attempt ceiling

Paused orchestrations are deferred without consuming an attempt.
"""

from __future__ import annotations

import logging

from conductor.config import Settings
from conductor.dispatch.engine import OrchestrationEngine
from conductor.errors import ConductorError, DispatchDeferred
from conductor.handlers.base import PeriodicHandler
from conductor.state.store import StateStore
from conductor.storage.models import OutboxJob

logger = logging.getLogger(__name__)


class OutboxProcessor(PeriodicHandler):
    name = "outbox-processor"

    def __init__(self, store: StateStore, engine: OrchestrationEngine, settings: Settings) -> None:
        super().__init__(settings.outbox_poll_interval)
        self._store = store
        self._engine = engine
        self._settings = settings

    async def run_once(self) -> int:
        jobs = await self._store.outbox.due(limit=self._settings.outbox_batch_size)
        processed = 0
        for job in jobs:
            if not await self._store.outbox.claim(job, self._settings.worker_id, self._settings.outbox_claim_lease):
                continue
            await self._process(job)
            processed += 1
        if processed:
            logger.info("Processed %d outbox job(s)", processed)
        return processed

    async def _process(self, job: OutboxJob) -> None:
        orchestration_id = (job.payload or {}).get("orchestrationId") or job.orchestration_id
        try:
            outcome = await self._engine.handle_job(orchestration_id, source="outbox")
        except DispatchDeferred as exc:
            await self._store.outbox.reschedule(
                job.id, str(exc), self._settings.outbox_retry_base_delay, count_attempt=False
            )
            logger.debug("Deferred outbox job %s: %s", job.id[:8], exc)
            return
        except ConductorError as exc:
            if exc.retryable:
                await self._retry(job, orchestration_id, str(exc))
            else:
                await self._give_up(job, orchestration_id, str(exc))
            return
        except Exception as exc:
            logger.exception("Outbox job %s crashed", job.id[:8])
            await self._retry(job, orchestration_id, f"{exc.__class__.__name__}: {exc}")
            return

        await self._store.outbox.complete(job.id)
        logger.debug("Outbox job %s done (%s)", job.id[:8], outcome)

    async def _retry(self, job: OutboxJob, orchestration_id: str, error: str) -> None:
        status, attempts = await self._store.outbox.reschedule(
            job.id, error, self._settings.outbox_retry_base_delay
        )
        if status == "failed":
            await self._fail_orchestration(orchestration_id, f"dispatch failed after {attempts} attempts: {error}")
        else:
            logger.warning("Outbox job %s attempt %d failed: %s", job.id[:8], attempts, error)

    async def _give_up(self, job: OutboxJob, orchestration_id: str, error: str) -> None:
        await self._store.outbox.fail(job.id, error)
        await self._fail_orchestration(orchestration_id, error)

    async def _fail_orchestration(self, orchestration_id: str, error: str) -> None:
        if await self._store.orchestrations.finish(orchestration_id, "error", error):
            await self._store.events.append(
                orchestration_id,
                "outbox_failed",
                error,
                level="error",
                step_phase="end",
            )
