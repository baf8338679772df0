"""Broker Consumer -- the low-latency dispatch path.

Pops start jobs from the broker with bounded concurrency and runs them
through the same dispatch handler as the outbox. The outbox row for a
broker-accepted job is already completed, so a retryable failure here is
handed back to the durable path as a fresh pending outbox row.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import Any

from conductor.config import Settings
from conductor.dispatch.broker import Broker, BrokerUnavailable
from conductor.dispatch.engine import OrchestrationEngine
from conductor.errors import ConductorError, DispatchDeferred
from conductor.state.orchestrations import START_JOB_TYPE
from conductor.state.store import StateStore
from conductor.utils import utc_now

logger = logging.getLogger(__name__)


class BrokerConsumer:
    def __init__(
        self,
        broker: Broker,
        store: StateStore,
        engine: OrchestrationEngine,
        settings: Settings,
    ) -> None:
        self._broker = broker
        self._store = store
        self._engine = engine
        self._settings = settings
        self._tasks: list[asyncio.Task] = []
        self._running = False

    async def start(self) -> None:
        self._running = True
        for i in range(max(self._settings.broker_concurrency, 1)):
            self._tasks.append(asyncio.create_task(self._consume_loop(), name=f"broker-consumer-{i}"))
        logger.info("Broker consumer started (concurrency=%d)", len(self._tasks))

    async def stop(self) -> None:
        self._running = False
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
        logger.info("Broker consumer stopped")

    async def _consume_loop(self) -> None:
        while self._running:
            try:
                item = await self._broker.pop(START_JOB_TYPE, timeout=self._settings.broker_pop_timeout)
                if item is None:
                    continue
                job_id, payload = item
                await self.handle(job_id, payload)
            except asyncio.CancelledError:
                break
            except BrokerUnavailable as exc:
                logger.warning("Broker unavailable, backing off: %s", exc)
                await asyncio.sleep(self._settings.outbox_poll_interval)
            except Exception:
                logger.exception("Broker consume iteration failed")

    async def handle(self, job_id: str, payload: dict[str, Any]) -> None:
        orchestration_id = payload.get("orchestrationId") or job_id
        try:
            await self._engine.handle_job(orchestration_id, source="broker")
        except DispatchDeferred as exc:
            await self._requeue(orchestration_id, str(exc), delay=self._settings.outbox_retry_base_delay)
        except ConductorError as exc:
            if exc.retryable:
                await self._requeue(orchestration_id, str(exc), delay=self._settings.outbox_retry_base_delay)
            else:
                await self._fail(orchestration_id, str(exc))
        except Exception as exc:
            logger.exception("Broker job %s crashed", job_id)
            await self._requeue(orchestration_id, f"{exc.__class__.__name__}: {exc}", delay=self._settings.outbox_retry_base_delay)

    async def _requeue(self, orchestration_id: str, reason: str, delay: int) -> None:
        await self._store.outbox.create(orchestration_id, run_at=utc_now() + timedelta(seconds=delay))
        await self._store.events.append(
            orchestration_id,
            "requeued_to_outbox",
            f"broker dispatch failed, handed to outbox: {reason}",
            level="warn",
        )

    async def _fail(self, orchestration_id: str, reason: str) -> None:
        if await self._store.orchestrations.finish(orchestration_id, "error", reason):
            await self._store.events.append(orchestration_id, "worker_error", reason, level="error", step_phase="end")
