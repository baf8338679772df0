"""Stuck-Worker Watchdog -- times out agents that stopped reporting progress.

An agent is only marked TIMEOUT after its stop call went through. If the
stop fails the state stays ACTIVE and the next sweep tries again, so the
store never claims a worker is dead while it may still be running.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from conductor.agents.client import AgentApiClient
from conductor.config import Settings
from conductor.dispatch.engine import OrchestrationEngine
from conductor.errors import AgentTimeoutError, ConductorError
from conductor.handlers.base import PeriodicHandler
from conductor.state.store import StateStore
from conductor.utils import utc_now

logger = logging.getLogger(__name__)


class StuckWorkerWatchdog(PeriodicHandler):
    name = "watchdog"

    def __init__(
        self,
        store: StateStore,
        agent_client: AgentApiClient,
        settings: Settings,
        engine: OrchestrationEngine | None = None,
    ) -> None:
        super().__init__(settings.watchdog_interval)
        self._store = store
        self._client = agent_client
        self._engine = engine
        self._timeout = timedelta(seconds=settings.agent_timeout)

    async def run_once(self) -> int:
        now = utc_now()
        timed_out = 0
        for state in await self._store.agents.list_stale(now - self._timeout):
            elapsed = now - state.updated_at
            try:
                await self._client.stop(state.agent_id)
            except ConductorError as exc:
                logger.warning(
                    "Stop failed for stuck agent %s (idle %s), will retry: %s",
                    state.agent_id,
                    elapsed,
                    exc,
                )
                continue

            if not await self._store.agents.update_status(state.agent_id, "TIMEOUT"):
                # Reported in between the scan and the stop
                continue
            timed_out += 1
            reason = AgentTimeoutError(state.agent_id, int(elapsed.total_seconds()))
            logger.warning("Agent timed out: %s", reason)

            if state.orchestration_id:
                await self._store.events.append(
                    state.orchestration_id,
                    "agent_timed_out",
                    str(reason),
                    level="warn",
                    payload={
                        "taskId": state.task_id,
                        "agentId": state.agent_id,
                        "idleSeconds": reason.idle_seconds,
                    },
                )
                if self._engine is not None:
                    await self._engine.advance(state.orchestration_id)
        return timed_out
