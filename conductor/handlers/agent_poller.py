"""Agent Poller -- polls running task agents for progress.

Terminal statuses are handed to the engine. Non-terminal reports only
touch the agent state when something observable changed, so an agent that
sits in the same state forever still ages toward the watchdog timeout.
"""

from __future__ import annotations

import logging

from conductor.agents.client import AgentApiClient
from conductor.config import Settings
from conductor.dispatch.engine import OrchestrationEngine
from conductor.errors import ConductorError
from conductor.handlers.base import PeriodicHandler
from conductor.state.schemas import AgentStateInput
from conductor.state.store import StateStore

logger = logging.getLogger(__name__)


class AgentPoller(PeriodicHandler):
    name = "agent-poller"

    def __init__(
        self,
        store: StateStore,
        engine: OrchestrationEngine,
        agent_client: AgentApiClient,
        settings: Settings,
    ) -> None:
        super().__init__(settings.agent_poll_interval)
        self._store = store
        self._engine = engine
        self._client = agent_client

    async def run_once(self) -> int:
        finished = 0
        for state in await self._store.agents.list_active(role="task"):
            try:
                report = await self._client.status(state.agent_id)
            except ConductorError as exc:
                logger.warning("Status poll failed for agent %s: %s", state.agent_id, exc)
                continue

            if report.terminal:
                if await self._engine.handle_agent_report(state.agent_id, report.status, report.summary):
                    finished += 1
                continue

            seen = state.last_analysis or {}
            observed = {"agentStatus": report.status, "summary": report.summary, "prUrl": report.pr_url}
            if all(seen.get(k) == v for k, v in observed.items()) and report.branch_name in (None, state.branch_name):
                continue
            await self._store.agents.save(
                AgentStateInput(
                    agent_id=state.agent_id,
                    branch_name=report.branch_name,
                    last_analysis=observed,
                )
            )
        return finished
