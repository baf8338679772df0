"""StateStore -- facade over the orchestration state managers.

Groups the per-table managers behind one handle so handlers and the engine
take a single dependency.
"""

from __future__ import annotations

from conductor.config import Settings
from conductor.state.agents import AgentStateManager
from conductor.state.events import EventLog, derive_task_statuses, task_agents
from conductor.state.orchestrations import OrchestrationManager
from conductor.state.outbox import OutboxManager
from conductor.state.rate_limits import RateLimiter
from conductor.storage.database import Database


class StateStore:
    def __init__(self, database: Database, settings: Settings) -> None:
        self.db = database
        self.orchestrations = OrchestrationManager(database, settings.outbox_max_attempts)
        self.events = EventLog(database)
        self.outbox = OutboxManager(database, settings.outbox_max_attempts)
        self.agents = AgentStateManager(database)
        self.rate_limiter = RateLimiter(
            database,
            max_requests=settings.rate_limit_max,
            window_seconds=settings.rate_limit_window,
            prefix=settings.rate_limit_prefix,
        )

    async def progress(self, orchestration_id: str) -> "Progress":
        """Snapshot of task progress re-derived from the event log."""
        rows = await self.events.rows(orchestration_id)
        statuses = derive_task_statuses(rows)
        return Progress(statuses=statuses, agents=task_agents(rows))

    async def reconcile_counters(self, orchestration_id: str) -> bool:
        """Recompute tasks_completed/active_agents from events. True if drift was fixed."""
        orchestration = await self.orchestrations.get(orchestration_id)
        if orchestration is None:
            return False
        progress = await self.progress(orchestration_id)
        completed = min(len(progress.completed), orchestration.tasks_total)
        active = 0 if orchestration.status != "running" else len(progress.running)
        if (orchestration.tasks_completed, orchestration.active_agents) == (completed, active):
            return False
        await self.orchestrations.update_counters(
            orchestration_id, tasks_completed=completed, active_agents=active
        )
        await self.events.append(
            orchestration_id,
            "counters_reconciled",
            f"counters corrected: completed {orchestration.tasks_completed}->{completed}, "
            f"active {orchestration.active_agents}->{active}",
            level="warn",
            payload={"tasksCompleted": completed, "activeAgents": active},
        )
        return True


class Progress:
    """Task status projection for one orchestration."""

    def __init__(self, statuses: dict[str, str], agents: dict[str, str]) -> None:
        self.statuses = statuses
        self.agents = agents

    def _with(self, status: str) -> set[str]:
        return {task_id for task_id, s in self.statuses.items() if s == status}

    @property
    def completed(self) -> set[str]:
        return self._with("completed")

    @property
    def running(self) -> set[str]:
        return self._with("running")

    @property
    def failed(self) -> set[str]:
        return self._with("failed")
