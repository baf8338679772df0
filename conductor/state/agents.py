"""Agent state manager -- monotonic upsert of per-agent progress.

save() merges a report into the existing row: iterations take the max,
tasks_completed is an ordered union, last_analysis is shallow-merged, and a
terminal status is never reopened by a late ACTIVE report.
"""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError

from conductor.state.schemas import AgentStateInput
from conductor.storage.database import Database
from conductor.storage.models import AgentState
from conductor.utils import utc_now

logger = logging.getLogger(__name__)


def _ordered_union(existing: list[str], new: list[str]) -> list[str]:
    merged = list(existing)
    for item in new:
        if item not in merged:
            merged.append(item)
    return merged


class AgentStateManager:
    """Reads and upserts rows in agent_orchestrator_states."""

    def __init__(self, database: Database) -> None:
        self._db = database

    async def get(self, agent_id: str) -> AgentState | None:
        async with self._db.session() as session:
            result = await session.execute(select(AgentState).where(AgentState.agent_id == agent_id))
            return result.scalar_one_or_none()

    async def save(self, state: AgentStateInput) -> AgentState:
        """Create the row if absent, otherwise merge without going backwards."""
        try:
            return await self._save_once(state)
        except IntegrityError:
            # Another worker inserted the same agent_id between our read and insert
            logger.debug("Concurrent insert for agent %s, merging", state.agent_id)
            return await self._save_once(state)

    async def _save_once(self, state: AgentStateInput) -> AgentState:
        now = utc_now()
        async with self._db.session() as session:
            result = await session.execute(select(AgentState).where(AgentState.agent_id == state.agent_id))
            row = result.scalar_one_or_none()

            if row is None:
                completed = _ordered_union([], state.tasks_completed)
                row = AgentState(
                    agent_id=state.agent_id,
                    orchestration_id=state.orchestration_id,
                    role=state.role,
                    task_id=state.task_id,
                    task_description=state.task_description or "",
                    repository=state.repository,
                    branch_name=state.branch_name,
                    iterations=max(state.iterations, 0),
                    status=state.status,
                    tasks_completed=completed,
                    tasks_remaining=[t for t in (state.tasks_remaining or []) if t not in completed],
                    last_analysis=dict(state.last_analysis),
                    updated_at=now,
                )
                session.add(row)
            else:
                completed = _ordered_union(row.tasks_completed or [], state.tasks_completed)
                remaining = state.tasks_remaining if state.tasks_remaining is not None else row.tasks_remaining
                row.iterations = max(row.iterations, state.iterations)
                row.tasks_completed = completed
                row.tasks_remaining = [t for t in (remaining or []) if t not in completed]
                row.last_analysis = {**(row.last_analysis or {}), **state.last_analysis}
                if not (row.status != "ACTIVE" and state.status == "ACTIVE"):
                    row.status = state.status
                for field in ("orchestration_id", "task_id", "task_description", "repository", "branch_name"):
                    value = getattr(state, field)
                    if value is not None:
                        setattr(row, field, value)
                row.updated_at = now

            await session.commit()
            await session.refresh(row)
            return row

    async def increment_iterations(self, agent_id: str) -> int | None:
        """Bump iterations by one. Returns the new value, None if missing."""
        async with self._db.session() as session:
            result = await session.execute(
                update(AgentState)
                .where(AgentState.agent_id == agent_id)
                .values(iterations=AgentState.iterations + 1, updated_at=utc_now())
            )
            await session.commit()
            if result.rowcount == 0:
                return None
            return await session.scalar(select(AgentState.iterations).where(AgentState.agent_id == agent_id))

    async def update_status(self, agent_id: str, status: str, expected: str | None = "ACTIVE") -> bool:
        """Conditionally move an agent to ``status``; False if it was not ``expected``."""
        async with self._db.session() as session:
            q = update(AgentState).where(AgentState.agent_id == agent_id)
            if expected is not None:
                q = q.where(AgentState.status == expected)
            result = await session.execute(q.values(status=status, updated_at=utc_now()))
            await session.commit()
            return result.rowcount > 0

    async def list_active(self, role: str | None = None) -> list[AgentState]:
        async with self._db.session() as session:
            q = select(AgentState).where(AgentState.status == "ACTIVE").order_by(AgentState.updated_at)
            if role:
                q = q.where(AgentState.role == role)
            result = await session.execute(q)
            return list(result.scalars().all())

    async def list_for(self, orchestration_id: str, role: str | None = "task") -> list[AgentState]:
        async with self._db.session() as session:
            q = (
                select(AgentState)
                .where(AgentState.orchestration_id == orchestration_id)
                .order_by(AgentState.created_at)
            )
            if role:
                q = q.where(AgentState.role == role)
            result = await session.execute(q)
            return list(result.scalars().all())

    async def list_stale(self, older_than: datetime) -> list[AgentState]:
        """ACTIVE task agents whose last progress predates ``older_than``."""
        async with self._db.session() as session:
            result = await session.execute(
                select(AgentState)
                .where(AgentState.status == "ACTIVE")
                .where(AgentState.role == "task")
                .where(AgentState.updated_at < older_than)
                .order_by(AgentState.updated_at)
            )
            return list(result.scalars().all())

    async def find_master_by_sub_agent(self, sub_agent_id: str) -> AgentState | None:
        """Master state of the orchestration that owns ``sub_agent_id``."""
        sub = await self.get(sub_agent_id)
        if sub is None or not sub.orchestration_id:
            return None
        async with self._db.session() as session:
            result = await session.execute(
                select(AgentState)
                .where(AgentState.orchestration_id == sub.orchestration_id)
                .where(AgentState.role == "master")
            )
            return result.scalars().first()

    async def delete(self, agent_id: str) -> bool:
        async with self._db.session() as session:
            result = await session.execute(delete(AgentState).where(AgentState.agent_id == agent_id))
            await session.commit()
            return result.rowcount > 0
