"""Event log -- append-only trail and the task-status projection built from it."""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import select

from conductor.state.schemas import EventDetail, EventInput, TaskStatus
from conductor.storage.database import Database
from conductor.storage.models import OrchestrationEvent

logger = logging.getLogger(__name__)

TASK_STARTED = "task_started"
TASK_COMPLETED_KEYS = frozenset({"task_completed", "task_succeeded"})
TASK_FAILED_KEYS = frozenset({"task_failed", "agent_timed_out"})


def derive_task_statuses(events: list[OrchestrationEvent]) -> dict[str, TaskStatus]:
    """Replay events (creation order) into task id -> status.

    Completion is sticky: a later start or failure never downgrades it.
    """
    statuses: dict[str, TaskStatus] = {}
    for event in events:
        task_id = (event.payload or {}).get("taskId")
        if not task_id:
            continue
        current = statuses.get(task_id)
        if event.step_key in TASK_COMPLETED_KEYS:
            statuses[task_id] = "completed"
        elif current == "completed":
            continue
        elif event.step_key == TASK_STARTED:
            statuses[task_id] = "running"
        elif event.step_key in TASK_FAILED_KEYS:
            statuses[task_id] = "failed"
    return statuses


def task_agents(events: list[OrchestrationEvent]) -> dict[str, str]:
    """Task id -> id of the most recent agent started for it."""
    agents: dict[str, str] = {}
    for event in events:
        payload = event.payload or {}
        if event.step_key == TASK_STARTED and payload.get("taskId") and payload.get("agentId"):
            agents[payload["taskId"]] = payload["agentId"]
    return agents


def build_event(orchestration_id: str, event: EventInput) -> OrchestrationEvent:
    return OrchestrationEvent(
        orchestration_id=orchestration_id,
        level=event.level,
        step_key=event.step_key,
        step_phase=event.step_phase,
        message=event.message,
        payload=dict(event.payload),
    )


class EventLog:
    """Appends and reads orchestration_events."""

    def __init__(self, database: Database) -> None:
        self._db = database

    async def append(
        self,
        orchestration_id: str,
        step_key: str,
        message: str = "",
        *,
        level: str = "info",
        step_phase: str | None = None,
        payload: dict[str, Any] | None = None,
    ) -> None:
        event = EventInput(
            step_key=step_key,
            message=message,
            level=level,
            step_phase=step_phase,
            payload=payload or {},
        )
        async with self._db.session() as session:
            session.add(build_event(orchestration_id, event))
            await session.commit()
        if level != "info":
            logger.log(
                logging.ERROR if level == "error" else logging.WARNING,
                "[%s] %s: %s",
                orchestration_id[:8],
                step_key,
                message,
            )

    async def rows(self, orchestration_id: str) -> list[OrchestrationEvent]:
        async with self._db.session() as session:
            result = await session.execute(
                select(OrchestrationEvent)
                .where(OrchestrationEvent.orchestration_id == orchestration_id)
                .order_by(OrchestrationEvent.id)
            )
            return list(result.scalars().all())

    async def list(
        self,
        orchestration_id: str,
        step_key: str | None = None,
        limit: int | None = None,
    ) -> list[EventDetail]:
        async with self._db.session() as session:
            q = (
                select(OrchestrationEvent)
                .where(OrchestrationEvent.orchestration_id == orchestration_id)
                .order_by(OrchestrationEvent.id)
            )
            if step_key:
                q = q.where(OrchestrationEvent.step_key == step_key)
            if limit:
                q = q.limit(limit)
            result = await session.execute(q)
            return [EventDetail.model_validate(row, from_attributes=True) for row in result.scalars()]

    async def task_statuses(self, orchestration_id: str) -> dict[str, TaskStatus]:
        return derive_task_statuses(await self.rows(orchestration_id))

    async def has_event(self, orchestration_id: str, step_key: str, **payload_match: Any) -> bool:
        for row in await self.rows(orchestration_id):
            if row.step_key != step_key:
                continue
            payload = row.payload or {}
            if all(payload.get(k) == v for k, v in payload_match.items()):
                return True
        return False
