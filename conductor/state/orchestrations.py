"""Orchestration manager -- creation, forward-only transitions, dispatch claims.

Every mutation is a conditional UPDATE checked by rowcount so concurrent
workers coordinate only through the store.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError

from conductor.errors import DatastoreError
from conductor.state.events import build_event
from conductor.state.schemas import ALLOWED_TRANSITIONS, EventInput, OrchestrationRequest
from conductor.storage.database import Database
from conductor.storage.models import Orchestration, OutboxJob
from conductor.utils import utc_now

logger = logging.getLogger(__name__)

START_JOB_TYPE = "start-orchestration"


class OrchestrationManager:
    """Reads and writes rows in orchestrations."""

    def __init__(self, database: Database, max_outbox_attempts: int = 3) -> None:
        self._db = database
        self._max_outbox_attempts = max_outbox_attempts

    async def create_with_outbox(
        self,
        request: OrchestrationRequest,
        model: str | None,
        events: list[EventInput] | None = None,
    ) -> tuple[Orchestration, OutboxJob]:
        """Write the orchestration and its start job in one transaction.

        This pair is what guarantees the work is never lost, so a failure
        here is the one creation error surfaced to the caller.
        """
        try:
            async with self._db.session() as session:
                orchestration = Orchestration(
                    caller_id=request.caller_id,
                    status="queued",
                    mode=request.options.mode,
                    repository=request.repository,
                    ref=request.ref,
                    prompt=request.prompt,
                    prompt_length=len(request.prompt),
                    model=model or None,
                    options=request.options.model_dump(),
                )
                session.add(orchestration)
                await session.flush()

                job = OutboxJob(
                    orchestration_id=orchestration.id,
                    type=START_JOB_TYPE,
                    payload={"orchestrationId": orchestration.id},
                    status="pending",
                    max_attempts=self._max_outbox_attempts,
                    next_run_at=utc_now(),
                )
                session.add(job)
                for event in events or []:
                    session.add(build_event(orchestration.id, event))
                await session.commit()
                await session.refresh(orchestration)
                await session.refresh(job)
        except SQLAlchemyError as exc:
            logger.error("Failed to persist orchestration: %s", exc)
            raise DatastoreError(f"failed to persist orchestration: {exc}") from exc

        logger.info(
            "Created orchestration %s (mode=%s, %d chars)",
            orchestration.id[:8],
            orchestration.mode,
            orchestration.prompt_length,
        )
        return orchestration, job

    async def get(self, orchestration_id: str) -> Orchestration | None:
        async with self._db.session() as session:
            return await session.get(Orchestration, orchestration_id)

    async def list(
        self,
        caller_id: str | None = None,
        status: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> list[Orchestration]:
        async with self._db.session() as session:
            q = select(Orchestration).order_by(Orchestration.created_at.desc()).limit(limit).offset(offset)
            if caller_id:
                q = q.where(Orchestration.caller_id == caller_id)
            if status:
                q = q.where(Orchestration.status == status)
            result = await session.execute(q)
            return list(result.scalars().all())

    async def list_by_status(self, status: str) -> list[Orchestration]:
        async with self._db.session() as session:
            result = await session.execute(
                select(Orchestration).where(Orchestration.status == status).order_by(Orchestration.created_at)
            )
            return list(result.scalars().all())

    async def count_since(self, caller_id: str, since: datetime) -> int:
        async with self._db.session() as session:
            count = await session.scalar(
                select(func.count())
                .select_from(Orchestration)
                .where(Orchestration.caller_id == caller_id)
                .where(Orchestration.created_at >= since)
            )
            return int(count or 0)

    async def transition(
        self,
        orchestration_id: str,
        from_status: str,
        to_status: str,
        **values: Any,
    ) -> bool:
        """Move status forward only if it is still ``from_status``.

        Returns False when another worker got there first or the move is
        not allowed.
        """
        if to_status not in ALLOWED_TRANSITIONS.get(from_status, frozenset()):
            logger.warning(
                "Refusing transition %s -> %s for %s", from_status, to_status, orchestration_id[:8]
            )
            return False

        now = utc_now()
        values["status"] = to_status
        values["updated_at"] = now
        if to_status == "running":
            values.setdefault("started_at", now)
        if to_status in ("completed", "error", "stopped"):
            values.setdefault("completed_at", now)
            values.setdefault("active_agents", 0)
        if "tasks_completed" in values and "tasks_total" in values:
            values["tasks_completed"] = min(values["tasks_completed"], values["tasks_total"])

        async with self._db.session() as session:
            result = await session.execute(
                update(Orchestration)
                .where(Orchestration.id == orchestration_id)
                .where(Orchestration.status == from_status)
                .values(**values)
            )
            await session.commit()
        moved = result.rowcount > 0
        if moved:
            logger.info("Orchestration %s: %s -> %s", orchestration_id[:8], from_status, to_status)
        return moved

    async def finish(self, orchestration_id: str, to_status: str, error_summary: str | None = None) -> bool:
        """Terminal transition from whichever non-terminal state the row is in."""
        values: dict[str, Any] = {}
        if error_summary:
            values["error_summary"] = error_summary[:2000]
        for from_status in ("running", "queued"):
            if to_status in ALLOWED_TRANSITIONS[from_status]:
                if await self.transition(orchestration_id, from_status, to_status, **dict(values)):
                    return True
        return False

    async def claim_dispatch(self, orchestration_id: str, worker_id: str, lease_seconds: int) -> bool:
        """Take the start lease on a queued orchestration. Expired leases can be stolen."""
        now = utc_now()
        stale = now - timedelta(seconds=lease_seconds)
        async with self._db.session() as session:
            result = await session.execute(
                update(Orchestration)
                .where(Orchestration.id == orchestration_id)
                .where(Orchestration.status == "queued")
                .where(
                    (Orchestration.claimed_by.is_(None))
                    | (Orchestration.claimed_at < stale)
                )
                .values(claimed_by=worker_id, claimed_at=now, updated_at=now)
            )
            await session.commit()
            return result.rowcount > 0

    async def release_claim(self, orchestration_id: str, worker_id: str) -> None:
        async with self._db.session() as session:
            await session.execute(
                update(Orchestration)
                .where(Orchestration.id == orchestration_id)
                .where(Orchestration.claimed_by == worker_id)
                .values(claimed_by=None, claimed_at=None)
            )
            await session.commit()

    async def update_counters(
        self,
        orchestration_id: str,
        *,
        tasks_total: int | None = None,
        tasks_completed: int | None = None,
        active_agents: int | None = None,
    ) -> None:
        """Overwrite denormalized counters, keeping tasks_completed <= tasks_total."""
        async with self._db.session() as session:
            orchestration = await session.get(Orchestration, orchestration_id)
            if orchestration is None:
                return
            total = tasks_total if tasks_total is not None else orchestration.tasks_total
            orchestration.tasks_total = total
            if tasks_completed is not None:
                orchestration.tasks_completed = min(tasks_completed, total)
            if active_agents is not None:
                orchestration.active_agents = max(active_agents, 0)
            await session.commit()

    async def update_metadata(self, orchestration_id: str, **updates: Any) -> None:
        """Shallow-merge keys into the metadata blob."""
        async with self._db.session() as session:
            orchestration = await session.get(Orchestration, orchestration_id)
            if orchestration is None:
                return
            orchestration.metadata_ = {**(orchestration.metadata_ or {}), **updates}
            await session.commit()

    async def set_master_agent(self, orchestration_id: str, agent_id: str) -> None:
        async with self._db.session() as session:
            await session.execute(
                update(Orchestration)
                .where(Orchestration.id == orchestration_id)
                .values(master_agent_id=agent_id)
            )
            await session.commit()

    async def set_paused(self, orchestration_id: str, paused: bool) -> bool:
        """Set or clear the pause marker on a non-terminal orchestration."""
        async with self._db.session() as session:
            result = await session.execute(
                update(Orchestration)
                .where(Orchestration.id == orchestration_id)
                .where(Orchestration.status.in_(["queued", "running"]))
                .values(paused_at=utc_now() if paused else None, updated_at=utc_now())
            )
            await session.commit()
            return result.rowcount > 0

    async def stale_queued(self, older_than: datetime) -> list[Orchestration]:
        """Unpaused queued orchestrations untouched since ``older_than``."""
        async with self._db.session() as session:
            result = await session.execute(
                select(Orchestration)
                .where(Orchestration.status == "queued")
                .where(Orchestration.paused_at.is_(None))
                .where(Orchestration.updated_at < older_than)
                .order_by(Orchestration.created_at)
            )
            return list(result.scalars().all())
