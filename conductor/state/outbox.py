"""Outbox manager -- durable dispatch rows and their claim/retry lifecycle.

Status only moves pending -> {completed | failed}. Claiming does not change
status: it pushes next_run_at forward by a lease with a conditional UPDATE,
so a crashed worker's claim simply expires and the row becomes due again.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import select, update

from conductor.state.orchestrations import START_JOB_TYPE
from conductor.storage.database import Database
from conductor.storage.models import Orchestration, OutboxJob
from conductor.utils import utc_now

logger = logging.getLogger(__name__)


def backoff_delay(attempts: int, base_seconds: int) -> int:
    """Exponential backoff: base * 2^(attempts-1)."""
    return base_seconds * (2 ** max(attempts - 1, 0))


class OutboxManager:
    """Manages rows in orchestration_outbox_jobs."""

    def __init__(self, database: Database, max_attempts: int = 3) -> None:
        self._db = database
        self._max_attempts = max_attempts

    async def create(
        self,
        orchestration_id: str,
        job_type: str = START_JOB_TYPE,
        payload: dict | None = None,
        run_at: datetime | None = None,
    ) -> OutboxJob:
        async with self._db.session() as session:
            job = OutboxJob(
                orchestration_id=orchestration_id,
                type=job_type,
                payload=payload or {"orchestrationId": orchestration_id},
                status="pending",
                max_attempts=self._max_attempts,
                next_run_at=run_at or utc_now(),
            )
            session.add(job)
            await session.commit()
            await session.refresh(job)
            logger.info("Queued outbox job %s for %s", job.id[:8], orchestration_id[:8])
            return job

    async def get(self, job_id: str) -> OutboxJob | None:
        async with self._db.session() as session:
            return await session.get(OutboxJob, job_id)

    async def due(self, now: datetime | None = None, limit: int = 10) -> list[OutboxJob]:
        """Pending rows whose next_run_at has passed, oldest first."""
        now = now or utc_now()
        async with self._db.session() as session:
            result = await session.execute(
                select(OutboxJob)
                .where(OutboxJob.status == "pending")
                .where(OutboxJob.next_run_at <= now)
                .order_by(OutboxJob.next_run_at, OutboxJob.created_at)
                .limit(limit)
            )
            return list(result.scalars().all())

    async def claim(self, job: OutboxJob, worker_id: str, lease_seconds: int) -> bool:
        """Lease a due row. Fails if another worker already moved next_run_at."""
        now = utc_now()
        async with self._db.session() as session:
            result = await session.execute(
                update(OutboxJob)
                .where(OutboxJob.id == job.id)
                .where(OutboxJob.status == "pending")
                .where(OutboxJob.next_run_at == job.next_run_at)
                .values(
                    next_run_at=now + timedelta(seconds=lease_seconds),
                    worker_id=worker_id,
                    updated_at=now,
                )
            )
            await session.commit()
            return result.rowcount > 0

    async def complete(self, job_id: str) -> bool:
        async with self._db.session() as session:
            result = await session.execute(
                update(OutboxJob)
                .where(OutboxJob.id == job_id)
                .where(OutboxJob.status == "pending")
                .values(status="completed", updated_at=utc_now())
            )
            await session.commit()
            return result.rowcount > 0

    async def reschedule(
        self,
        job_id: str,
        error: str,
        base_delay: int,
        *,
        count_attempt: bool = True,
    ) -> tuple[str, int]:
        """Record a failed attempt; fail the row once attempts reach max_attempts.

        Returns (new status, attempts). Deferred jobs pass count_attempt=False.
        """
        async with self._db.session() as session:
            job = await session.get(OutboxJob, job_id)
            if job is None or job.status != "pending":
                return (job.status if job else "missing", job.attempts if job else 0)

            attempts = job.attempts + 1 if count_attempt else job.attempts
            now = utc_now()
            if count_attempt and attempts >= job.max_attempts:
                status = "failed"
                next_run_at = job.next_run_at
            else:
                status = "pending"
                next_run_at = now + timedelta(seconds=backoff_delay(max(attempts, 1), base_delay))

            result = await session.execute(
                update(OutboxJob)
                .where(OutboxJob.id == job_id)
                .where(OutboxJob.status == "pending")
                .values(
                    status=status,
                    attempts=attempts,
                    next_run_at=next_run_at,
                    last_error=error[:2000],
                    updated_at=now,
                )
            )
            await session.commit()
            if result.rowcount == 0:
                return ("completed", attempts)
            if status == "failed":
                logger.warning("Outbox job %s failed after %d attempts: %s", job_id[:8], attempts, error)
            return (status, attempts)

    async def fail(self, job_id: str, error: str) -> bool:
        async with self._db.session() as session:
            result = await session.execute(
                update(OutboxJob)
                .where(OutboxJob.id == job_id)
                .where(OutboxJob.status == "pending")
                .values(status="failed", last_error=error[:2000], updated_at=utc_now())
            )
            await session.commit()
            return result.rowcount > 0

    async def pending_for(self, orchestration_id: str) -> list[OutboxJob]:
        async with self._db.session() as session:
            result = await session.execute(
                select(OutboxJob)
                .where(OutboxJob.orchestration_id == orchestration_id)
                .where(OutboxJob.status == "pending")
            )
            return list(result.scalars().all())

    async def list_for(self, orchestration_id: str) -> list[OutboxJob]:
        async with self._db.session() as session:
            result = await session.execute(
                select(OutboxJob)
                .where(OutboxJob.orchestration_id == orchestration_id)
                .order_by(OutboxJob.created_at)
            )
            return list(result.scalars().all())

    async def orphaned(self, limit: int = 100) -> list[OutboxJob]:
        """Pending rows whose orchestration already left ``queued``."""
        async with self._db.session() as session:
            result = await session.execute(
                select(OutboxJob)
                .join(Orchestration, Orchestration.id == OutboxJob.orchestration_id)
                .where(OutboxJob.status == "pending")
                .where(Orchestration.status != "queued")
                .limit(limit)
            )
            return list(result.scalars().all())
