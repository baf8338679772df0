"""Fixed-window rate limiter backed by the rate_limits table.

Best-effort: any datastore error allows the call through.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable
from datetime import datetime, timedelta

from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from conductor.state.schemas import RateLimitResult
from conductor.storage.database import Database
from conductor.storage.models import RateLimit
from conductor.utils import utc_now

logger = logging.getLogger(__name__)


class RateLimiter:
    def __init__(
        self,
        database: Database,
        max_requests: int,
        window_seconds: int,
        prefix: str = "",
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._db = database
        self.max_requests = max_requests
        self.window = timedelta(seconds=window_seconds)
        self.prefix = prefix
        self._clock = clock

    async def check(self, identity: str) -> RateLimitResult:
        key = f"{self.prefix}{identity}"
        try:
            return await self._check(key)
        except IntegrityError:
            # Lost the first-insert race; the row now exists
            try:
                return await self._check(key)
            except SQLAlchemyError as exc:
                return self._fail_open(key, exc)
        except SQLAlchemyError as exc:
            return self._fail_open(key, exc)

    def _fail_open(self, key: str, exc: Exception) -> RateLimitResult:
        logger.warning("Rate limit check failed for %s, allowing: %s", key, exc)
        return RateLimitResult(allowed=True, remaining=self.max_requests, degraded=True)

    async def _check(self, key: str) -> RateLimitResult:
        now = self._clock()
        async with self._db.session() as session:
            row = await session.get(RateLimit, key)

            if row is None:
                reset_at = now + self.window
                session.add(RateLimit(key=key, count=1, window_start=now, reset_at=reset_at))
                await session.commit()
                return RateLimitResult(allowed=True, remaining=self.max_requests - 1, reset_at=reset_at)

            if now >= row.reset_at:
                reset_at = now + self.window
                await session.execute(
                    update(RateLimit)
                    .where(RateLimit.key == key)
                    .values(count=1, window_start=now, reset_at=reset_at)
                )
                await session.commit()
                return RateLimitResult(allowed=True, remaining=self.max_requests - 1, reset_at=reset_at)

            current = row.count
            reset_at = row.reset_at
            if current >= self.max_requests:
                retry_after = math.ceil((reset_at - now).total_seconds())
                return RateLimitResult(
                    allowed=False,
                    remaining=0,
                    reset_at=reset_at,
                    retry_after=max(retry_after, 1),
                )

            result = await session.execute(
                update(RateLimit)
                .where(RateLimit.key == key)
                .where(RateLimit.count < self.max_requests)
                .values(count=RateLimit.count + 1)
            )
            await session.commit()
            if result.rowcount == 0:
                retry_after = math.ceil((reset_at - now).total_seconds())
                return RateLimitResult(
                    allowed=False, remaining=0, reset_at=reset_at, retry_after=max(retry_after, 1)
                )
            return RateLimitResult(
                allowed=True,
                remaining=max(self.max_requests - current - 1, 0),
                reset_at=reset_at,
            )

    async def cleanup(self, older_than: timedelta = timedelta(days=1)) -> int:
        """Drop counters whose window ended more than ``older_than`` ago."""
        cutoff = self._clock() - older_than
        try:
            async with self._db.session() as session:
                result = await session.execute(delete(RateLimit).where(RateLimit.reset_at < cutoff))
                await session.commit()
                return result.rowcount
        except SQLAlchemyError as exc:
            logger.warning("Rate limit cleanup failed: %s", exc)
            return 0
