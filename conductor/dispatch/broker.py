"""Optional low-latency broker on Redis lists.

Jobs are stored as ``{prefix}:job:{job_id}`` JSON blobs with their ids
pushed onto ``{prefix}:{job_type}:queue``. Removing a job deletes its blob,
and pop() skips ids whose blob is gone, so remove() works on queued jobs
without scanning the list.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Protocol

import redis.asyncio as redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)


class Broker(Protocol):
    async def enqueue(self, job_type: str, payload: dict[str, Any], job_id: str) -> str: ...

    async def pop(self, job_type: str, timeout: int = 5) -> tuple[str, dict[str, Any]] | None: ...

    async def remove(self, job_id: str) -> bool: ...

    async def ping(self) -> bool: ...

    async def close(self) -> None: ...


class BrokerUnavailable(Exception):
    """The broker could not be reached or rejected the command."""


class RedisBroker:
    def __init__(self, url: str, prefix: str = "conductor", client: redis.Redis | None = None) -> None:
        self._redis = client or redis.Redis.from_url(url, decode_responses=True)
        self._prefix = prefix

    def _queue_key(self, job_type: str) -> str:
        return f"{self._prefix}:{job_type}:queue"

    def _job_key(self, job_id: str) -> str:
        return f"{self._prefix}:job:{job_id}"

    async def enqueue(self, job_type: str, payload: dict[str, Any], job_id: str) -> str:
        body = json.dumps({"type": job_type, "payload": payload})
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.set(self._job_key(job_id), body)
                pipe.lpush(self._queue_key(job_type), job_id)
                await pipe.execute()
        except (RedisError, OSError) as exc:
            raise BrokerUnavailable(f"enqueue failed: {exc}") from exc
        logger.debug("Enqueued %s job %s", job_type, job_id)
        return job_id

    async def pop(self, job_type: str, timeout: int = 5) -> tuple[str, dict[str, Any]] | None:
        try:
            while True:
                item = await self._redis.brpop([self._queue_key(job_type)], timeout=timeout)
                if item is None:
                    return None
                _, job_id = item
                body = await self._redis.getdel(self._job_key(job_id))
                if body is None:
                    # Removed while queued
                    logger.debug("Skipping removed job %s", job_id)
                    continue
                return job_id, json.loads(body).get("payload", {})
        except (RedisError, OSError) as exc:
            raise BrokerUnavailable(f"pop failed: {exc}") from exc

    async def remove(self, job_id: str) -> bool:
        try:
            return bool(await self._redis.delete(self._job_key(job_id)))
        except (RedisError, OSError) as exc:
            raise BrokerUnavailable(f"remove failed: {exc}") from exc

    async def ping(self) -> bool:
        try:
            return bool(await self._redis.ping())
        except (RedisError, OSError):
            return False

    async def close(self) -> None:
        await self._redis.aclose()
