"""Shared helpers: clock, result wrapper, id generation."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Generic, TypeVar

T = TypeVar("T")


def utc_now() -> datetime:
    return datetime.now(UTC)


def new_id() -> str:
    return str(uuid.uuid4())


def ensure_utc(value: datetime | None) -> datetime | None:
    """Treat naive datetimes as UTC (sqlite drops tzinfo)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


@dataclass(frozen=True)
class Degradable(Generic[T]):
    """A value that may have been produced by a fallback path.

    ``degraded_reason`` is None when the primary path succeeded.
    """

    value: T
    degraded_reason: str | None = None

    @property
    def degraded(self) -> bool:
        return self.degraded_reason is not None
