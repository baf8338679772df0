"""SQLAlchemy ORM models for the five orchestration tables.

Columns are portable between postgres (production, JSONB/timestamptz) and
sqlite (local runs and tests).
"""

from datetime import datetime

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from conductor.utils import ensure_utc, new_id, utc_now

JsonType = JSON().with_variant(JSONB(), "postgresql")


class UTCDateTime(TypeDecorator):
    """Timezone-aware datetime that always comes back in UTC."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        value = ensure_utc(value)
        if value is not None and dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        return ensure_utc(value)


class Base(DeclarativeBase):
    """Single declarative base for all tables."""

    pass


ORCHESTRATION_STATUSES = ("queued", "running", "completed", "error", "stopped")
ORCHESTRATION_MODES = ("SINGLE_AGENT", "PIPELINE", "BATCH", "AUTO")
OUTBOX_STATUSES = ("pending", "completed", "failed")
AGENT_STATUSES = ("ACTIVE", "COMPLETED", "ERROR", "TIMEOUT", "MAX_ITERATIONS_REACHED")


def _in_list(column: str, values: tuple[str, ...]) -> str:
    quoted = ", ".join(f"'{v}'" for v in values)
    return f"{column} IN ({quoted})"


class Orchestration(Base):
    """One top-level job spanning many tasks and agents."""

    __tablename__ = "orchestrations"
    __table_args__ = (
        CheckConstraint(_in_list("status", ORCHESTRATION_STATUSES), name="chk_orchestration_status"),
        CheckConstraint(_in_list("mode", ORCHESTRATION_MODES), name="chk_orchestration_mode"),
        CheckConstraint("tasks_completed <= tasks_total", name="chk_tasks_completed"),
        Index("ix_orchestrations_status", "status"),
        Index("ix_orchestrations_caller", "caller_id", "created_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    caller_id: Mapped[str | None] = mapped_column(String(200))
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="queued")
    mode: Mapped[str] = mapped_column(String(20), nullable=False, default="AUTO")
    repository: Mapped[str] = mapped_column(Text, nullable=False)
    ref: Mapped[str] = mapped_column(String(255), nullable=False, default="main")
    prompt: Mapped[str] = mapped_column(Text, nullable=False)
    prompt_length: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    model: Mapped[str | None] = mapped_column(String(100))
    options: Mapped[dict] = mapped_column(JsonType, nullable=False, default=dict)
    tasks_total: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    tasks_completed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    active_agents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    master_agent_id: Mapped[str | None] = mapped_column(String(100))
    paused_at: Mapped[datetime | None] = mapped_column(UTCDateTime())
    claimed_by: Mapped[str | None] = mapped_column(String(200))
    claimed_at: Mapped[datetime | None] = mapped_column(UTCDateTime())
    error_summary: Mapped[str | None] = mapped_column(Text)
    started_at: Mapped[datetime | None] = mapped_column(UTCDateTime())
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime())
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utc_now, onupdate=utc_now)
    # plan, effective_mode, planner degradation
    metadata_: Mapped[dict] = mapped_column("metadata", JsonType, nullable=False, default=dict)


class OrchestrationEvent(Base):
    """Append-only event trail. The integer id gives a total order."""

    __tablename__ = "orchestration_events"
    __table_args__ = (
        CheckConstraint("level IN ('info', 'warn', 'error')", name="chk_event_level"),
        Index("ix_events_orchestration", "orchestration_id", "id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    orchestration_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("orchestrations.id", ondelete="CASCADE"), nullable=False
    )
    level: Mapped[str] = mapped_column(String(10), nullable=False, default="info")
    step_key: Mapped[str] = mapped_column(String(100), nullable=False)
    step_phase: Mapped[str | None] = mapped_column(String(10))
    message: Mapped[str] = mapped_column(Text, nullable=False, default="")
    payload: Mapped[dict] = mapped_column(JsonType, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utc_now)


class OutboxJob(Base):
    """Durable dispatch intent drained by the outbox processor."""

    __tablename__ = "orchestration_outbox_jobs"
    __table_args__ = (
        CheckConstraint(_in_list("status", OUTBOX_STATUSES), name="chk_outbox_status"),
        Index("ix_outbox_due", "status", "next_run_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    orchestration_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("orchestrations.id", ondelete="CASCADE"), nullable=False
    )
    type: Mapped[str] = mapped_column(String(50), nullable=False, default="start-orchestration")
    payload: Mapped[dict] = mapped_column(JsonType, nullable=False, default=dict)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    next_run_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utc_now)
    last_error: Mapped[str | None] = mapped_column(Text)
    worker_id: Mapped[str | None] = mapped_column(String(200))
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utc_now, onupdate=utc_now)


class AgentState(Base):
    """Per-agent progress, upserted on every report."""

    __tablename__ = "agent_orchestrator_states"
    __table_args__ = (
        CheckConstraint(_in_list("status", AGENT_STATUSES), name="chk_agent_status"),
        CheckConstraint("role IN ('master', 'task')", name="chk_agent_role"),
        Index("ix_agent_states_status", "status", "updated_at"),
        Index("ix_agent_states_orchestration", "orchestration_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    agent_id: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    orchestration_id: Mapped[str | None] = mapped_column(String(36))
    role: Mapped[str] = mapped_column(String(10), nullable=False, default="task")
    task_id: Mapped[str | None] = mapped_column(String(100))
    task_description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    repository: Mapped[str | None] = mapped_column(Text)
    branch_name: Mapped[str | None] = mapped_column(String(255))
    iterations: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(String(30), nullable=False, default="ACTIVE")
    tasks_completed: Mapped[list] = mapped_column(JsonType, nullable=False, default=list)
    tasks_remaining: Mapped[list] = mapped_column(JsonType, nullable=False, default=list)
    last_analysis: Mapped[dict] = mapped_column(JsonType, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utc_now)


class RateLimit(Base):
    """Fixed-window counter, one row per key."""

    __tablename__ = "rate_limits"

    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    window_start: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    reset_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
