"""Pydantic DTOs for orchestration inputs and outputs.

These models define the public contract between the intake layer and the
orchestration core.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

from conductor.planning.schemas import Mode

OrchestrationStatus = Literal["queued", "running", "completed", "error", "stopped"]
OutboxStatus = Literal["pending", "completed", "failed"]
AgentStatus = Literal["ACTIVE", "COMPLETED", "ERROR", "TIMEOUT", "MAX_ITERATIONS_REACHED"]
EventLevel = Literal["info", "warn", "error"]
StepPhase = Literal["start", "end"]
TaskStatus = Literal["pending", "running", "completed", "failed"]
TaskSize = Literal["small", "medium", "large", "auto"]
PriorityFocus = Literal["speed", "quality", "balanced"]
ControlAction = Literal["pause", "resume", "cancel"]

TERMINAL_STATUSES: frozenset[str] = frozenset({"completed", "error", "stopped"})

# Forward-only lattice: queued -> running -> {completed | error | stopped}
ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    "queued": frozenset({"running", "error", "stopped"}),
    "running": frozenset({"completed", "error", "stopped"}),
    "completed": frozenset(),
    "error": frozenset(),
    "stopped": frozenset(),
}


# --- Orchestrations ---


class OrchestrationOptions(BaseModel):
    """Execution options merged over defaults."""

    mode: Mode = "AUTO"
    max_parallel_agents: int = Field(3, ge=1)
    max_iterations: int = Field(20, ge=1)
    enable_auto_fix: bool = True
    enable_testing: bool = True
    enable_validation: bool = True
    task_size: TaskSize = "auto"
    priority: PriorityFocus = "balanced"


class OrchestrationRequest(BaseModel):
    """Input for creating an orchestration."""

    prompt: str
    repository: str
    ref: str = "main"
    model: str | None = None
    caller_id: str = "anonymous"
    options: OrchestrationOptions = Field(default_factory=OrchestrationOptions)


class CreateResult(BaseModel):
    """Intake response. ``dispatched`` is False when only the outbox accepted the job."""

    orchestration_id: str
    status: OrchestrationStatus
    dispatched: bool
    degraded_reason: str | None = None
    message: str
    estimated_agents: int
    estimated_duration: str
    model: str | None = None
    model_reason: str | None = None


class OrchestrationSummary(BaseModel):
    id: str
    status: OrchestrationStatus
    mode: Mode
    repository: str
    ref: str
    model: str | None
    tasks_total: int
    tasks_completed: int
    active_agents: int
    master_agent_id: str | None
    paused: bool
    error_summary: str | None
    created_at: datetime
    started_at: datetime | None
    updated_at: datetime


class TaskView(BaseModel):
    """A planned task with its status derived from the event log."""

    id: str
    title: str
    description: str
    dependencies: list[str]
    priority: str
    complexity: str
    status: TaskStatus
    agent_id: str | None = None


# --- Events ---


class EventInput(BaseModel):
    step_key: str
    message: str = ""
    level: EventLevel = "info"
    step_phase: StepPhase | None = None
    payload: dict[str, Any] = {}


class EventDetail(BaseModel):
    id: int
    orchestration_id: str
    level: EventLevel
    step_key: str
    step_phase: StepPhase | None
    message: str
    payload: dict[str, Any]
    created_at: datetime


# --- Agent states ---


class AgentStateInput(BaseModel):
    """Progress report merged into an agent state row."""

    agent_id: str
    orchestration_id: str | None = None
    role: Literal["master", "task"] = "task"
    task_id: str | None = None
    task_description: str | None = None
    repository: str | None = None
    branch_name: str | None = None
    iterations: int = 0
    status: AgentStatus = "ACTIVE"
    tasks_completed: list[str] = []
    tasks_remaining: list[str] | None = None
    last_analysis: dict[str, Any] = {}


class RateLimitResult(BaseModel):
    allowed: bool
    remaining: int
    reset_at: datetime | None = None
    retry_after: int | None = None
    degraded: bool = False
