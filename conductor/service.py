"""OrchestrationService -- the entry points an intake layer calls.

create() always answers with an accepted orchestration id once the durable
write succeeded. Whether the low-latency broker also took the job is
reported through ``CreateResult.dispatched``, never through an error.
"""

from __future__ import annotations

import logging
import math
from datetime import timedelta

from sqlalchemy.exc import SQLAlchemyError

from conductor.agents.catalog import ModelValidator
from conductor.agents.client import normalize_repository
from conductor.config import Settings
from conductor.dispatch.broker import Broker
from conductor.dispatch.engine import OrchestrationEngine
from conductor.errors import RateLimitError, ValidationError
from conductor.planning.schemas import Mode, TaskPlan
from conductor.state.events import derive_task_statuses, task_agents
from conductor.state.orchestrations import START_JOB_TYPE
from conductor.state.schemas import (
    ControlAction,
    CreateResult,
    EventDetail,
    EventInput,
    OrchestrationRequest,
    OrchestrationSummary,
    TaskView,
)
from conductor.state.store import StateStore
from conductor.storage.models import Orchestration
from conductor.utils import utc_now

logger = logging.getLogger(__name__)

_MODE_MESSAGES: dict[str, str] = {
    "SINGLE_AGENT": "Orchestration started. Full prompt sent to a single agent.",
    "PIPELINE": "Orchestration started. Tasks will execute sequentially.",
    "BATCH": "Orchestration started. Tasks will execute in parallel.",
    "AUTO": "Orchestration started. The execution strategy is chosen after planning.",
}


def estimate_agents(mode: Mode, max_parallel: int, prompt_length: int, chunk: int = 5000) -> int:
    if mode == "SINGLE_AGENT":
        return 1
    return max_parallel * math.ceil(prompt_length / chunk)


def estimate_duration(mode: Mode, prompt_length: int) -> str:
    tasks = math.ceil(prompt_length / 500)
    if mode == "SINGLE_AGENT":
        return f"{math.ceil(prompt_length / 1000)}-{tasks} hours"
    if mode == "PIPELINE":
        return f"{tasks * 2}-{tasks * 3} hours"
    if mode == "BATCH":
        waves = math.ceil(tasks / 3)
        return f"{waves * 2}-{waves * 3} hours"
    return "Varies based on task complexity"


def summarize(orchestration: Orchestration) -> OrchestrationSummary:
    return OrchestrationSummary(
        id=orchestration.id,
        status=orchestration.status,
        mode=orchestration.mode,
        repository=orchestration.repository,
        ref=orchestration.ref,
        model=orchestration.model,
        tasks_total=orchestration.tasks_total,
        tasks_completed=orchestration.tasks_completed,
        active_agents=orchestration.active_agents,
        master_agent_id=orchestration.master_agent_id,
        paused=orchestration.paused_at is not None,
        error_summary=orchestration.error_summary,
        created_at=orchestration.created_at,
        started_at=orchestration.started_at,
        updated_at=orchestration.updated_at,
    )


class OrchestrationService:
    def __init__(
        self,
        store: StateStore,
        validator: ModelValidator,
        settings: Settings,
        broker: Broker | None = None,
        engine: OrchestrationEngine | None = None,
    ) -> None:
        self._store = store
        self._validator = validator
        self._settings = settings
        self._broker = broker
        self._engine = engine

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def create(self, request: OrchestrationRequest) -> CreateResult:
        """Accept an orchestration. Only a failed durable write raises DatastoreError."""
        limit = await self._store.rate_limiter.check(request.caller_id)
        if not limit.allowed:
            raise RateLimitError(
                f"rate limit exceeded; retry in {limit.retry_after}s",
                retry_after=limit.retry_after or 1,
            )

        options = request.options
        estimated_agents = self._validate(request)
        await self._check_daily_limit(request.caller_id)

        validation = await self._validator.validate(request.model)
        model = validation.normalized_model or None

        orchestration, job = await self._store.orchestrations.create_with_outbox(
            request,
            model,
            events=[
                EventInput(
                    step_key="input_validated",
                    message="Input validated and orchestration record created",
                    step_phase="end",
                    payload={
                        "mode": options.mode,
                        "estimatedAgents": estimated_agents,
                        "model": model,
                        "modelReason": validation.reason,
                    },
                ),
                EventInput(step_key="outbox_created", message="Outbox job created", step_phase="end"),
            ],
        )

        dispatched, reason = await self._try_broker(orchestration.id, job.id)
        message = _MODE_MESSAGES[options.mode]
        if not dispatched:
            message = f"{message} Accepted for processing via the durable outbox."

        return CreateResult(
            orchestration_id=orchestration.id,
            status="queued",
            dispatched=dispatched,
            degraded_reason=reason,
            message=message,
            estimated_agents=estimated_agents,
            estimated_duration=estimate_duration(options.mode, len(request.prompt)),
            model=model,
            model_reason=validation.reason,
        )

    def _validate(self, request: OrchestrationRequest) -> int:
        s = self._settings
        options = request.options
        prompt = request.prompt or ""
        if not prompt.strip():
            raise ValidationError("prompt is required")
        if len(prompt) < s.min_prompt_length:
            raise ValidationError(f"prompt too short; minimum {s.min_prompt_length} characters")
        if len(prompt) > s.max_prompt_length:
            raise ValidationError(f"prompt too long; maximum {s.max_prompt_length} characters")
        normalize_repository(request.repository)
        if not 1 <= len((request.ref or "").strip()) <= 255:
            raise ValidationError("ref must be between 1 and 255 characters")
        if options.max_iterations > s.max_iterations_limit:
            raise ValidationError(f"max_iterations exceeds limit of {s.max_iterations_limit}")
        if options.mode == "BATCH" and options.max_parallel_agents > s.max_parallel_agents_limit:
            raise ValidationError(f"BATCH mode allows at most {s.max_parallel_agents_limit} parallel agents")

        estimated = estimate_agents(options.mode, options.max_parallel_agents, len(prompt), s.chars_per_agent_chunk)
        if estimated > s.max_agents_per_orchestration:
            raise ValidationError(
                f"estimated agents ({estimated}) exceeds limit of {s.max_agents_per_orchestration} per orchestration"
            )
        return estimated

    async def _check_daily_limit(self, caller_id: str) -> None:
        try:
            count = await self._store.orchestrations.count_since(caller_id, utc_now() - timedelta(days=1))
        except SQLAlchemyError as exc:
            logger.warning("Daily limit check failed, allowing: %s", exc)
            return
        if count >= self._settings.max_orchestrations_per_day:
            raise RateLimitError(
                f"daily limit reached; maximum {self._settings.max_orchestrations_per_day} orchestrations per day",
                retry_after=3600,
            )

    async def _try_broker(self, orchestration_id: str, job_id: str) -> tuple[bool, str | None]:
        """Optimization path. Any failure leaves the outbox row pending."""
        if self._broker is None:
            reason = "broker not configured"
        else:
            try:
                await self._broker.enqueue(START_JOB_TYPE, {"orchestrationId": orchestration_id}, job_id=orchestration_id)
            except Exception as exc:
                reason = f"broker unavailable: {exc}"
            else:
                try:
                    await self._store.outbox.complete(job_id)
                    await self._store.events.append(
                        orchestration_id,
                        "job_queued",
                        "Job queued to broker; outbox job marked completed",
                        step_phase="end",
                        payload={"brokerJobId": orchestration_id},
                    )
                except SQLAlchemyError as exc:
                    # A pending row only causes a duplicate delivery, which the engine ignores.
                    logger.warning("Post-enqueue bookkeeping failed for %s: %s", orchestration_id[:8], exc)
                return True, None

        logger.warning("Orchestration %s queued for outbox only: %s", orchestration_id[:8], reason)
        try:
            await self._store.events.append(
                orchestration_id,
                "job_queued",
                f"Using durable outbox: {reason}",
                level="warn",
                step_phase="end",
                payload={"degraded": True, "reason": reason},
            )
        except SQLAlchemyError as exc:
            logger.warning("Could not record outbox fallback for %s: %s", orchestration_id[:8], exc)
        return False, reason

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def list(
        self,
        caller_id: str | None = None,
        status: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> list[OrchestrationSummary]:
        rows = await self._store.orchestrations.list(caller_id=caller_id, status=status, limit=limit, offset=offset)
        return [summarize(row) for row in rows]

    async def get_status(self, orchestration_id: str) -> OrchestrationSummary | None:
        orchestration = await self._store.orchestrations.get(orchestration_id)
        return summarize(orchestration) if orchestration else None

    async def get_tasks(self, orchestration_id: str) -> list[TaskView]:
        orchestration = await self._store.orchestrations.get(orchestration_id)
        if orchestration is None:
            return []
        plan = TaskPlan.model_validate((orchestration.metadata_ or {}).get("plan") or {})
        rows = await self._store.events.rows(orchestration_id)
        statuses = derive_task_statuses(rows)
        agents = task_agents(rows)
        return [
            TaskView(
                id=task.id,
                title=task.title,
                description=task.description,
                dependencies=task.dependencies,
                priority=task.priority,
                complexity=task.complexity,
                status=statuses.get(task.id, "pending"),
                agent_id=agents.get(task.id),
            )
            for task in plan.tasks
        ]

    async def get_events(self, orchestration_id: str, limit: int | None = None) -> list[EventDetail]:
        return await self._store.events.list(orchestration_id, limit=limit)

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    async def control(self, orchestration_id: str, action: ControlAction) -> bool:
        """pause / resume / cancel. Returns False when the action did not apply."""
        orchestration = await self._store.orchestrations.get(orchestration_id)
        if orchestration is None:
            return False

        if action == "pause":
            if not await self._store.orchestrations.set_paused(orchestration_id, True):
                return False
            if self._broker is not None:
                try:
                    await self._broker.remove(orchestration_id)
                except Exception as exc:
                    logger.warning("Could not remove broker job for %s: %s", orchestration_id[:8], exc)
            await self._store.events.append(orchestration_id, "orchestration_paused", "paused by caller", level="warn")
            return True

        if action == "resume":
            if orchestration.paused_at is None:
                return False
            if not await self._store.orchestrations.set_paused(orchestration_id, False):
                return False
            await self._store.events.append(orchestration_id, "orchestration_resumed", "resumed by caller")
            if orchestration.status == "queued":
                if not await self._store.outbox.pending_for(orchestration_id):
                    job = await self._store.outbox.create(orchestration_id)
                    await self._try_broker(orchestration_id, job.id)
            elif self._engine is not None:
                await self._engine.advance(orchestration_id)
            return True

        if action == "cancel":
            if self._engine is not None:
                return await self._engine.cancel(orchestration_id)
            if not await self._store.orchestrations.finish(orchestration_id, "stopped", "cancelled by caller"):
                return False
            for job in await self._store.outbox.pending_for(orchestration_id):
                await self._store.outbox.fail(job.id, "cancelled by caller")
            await self._store.events.append(orchestration_id, "orchestration_stopped", "cancelled by caller", level="warn")
            return True

        raise ValidationError(f"unknown control action: {action}")
