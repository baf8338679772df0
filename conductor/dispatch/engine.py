"""Orchestration engine -- the dispatch handler shared by broker and outbox paths.

handle_job() is safe under at-least-once delivery: it re-reads the
orchestration and no-ops unless it is still queued, then takes a claim
lease so concurrent deliveries cannot both start it. Progress after the
first wave is driven by handle_agent_report().
"""

from __future__ import annotations

import logging
from typing import Literal

from conductor.agents.catalog import ModelValidator
from conductor.agents.client import AgentApiClient, build_task_prompt
from conductor.config import Settings
from conductor.errors import ConductorError, DispatchDeferred, UpstreamApiError
from conductor.planning.conflicts import ConflictDetector, RegexConflictDetector
from conductor.planning.planner import TaskPlanner
from conductor.planning.scheduler import (
    ModePolicy,
    TaskCountPolicy,
    blocked_tasks,
    next_parallel,
    next_sequential,
    resolve_mode,
)
from conductor.planning.schemas import Task, TaskPlan
from conductor.state.schemas import AgentStateInput, OrchestrationOptions
from conductor.state.store import Progress, StateStore
from conductor.storage.models import Orchestration

logger = logging.getLogger(__name__)

DispatchOutcome = Literal["started", "duplicate", "missing"]

_SUCCESS_STATUSES = frozenset({"FINISHED", "COMPLETED"})
_LOST_REPORT_KEYS = {"COMPLETED": "task_completed", "TIMEOUT": "agent_timed_out"}


def master_agent_id(orchestration_id: str) -> str:
    return f"master-{orchestration_id}"


def _plan_of(orchestration: Orchestration) -> TaskPlan:
    return TaskPlan.model_validate((orchestration.metadata_ or {}).get("plan") or {})


def _options_of(orchestration: Orchestration) -> OrchestrationOptions:
    return OrchestrationOptions.model_validate(orchestration.options or {})


class OrchestrationEngine:
    def __init__(
        self,
        store: StateStore,
        agent_client: AgentApiClient,
        planner: TaskPlanner,
        validator: ModelValidator,
        settings: Settings,
        policy: ModePolicy | None = None,
        detector: ConflictDetector | None = None,
    ) -> None:
        self._store = store
        self._agents = agent_client
        self._planner = planner
        self._validator = validator
        self._settings = settings
        self._policy = policy or TaskCountPolicy(settings.auto_mode_task_threshold)
        self._detector = detector or RegexConflictDetector()

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    async def handle_job(self, orchestration_id: str, source: str = "outbox") -> DispatchOutcome:
        """Start an orchestration. Raises on failure so the caller can retry."""
        events = self._store.events
        orchestration = await self._store.orchestrations.get(orchestration_id)
        if orchestration is None:
            logger.warning("Dispatch for unknown orchestration %s", orchestration_id)
            return "missing"

        if orchestration.status != "queued":
            await events.append(
                orchestration_id,
                "duplicate_delivery",
                f"{source} delivery ignored; orchestration already {orchestration.status}",
                payload={"source": source, "status": orchestration.status},
            )
            return "duplicate"

        if orchestration.paused_at is not None:
            raise DispatchDeferred(f"orchestration {orchestration_id} is paused")

        worker_id = self._settings.worker_id
        if not await self._store.orchestrations.claim_dispatch(
            orchestration_id, worker_id, self._settings.outbox_claim_lease
        ):
            await events.append(
                orchestration_id,
                "duplicate_delivery",
                f"{source} delivery ignored; another worker holds the start claim",
                payload={"source": source},
            )
            return "duplicate"

        await events.append(
            orchestration_id,
            "worker_received",
            f"picked up by {worker_id} via {source}",
            step_phase="start",
            payload={"source": source, "workerId": worker_id},
        )
        try:
            await self._start(orchestration)
        except Exception as exc:
            await self._store.orchestrations.release_claim(orchestration_id, worker_id)
            await events.append(
                orchestration_id,
                "worker_error",
                f"start failed: {exc}",
                level="error",
                payload={"source": source, "error": exc.__class__.__name__},
            )
            raise
        return "started"

    async def _start(self, orchestration: Orchestration) -> None:
        events = self._store.events
        options = _options_of(orchestration)

        validation = await self._validator.validate(orchestration.model)
        model = validation.normalized_model or None
        if validation.fallback_used:
            await events.append(
                orchestration.id,
                "model_fallback",
                validation.reason or "model substituted",
                level="warn",
                payload={"requested": orchestration.model, "resolved": model},
            )

        metadata = orchestration.metadata_ or {}
        if metadata.get("plan"):
            # Retried start: keep the plan earlier launches were made from
            plan = _plan_of(orchestration)
            effective_mode = metadata.get("effectiveMode", options.mode)
            plan_reason = metadata.get("planDegradedReason")
        elif options.mode == "SINGLE_AGENT":
            plan = TaskPlan(
                project_description=orchestration.prompt[:200],
                tasks=[Task(id="task-1", title="Full project", description=orchestration.prompt, priority="high")],
            )
            effective_mode = "SINGLE_AGENT"
            plan_reason = None
        else:
            planned = await self._planner.plan(orchestration.prompt, orchestration.repository, options.mode)
            plan = planned.value
            plan_reason = planned.degraded_reason
            effective_mode = resolve_mode(options.mode, plan, self._policy)
            if planned.degraded:
                await events.append(
                    orchestration.id,
                    "plan_fallback",
                    plan_reason,
                    level="warn",
                    payload={"tasks": plan.total_tasks},
                )

        master_id = master_agent_id(orchestration.id)
        await self._store.orchestrations.update_metadata(
            orchestration.id,
            plan=plan.model_dump(),
            effectiveMode=effective_mode,
            resolvedModel=model,
            planDegradedReason=plan_reason,
        )
        await self._store.agents.save(
            AgentStateInput(
                agent_id=master_id,
                orchestration_id=orchestration.id,
                role="master",
                task_description=plan.project_description or orchestration.prompt[:200],
                repository=orchestration.repository,
                branch_name=orchestration.ref,
                tasks_remaining=plan.task_ids(),
                last_analysis={"mode": options.mode, "effectiveMode": effective_mode},
            )
        )
        await self._store.orchestrations.set_master_agent(orchestration.id, master_id)
        await events.append(
            orchestration.id,
            "task_plan_created",
            f"{plan.total_tasks} task(s), effective mode {effective_mode}",
            payload={"tasks": plan.task_ids(), "effectiveMode": effective_mode},
        )

        progress = await self._store.progress(orchestration.id)
        await self._adopt_launched(orchestration, plan, progress)
        launched = [progress.agents[task_id] for task_id in sorted(progress.running) if task_id in progress.agents]
        first_error: Exception | None = None
        for task in self._next_wave(plan, effective_mode, progress, options):
            try:
                launched.append(
                    await self._dispatch_task(orchestration, task, model, options, single=effective_mode == "SINGLE_AGENT")
                )
            except ConductorError as exc:
                first_error = first_error or exc
                logger.warning("Launch failed for %s/%s: %s", orchestration.id[:8], task.id, exc)

        if not launched:
            raise first_error or UpstreamApiError("no task was eligible to start", status_code=None)

        moved = await self._store.orchestrations.transition(
            orchestration.id,
            "queued",
            "running",
            tasks_total=plan.total_tasks,
            tasks_completed=len(progress.completed),
            active_agents=len(launched),
            claimed_by=None,
            claimed_at=None,
        )
        if not moved:
            # Cancelled while we were launching; stop crediting the new agents
            logger.warning("Orchestration %s left queued during start", orchestration.id[:8])
            for agent_id in launched:
                await self._stop_quietly(agent_id)
            return

        await events.append(
            orchestration.id,
            "orchestration_started",
            f"launched {len(launched)} agent(s)",
            step_phase="end",
            payload={"agents": launched, "effectiveMode": effective_mode},
        )

    async def _dispatch_task(
        self,
        orchestration: Orchestration,
        task: Task,
        model: str | None,
        options: OrchestrationOptions,
        single: bool = False,
    ) -> str:
        prompt = orchestration.prompt if single else build_task_prompt(task)
        agent_id = await self._agents.launch(prompt, orchestration.repository, orchestration.ref, model, options)
        # task_started precedes the state row; a retried start skips tasks found in the log
        await self._store.events.append(
            orchestration.id,
            "task_started",
            f"{task.id} -> agent {agent_id}",
            step_phase="start",
            payload={"taskId": task.id, "agentId": agent_id},
        )
        await self._record_agent(orchestration, task, agent_id)
        return agent_id

    async def _record_agent(self, orchestration: Orchestration, task: Task, agent_id: str) -> None:
        await self._store.agents.save(
            AgentStateInput(
                agent_id=agent_id,
                orchestration_id=orchestration.id,
                role="task",
                task_id=task.id,
                task_description=task.title,
                repository=orchestration.repository,
                branch_name=orchestration.ref,
                tasks_remaining=[task.id],
            )
        )

    async def _adopt_launched(self, orchestration: Orchestration, plan: TaskPlan, progress: Progress) -> None:
        """Write missing state rows for agents an interrupted start already launched."""
        tasks = {task.id: task for task in plan.tasks}
        for task_id in progress.running:
            agent_id = progress.agents.get(task_id)
            if agent_id is None or task_id not in tasks:
                continue
            if await self._store.agents.get(agent_id) is None:
                logger.info("Adopting agent %s launched by an earlier start attempt", agent_id)
                await self._record_agent(orchestration, tasks[task_id], agent_id)

    def _next_wave(
        self,
        plan: TaskPlan,
        mode: str,
        progress: Progress,
        options: OrchestrationOptions,
    ) -> list[Task]:
        if mode in ("SINGLE_AGENT", "PIPELINE"):
            if progress.running:
                return []
            task = next_sequential(plan, progress.completed)
            if task is None or task.id in progress.failed:
                return []
            return [task]
        slots = options.max_parallel_agents - len(progress.running)
        return next_parallel(
            plan,
            progress.completed,
            progress.running | progress.failed,
            slots,
            detector=self._detector,
        )

    # ------------------------------------------------------------------
    # Progress
    # ------------------------------------------------------------------

    async def handle_agent_report(self, agent_id: str, status: str, summary: str | None = None) -> bool:
        """Record a terminal agent status and move the orchestration along.

        Returns False for unknown, master, or already-finalised agents.
        """
        state = await self._store.agents.get(agent_id)
        if state is None or state.role != "task" or state.status != "ACTIVE":
            return False
        orchestration = await self._store.orchestrations.get(state.orchestration_id or "")
        if orchestration is None:
            return False

        succeeded = status.upper() in _SUCCESS_STATUSES
        if not await self._store.agents.update_status(agent_id, "COMPLETED" if succeeded else "ERROR"):
            return False

        await self._store.events.append(
            orchestration.id,
            "task_completed" if succeeded else "task_failed",
            summary or f"agent {agent_id} reported {status}",
            level="info" if succeeded else "error",
            step_phase="end",
            payload={"taskId": state.task_id, "agentId": agent_id, "agentStatus": status},
        )

        if orchestration.status != "running":
            return True

        master = await self._store.agents.get(orchestration.master_agent_id or "")
        if master is not None:
            master = await self._store.agents.save(
                AgentStateInput(
                    agent_id=master.agent_id,
                    iterations=master.iterations + 1,
                    status=master.status,
                    tasks_completed=[state.task_id] if succeeded and state.task_id else [],
                    last_analysis={"lastTask": state.task_id, "lastAgentStatus": status},
                )
            )
            options = _options_of(orchestration)
            if master.iterations >= options.max_iterations and master.status == "ACTIVE":
                plan = _plan_of(orchestration)
                if set(master.tasks_completed) < set(plan.task_ids()):
                    await self._store.agents.update_status(master.agent_id, "MAX_ITERATIONS_REACHED")
                    await self._finish(orchestration, "error", f"max iterations ({options.max_iterations}) reached")
                    return True

        await self.advance(orchestration.id)
        return True

    async def advance(self, orchestration_id: str) -> None:
        """Dispatch newly eligible tasks, refresh counters, finalise when done."""
        orchestration = await self._store.orchestrations.get(orchestration_id)
        if orchestration is None or orchestration.status != "running":
            return
        plan = _plan_of(orchestration)
        options = _options_of(orchestration)
        mode = (orchestration.metadata_ or {}).get("effectiveMode", options.mode)
        model = (orchestration.metadata_ or {}).get("resolvedModel")

        progress = await self._store.progress(orchestration_id)
        if orchestration.paused_at is None:
            for task in self._next_wave(plan, mode, progress, options):
                try:
                    await self._dispatch_task(orchestration, task, model, options, single=mode == "SINGLE_AGENT")
                except ConductorError as exc:
                    await self._store.events.append(
                        orchestration_id,
                        "task_failed",
                        f"launch failed: {exc}",
                        level="error",
                        payload={"taskId": task.id, "error": exc.__class__.__name__},
                    )
            progress = await self._store.progress(orchestration_id)

        await self._store.orchestrations.update_counters(
            orchestration_id,
            tasks_total=plan.total_tasks,
            tasks_completed=len(progress.completed),
            active_agents=len(progress.running),
        )

        if progress.running or orchestration.paused_at is not None:
            return
        all_ids = set(plan.task_ids())
        if all_ids and all_ids <= progress.completed:
            await self._finish(orchestration, "completed")
        elif not self._next_wave(plan, mode, progress, options):
            blocked = blocked_tasks(plan, progress.failed) - progress.failed
            await self._finish(
                orchestration,
                "error",
                f"{len(progress.failed)} task(s) failed, {len(blocked)} blocked",
            )

    async def restore_lost_reports(self, orchestration_id: str) -> int:
        """Log terminal agent states whose report event never landed."""
        progress = await self._store.progress(orchestration_id)
        restored = 0
        for task_id in sorted(progress.running):
            state = await self._store.agents.get(progress.agents.get(task_id, ""))
            if state is None or state.status == "ACTIVE":
                continue
            step_key = _LOST_REPORT_KEYS.get(state.status, "task_failed")
            await self._store.events.append(
                orchestration_id,
                step_key,
                f"agent {state.agent_id} already {state.status}; report event restored",
                level="info" if step_key == "task_completed" else "warn",
                step_phase="end",
                payload={"taskId": task_id, "agentId": state.agent_id, "agentStatus": state.status},
            )
            restored += 1
        return restored

    async def _finish(self, orchestration: Orchestration, status: str, error: str | None = None) -> None:
        if not await self._store.orchestrations.finish(orchestration.id, status, error):
            return
        if orchestration.master_agent_id:
            await self._store.agents.update_status(
                orchestration.master_agent_id, "COMPLETED" if status == "completed" else "ERROR"
            )
        await self._store.events.append(
            orchestration.id,
            f"orchestration_{status}",
            error or "all tasks completed",
            level="info" if status == "completed" else "error",
            step_phase="end",
        )

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    async def cancel(self, orchestration_id: str, reason: str = "cancelled by caller") -> bool:
        """Stop the orchestration and best-effort stop its running agents.

        Agents whose stop call fails stay ACTIVE; their later reports are
        recorded but no longer advance the orchestration.
        """
        orchestration = await self._store.orchestrations.get(orchestration_id)
        if orchestration is None:
            return False
        if not await self._store.orchestrations.finish(orchestration_id, "stopped", reason):
            return False
        for job in await self._store.outbox.pending_for(orchestration_id):
            await self._store.outbox.fail(job.id, reason)
        if orchestration.master_agent_id:
            await self._store.agents.update_status(orchestration.master_agent_id, "ERROR")

        stopped = 0
        for state in await self._store.agents.list_for(orchestration_id):
            if state.status != "ACTIVE":
                continue
            if await self._stop_quietly(state.agent_id):
                await self._store.agents.update_status(state.agent_id, "ERROR")
                stopped += 1
        await self._store.events.append(
            orchestration_id,
            "orchestration_stopped",
            f"{reason}; stopped {stopped} agent(s)",
            level="warn",
            step_phase="end",
        )
        return True

    async def _stop_quietly(self, agent_id: str) -> bool:
        try:
            await self._agents.stop(agent_id)
        except ConductorError as exc:
            logger.warning("Could not stop agent %s: %s", agent_id, exc)
            return False
        return True
