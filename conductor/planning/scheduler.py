"""Dependency scheduler -- picks the next eligible task(s) from a plan.

A task is eligible when it is not completed (or running, for parallel
selection) and every dependency it names is completed. Dependencies that
do not refer to a task in the same plan are ignored.
"""

from __future__ import annotations

from collections.abc import Collection, Iterable
from typing import Protocol

from conductor.planning.conflicts import ConflictDetector, RegexConflictDetector
from conductor.planning.schemas import PRIORITY_WEIGHT, ConcreteMode, Mode, Task, TaskPlan

_DEFAULT_DETECTOR = RegexConflictDetector()


def _known_dependencies(task: Task, plan_ids: Collection[str]) -> set[str]:
    return {dep for dep in task.dependencies if dep in plan_ids and dep != task.id}


def _is_ready(task: Task, plan_ids: Collection[str], completed: Collection[str]) -> bool:
    if task.id in completed:
        return False
    return _known_dependencies(task, plan_ids) <= set(completed)


def next_sequential(plan: TaskPlan, completed_ids: Iterable[str]) -> Task | None:
    """First task in plan order whose dependencies are all completed."""
    completed = set(completed_ids)
    plan_ids = set(plan.task_ids())
    for task in plan.tasks:
        if _is_ready(task, plan_ids, completed):
            return task
    return None


def next_parallel(
    plan: TaskPlan,
    completed_ids: Iterable[str],
    running_ids: Iterable[str],
    max_parallel: int,
    detector: ConflictDetector | None = None,
) -> list[Task]:
    """Up to ``max_parallel`` ready tasks, highest priority first.

    Plan order breaks priority ties. When a detector is given, a candidate
    that conflicts with a running task or an already-selected one is skipped
    for this round.
    """
    if max_parallel <= 0:
        return []
    completed = set(completed_ids)
    running = set(running_ids)
    plan_ids = set(plan.task_ids())

    ready = [
        (index, task)
        for index, task in enumerate(plan.tasks)
        if task.id not in running and _is_ready(task, plan_ids, completed)
    ]
    ready.sort(key=lambda item: (-PRIORITY_WEIGHT.get(item[1].priority, 0), item[0]))

    running_tasks = [t for t in plan.tasks if t.id in running]
    selected: list[Task] = []
    for _, task in ready:
        if len(selected) >= max_parallel:
            break
        if detector is not None and any(
            not can_run_in_parallel(task, other, detector) for other in (*running_tasks, *selected)
        ):
            continue
        selected.append(task)
    return selected


def can_run_in_parallel(a: Task, b: Task, detector: ConflictDetector | None = None) -> bool:
    """False on a direct dependency edge; otherwise defer to the conflict heuristic."""
    if a.id in b.dependencies or b.id in a.dependencies:
        return False
    return not (detector or _DEFAULT_DETECTOR).conflicts(a, b)


def build_dependency_graph(plan: TaskPlan) -> dict[str, set[str]]:
    """Map task id -> known dependency ids (unknown ids dropped)."""
    plan_ids = set(plan.task_ids())
    return {task.id: _known_dependencies(task, plan_ids) for task in plan.tasks}


def has_cycle(plan: TaskPlan) -> bool:
    graph = build_dependency_graph(plan)
    visiting: set[str] = set()
    done: set[str] = set()

    def visit(node: str) -> bool:
        if node in done:
            return False
        if node in visiting:
            return True
        visiting.add(node)
        for dep in graph.get(node, ()):
            if visit(dep):
                return True
        visiting.discard(node)
        done.add(node)
        return False

    return any(visit(node) for node in graph)


def blocked_tasks(plan: TaskPlan, failed_ids: Iterable[str]) -> set[str]:
    """Task ids that can never run because a (transitive) dependency failed."""
    graph = build_dependency_graph(plan)
    blocked = set(failed_ids)
    changed = True
    while changed:
        changed = False
        for task_id, deps in graph.items():
            if task_id not in blocked and deps & blocked:
                blocked.add(task_id)
                changed = True
    return blocked


# ---------------------------------------------------------------------------
# AUTO mode policies
# ---------------------------------------------------------------------------


class ModePolicy(Protocol):
    def choose(self, plan: TaskPlan) -> ConcreteMode: ...


class TaskCountPolicy:
    """Pick BATCH for plans larger than ``threshold`` tasks, PIPELINE otherwise."""

    def __init__(self, threshold: int = 3) -> None:
        self.threshold = threshold

    def choose(self, plan: TaskPlan) -> ConcreteMode:
        return "BATCH" if plan.total_tasks > self.threshold else "PIPELINE"


def resolve_mode(mode: Mode, plan: TaskPlan, policy: ModePolicy) -> ConcreteMode:
    if mode == "AUTO":
        return policy.choose(plan)
    return mode
