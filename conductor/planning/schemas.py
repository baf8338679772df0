"""Pydantic DTOs for task plans."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field

Priority = Literal["high", "medium", "low"]
Complexity = Literal["simple", "moderate", "complex"]
Mode = Literal["SINGLE_AGENT", "PIPELINE", "BATCH", "AUTO"]
ConcreteMode = Literal["SINGLE_AGENT", "PIPELINE", "BATCH"]

PRIORITY_WEIGHT: dict[str, int] = {"high": 3, "medium": 2, "low": 1}


class Task(BaseModel):
    """One decomposed unit of work."""

    id: str
    title: str
    description: str
    dependencies: list[str] = []
    priority: Priority = "medium"
    complexity: Complexity = "moderate"


class TaskPlan(BaseModel):
    """Dependency graph of tasks produced by the planner."""

    project_description: str = ""
    tasks: list[Task] = Field(default_factory=list)
    estimated_duration: str = ""

    @property
    def total_tasks(self) -> int:
        return len(self.tasks)

    def get(self, task_id: str) -> Task | None:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None

    def task_ids(self) -> list[str]:
        return [t.id for t in self.tasks]
