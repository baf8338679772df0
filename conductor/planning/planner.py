"""Task Planner -- decomposes a prompt into a dependency graph of tasks.

Asks the planning LLM for a structured JSON plan. Any failure (transport,
non-2xx, unparseable JSON, malformed shape, dependency cycle) falls back to
a deterministic chain built from ~500-character chunks of the prompt. The
result is always a usable plan; callers see the fallback through
``Degradable.degraded_reason``.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any

import httpx

from conductor.config import Settings
from conductor.planning.scheduler import has_cycle
from conductor.planning.schemas import Task, TaskPlan
from conductor.utils import Degradable

logger = logging.getLogger(__name__)

CHUNK_SIZE = 500

_PLAN_PROMPT = """You are a senior engineer breaking a software project into tasks for autonomous coding agents.

Repository: {repository}
Execution mode: {mode}

Project description:
{prompt}

Split the work into independent, well-scoped tasks. A task may depend on
earlier tasks by id. Prefer tasks that touch disjoint files so they can run
in parallel.

Return ONLY a valid JSON object:
{{
  "projectDescription": "<one paragraph summary>",
  "tasks": [
    {{
      "id": "task-1",
      "title": "<short title>",
      "description": "<what to build, which files>",
      "dependencies": ["<task ids>"],
      "priority": "<high|medium|low>",
      "estimatedComplexity": "<simple|moderate|complex>"
    }}
  ],
  "totalTasks": <number>,
  "estimatedDuration": "<e.g. 4-6 hours>"
}}"""

_JSON_OBJECT = re.compile(r"\{.*\}", re.DOTALL)
_PRIORITIES = {"high", "medium", "low"}
_COMPLEXITIES = {"simple", "moderate", "complex"}


class PlanFormatError(ValueError):
    """Planner response did not describe a usable plan."""


class _PlannerHttpStatus(Exception):
    pass


def planner_headers(settings: Settings) -> dict[str, str]:
    """Messages API headers. An OAuth token (sk-ant-oat) goes out as Bearer."""
    credential = settings.anthropic_auth_token or settings.anthropic_api_key
    headers = {"anthropic-version": "2023-06-01"}
    if "sk-ant-oat" in credential:
        headers["Authorization"] = f"Bearer {credential}"
        headers["anthropic-beta"] = "oauth-2025-04-20"
    else:
        headers["x-api-key"] = credential
    return headers


def chunk_prompt(prompt: str, size: int = CHUNK_SIZE) -> list[str]:
    """Split into ~size-character chunks on line boundaries, skipping blank lines.

    A single line longer than ``size`` becomes its own chunk.
    """
    chunks: list[str] = []
    current = ""
    for line in prompt.splitlines():
        if not line.strip():
            continue
        if current and len(current) + len(line) + 1 > size:
            chunks.append(current)
            current = line
        else:
            current = f"{current}\n{line}" if current else line
    if current:
        chunks.append(current)
    return chunks


def fallback_plan(prompt: str) -> TaskPlan:
    """Deterministic chain: task i depends only on task i-1."""
    chunks = chunk_prompt(prompt) or [prompt.strip() or "Implement the requested changes"]
    tasks = [
        Task(
            id=f"task-{i + 1}",
            title=f"Task {i + 1}",
            description=chunk,
            dependencies=[f"task-{i}"] if i > 0 else [],
            priority="high" if i == 0 else "medium",
            complexity="moderate",
        )
        for i, chunk in enumerate(chunks)
    ]
    n = len(tasks)
    description = prompt[:200] + ("..." if len(prompt) > 200 else "")
    return TaskPlan(
        project_description=description,
        tasks=tasks,
        estimated_duration=f"{n * 2}-{n * 3} hours",
    )


def parse_plan(text: str) -> TaskPlan:
    """Extract and normalize a plan from LLM output. Raises PlanFormatError."""
    match = _JSON_OBJECT.search(text)
    if not match:
        raise PlanFormatError("no JSON object in planner response")
    try:
        data = json.loads(match.group(0))
    except json.JSONDecodeError as exc:
        raise PlanFormatError(f"invalid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise PlanFormatError("plan is not an object")

    raw_tasks = data.get("tasks")
    if not isinstance(raw_tasks, list) or not raw_tasks:
        raise PlanFormatError("plan has no tasks")

    tasks: list[Task] = []
    seen: set[str] = set()
    for i, raw in enumerate(raw_tasks):
        if not isinstance(raw, dict):
            raise PlanFormatError(f"task {i} is not an object")
        task_id = str(raw.get("id") or f"task-{i + 1}")
        if task_id in seen:
            raise PlanFormatError(f"duplicate task id {task_id}")
        seen.add(task_id)
        description = str(raw.get("description") or "").strip()
        if not description:
            raise PlanFormatError(f"task {task_id} has no description")
        deps = raw.get("dependencies") or []
        if not isinstance(deps, list):
            deps = []
        priority = str(raw.get("priority", "medium")).lower()
        complexity = str(raw.get("estimatedComplexity") or raw.get("complexity") or "moderate").lower()
        tasks.append(
            Task(
                id=task_id,
                title=str(raw.get("title") or f"Task {i + 1}"),
                description=description,
                dependencies=[str(d) for d in deps],
                priority=priority if priority in _PRIORITIES else "medium",
                complexity=complexity if complexity in _COMPLEXITIES else "moderate",
            )
        )

    # Unknown ids mean "no dependency"
    known = {t.id for t in tasks}
    for task in tasks:
        task.dependencies = [d for d in task.dependencies if d in known and d != task.id]

    plan = TaskPlan(
        project_description=str(data.get("projectDescription") or ""),
        tasks=tasks,
        estimated_duration=str(data.get("estimatedDuration") or ""),
    )
    if has_cycle(plan):
        raise PlanFormatError("dependency cycle in plan")
    return plan


class TaskPlanner:
    """Calls the planning LLM and degrades to the chunked chain on any failure."""

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient | None = None) -> None:
        self._settings = settings
        self._http = http_client

    async def plan(self, prompt: str, repository: str, mode: str) -> Degradable[TaskPlan]:
        if not self._http:
            return Degradable(fallback_plan(prompt), "planner has no http client")
        if not (self._settings.anthropic_api_key or self._settings.anthropic_auth_token):
            return Degradable(fallback_plan(prompt), "planner credentials not configured")

        try:
            text = await self._request(prompt, repository, mode)
            plan = parse_plan(text)
        except httpx.HTTPError as exc:
            reason = f"planner request failed: {exc.__class__.__name__}"
        except PlanFormatError as exc:
            reason = f"planner returned malformed plan: {exc}"
        except _PlannerHttpStatus as exc:
            reason = str(exc)
        except Exception as exc:
            logger.exception("Planner call failed unexpectedly")
            reason = f"planner error: {exc.__class__.__name__}"
        else:
            logger.info("Planned %d tasks for %s", plan.total_tasks, repository)
            return Degradable(plan)

        logger.warning("Falling back to chunked plan: %s", reason)
        return Degradable(fallback_plan(prompt), reason)

    async def _request(self, prompt: str, repository: str, mode: str) -> str:
        response = await self._http.post(
            f"{self._settings.api_base_url}/v1/messages",
            json={
                "model": self._settings.planner_model,
                "max_tokens": self._settings.planner_max_tokens,
                "messages": [
                    {
                        "role": "user",
                        "content": _PLAN_PROMPT.format(repository=repository, mode=mode, prompt=prompt),
                    }
                ],
            },
            headers=planner_headers(self._settings),
            timeout=self._settings.planner_timeout,
        )
        if response.status_code != 200:
            raise _PlannerHttpStatus(f"planner returned HTTP {response.status_code}")
        try:
            data: Any = response.json()
            return data.get("content", [{}])[0].get("text", "")
        except (ValueError, AttributeError, IndexError) as exc:
            raise PlanFormatError(f"unexpected response body: {exc}") from exc
