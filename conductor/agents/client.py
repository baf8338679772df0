"""Client for the external coding-agent API.

Launches, stops and polls agents. Never implements the agent itself.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx
from pydantic import BaseModel

from conductor.config import Settings
from conductor.errors import UpstreamApiError, ValidationError, raise_for_upstream
from conductor.planning.schemas import Task
from conductor.state.schemas import OrchestrationOptions

logger = logging.getLogger(__name__)

MAX_AGENT_PROMPT = 100_000
TERMINAL_AGENT_STATUSES = frozenset({"FINISHED", "ERROR", "EXPIRED"})

_PRIORITY_FOCUS = {
    "speed": "fast execution",
    "quality": "code quality",
    "balanced": "balanced approach",
}


class AgentStatusReport(BaseModel):
    id: str
    status: str
    summary: str | None = None
    branch_name: str | None = None
    pr_url: str | None = None

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL_AGENT_STATUSES


def normalize_repository(repository: str) -> str:
    """owner/repo and github.com/owner/repo become https://github.com/owner/repo."""
    repo = (repository or "").strip()
    if not repo:
        raise ValidationError("repository is required")
    if repo.startswith("http"):
        return repo.rstrip("/")
    if repo.startswith("github.com/"):
        return f"https://{repo}".rstrip("/")
    return f"https://github.com/{repo}".rstrip("/")


def build_task_prompt(task: Task) -> str:
    return f"""**Task: {task.title}**

**Description:**
{task.description}

**Priority:** {task.priority}
**Complexity:** {task.complexity}

**Requirements:**
1. Complete this task fully and correctly
2. Test your changes to ensure they work
3. Keep changes compatible with the rest of the project
4. Document any significant changes

This task is part of a larger project. Fix any errors you hit before finishing."""


def with_requirements(prompt: str, options: OrchestrationOptions | None) -> str:
    """Append an "Additional Requirements" block derived from the options."""
    if options is None:
        return prompt
    lines = []
    if options.enable_auto_fix:
        lines.append("- Auto-fix any errors you encounter")
    if options.enable_testing:
        lines.append("- Write and run tests for your changes")
    if options.enable_validation:
        lines.append("- Validate your work before marking as complete")
    lines.append(f"- Priority: {options.priority} (optimize for {_PRIORITY_FOCUS[options.priority]})")
    return f"{prompt}\n\n**Additional Requirements:**\n" + "\n".join(lines)


class AgentApiClient:
    """Thin async wrapper around /v0/agents and /v0/models."""

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient) -> None:
        self._settings = settings
        self._http = http_client
        self._base = settings.agent_api_base_url.rstrip("/")

    @property
    def _auth(self) -> tuple[str, str]:
        return (self._settings.agent_api_key, "")

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._http.request(
                method,
                f"{self._base}{path}",
                auth=self._auth,
                timeout=self._settings.agent_api_timeout,
                **kwargs,
            )
        except httpx.HTTPError as exc:
            raise UpstreamApiError(f"agent API {method} {path} failed: {exc.__class__.__name__}") from exc
        raise_for_upstream(response, service="agent API")
        return response

    async def launch(
        self,
        prompt: str,
        repository: str,
        ref: str | None = "main",
        model: str | None = None,
        options: OrchestrationOptions | None = None,
    ) -> str:
        """Launch an agent and return its id. An empty model means Auto mode."""
        if not prompt or not prompt.strip():
            raise ValidationError("prompt is required")
        text = with_requirements(prompt, options)
        if len(text) > MAX_AGENT_PROMPT:
            raise ValidationError(f"prompt exceeds {MAX_AGENT_PROMPT} characters")
        normalized_ref = (ref or "main").strip()
        if not 1 <= len(normalized_ref) <= 255:
            raise ValidationError("ref must be between 1 and 255 characters")

        payload: dict[str, Any] = {
            "prompt": {"text": text},
            "source": {"repository": normalize_repository(repository), "ref": normalized_ref},
            "target": {"autoCreatePr": True},
        }
        if model:
            payload["model"] = model
        if self._settings.webhook_url:
            webhook: dict[str, str] = {"url": self._settings.webhook_url}
            if self._settings.webhook_secret:
                webhook["secret"] = self._settings.webhook_secret
            payload["webhook"] = webhook

        response = await self._request("POST", "/v0/agents", json=payload)
        data = response.json()
        agent_id = data.get("id")
        if not agent_id:
            raise UpstreamApiError("agent API response missing id", status_code=502)
        logger.info("Launched agent %s on %s@%s (model=%s)", agent_id, repository, normalized_ref, model or "auto")
        return agent_id

    async def stop(self, agent_id: str) -> None:
        await self._request("POST", f"/v0/agents/{agent_id}/stop")
        logger.info("Stopped agent %s", agent_id)

    async def status(self, agent_id: str) -> AgentStatusReport:
        response = await self._request("GET", f"/v0/agents/{agent_id}")
        data = response.json()
        target = data.get("target") or {}
        return AgentStatusReport(
            id=data.get("id", agent_id),
            status=str(data.get("status", "UNKNOWN")).upper(),
            summary=data.get("summary"),
            branch_name=target.get("branchName"),
            pr_url=target.get("prUrl"),
        )

    async def conversation(self, agent_id: str) -> list[dict[str, Any]]:
        response = await self._request("GET", f"/v0/agents/{agent_id}/conversation")
        return list(response.json().get("messages", []))

    async def list_models(self) -> list[str]:
        response = await self._request("GET", "/v0/models")
        models = response.json().get("models", [])
        return [m for m in models if isinstance(m, str) and m]
