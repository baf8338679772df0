"""Error taxonomy shared by every component.

Each error carries a ``retryable`` flag so background loops can decide
between rescheduling and giving up without inspecting the concrete type.
"""

from __future__ import annotations

import httpx


class ConductorError(Exception):
    """Base class for all conductor errors."""

    retryable = False


class ValidationError(ConductorError):
    """Bad caller input. Never retried."""


class AuthError(ConductorError):
    """Rejected credential. Never retried."""


class RateLimitError(ConductorError):
    """Quota exhausted; retry after ``retry_after`` seconds."""

    retryable = True

    def __init__(self, message: str, retry_after: int = 60) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class UpstreamApiError(ConductorError):
    """Non-2xx or transport failure from an external API.

    ``status_code`` is None for transport errors (connect/read timeouts).
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code

    @property
    def retryable(self) -> bool:  # type: ignore[override]
        return self.status_code is None or self.status_code >= 500


class DatastoreError(ConductorError):
    """The relational store rejected or failed a write."""

    retryable = True


class AgentTimeoutError(ConductorError):
    """An agent stopped reporting progress. The watchdog records it as the timeout reason."""

    def __init__(self, agent_id: str, idle_seconds: int) -> None:
        super().__init__(f"agent {agent_id} idle for {idle_seconds}s")
        self.agent_id = agent_id
        self.idle_seconds = idle_seconds


class DispatchDeferred(ConductorError):
    """Job cannot run yet (e.g. paused); retry later without consuming an attempt."""

    retryable = True


def raise_for_upstream(response: httpx.Response, service: str = "upstream") -> None:
    """Map an httpx response onto the error taxonomy. No-op on 2xx."""
    status = response.status_code
    if 200 <= status < 300:
        return

    try:
        detail = response.json().get("error") or response.text
    except ValueError:
        detail = response.text
    if isinstance(detail, dict):
        detail = detail.get("message") or str(detail)
    message = f"{service} returned {status}: {str(detail)[:200]}"

    if status in (401, 403):
        raise AuthError(message)
    if status == 429:
        retry_after = response.headers.get("retry-after", "60")
        try:
            seconds = int(retry_after)
        except ValueError:
            seconds = 60
        raise RateLimitError(message, retry_after=seconds)
    raise UpstreamApiError(message, status_code=status)
