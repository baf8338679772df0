"""Model validator -- normalizes requested model names against the catalog.

Resolution order: Auto sentinel for empty input, static alias table, exact
(case-insensitive) catalog match, then fuzzy fallbacks. If the catalog
cannot be fetched the name is only checked against a structural pattern.
validate() never raises.
"""

from __future__ import annotations

import logging
import re
import time
from collections.abc import Awaitable, Callable

from pydantic import BaseModel

logger = logging.getLogger(__name__)

DEFAULT_FALLBACK_MODEL = "claude-4.5-opus-high-thinking"

FALLBACK_MODELS = (
    "claude-4.5-opus-high-thinking",
    "gpt-5.2",
    "gpt-5.2-high",
    "gemini-3-pro",
    "gemini-3-flash",
)

MODEL_ALIASES: dict[str, str] = {
    "claude-sonnet-4": "claude-4.5-opus-high-thinking",
    "claude-4-sonnet": "claude-4.5-opus-high-thinking",
    "claude-4-sonnet-thinking": "claude-4.5-opus-high-thinking",
    "claude-opus-4": "claude-4.5-opus-high-thinking",
    "claude-4-opus": "claude-4.5-opus-high-thinking",
    "claude-4-opus-thinking": "claude-4.5-opus-high-thinking",
    "claude-4.5-sonnet-thinking": "claude-4.5-opus-high-thinking",
    "gpt-4": "gpt-5.2",
    "gpt-4o": "gpt-5.2",
    "gpt-5": "gpt-5.2",
    "o1": "gpt-5.2",
    "o1-preview": "gpt-5.2",
    "o3": "gpt-5.2",
    "gemini-pro": "gemini-3-pro",
    "gemini-flash": "gemini-3-flash",
    "gemini-2": "gemini-3-pro",
}

_MODEL_PATTERN = re.compile(r"^[a-z0-9]+(?:[-.][a-z0-9]+)*$", re.IGNORECASE)


class ModelValidationResult(BaseModel):
    is_valid: bool
    normalized_model: str
    original_model: str | None = None
    reason: str | None = None
    fallback_used: bool = False
    is_auto_mode: bool = False


def matches_pattern(name: str) -> bool:
    return 3 <= len(name) <= 100 and _MODEL_PATTERN.match(name) is not None


def fuzzy_resolve(name: str, catalog: list[str]) -> tuple[str, str]:
    """Best catalog entry for an unknown name, with the reason it was chosen."""
    lowered = name.lower()
    for model in catalog:
        m = model.lower()
        if lowered in m or m in lowered:
            return model, f"'{name}' not in catalog; matched '{model}' by substring"

    for family in ("sonnet", "opus", "claude", "gpt", "gemini"):
        if family in lowered:
            for model in catalog:
                if family in model.lower():
                    return model, f"'{name}' not in catalog; matched '{model}' by family '{family}'"

    if lowered.startswith("o"):
        for model in catalog:
            if model.lower().startswith("o"):
                return model, f"'{name}' not in catalog; matched '{model}' by prefix"

    if catalog:
        return catalog[0], f"'{name}' not in catalog; using first available model '{catalog[0]}'"
    return DEFAULT_FALLBACK_MODEL, f"'{name}' not in catalog; using default '{DEFAULT_FALLBACK_MODEL}'"


class ModelValidator:
    """Validates model names with a TTL-cached catalog.

    ``fetch_catalog`` is any coroutine returning the current model names,
    normally AgentApiClient.list_models.
    """

    def __init__(
        self,
        fetch_catalog: Callable[[], Awaitable[list[str]]],
        ttl_seconds: int = 3600,
        failure_backoff: float = 30,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._fetch = fetch_catalog
        self._ttl = ttl_seconds
        self._clock = clock
        self._catalog: list[str] | None = None
        self._fetched_at: float | None = None
        self._failure_backoff = failure_backoff
        self._failed_at: float | None = None

    @property
    def cached_catalog(self) -> list[str] | None:
        return list(self._catalog) if self._catalog is not None else None

    def _fresh(self) -> bool:
        return (
            self._catalog is not None
            and self._fetched_at is not None
            and self._clock() - self._fetched_at < self._ttl
        )

    def _backing_off(self) -> bool:
        return self._failed_at is not None and self._clock() - self._failed_at < self._failure_backoff

    async def refresh(self, force: bool = False) -> list[str] | None:
        """Return the catalog, refetching when stale. None if unavailable.

        After a failed fetch, callers get the cached result until the
        back-off passes so an unreachable agent API is not hit per request.
        """
        if not force and (self._fresh() or self._backing_off()):
            return self._catalog
        try:
            models = await self._fetch()
        except Exception as exc:
            logger.warning("Model catalog fetch failed: %s", exc)
            self._failed_at = self._clock()
            # Keep serving a stale catalog rather than nothing
            return self._catalog
        self._catalog = list(models)
        self._fetched_at = self._clock()
        self._failed_at = None
        logger.debug("Model catalog refreshed (%d models)", len(self._catalog))
        return self._catalog

    async def validate(self, name: str | None) -> ModelValidationResult:
        if name is None or not name.strip():
            return ModelValidationResult(
                is_valid=True,
                normalized_model="",
                original_model=name,
                reason="no model requested; agent API chooses (Auto mode)",
                is_auto_mode=True,
            )

        original = name
        requested = name.strip()
        alias_reason = None
        alias = MODEL_ALIASES.get(requested.lower())
        if alias:
            alias_reason = f"'{requested}' is an alias for '{alias}'"
            requested = alias

        try:
            catalog = await self.refresh()
        except Exception as exc:
            logger.warning("Model catalog unavailable: %s", exc)
            catalog = None

        if catalog is None:
            if matches_pattern(requested):
                return ModelValidationResult(
                    is_valid=True,
                    normalized_model=requested,
                    original_model=original,
                    reason=alias_reason or "catalog unavailable; accepted by name pattern only",
                    fallback_used=alias is not None,
                )
            return ModelValidationResult(
                is_valid=False,
                normalized_model=DEFAULT_FALLBACK_MODEL,
                original_model=original,
                reason=f"catalog unavailable and '{requested}' is not a valid model name",
                fallback_used=True,
            )

        if not catalog:
            return ModelValidationResult(
                is_valid=matches_pattern(requested),
                normalized_model=requested if matches_pattern(requested) else DEFAULT_FALLBACK_MODEL,
                original_model=original,
                reason=alias_reason or "catalog is empty; checked name pattern only",
                fallback_used=alias is not None or not matches_pattern(requested),
            )

        for model in catalog:
            if model.lower() == requested.lower():
                return ModelValidationResult(
                    is_valid=True,
                    normalized_model=model,
                    original_model=original,
                    reason=alias_reason,
                    fallback_used=alias is not None,
                )

        resolved, reason = fuzzy_resolve(requested, catalog)
        logger.info("Model %r resolved to %r: %s", original, resolved, reason)
        return ModelValidationResult(
            is_valid=False,
            normalized_model=resolved,
            original_model=original,
            reason=reason,
            fallback_used=True,
        )
