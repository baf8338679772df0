"""Catalog Refresher -- keeps the model catalog cache warm."""

from __future__ import annotations

import logging

from conductor.agents.catalog import ModelValidator
from conductor.config import Settings
from conductor.handlers.base import PeriodicHandler

logger = logging.getLogger(__name__)


class CatalogRefresher(PeriodicHandler):
    name = "catalog-refresher"

    def __init__(self, validator: ModelValidator, settings: Settings) -> None:
        super().__init__(settings.catalog_refresh_interval)
        self._validator = validator

    async def run_once(self) -> int:
        catalog = await self._validator.refresh(force=True)
        if catalog is None:
            logger.warning("Model catalog unavailable; validation falls back to name patterns")
            return 0
        return len(catalog)
