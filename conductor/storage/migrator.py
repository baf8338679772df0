"""Schema bootstrap -- creates any missing tables on startup.

The ORM metadata is the single schema definition; create_all is idempotent
so every worker can run it at boot.
"""

from __future__ import annotations

import logging

from sqlalchemy import inspect
from sqlalchemy.ext.asyncio import AsyncEngine

from conductor.storage.models import Base

logger = logging.getLogger(__name__)


async def run_migrations(engine: AsyncEngine) -> list[str]:
    """Create missing tables and return the names of those newly created."""
    async with engine.begin() as conn:
        existing = set(await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names()))
        await conn.run_sync(Base.metadata.create_all)

    created = sorted(set(Base.metadata.tables) - existing)
    for name in created:
        logger.info("Created table %s", name)
    return created
