"""Ledger schema bootstrap.

``run_auto_migrate`` creates missing tables at engine start; production
deployments run the Alembic environment instead.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from sqlalchemy import inspect

import tapchannel.engine.models  # noqa: F401 - registers every ledger table
from tapchannel.engine.models.base import Base

if TYPE_CHECKING:
    from sqlalchemy.engine import Connection
    from sqlalchemy.ext.asyncio import AsyncEngine

logger = logging.getLogger(__name__)


def _create_missing(conn: Connection) -> list[str]:
    existing = set(inspect(conn).get_table_names())
    missing = [name for name in Base.metadata.tables if name not in existing]
    Base.metadata.create_all(conn)
    return missing


async def run_auto_migrate(engine: AsyncEngine) -> list[str]:
    """Create the ledger tables that do not exist yet.

    Returns:
        Names of the tables that were created.
    """
    async with engine.begin() as conn:
        created = await conn.run_sync(_create_missing)
    if created:
        logger.info("Created ledger tables: %s", ", ".join(sorted(created)))
    return created


async def drop_all_tables(engine: AsyncEngine) -> None:
    """Drop every ledger table (tests and local resets only)."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
