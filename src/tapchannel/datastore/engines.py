"""Ledger engine factory: PostgreSQL (asyncpg) or SQLite (aiosqlite)."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import StaticPool

if TYPE_CHECKING:
    from tapchannel.config.settings import DatabaseConfig

# Milliseconds a SQLite writer waits for the settlement lock row to free up.
SQLITE_BUSY_TIMEOUT_MS = 5_000


def _is_sqlite(dsn: str) -> bool:
    return dsn.startswith("sqlite")


def _sqlite_pragmas(dbapi_conn: Any, _record: Any) -> None:
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.execute(f"PRAGMA busy_timeout={SQLITE_BUSY_TIMEOUT_MS}")
    cursor.close()


def create_engine(config: DatabaseConfig) -> AsyncEngine:
    """Create the async engine for the channel ledger.

    SQLite connections enforce foreign keys (merchants reference wallets) and
    wait on a locked database instead of failing the guarded UPDATEs. An
    in-memory database is pinned to one shared connection so every session
    sees the same ledger.
    """
    kwargs: dict[str, Any] = {"echo": config.debug_sql}

    if _is_sqlite(config.dsn):
        if ":memory:" in config.dsn:
            kwargs["poolclass"] = StaticPool
    else:
        kwargs["pool_size"] = config.max_idle_connections
        kwargs["max_overflow"] = max(config.max_open_connections - config.max_idle_connections, 0)
        kwargs["pool_pre_ping"] = True

    engine = create_async_engine(config.dsn, **kwargs)
    if _is_sqlite(config.dsn):
        event.listen(engine.sync_engine, "connect", _sqlite_pragmas)
    return engine
