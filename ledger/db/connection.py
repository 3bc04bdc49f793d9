"""Database connection factory.

Each operation opens its own SQLite connection in WAL mode and passes it
explicitly to the repositories that need it.
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator

import aiosqlite

from ledger import config
from ledger.db.sqlite_migrations import run_migrations

logger = logging.getLogger("ledger.db")


async def connect(db_path: str | Path, *, busy_timeout_ms: int | None = None) -> aiosqlite.Connection:
    """Open a connection with the pragmas every ledger process relies on."""
    timeout = config.BUSY_TIMEOUT_MS if busy_timeout_ms is None else busy_timeout_ms
    if str(db_path) != ":memory:":
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = await aiosqlite.connect(str(db_path))
    conn.row_factory = aiosqlite.Row
    await conn.execute("PRAGMA journal_mode=WAL")
    await conn.execute("PRAGMA foreign_keys=ON")
    await conn.execute(f"PRAGMA busy_timeout={int(timeout)}")
    logger.debug("Database connection established: %s", db_path)
    return conn


@asynccontextmanager
async def open_database(db_path: str | Path, *, migrate: bool = True) -> AsyncIterator[aiosqlite.Connection]:
    """Yield a migrated connection and close it on exit."""
    conn = await connect(db_path)
    try:
        if migrate:
            await run_migrations(conn)
        yield conn
    finally:
        await conn.close()
        logger.debug("Database connection closed: %s", db_path)
