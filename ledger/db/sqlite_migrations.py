"""Database schema creation and versioning.

Migrations are applied in order and each one is recorded in `schema_version`.
Uses IF NOT EXISTS so a partially applied step can be re-run.
"""
from __future__ import annotations

import logging
from typing import Awaitable, Callable

import aiosqlite

from ledger.errors import SchemaMigrationError

logger = logging.getLogger("ledger.db")

SCHEMA_VERSION = 2

_VERSION_TABLE = """
CREATE TABLE IF NOT EXISTS schema_version (
    version   INTEGER NOT NULL,
    applied   TEXT NOT NULL DEFAULT (datetime('now'))
);
"""

_TABLES_V1 = """
-- ── 1. Save state (one row per physical log) ───────────────────────
CREATE TABLE IF NOT EXISTS session_save_state (
    log_id                TEXT PRIMARY KEY,
    canonical_session_id  TEXT NOT NULL,
    project_path          TEXT NOT NULL,
    last_saved_timestamp  TEXT,
    last_saved_line       INTEGER NOT NULL DEFAULT 0,
    is_committed          INTEGER NOT NULL DEFAULT 0,
    created_at            TEXT NOT NULL,
    updated_at            TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_save_state_session ON session_save_state(canonical_session_id);
CREATE INDEX IF NOT EXISTS idx_save_state_stale   ON session_save_state(is_committed, updated_at);

-- ── 2. Interactions ─────────────────────────────────────────────────
CREATE TABLE IF NOT EXISTS interactions (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id          TEXT NOT NULL,
    log_id              TEXT NOT NULL,
    project_path        TEXT NOT NULL,
    repository          TEXT,
    repository_url      TEXT,
    repository_root     TEXT,
    owner               TEXT NOT NULL,
    role                TEXT NOT NULL CHECK (role IN ('user', 'assistant')),
    content             TEXT NOT NULL,
    thinking            TEXT,
    metadata_json       TEXT,
    timestamp           TEXT NOT NULL,
    is_compact_summary  INTEGER NOT NULL DEFAULT 0,
    created_at          TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_interactions_session ON interactions(session_id, timestamp);
CREATE INDEX IF NOT EXISTS idx_interactions_log     ON interactions(log_id, timestamp);

-- ── 3. Pre-compaction backups ───────────────────────────────────────
CREATE TABLE IF NOT EXISTS pre_compact_backups (
    id                 INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id         TEXT NOT NULL,
    project_path       TEXT NOT NULL,
    owner              TEXT NOT NULL,
    interactions_json  TEXT NOT NULL,
    created_at         TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_backups_session ON pre_compact_backups(session_id, created_at DESC);

-- ── 4. File touch index ─────────────────────────────────────────────
CREATE TABLE IF NOT EXISTS file_index (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id    TEXT NOT NULL,
    log_id        TEXT NOT NULL,
    project_path  TEXT NOT NULL,
    file_path     TEXT NOT NULL,
    tool_name     TEXT,
    timestamp     TEXT NOT NULL,
    created_at    TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_file_index_session ON file_index(session_id);
CREATE INDEX IF NOT EXISTS idx_file_index_path    ON file_index(project_path, file_path);
"""

_FTS_V2 = """
CREATE VIRTUAL TABLE IF NOT EXISTS interactions_fts USING fts5(
    content,
    thinking,
    content='interactions',
    content_rowid='id',
    tokenize='unicode61'
);

CREATE TRIGGER IF NOT EXISTS interactions_ai AFTER INSERT ON interactions BEGIN
    INSERT INTO interactions_fts(rowid, content, thinking)
    VALUES (new.id, new.content, new.thinking);
END;

CREATE TRIGGER IF NOT EXISTS interactions_ad AFTER DELETE ON interactions BEGIN
    INSERT INTO interactions_fts(interactions_fts, rowid, content, thinking)
    VALUES ('delete', old.id, old.content, old.thinking);
END;

CREATE TRIGGER IF NOT EXISTS interactions_au AFTER UPDATE ON interactions BEGIN
    INSERT INTO interactions_fts(interactions_fts, rowid, content, thinking)
    VALUES ('delete', old.id, old.content, old.thinking);
    INSERT INTO interactions_fts(rowid, content, thinking)
    VALUES (new.id, new.content, new.thinking);
END;
"""


async def _migrate_v1(db: aiosqlite.Connection) -> None:
    await db.executescript(_TABLES_V1)


async def _migrate_v2(db: aiosqlite.Connection) -> None:
    await db.executescript(_FTS_V2)
    # Backfill the index for rows written before full-text search existed.
    await db.execute("INSERT INTO interactions_fts(interactions_fts) VALUES ('rebuild')")


_MIGRATIONS: list[tuple[int, Callable[[aiosqlite.Connection], Awaitable[None]]]] = [
    (1, _migrate_v1),
    (2, _migrate_v2),
]


async def current_schema_version(db: aiosqlite.Connection) -> int:
    async with db.execute("SELECT MAX(version) FROM schema_version") as cur:
        row = await cur.fetchone()
    return int(row[0]) if row and row[0] else 0


async def run_migrations(db: aiosqlite.Connection) -> None:
    """Bring the schema up to SCHEMA_VERSION.

    Raises SchemaMigrationError when a step fails; the failed step is rolled
    back and its version is not recorded.
    """
    try:
        await db.executescript(_VERSION_TABLE)
        current_version = await current_schema_version(db)
    except aiosqlite.Error as exc:
        raise SchemaMigrationError(f"Cannot read schema version: {exc}") from exc

    if current_version >= SCHEMA_VERSION:
        logger.debug(f"Schema is up to date (version {current_version})")
        return

    logger.info(f"Running migrations: {current_version} → {SCHEMA_VERSION}")
    for version, step in _MIGRATIONS:
        if version <= current_version:
            continue
        try:
            await step(db)
            await db.execute("INSERT INTO schema_version (version) VALUES (?)", (version,))
            await db.commit()
        except aiosqlite.Error as exc:
            await db.rollback()
            raise SchemaMigrationError(f"Migration to schema version {version} failed: {exc}") from exc
    logger.info(f"Migrations complete: schema version {SCHEMA_VERSION}")
