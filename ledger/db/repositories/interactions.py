"""SQLite storage for persisted interaction rows."""
from __future__ import annotations

import json
from typing import Any

import aiosqlite

_INSERT_COLUMNS = (
    "session_id",
    "log_id",
    "project_path",
    "repository",
    "repository_url",
    "repository_root",
    "owner",
    "role",
    "content",
    "thinking",
    "metadata_json",
    "timestamp",
    "is_compact_summary",
    "created_at",
)


def _row_to_dict(row: Any) -> dict:
    data = dict(row)
    try:
        data["metadata"] = json.loads(data.get("metadata_json") or "{}")
    except json.JSONDecodeError:
        data["metadata"] = {}
    return data


class SqliteInteractionRepository:
    """One row per user message and per assistant response."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def insert_many(self, rows: list[dict], *, commit: bool = True) -> int:
        if not rows:
            return 0
        placeholders = ", ".join("?" for _ in _INSERT_COLUMNS)
        await self.db.executemany(
            f"INSERT INTO interactions ({', '.join(_INSERT_COLUMNS)}) VALUES ({placeholders})",
            [tuple(row.get(column) for column in _INSERT_COLUMNS) for row in rows],
        )
        if commit:
            await self.db.commit()
        return len(rows)

    async def delete_window(self, log_id: str, since_timestamp: str, *, commit: bool = True) -> int:
        """Delete this log's rows at or after `since_timestamp`."""
        cur = await self.db.execute(
            "DELETE FROM interactions WHERE log_id = ? AND timestamp >= ?",
            (log_id, since_timestamp),
        )
        deleted = cur.rowcount or 0
        await cur.close()
        if commit:
            await self.db.commit()
        return deleted

    async def delete_for_log(self, log_id: str, *, commit: bool = True) -> int:
        cur = await self.db.execute("DELETE FROM interactions WHERE log_id = ?", (log_id,))
        deleted = cur.rowcount or 0
        await cur.close()
        if commit:
            await self.db.commit()
        return deleted

    async def count_for_log(self, log_id: str) -> int:
        async with self.db.execute(
            "SELECT COUNT(*) FROM interactions WHERE log_id = ?", (log_id,)
        ) as cur:
            row = await cur.fetchone()
        return int(row[0]) if row else 0

    async def count_turns(self, session_id: str) -> int:
        """Number of distinct turns stored for a canonical session."""
        async with self.db.execute(
            "SELECT COUNT(*) FROM (SELECT DISTINCT log_id, timestamp FROM interactions WHERE session_id = ?)",
            (session_id,),
        ) as cur:
            row = await cur.fetchone()
        return int(row[0]) if row else 0

    async def turn_timestamps(self, session_id: str, *, exclude_log_id: str | None = None) -> set[str]:
        query = "SELECT DISTINCT timestamp FROM interactions WHERE session_id = ?"
        params: list[Any] = [session_id]
        if exclude_log_id:
            query += " AND log_id != ?"
            params.append(exclude_log_id)
        async with self.db.execute(query, params) as cur:
            rows = await cur.fetchall()
        return {row[0] for row in rows}

    async def list_for_session(self, session_id: str) -> list[dict]:
        async with self.db.execute(
            "SELECT * FROM interactions WHERE session_id = ? ORDER BY timestamp ASC, id ASC",
            (session_id,),
        ) as cur:
            rows = await cur.fetchall()
        return [_row_to_dict(row) for row in rows]

    async def list_for_log(self, log_id: str) -> list[dict]:
        async with self.db.execute(
            "SELECT * FROM interactions WHERE log_id = ? ORDER BY timestamp ASC, id ASC",
            (log_id,),
        ) as cur:
            rows = await cur.fetchall()
        return [_row_to_dict(row) for row in rows]

    async def search(self, query: str, *, session_id: str | None = None, limit: int = 20) -> list[dict]:
        """Full-text match over content and thinking, best matches first."""
        sql = """SELECT i.* FROM interactions_fts
                 JOIN interactions i ON i.id = interactions_fts.rowid
                 WHERE interactions_fts MATCH ?"""
        params: list[Any] = [query]
        if session_id:
            sql += " AND i.session_id = ?"
            params.append(session_id)
        sql += " ORDER BY rank LIMIT ?"
        params.append(max(1, int(limit)))
        async with self.db.execute(sql, params) as cur:
            rows = await cur.fetchall()
        return [_row_to_dict(row) for row in rows]
