"""SQLite storage for the file-touch index."""
from __future__ import annotations

import aiosqlite


class SqliteFileIndexRepository:
    """Which project files each session touched. Written here, read elsewhere."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def insert_many(self, rows: list[dict], *, commit: bool = True) -> int:
        if not rows:
            return 0
        await self.db.executemany(
            """INSERT INTO file_index (session_id, log_id, project_path, file_path, tool_name, timestamp, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            [
                (
                    row["session_id"],
                    row["log_id"],
                    row["project_path"],
                    row["file_path"],
                    row.get("tool_name"),
                    row["timestamp"],
                    row["created_at"],
                )
                for row in rows
            ],
        )
        if commit:
            await self.db.commit()
        return len(rows)

    async def delete_window(self, log_id: str, since_timestamp: str, *, commit: bool = True) -> int:
        cur = await self.db.execute(
            "DELETE FROM file_index WHERE log_id = ? AND timestamp >= ?",
            (log_id, since_timestamp),
        )
        deleted = cur.rowcount or 0
        await cur.close()
        if commit:
            await self.db.commit()
        return deleted

    async def delete_for_session(self, session_id: str, *, commit: bool = True) -> int:
        cur = await self.db.execute("DELETE FROM file_index WHERE session_id = ?", (session_id,))
        deleted = cur.rowcount or 0
        await cur.close()
        if commit:
            await self.db.commit()
        return deleted

    async def list_for_session(self, session_id: str) -> list[dict]:
        async with self.db.execute(
            "SELECT * FROM file_index WHERE session_id = ? ORDER BY timestamp ASC, id ASC",
            (session_id,),
        ) as cur:
            rows = await cur.fetchall()
        return [dict(row) for row in rows]
