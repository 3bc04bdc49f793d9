"""SQLite implementation of the per-log save-state tracker."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Callable

import aiosqlite

from ledger.date_utils import format_utc, utc_now
from ledger.errors import SaveStateNotFoundError, SaveStateRegressionError
from ledger.models import SaveState


def _row_to_state(row: Any) -> SaveState:
    return SaveState(
        logId=row["log_id"],
        canonicalSessionId=row["canonical_session_id"],
        projectPath=row["project_path"],
        lastSavedTimestamp=row["last_saved_timestamp"],
        lastSavedLine=row["last_saved_line"] or 0,
        isCommitted=bool(row["is_committed"]),
        createdAt=row["created_at"] or "",
        updatedAt=row["updated_at"] or "",
    )


class SqliteSaveStateRepository:
    """Tracks how far each transcript log has been persisted."""

    def __init__(self, db: aiosqlite.Connection, *, clock: Callable[[], datetime] = utc_now):
        self.db = db
        self.clock = clock

    async def get(self, log_id: str) -> SaveState | None:
        async with self.db.execute(
            "SELECT * FROM session_save_state WHERE log_id = ?", (log_id,)
        ) as cur:
            row = await cur.fetchone()
        return _row_to_state(row) if row else None

    async def get_or_create(self, log_id: str, canonical_session_id: str, project_path: str) -> SaveState:
        """Return the state for `log_id`, inserting a zero-offset row if absent.

        INSERT OR IGNORE lets two processes racing on the same new log end up
        reading the same single row.
        """
        now = format_utc(self.clock())
        await self.db.execute(
            """INSERT OR IGNORE INTO session_save_state (
                log_id, canonical_session_id, project_path,
                last_saved_timestamp, last_saved_line, is_committed,
                created_at, updated_at
            ) VALUES (?, ?, ?, NULL, 0, 0, ?, ?)""",
            (log_id, canonical_session_id, project_path, now, now),
        )
        await self.db.commit()
        state = await self.get(log_id)
        if state is None:
            raise SaveStateNotFoundError(f"Save state for {log_id} vanished after insert")
        return state

    async def update(self, log_id: str, last_timestamp: str | None, last_line: int) -> SaveState:
        current = await self.get(log_id)
        if current is None:
            raise SaveStateNotFoundError(f"No save state for {log_id}")
        if last_line < current.lastSavedLine:
            raise SaveStateRegressionError(log_id, current.lastSavedLine, last_line)

        now = format_utc(self.clock())
        await self.db.execute(
            """UPDATE session_save_state
               SET last_saved_timestamp = ?, last_saved_line = ?, updated_at = ?
               WHERE log_id = ?""",
            (last_timestamp, last_line, now, log_id),
        )
        await self.db.commit()
        return current.model_copy(
            update={"lastSavedTimestamp": last_timestamp, "lastSavedLine": last_line, "updatedAt": now}
        )

    async def reassign(self, log_id: str, canonical_session_id: str) -> None:
        """Point an existing log at the canonical session it was later linked to."""
        await self.db.execute(
            "UPDATE session_save_state SET canonical_session_id = ? WHERE log_id = ?",
            (canonical_session_id, log_id),
        )
        await self.db.commit()

    async def mark_committed(self, log_id: str, canonical_session_id: str, project_path: str) -> None:
        now = format_utc(self.clock())
        await self.db.execute(
            """INSERT INTO session_save_state (
                log_id, canonical_session_id, project_path,
                last_saved_line, is_committed, created_at, updated_at
            ) VALUES (?, ?, ?, 0, 1, ?, ?)
            ON CONFLICT(log_id) DO UPDATE SET
                is_committed = 1,
                updated_at = excluded.updated_at""",
            (log_id, canonical_session_id, project_path, now, now),
        )
        await self.db.commit()

    async def list_stale_uncommitted(self, cutoff: str) -> list[SaveState]:
        async with self.db.execute(
            """SELECT * FROM session_save_state
               WHERE is_committed = 0 AND updated_at <= ?
               ORDER BY updated_at ASC""",
            (cutoff,),
        ) as cur:
            rows = await cur.fetchall()
        return [_row_to_state(row) for row in rows]

    async def list_for_session(self, canonical_session_id: str) -> list[SaveState]:
        async with self.db.execute(
            "SELECT * FROM session_save_state WHERE canonical_session_id = ? ORDER BY created_at ASC",
            (canonical_session_id,),
        ) as cur:
            rows = await cur.fetchall()
        return [_row_to_state(row) for row in rows]

    async def delete(self, log_id: str, *, commit: bool = True) -> None:
        await self.db.execute("DELETE FROM session_save_state WHERE log_id = ?", (log_id,))
        if commit:
            await self.db.commit()
