"""SQLite storage for pre-compaction interaction snapshots."""
from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Callable

import aiosqlite
from pydantic import ValidationError

from ledger.date_utils import format_utc, utc_now
from ledger.models import ParsedInteraction

logger = logging.getLogger("ledger.db")


class SqliteBackupRepository:
    """Keeps the latest snapshot of a canonical session's interactions."""

    def __init__(self, db: aiosqlite.Connection, *, clock: Callable[[], datetime] = utc_now):
        self.db = db
        self.clock = clock

    async def save(
        self,
        session_id: str,
        project_path: str,
        owner: str,
        interactions: list[ParsedInteraction],
    ) -> int:
        """Store a new snapshot and drop the ones it supersedes."""
        payload = json.dumps([item.model_dump(mode="json") for item in interactions])
        cur = await self.db.execute(
            """INSERT INTO pre_compact_backups (session_id, project_path, owner, interactions_json, created_at)
               VALUES (?, ?, ?, ?, ?)""",
            (session_id, project_path, owner, payload, format_utc(self.clock())),
        )
        backup_id = cur.lastrowid
        await cur.close()
        await self.db.execute(
            "DELETE FROM pre_compact_backups WHERE session_id = ? AND id != ?",
            (session_id, backup_id),
        )
        await self.db.commit()
        return int(backup_id or 0)

    async def get_latest(self, session_id: str) -> list[ParsedInteraction]:
        """Return the newest snapshot, skipping anything that fails to decode."""
        async with self.db.execute(
            """SELECT id, interactions_json FROM pre_compact_backups
               WHERE session_id = ?
               ORDER BY created_at DESC, id DESC
               LIMIT 1""",
            (session_id,),
        ) as cur:
            row = await cur.fetchone()
        if not row:
            return []

        try:
            raw_items = json.loads(row["interactions_json"] or "[]")
        except json.JSONDecodeError:
            logger.warning("Ignoring malformed backup %s for session %s", row["id"], session_id)
            return []
        if not isinstance(raw_items, list):
            logger.warning("Ignoring backup %s for session %s: expected a list", row["id"], session_id)
            return []

        interactions: list[ParsedInteraction] = []
        for raw in raw_items:
            if not isinstance(raw, dict):
                continue
            try:
                interactions.append(ParsedInteraction.model_validate(raw))
            except ValidationError:
                logger.debug("Skipping malformed backup item in session %s", session_id)
        return interactions

    async def delete_for_session(self, session_id: str, *, commit: bool = True) -> int:
        cur = await self.db.execute("DELETE FROM pre_compact_backups WHERE session_id = ?", (session_id,))
        deleted = cur.rowcount or 0
        await cur.close()
        if commit:
            await self.db.commit()
        return deleted
