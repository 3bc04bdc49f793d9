import unittest
from unittest import mock

import aiosqlite

from ledger.db import sqlite_migrations
from ledger.db.repositories import SqliteInteractionRepository
from ledger.db.sqlite_migrations import SCHEMA_VERSION, current_schema_version, run_migrations
from ledger.errors import SchemaMigrationError


def _row(content: str, *, role: str = "user", thinking: str | None = None, session_id: str = "sess-1") -> dict:
    return {
        "session_id": session_id,
        "log_id": "log-1",
        "project_path": "/repo",
        "owner": "tester",
        "role": role,
        "content": content,
        "thinking": thinking,
        "metadata_json": "{}",
        "timestamp": "2026-02-16T10:00:00.000Z",
        "is_compact_summary": 0,
        "created_at": "2026-02-16T10:00:00.000Z",
    }


class SqliteMigrationTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.db = await aiosqlite.connect(":memory:")
        self.db.row_factory = aiosqlite.Row

    async def asyncTearDown(self) -> None:
        await self.db.close()

    async def test_migrations_are_idempotent_and_versioned(self) -> None:
        await run_migrations(self.db)
        await run_migrations(self.db)

        self.assertEqual(await current_schema_version(self.db), SCHEMA_VERSION)
        async with self.db.execute("SELECT COUNT(*) FROM schema_version") as cur:
            row = await cur.fetchone()
        self.assertEqual(row[0], SCHEMA_VERSION)

    async def test_full_text_index_follows_inserts_and_deletes(self) -> None:
        await run_migrations(self.db)
        repo = SqliteInteractionRepository(self.db)
        await repo.insert_many(
            [
                _row("refactor the websocket reconnect loop"),
                _row("done", role="assistant", thinking="the reconnect backoff was unbounded"),
                _row("reconnect elsewhere", session_id="sess-2"),
            ]
        )

        hits = await repo.search("reconnect", session_id="sess-1")
        self.assertEqual(len(hits), 2)

        await repo.delete_for_log("log-1")
        self.assertEqual(await repo.search("reconnect"), [])

    async def test_failed_step_raises_and_is_not_recorded(self) -> None:
        async def _broken(db: aiosqlite.Connection) -> None:
            await db.execute("CREATE TABLE broken (")

        steps = [*sqlite_migrations._MIGRATIONS, (SCHEMA_VERSION + 1, _broken)]
        with mock.patch.object(sqlite_migrations, "_MIGRATIONS", steps), mock.patch.object(
            sqlite_migrations, "SCHEMA_VERSION", SCHEMA_VERSION + 1
        ):
            with self.assertRaises(SchemaMigrationError):
                await sqlite_migrations.run_migrations(self.db)

        self.assertEqual(await current_schema_version(self.db), SCHEMA_VERSION)


if __name__ == "__main__":
    unittest.main()
