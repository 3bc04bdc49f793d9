import unittest
from datetime import datetime, timedelta, timezone

import aiosqlite

from ledger.db.repositories import SqliteSaveStateRepository
from ledger.db.sqlite_migrations import run_migrations
from ledger.errors import SaveStateNotFoundError, SaveStateRegressionError


class SaveStateRepositoryTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.db = await aiosqlite.connect(":memory:")
        self.db.row_factory = aiosqlite.Row
        await run_migrations(self.db)
        self.repo = SqliteSaveStateRepository(self.db)

    async def asyncTearDown(self) -> None:
        await self.db.close()

    async def test_get_or_create_inserts_once(self) -> None:
        first = await self.repo.get_or_create("log-1", "sess-1", "/repo")
        second = await self.repo.get_or_create("log-1", "other", "/elsewhere")

        self.assertEqual(first.lastSavedLine, 0)
        self.assertFalse(first.isCommitted)
        self.assertEqual(second.canonicalSessionId, "sess-1")
        async with self.db.execute("SELECT COUNT(*) FROM session_save_state") as cur:
            row = await cur.fetchone()
        self.assertEqual(row[0], 1)

    async def test_update_only_moves_forward(self) -> None:
        await self.repo.get_or_create("log-1", "sess-1", "/repo")
        await self.repo.update("log-1", "2026-02-16T10:00:00.000Z", 12)
        await self.repo.update("log-1", "2026-02-16T10:00:00.000Z", 12)

        with self.assertRaises(SaveStateRegressionError) as ctx:
            await self.repo.update("log-1", "2026-02-16T09:00:00.000Z", 5)

        self.assertEqual(ctx.exception.current_line, 12)
        state = await self.repo.get("log-1")
        assert state is not None
        self.assertEqual(state.lastSavedLine, 12)
        self.assertEqual(state.lastSavedTimestamp, "2026-02-16T10:00:00.000Z")

    async def test_update_requires_existing_state(self) -> None:
        with self.assertRaises(SaveStateNotFoundError):
            await self.repo.update("missing", None, 1)

    async def test_mark_committed_upserts(self) -> None:
        await self.repo.mark_committed("fresh-log", "sess-9", "/repo")
        fresh = await self.repo.get("fresh-log")
        assert fresh is not None
        self.assertTrue(fresh.isCommitted)

        await self.repo.get_or_create("log-1", "sess-1", "/repo")
        await self.repo.update("log-1", None, 40)
        await self.repo.mark_committed("log-1", "ignored", "/repo")
        existing = await self.repo.get("log-1")
        assert existing is not None
        self.assertTrue(existing.isCommitted)
        self.assertEqual(existing.lastSavedLine, 40)
        self.assertEqual(existing.canonicalSessionId, "sess-1")

    async def test_stale_listing_uses_cutoff_and_commit_flag(self) -> None:
        for log_id in ("old", "recent", "committed"):
            await self.repo.get_or_create(log_id, f"sess-{log_id}", "/repo")
        await self.db.execute(
            "UPDATE session_save_state SET updated_at = ? WHERE log_id IN ('old', 'committed')",
            ("2000-01-01T00:00:00.000Z",),
        )
        await self.db.commit()
        await self.repo.mark_committed("committed", "sess-committed", "/repo")
        await self.db.execute(
            "UPDATE session_save_state SET updated_at = ? WHERE log_id = 'committed'",
            ("2000-01-01T00:00:00.000Z",),
        )
        await self.db.commit()

        stale = await self.repo.list_stale_uncommitted("2000-01-15T00:00:00.000Z")

        self.assertEqual([state.logId for state in stale], ["old"])

    async def test_writes_are_stamped_with_the_injected_clock(self) -> None:
        moments = [datetime(2026, 2, 16, 10, 0, tzinfo=timezone.utc)]
        repo = SqliteSaveStateRepository(self.db, clock=lambda: moments[-1])

        created = await repo.get_or_create("log-1", "sess-1", "/repo")
        moments.append(moments[0] + timedelta(days=10))
        await repo.update("log-1", None, 3)

        self.assertEqual(created.createdAt, "2026-02-16T10:00:00.000Z")
        self.assertEqual([s.logId for s in await repo.list_stale_uncommitted("2026-02-20T00:00:00.000Z")], [])
        self.assertEqual(
            [s.logId for s in await repo.list_stale_uncommitted("2026-02-27T00:00:00.000Z")], ["log-1"]
        )


if __name__ == "__main__":
    unittest.main()
