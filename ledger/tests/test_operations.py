import json
import tempfile
import unittest
from pathlib import Path

from ledger import operations
from ledger.models import RetentionState

LOG_ID = "9b8c7d6e-5f4a-4b3c-8d2e-0f1a2b3c4d5e"
NEXT_LOG = "3f2a9c1e-7b44-4d2a-9e0f-1a2b3c4d5e6f"


def _transcript_lines() -> list[dict]:
    return [
        {"type": "user", "timestamp": "2026-02-16T10:00:00Z", "message": {"role": "user", "content": "hi"}},
        {
            "type": "assistant",
            "timestamp": "2026-02-16T10:00:01Z",
            "message": {"role": "assistant", "content": [{"type": "text", "text": "hello"}]},
        },
        {"type": "user", "timestamp": "2026-02-16T10:00:02Z", "message": {"role": "user", "content": "thanks"}},
    ]


class OperationsTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(tmpdir.cleanup)
        self.project = Path(tmpdir.name)
        self.transcript = self.project / f"{LOG_ID}.jsonl"
        self.transcript.write_text("".join(json.dumps(line) + "\n" for line in _transcript_lines()), encoding="utf-8")

    def _write_record(self, session_id: str, **fields) -> Path:
        path = self.project / ".ledger" / "sessions" / "2026" / "02" / f"{session_id}.json"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps({"id": session_id, **fields}), encoding="utf-8")
        return path

    async def test_invalid_input_fails_without_creating_state(self) -> None:
        missing = await operations.ingest(LOG_ID, self.project / "absent.jsonl", self.project)
        blank = await operations.ingest("  ", self.transcript, self.project)
        bad_project = await operations.commit(LOG_ID, self.project / "nope")

        self.assertFalse(missing.success)
        self.assertIn("Transcript not found", missing.message)
        self.assertFalse(blank.success)
        self.assertFalse(bad_project.success)
        self.assertFalse((self.project / ".ledger").exists())

    async def test_ingest_twice_saves_once(self) -> None:
        first = await operations.ingest(LOG_ID, self.transcript, self.project)
        second = await operations.ingest(LOG_ID, self.transcript, self.project)

        self.assertTrue(first.success, first.message)
        self.assertEqual(first.insertedCount, 2)
        self.assertEqual(first.message, "Saved 2 messages (1 turns)")
        self.assertTrue(second.success)
        self.assertEqual(second.insertedCount, 0)
        self.assertTrue((self.project / ".ledger" / "local.db").is_file())

    async def test_truncated_transcript_reports_failure(self) -> None:
        await operations.ingest(LOG_ID, self.transcript, self.project)
        self.transcript.write_text(json.dumps(_transcript_lines()[0]) + "\n", encoding="utf-8")

        result = await operations.ingest(LOG_ID, self.transcript, self.project)

        self.assertFalse(result.success)
        self.assertIn("Ingest failed", result.message)

    async def test_cleanup_before_any_data_is_a_no_op(self) -> None:
        result = await operations.cleanup(LOG_ID, self.project)
        stale = await operations.cleanup_stale(self.project, 7)

        self.assertTrue(result.success)
        self.assertFalse(result.deleted)
        self.assertTrue(stale.success)
        self.assertFalse((self.project / ".ledger" / "local.db").exists())

    async def test_commit_protects_from_cleanup(self) -> None:
        await operations.ingest(LOG_ID, self.transcript, self.project)

        committed = await operations.commit(LOG_ID, self.project)
        cleanup = await operations.cleanup(LOG_ID, self.project)

        self.assertTrue(committed.success)
        self.assertEqual(committed.sessionId, LOG_ID[:8])
        self.assertFalse(cleanup.deleted)

    async def test_finalize_uses_project_config_policy(self) -> None:
        config_path = self.project / ".ledger" / "config.yaml"
        config_path.parent.mkdir(parents=True, exist_ok=True)
        config_path.write_text("retention:\n  policy: immediate\n", encoding="utf-8")
        record = self._write_record(LOG_ID[:8])

        result = await operations.finalize(LOG_ID, self.transcript, self.project)

        self.assertTrue(result.success, result.message)
        self.assertEqual(result.state, RetentionState.DELETED)
        self.assertFalse(record.exists())

    async def test_finalize_rejects_unknown_policy(self) -> None:
        result = await operations.finalize(LOG_ID, None, self.project, policy="sometimes")

        self.assertFalse(result.success)
        self.assertIn("Unknown cleanup policy", result.message)

    async def test_session_start_links_to_the_session_that_just_ended(self) -> None:
        self._write_record(LOG_ID[:8])
        await operations.finalize(LOG_ID, self.transcript, self.project, policy="never")

        started = await operations.session_start(NEXT_LOG, self.project)
        again = await operations.session_start(NEXT_LOG, self.project)

        self.assertTrue(started.linked)
        self.assertEqual(started.sessionId, LOG_ID[:8])
        self.assertFalse(again.linked)
        self.assertEqual(again.sessionId, LOG_ID[:8])
        self.assertFalse((self.project / ".ledger" / ".pending-link.json").exists())

    async def test_backup_snapshots_the_transcript(self) -> None:
        result = await operations.backup(LOG_ID, self.transcript, self.project)

        self.assertTrue(result.success, result.message)
        self.assertEqual(result.interactionCount, 1)


if __name__ == "__main__":
    unittest.main()
