import json
import tempfile
import unittest

from ledger.project_paths import LedgerPaths
from ledger.session_records import SessionRecordStore, has_summary


class SessionRecordStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(tmpdir.cleanup)
        self.paths = LedgerPaths.for_project(tmpdir.name)
        self.store = SessionRecordStore(self.paths)

    def _write(self, session_id: str, payload, month: str = "02") -> None:
        path = self.paths.sessions_dir / "2026" / month / f"{session_id}.json"
        path.parent.mkdir(parents=True, exist_ok=True)
        text = payload if isinstance(payload, str) else json.dumps(payload)
        path.write_text(text, encoding="utf-8")

    def test_records_are_found_in_nested_month_folders(self) -> None:
        self._write("abc12345", {"id": "abc12345", "title": "Refactor"}, month="03")

        self.assertEqual(self.store.load("abc12345")["title"], "Refactor")
        self.assertIsNone(self.store.load("missing"))

    def test_patch_writes_back_and_delete_removes(self) -> None:
        self._write("abc12345", {"id": "abc12345", "interactions": [1, 2]})

        patched = self.store.patch("abc12345", lambda record: record.pop("interactions"))

        self.assertEqual(patched, {"id": "abc12345"})
        self.assertEqual(self.store.load("abc12345"), {"id": "abc12345"})
        self.assertTrue(self.store.delete("abc12345"))
        self.assertFalse(self.store.delete("abc12345"))

    def test_malformed_record_is_treated_as_missing(self) -> None:
        self._write("broken01", "{not json")

        with self.assertLogs("ledger.records", level="WARNING"):
            self.assertIsNone(self.store.load("broken01"))
        self.assertIsNone(self.store.patch("broken01", lambda record: None))

    def test_work_periods_open_once_and_close(self) -> None:
        self._write("abc12345", {"id": "abc12345"})

        self.assertTrue(self.store.append_work_period("abc12345", "log-1", "2026-02-16T10:00:00.000Z"))
        self.assertFalse(self.store.append_work_period("abc12345", "log-1", "2026-02-16T10:05:00.000Z"))
        self.assertTrue(self.store.close_work_period("abc12345", "log-1", "2026-02-16T11:00:00.000Z"))
        self.assertTrue(self.store.append_work_period("abc12345", "log-1", "2026-02-16T12:00:00.000Z"))

        periods = self.store.load("abc12345")["workPeriods"]
        self.assertEqual(
            [(period["startedAt"], period["endedAt"]) for period in periods],
            [
                ("2026-02-16T10:00:00.000Z", "2026-02-16T11:00:00.000Z"),
                ("2026-02-16T12:00:00.000Z", None),
            ],
        )

    def test_has_summary(self) -> None:
        self.assertFalse(has_summary(None))
        self.assertFalse(has_summary({"summary": "   "}))
        self.assertFalse(has_summary({"summary": None}))
        self.assertTrue(has_summary({"summary": "Shipped the fix"}))
        self.assertTrue(has_summary({"summary": {"title": "Fix", "goal": "..."}}))


if __name__ == "__main__":
    unittest.main()
