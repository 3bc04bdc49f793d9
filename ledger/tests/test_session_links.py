import json
import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path

from ledger.models import ParsedInteraction
from ledger.project_paths import LedgerPaths
from ledger.session_links import SessionLinkResolver
from ledger.session_records import SessionRecordStore

OLD_LOG = "3f2a9c1e-7b44-4d2a-9e0f-1a2b3c4d5e6f"
NEW_LOG = "9b8c7d6e-5f4a-4b3c-8d2e-0f1a2b3c4d5e"


class _Clock:
    def __init__(self) -> None:
        self.now = datetime(2026, 2, 16, 10, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now


class SessionLinkResolverTests(unittest.TestCase):
    def setUp(self) -> None:
        tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(tmpdir.cleanup)
        self.paths = LedgerPaths.for_project(tmpdir.name)
        self.clock = _Clock()
        self.records = SessionRecordStore(self.paths)
        self.resolver = SessionLinkResolver(
            self.paths, self.records, breadcrumb_max_age_seconds=300, clock=self.clock
        )

    def _write_record(self, session_id: str, **fields) -> Path:
        path = self.paths.sessions_dir / "2026" / "02" / f"{session_id}.json"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps({"id": session_id, "workPeriods": [], **fields}), encoding="utf-8")
        return path

    def test_unlinked_log_resolves_to_short_id(self) -> None:
        self.assertEqual(self.resolver.resolve(NEW_LOG), NEW_LOG[:8])

    def test_link_is_written_once_and_never_overwritten(self) -> None:
        record_path = self._write_record("master01")

        self.assertTrue(self.resolver.link(NEW_LOG, "master01"))
        self.assertFalse(self.resolver.link(NEW_LOG, "master01"))
        self.assertFalse(self.resolver.link(NEW_LOG, "someone-else"))

        self.assertEqual(self.resolver.resolve(NEW_LOG), "master01")
        link_data = json.loads(self.paths.link_path(NEW_LOG).read_text(encoding="utf-8"))
        self.assertEqual(link_data["logId"], NEW_LOG)
        periods = json.loads(record_path.read_text(encoding="utf-8"))["workPeriods"]
        self.assertEqual(len(periods), 1)
        self.assertEqual(periods[0]["logId"], NEW_LOG)
        self.assertIsNone(periods[0]["endedAt"])

    def test_self_link_is_ignored(self) -> None:
        self.assertFalse(self.resolver.link(NEW_LOG, NEW_LOG[:8]))
        self.assertFalse(self.paths.link_path(NEW_LOG).exists())

    def test_resolution_follows_a_single_hop(self) -> None:
        self.resolver.link(OLD_LOG, "master01")
        self.resolver.link("master01-log-id", "grandmaster")

        self.assertEqual(self.resolver.resolve(OLD_LOG), "master01")

    def test_continuation_announcement_links_to_prior_log(self) -> None:
        self.resolver.link(OLD_LOG, "master01")
        summary = ParsedInteraction(
            timestamp="2026-02-16T10:00:00Z",
            userText=(
                "This session is being continued from a previous conversation that ran out of context. "
                f"Read the full transcript at: /home/dev/.claude/projects/-repo/{OLD_LOG}.jsonl"
            ),
            assistantText="Continuing.",
            isCompactSummary=True,
        )

        self.assertEqual(self.resolver.detect_continuation([summary], NEW_LOG), "master01")

    def test_continuation_ignores_references_to_itself_and_late_turns(self) -> None:
        own = ParsedInteraction(
            timestamp="2026-02-16T10:00:00Z",
            userText=f"continued from a previous conversation, see {NEW_LOG}.jsonl",
            assistantText="ok",
        )
        plain = ParsedInteraction(timestamp="2026-02-16T10:00:01Z", userText="hello", assistantText="hi")
        late = ParsedInteraction(
            timestamp="2026-02-16T10:00:05Z",
            userText=f"continued from a previous conversation, see {OLD_LOG}.jsonl",
            assistantText="ok",
        )

        self.assertIsNone(self.resolver.detect_continuation([own, plain, plain, late], NEW_LOG))

    def test_fresh_breadcrumb_links_eagerly_and_stays(self) -> None:
        self.resolver.link(OLD_LOG, "master01")
        self.resolver.write_breadcrumb(OLD_LOG, reason="compact")
        self.clock.now += timedelta(seconds=30)

        self.assertTrue(self.resolver.apply_breadcrumb(NEW_LOG))
        self.assertEqual(self.resolver.resolve(NEW_LOG), "master01")
        self.assertTrue(self.paths.breadcrumb_path.exists())

    def test_stale_breadcrumb_is_ignored_and_consumed(self) -> None:
        self.resolver.write_breadcrumb(OLD_LOG)
        self.clock.now += timedelta(minutes=10)

        self.assertFalse(self.resolver.apply_breadcrumb(NEW_LOG))
        self.assertFalse(self.resolver.consume_breadcrumb(NEW_LOG))
        self.assertFalse(self.paths.breadcrumb_path.exists())
        self.assertEqual(self.resolver.resolve(NEW_LOG), NEW_LOG[:8])

    def test_consume_breadcrumb_is_safe_to_repeat(self) -> None:
        record_path = self._write_record(OLD_LOG[:8])
        self.resolver.write_breadcrumb(OLD_LOG)

        self.assertTrue(self.resolver.consume_breadcrumb(NEW_LOG))
        self.assertFalse(self.resolver.consume_breadcrumb(NEW_LOG))

        self.assertEqual(self.resolver.resolve(NEW_LOG), OLD_LOG[:8])
        periods = json.loads(record_path.read_text(encoding="utf-8"))["workPeriods"]
        self.assertEqual([period["logId"] for period in periods], [NEW_LOG])

    def test_close_work_period_sets_end(self) -> None:
        record_path = self._write_record("master01")
        self.resolver.link(NEW_LOG, "master01")
        self.clock.now += timedelta(hours=1)

        self.assertTrue(self.resolver.close_work_period(NEW_LOG))

        periods = json.loads(record_path.read_text(encoding="utf-8"))["workPeriods"]
        self.assertEqual(periods[0]["endedAt"], "2026-02-16T11:00:00.000Z")


if __name__ == "__main__":
    unittest.main()
