"""Read and patch the human-readable per-session JSON records.

Records live under `.ledger/sessions/YYYY/MM/<session-id>.json` and are
created by other tooling. This module only finds, patches and removes them.
"""
from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Callable

from ledger.models import WorkPeriod
from ledger.project_paths import LedgerPaths

logger = logging.getLogger("ledger.records")

# Fields that only matter while a session is live.
TRANSIENT_FIELDS = ("interactions", "preCompactBackups")


def has_summary(record: dict[str, Any] | None) -> bool:
    if not record:
        return False
    summary = record.get("summary")
    if isinstance(summary, str):
        return bool(summary.strip())
    return bool(summary)


class SessionRecordStore:
    def __init__(self, paths: LedgerPaths):
        self.paths = paths

    def find(self, session_id: str) -> Path | None:
        if not session_id or not self.paths.sessions_dir.is_dir():
            return None
        for candidate in sorted(self.paths.sessions_dir.rglob(f"{session_id}.json")):
            if candidate.is_file():
                return candidate
        return None

    def load(self, session_id: str) -> dict[str, Any] | None:
        path = self.find(session_id)
        if path is None:
            return None
        return self._read(path)

    def _read(self, path: Path) -> dict[str, Any] | None:
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Ignoring unreadable session record %s: %s", path, exc)
            return None
        if not isinstance(data, dict):
            logger.warning("Ignoring session record %s: expected an object", path)
            return None
        return data

    def _write(self, path: Path, data: dict[str, Any]) -> None:
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.stem}.", suffix=".tmp", dir=str(path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(data, handle, indent=2, ensure_ascii=False)
                handle.write("\n")
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def patch(self, session_id: str, mutate: Callable[[dict[str, Any]], None]) -> dict[str, Any] | None:
        """Apply `mutate` to the record in place and write it back.

        Returns the patched record, or None when no readable record exists.
        """
        path = self.find(session_id)
        if path is None:
            return None
        data = self._read(path)
        if data is None:
            return None
        mutate(data)
        self._write(path, data)
        return data

    def delete(self, session_id: str) -> bool:
        path = self.find(session_id)
        if path is None:
            return False
        path.unlink(missing_ok=True)
        logger.info("Deleted session record %s", path)
        return True

    def append_work_period(self, session_id: str, log_id: str, started_at: str) -> bool:
        """Open a work period for `log_id` unless one is already open."""
        appended = False

        def _append(record: dict[str, Any]) -> None:
            nonlocal appended
            periods = record.get("workPeriods")
            if not isinstance(periods, list):
                periods = []
            if any(
                isinstance(period, dict)
                and period.get("logId") == log_id
                and not period.get("endedAt")
                for period in periods
            ):
                return
            periods.append(WorkPeriod(logId=log_id, startedAt=started_at).model_dump())
            record["workPeriods"] = periods
            appended = True

        self.patch(session_id, _append)
        return appended

    def close_work_period(self, session_id: str, log_id: str, ended_at: str) -> bool:
        closed = False

        def _close(record: dict[str, Any]) -> None:
            nonlocal closed
            for period in record.get("workPeriods") or []:
                if isinstance(period, dict) and period.get("logId") == log_id and not period.get("endedAt"):
                    period["endedAt"] = ended_at
                    closed = True

        self.patch(session_id, _close)
        return closed
