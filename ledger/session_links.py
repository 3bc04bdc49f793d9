"""Map physical transcript logs onto canonical sessions.

Compaction makes the assistant start a new log file for what is logically the
same session. A link file `.ledger/session-links/<short-id>.json` records the
canonical (master) session for such a log. Resolution follows exactly one
link: if the master itself was linked onward later, that second hop is not
followed.
"""
from __future__ import annotations

import json
import logging
import re
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterable

from pydantic import ValidationError

from ledger import config
from ledger.date_utils import format_utc, parse_timestamp, utc_now
from ledger.models import ParsedInteraction, PendingLinkBreadcrumb, SessionLink
from ledger.project_paths import LedgerPaths, short_id
from ledger.session_records import SessionRecordStore

logger = logging.getLogger("ledger.links")

_CONTINUATION_SCAN_LIMIT = 3
_CONTINUATION_MARKER = re.compile(r"continued from a previous conversation", re.IGNORECASE)
_UUID = r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}"
_PRIOR_LOG_PATTERNS = (
    re.compile(rf"({_UUID})\.jsonl", re.IGNORECASE),
    re.compile(rf"session[ _-]?id[:=\s]+({_UUID})", re.IGNORECASE),
)


# End reasons after which no successor log starts in the same project.
_FINAL_END_REASONS = frozenset({"logout", "prompt_input_exit"})


def expects_successor(reason: str | None) -> bool:
    """Whether a session ending for `reason` may be continued by a new log.

    Unknown and missing reasons count as possible continuations.
    """
    return (reason or "").strip().lower() not in _FINAL_END_REASONS


def _read_json(path: Path) -> dict | None:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return None
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("Ignoring unreadable link data %s: %s", path, exc)
        return None
    return data if isinstance(data, dict) else None


def _write_json(path: Path, payload: dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, indent=2) + "\n", encoding="utf-8")


class SessionLinkResolver:
    def __init__(
        self,
        paths: LedgerPaths,
        records: SessionRecordStore | None = None,
        *,
        breadcrumb_max_age_seconds: int | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.paths = paths
        self.records = records or SessionRecordStore(paths)
        self.breadcrumb_max_age_seconds = (
            config.BREADCRUMB_MAX_AGE_SECONDS if breadcrumb_max_age_seconds is None else breadcrumb_max_age_seconds
        )
        self.clock = clock

    # ── Links ───────────────────────────────────────────────────────

    def get_link(self, log_id: str) -> SessionLink | None:
        data = _read_json(self.paths.link_path(log_id))
        if data is None:
            return None
        try:
            return SessionLink.model_validate(data)
        except ValidationError:
            logger.warning("Ignoring malformed link file for %s", log_id)
            return None

    def resolve(self, log_id: str) -> str:
        link = self.get_link(log_id)
        if link and link.masterSessionId:
            return link.masterSessionId
        return short_id(log_id)

    def link(self, log_id: str, canonical_session_id: str) -> bool:
        """Link `log_id` to `canonical_session_id`.

        Returns True only when a new link file was written. An existing link is
        never overwritten. The canonical record gets an open work period for
        this log either way, so a retry after a crash still completes it.
        """
        if not log_id or not canonical_session_id or canonical_session_id == short_id(log_id):
            return False

        created = False
        existing = self.get_link(log_id)
        if existing is None:
            link = SessionLink(
                masterSessionId=canonical_session_id,
                logId=log_id,
                linkedAt=format_utc(self.clock()),
            )
            _write_json(self.paths.link_path(log_id), link.model_dump())
            logger.info("Linked log %s to session %s", log_id, canonical_session_id)
            created = True
        elif existing.masterSessionId != canonical_session_id:
            logger.warning(
                "Log %s is already linked to %s; not relinking to %s",
                log_id,
                existing.masterSessionId,
                canonical_session_id,
            )
            return False

        self.records.append_work_period(canonical_session_id, log_id, format_utc(self.clock()))
        return created

    def delete_link(self, log_id: str) -> bool:
        path = self.paths.link_path(log_id)
        if not path.exists():
            return False
        path.unlink(missing_ok=True)
        return True

    def close_work_period(self, log_id: str) -> bool:
        return self.records.close_work_period(self.resolve(log_id), log_id, format_utc(self.clock()))

    # ── Continuation detection ──────────────────────────────────────

    def detect_continuation(self, interactions: Iterable[ParsedInteraction], current_log_id: str) -> str | None:
        """Find the canonical session a freshly started log continues, if any."""
        for index, interaction in enumerate(interactions):
            if index >= _CONTINUATION_SCAN_LIMIT:
                break
            text = interaction.userText or ""
            if not (interaction.isCompactSummary or _CONTINUATION_MARKER.search(text)):
                continue
            for pattern in _PRIOR_LOG_PATTERNS:
                for match in pattern.finditer(text):
                    prior_log_id = match.group(1).lower()
                    if prior_log_id == current_log_id.lower():
                        continue
                    canonical = self.resolve(prior_log_id)
                    logger.info("Log %s continues %s (canonical %s)", current_log_id, prior_log_id, canonical)
                    return canonical
        return None

    # ── Breadcrumbs ─────────────────────────────────────────────────

    def write_breadcrumb(self, log_id: str, reason: str = "") -> PendingLinkBreadcrumb:
        breadcrumb = PendingLinkBreadcrumb(
            logId=log_id,
            canonicalSessionId=self.resolve(log_id),
            reason=reason,
            createdAt=format_utc(self.clock()),
        )
        _write_json(self.paths.breadcrumb_path, breadcrumb.model_dump())
        return breadcrumb

    def read_breadcrumb(self) -> PendingLinkBreadcrumb | None:
        data = _read_json(self.paths.breadcrumb_path)
        if data is None:
            return None
        try:
            return PendingLinkBreadcrumb.model_validate(data)
        except ValidationError:
            logger.warning("Ignoring malformed breadcrumb %s", self.paths.breadcrumb_path)
            return None

    def _is_fresh(self, breadcrumb: PendingLinkBreadcrumb) -> bool:
        created = parse_timestamp(breadcrumb.createdAt)
        if created is None:
            return False
        age = (self.clock() - created).total_seconds()
        return 0 <= age <= self.breadcrumb_max_age_seconds

    def apply_breadcrumb(self, log_id: str) -> bool:
        """Eagerly link `log_id` to the session that just ended, if recent.

        The breadcrumb stays on disk; `consume_breadcrumb` removes it.
        """
        breadcrumb = self.read_breadcrumb()
        if breadcrumb is None or breadcrumb.logId == log_id or not self._is_fresh(breadcrumb):
            return False
        if self.get_link(log_id) is not None:
            return False
        return self.link(log_id, breadcrumb.canonicalSessionId)

    def consume_breadcrumb(self, log_id: str) -> bool:
        """Startup-time handler: apply a fresh breadcrumb, then remove it.

        Stale and malformed breadcrumbs are removed without linking.
        """
        breadcrumb = self.read_breadcrumb()
        linked = False
        if breadcrumb is not None and breadcrumb.logId != log_id and self._is_fresh(breadcrumb):
            linked = self.link(log_id, breadcrumb.canonicalSessionId)
        self.paths.breadcrumb_path.unlink(missing_ok=True)
        return linked
