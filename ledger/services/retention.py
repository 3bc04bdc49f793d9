"""Session finalization and retention of uncommitted data.

A session ends as `complete` when its record carries a summary. Otherwise it
becomes `uncommitted` and the cleanup policy decides what happens next:

- `immediate`: delete now, unless the session was committed meanwhile, in
  which case the record is reconciled to `complete`.
- `grace`: keep until `cleanupAfter`; a later sweep deletes it if it is still
  uncommitted and summary-less.
- `never`: keep indefinitely.

Every destructive step re-checks the commit flag and the summary right before
deleting, because another process may have committed the session since the
decision was made.
"""
from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable

import aiosqlite

from ledger.date_utils import days_from, format_utc, parse_timestamp, utc_now
from ledger.db.repositories import (
    SqliteBackupRepository,
    SqliteFileIndexRepository,
    SqliteInteractionRepository,
    SqliteSaveStateRepository,
)
from ledger.errors import InvalidInputError
from ledger.models import (
    CleanupResult,
    CommitResult,
    FinalizeResult,
    IngestResult,
    RetentionState,
    StaleCleanupResult,
)
from ledger.observability import record_cleanup, start_span
from ledger.project_paths import LedgerPaths
from ledger.services.ingest import IngestService
from ledger.session_links import SessionLinkResolver, expects_successor
from ledger.session_records import TRANSIENT_FIELDS, SessionRecordStore, has_summary

logger = logging.getLogger("ledger.retention")

POLICIES = ("immediate", "grace", "never")


def _mark_complete(now: str) -> Callable[[dict[str, Any]], None]:
    def _apply(record: dict[str, Any]) -> None:
        record["status"] = "complete"
        record["endedAt"] = record.get("endedAt") or now
        record["updatedAt"] = now
        record.pop("uncommitted", None)
        for field in TRANSIENT_FIELDS:
            record.pop(field, None)

    return _apply


def _mark_uncommitted(now: str, policy: str, cleanup_after: str | None) -> Callable[[dict[str, Any]], None]:
    def _apply(record: dict[str, Any]) -> None:
        record["status"] = "uncommitted"
        record["endedAt"] = now
        record["updatedAt"] = now
        record["uncommitted"] = {"endedAt": now, "policy": policy, "cleanupAfter": cleanup_after}
        for field in TRANSIENT_FIELDS:
            record.pop(field, None)

    return _apply


def _uncommitted_info(record: dict[str, Any] | None) -> dict[str, Any]:
    if not record or not isinstance(record.get("uncommitted"), dict):
        return {}
    return record["uncommitted"]


class RetentionService:
    def __init__(
        self,
        db: aiosqlite.Connection,
        paths: LedgerPaths,
        *,
        resolver: SessionLinkResolver | None = None,
        records: SessionRecordStore | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db = db
        self.paths = paths
        self.clock = clock
        self.records = records or SessionRecordStore(paths)
        self.resolver = resolver or SessionLinkResolver(paths, self.records, clock=clock)
        self.save_states = SqliteSaveStateRepository(db, clock=clock)
        self.interactions = SqliteInteractionRepository(db)
        self.backups = SqliteBackupRepository(db, clock=clock)
        self.file_index = SqliteFileIndexRepository(db)

    @property
    def project_path(self) -> str:
        return str(self.paths.project_dir)

    async def commit(self, log_id: str) -> CommitResult:
        canonical = self.resolver.resolve(log_id)
        await self.save_states.mark_committed(log_id, canonical, self.project_path)
        logger.info("Committed log %s (session %s)", log_id, canonical)
        return CommitResult(success=True, sessionId=canonical, message="Session committed")

    async def _purge_log(self, log_id: str, canonical_session_id: str) -> int:
        """Delete one log's data, and the session's shared data if it was the last log."""
        count = await self.interactions.delete_for_log(log_id, commit=False)
        await self.save_states.delete(log_id, commit=False)
        remaining = await self.save_states.list_for_session(canonical_session_id)
        if not remaining:
            await self.backups.delete_for_session(canonical_session_id, commit=False)
            await self.file_index.delete_for_session(canonical_session_id, commit=False)
        await self.db.commit()

        if not remaining:
            self.records.delete(canonical_session_id)
        self.resolver.delete_link(log_id)
        record_cleanup("interactions", count, project_id=self.project_path)
        logger.info("Purged log %s (%s rows, session %s)", log_id, count, canonical_session_id)
        return count

    async def cleanup_uncommitted(self, log_id: str) -> CleanupResult:
        state = await self.save_states.get(log_id)
        if state is not None and state.isCommitted:
            return CleanupResult(success=True, deleted=False, message="Session is committed")
        canonical = state.canonicalSessionId if state else self.resolver.resolve(log_id)
        if has_summary(self.records.load(canonical)):
            return CleanupResult(success=True, deleted=False, message="Session has a summary")

        count = await self._purge_log(log_id, canonical)
        return CleanupResult(success=True, deleted=True, count=count, message=f"Deleted {count} interactions")

    async def cleanup_stale(self, grace_days: float) -> StaleCleanupResult:
        days = max(1, math.floor(grace_days))
        now = self.clock()
        cutoff = format_utc(now - timedelta(days=days))
        deleted_sessions = 0
        deleted_interactions = 0

        with start_span("ledger.cleanup_stale", {"ledger.grace_days": days}):
            for candidate in await self.save_states.list_stale_uncommitted(cutoff):
                try:
                    current = await self.save_states.get(candidate.logId)
                    if current is None or current.isCommitted:
                        continue
                    canonical = current.canonicalSessionId
                    record = self.records.load(canonical)
                    if has_summary(record):
                        if record and record.get("status") == "uncommitted":
                            self.records.patch(canonical, _mark_complete(format_utc(now)))
                        continue
                    info = _uncommitted_info(record)
                    if info.get("policy") == "never":
                        continue
                    cleanup_after = parse_timestamp(info.get("cleanupAfter"))
                    if cleanup_after is not None and cleanup_after > now:
                        continue
                    deleted_interactions += await self._purge_log(current.logId, canonical)
                    deleted_sessions += 1
                except (aiosqlite.Error, OSError) as exc:
                    logger.warning("Stale cleanup skipped log %s: %s", candidate.logId, exc)

        record_cleanup("sessions", deleted_sessions, project_id=self.project_path)
        return StaleCleanupResult(
            success=True,
            deletedSessions=deleted_sessions,
            deletedInteractions=deleted_interactions,
            message=f"Removed {deleted_sessions} stale sessions",
        )

    async def finalize(
        self,
        log_id: str,
        log_path: str | Path | None,
        *,
        policy: str,
        grace_days: float,
        reason: str = "",
    ) -> FinalizeResult:
        if policy not in POLICIES:
            raise InvalidInputError(f"Unknown cleanup policy: {policy}")

        logger.info("Finalizing log %s (%s)", log_id, RetentionState.FINALIZING.value)
        ingest_result: IngestResult | None = None
        if log_path is not None and Path(log_path).is_file():
            try:
                ingest_result = await IngestService(
                    self.db, self.paths, resolver=self.resolver, clock=self.clock
                ).ingest(log_id, log_path)
            except Exception as exc:  # noqa: BLE001
                logger.warning("Final ingest for %s failed: %s", log_id, exc)
                ingest_result = IngestResult(success=False, message=str(exc))

        if expects_successor(reason):
            try:
                self.resolver.write_breadcrumb(log_id, reason)
            except OSError as exc:
                logger.warning("Could not write continuation breadcrumb for %s: %s", log_id, exc)

        canonical = self.resolver.resolve(log_id)
        self.resolver.close_work_period(log_id)
        result = FinalizeResult(success=True, sessionId=canonical, ingest=ingest_result)
        await self._settle(result, log_id, canonical, policy=policy, grace_days=grace_days)

        # The sweep covers the whole project, whatever became of this session.
        if policy == "grace":
            result.staleCleanup = await self.cleanup_stale(grace_days)
        return result

    async def _settle(
        self,
        result: FinalizeResult,
        log_id: str,
        canonical: str,
        *,
        policy: str,
        grace_days: float,
    ) -> None:
        now_dt = self.clock()
        now = format_utc(now_dt)
        record = self.records.load(canonical)
        if record is None:
            result.state = RetentionState.NO_RECORD
            result.message = "No session record found"
            return

        if has_summary(record):
            self.records.patch(canonical, _mark_complete(now))
            result.state = RetentionState.COMPLETE
            result.message = "Session complete"
            return

        cleanup_after = days_from(now_dt, max(1, math.floor(grace_days))) if policy == "grace" else None
        self.records.patch(canonical, _mark_uncommitted(now, policy, cleanup_after))
        result.state = RetentionState.UNCOMMITTED
        result.message = f"Session uncommitted (policy={policy})"

        if policy == "immediate":
            cleanup = await self.cleanup_uncommitted(log_id)
            result.cleanup = cleanup
            if cleanup.deleted:
                result.state = RetentionState.DELETED
                result.message = cleanup.message
            else:
                self.records.patch(canonical, _mark_complete(now))
                result.state = RetentionState.RECONCILED_COMPLETE
                result.message = f"Session kept: {cleanup.message.lower()}"
        elif policy == "grace":
            result.state = RetentionState.GRACE_PENDING
