"""Incremental transcript ingestion with pre-compaction backup merging."""
from __future__ import annotations

import json
import logging
import os
import time
from datetime import datetime
from pathlib import Path, PurePosixPath
from typing import Any, Callable

import aiosqlite

from ledger.date_utils import MIN_TIMESTAMP, format_utc, is_after, normalize_timestamp, parse_timestamp, utc_now
from ledger.db.repositories import (
    SqliteBackupRepository,
    SqliteFileIndexRepository,
    SqliteInteractionRepository,
    SqliteSaveStateRepository,
)
from ledger.git_info import GitInfo, get_git_info
from ledger.models import BackupResult, IngestResult, ParsedInteraction
from ledger.observability import record_ingestion, record_parser_failure, start_span
from ledger.parsers.transcript import parse_transcript_incremental
from ledger.project_paths import LedgerPaths
from ledger.session_links import SessionLinkResolver

logger = logging.getLogger("ledger.ingest")

# Tools whose detail argument is a file path.
_FILE_TOOLS = {"Read", "Edit", "MultiEdit", "Write", "NotebookEdit"}
_IGNORED_DIR_PREFIXES = (
    "node_modules/",
    "dist/",
    "build/",
    ".git/",
    ".ledger/",
    ".claude/",
    ".venv/",
    "__pycache__/",
)
_IGNORED_FILES = {"package-lock.json", "pnpm-lock.yaml", "yarn.lock", "poetry.lock", "uv.lock"}


def _latest_timestamp(interactions: list[ParsedInteraction]) -> str:
    latest: datetime | None = None
    latest_raw = MIN_TIMESTAMP
    for interaction in interactions:
        parsed = parse_timestamp(interaction.timestamp)
        if parsed is not None and (latest is None or parsed > latest):
            latest = parsed
            latest_raw = interaction.timestamp
    return latest_raw


def _relative_project_file(raw_path: str | None, project_dir: Path) -> str | None:
    """Project-relative POSIX path for an absolute path inside the project."""
    if not raw_path or not os.path.isabs(raw_path):
        return None
    try:
        relative = Path(os.path.normpath(raw_path)).relative_to(project_dir)
    except ValueError:
        return None
    token = PurePosixPath(*relative.parts).as_posix()
    if not token or token == ".":
        return None
    if token.startswith(_IGNORED_DIR_PREFIXES) or PurePosixPath(token).name in _IGNORED_FILES:
        return None
    return token


def _metadata(interaction: ParsedInteraction, interaction_id: str, *, include_command: bool) -> dict[str, Any]:
    metadata: dict[str, Any] = {
        "interactionId": interaction_id,
        "toolsUsed": interaction.toolsUsed,
        "toolDetails": [detail.model_dump() for detail in interaction.toolDetails],
    }
    if interaction.inPlanMode:
        metadata["inPlanMode"] = True
    if include_command and interaction.slashCommand:
        metadata["slashCommand"] = interaction.slashCommand
    if interaction.toolResults:
        metadata["toolResults"] = [result.model_dump(exclude_none=True) for result in interaction.toolResults]
    if interaction.progressEvents:
        metadata["progressEvents"] = [event.model_dump(exclude_none=True) for event in interaction.progressEvents]
    if interaction.isContinuation:
        metadata["isContinuation"] = True
    return metadata


class IngestService:
    """Moves newly appended transcript turns into the local store.

    Every call is safe to repeat: rows are replaced per log from the earliest
    timestamp being written, and the saved line offset only moves forward.
    """

    def __init__(
        self,
        db: aiosqlite.Connection,
        paths: LedgerPaths,
        *,
        resolver: SessionLinkResolver | None = None,
        git_info: GitInfo | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db = db
        self.paths = paths
        self.clock = clock
        self.resolver = resolver or SessionLinkResolver(paths, clock=clock)
        self.save_states = SqliteSaveStateRepository(db, clock=clock)
        self.interactions = SqliteInteractionRepository(db)
        self.backups = SqliteBackupRepository(db, clock=clock)
        self.file_index = SqliteFileIndexRepository(db)
        self._git_info = git_info

    @property
    def project_path(self) -> str:
        return str(self.paths.project_dir)

    @property
    def git_info(self) -> GitInfo:
        if self._git_info is None:
            self._git_info = get_git_info(self.project_path)
        return self._git_info

    async def ingest(self, log_id: str, log_path: str | Path) -> IngestResult:
        started = time.monotonic()
        with start_span("ledger.ingest", {"ledger.log_id": log_id, "ledger.project": self.project_path}):
            try:
                result = await self._ingest(log_id, Path(log_path))
            except Exception:
                record_ingestion("transcript", "error", (time.monotonic() - started) * 1000, project_id=self.project_path)
                raise
        outcome = "success" if result.insertedCount else "noop"
        record_ingestion("transcript", outcome, (time.monotonic() - started) * 1000, project_id=self.project_path)
        return result

    async def _ingest(self, log_id: str, log_path: Path) -> IngestResult:
        state = await self.save_states.get(log_id)
        first_time = state is None
        if first_time:
            self.resolver.apply_breadcrumb(log_id)

        offset = state.lastSavedLine if state else 0
        parsed = parse_transcript_incremental(log_path, offset)
        if parsed.skippedLines:
            logger.info("Skipped %s unreadable lines in %s", parsed.skippedLines, log_path)
            record_parser_failure("transcript", project_id=self.project_path, count=parsed.skippedLines)

        if first_time and self.resolver.get_link(log_id) is None:
            continued = self.resolver.detect_continuation(parsed.interactions, log_id)
            if continued:
                self.resolver.link(log_id, continued)

        canonical = self.resolver.resolve(log_id)
        if state is None:
            state = await self.save_states.get_or_create(log_id, canonical, self.project_path)
        if state.canonicalSessionId != canonical:
            await self.save_states.reassign(log_id, canonical)

        new_interactions = parsed.interactions
        if not new_interactions:
            if parsed.totalLines != state.lastSavedLine:
                await self.save_states.update(log_id, state.lastSavedTimestamp, parsed.totalLines)
            return IngestResult(
                success=True,
                sessionId=canonical,
                totalLines=parsed.totalLines,
                message="No new interactions",
            )

        backup = await self.backups.get_latest(canonical)
        last_backup_ts = _latest_timestamp(backup) if backup else MIN_TIMESTAMP
        truly_new = [item for item in new_interactions if is_after(item.timestamp, last_backup_ts)]
        carried: list[ParsedInteraction] = []
        if backup:
            stored_elsewhere = await self.interactions.turn_timestamps(canonical, exclude_log_id=log_id)
            for item in backup:
                timestamp = normalize_timestamp(item.timestamp)
                if timestamp and timestamp not in stored_elsewhere:
                    carried.append(item)
        merged = carried + truly_new

        try:
            replaced = 0
            inserted = 0
            if merged:
                window_start = min(normalize_timestamp(item.timestamp) for item in merged)
                replaced = await self.interactions.delete_window(log_id, window_start, commit=False)
                await self.file_index.delete_window(log_id, window_start, commit=False)
                turn_offset = await self.interactions.count_turns(canonical)
                rows, file_rows = self._build_rows(log_id, canonical, merged, turn_offset)
                inserted = await self.interactions.insert_many(rows, commit=False)
                await self.file_index.insert_many(file_rows, commit=False)
            if backup:
                await self.backups.delete_for_session(canonical, commit=False)

            last_timestamp = normalize_timestamp(merged[-1].timestamp) if merged else state.lastSavedTimestamp
            # Commits the whole batch together with the new offset.
            await self.save_states.update(log_id, last_timestamp, parsed.totalLines)
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            "Ingested %s rows for log %s (session %s, %s from backup, %s replaced)",
            inserted,
            log_id,
            canonical,
            len(carried),
            replaced,
        )
        return IngestResult(
            success=True,
            sessionId=canonical,
            insertedCount=inserted,
            replacedCount=replaced,
            totalLines=parsed.totalLines,
            mergedFromBackup=len(carried),
            message=f"Saved {inserted} messages ({len(merged)} turns)",
        )

    def _build_rows(
        self,
        log_id: str,
        session_id: str,
        interactions: list[ParsedInteraction],
        turn_offset: int,
    ) -> tuple[list[dict], list[dict]]:
        git = self.git_info
        now = format_utc(self.clock())
        base = {
            "session_id": session_id,
            "log_id": log_id,
            "project_path": self.project_path,
            "repository": git.repository,
            "repository_url": git.repository_url,
            "repository_root": git.repository_root,
            "owner": git.owner,
            "created_at": now,
        }
        rows: list[dict] = []
        file_rows: list[dict] = []
        seen_files: set[str] = set()

        for index, interaction in enumerate(interactions, start=turn_offset + 1):
            interaction_id = f"int-{index:03d}"
            timestamp = normalize_timestamp(interaction.timestamp)
            if interaction.userText:
                rows.append(
                    {
                        **base,
                        "role": "user",
                        "content": interaction.userText,
                        "thinking": None,
                        "metadata_json": json.dumps(_metadata(interaction, interaction_id, include_command=True)),
                        "timestamp": timestamp,
                        "is_compact_summary": 1 if interaction.isCompactSummary else 0,
                    }
                )
            if interaction.has_response:
                rows.append(
                    {
                        **base,
                        "role": "assistant",
                        "content": interaction.assistantText,
                        "thinking": interaction.thinkingText or None,
                        "metadata_json": json.dumps(_metadata(interaction, interaction_id, include_command=False)),
                        "timestamp": timestamp,
                        "is_compact_summary": 0,
                    }
                )

            touched: list[tuple[str | None, str | None]] = [
                (detail.detail, detail.name) for detail in interaction.toolDetails if detail.name in _FILE_TOOLS
            ]
            touched.extend((result.filePath, result.toolName) for result in interaction.toolResults)
            for raw_path, tool_name in touched:
                relative = _relative_project_file(raw_path, self.paths.project_dir)
                if relative is None or relative in seen_files:
                    continue
                seen_files.add(relative)
                file_rows.append(
                    {
                        "session_id": session_id,
                        "log_id": log_id,
                        "project_path": self.project_path,
                        "file_path": relative,
                        "tool_name": tool_name,
                        "timestamp": timestamp,
                        "created_at": now,
                    }
                )
        return rows, file_rows

    async def snapshot_backup(self, log_id: str, log_path: str | Path) -> BackupResult:
        """Store everything parsed from the log as the session's latest backup."""
        canonical = self.resolver.resolve(log_id)
        parsed = parse_transcript_incremental(Path(log_path), 0)
        if not parsed.interactions:
            return BackupResult(success=True, sessionId=canonical, message="Nothing to back up")
        await self.backups.save(canonical, self.project_path, self.git_info.owner, parsed.interactions)
        logger.info("Backed up %s interactions for session %s", len(parsed.interactions), canonical)
        return BackupResult(
            success=True,
            sessionId=canonical,
            interactionCount=len(parsed.interactions),
            message=f"Backed up {len(parsed.interactions)} interactions",
        )
