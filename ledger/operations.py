"""Public entry points invoked by the assistant's hook triggers.

Each operation opens its own database connection, runs one service call and
returns a result object. None of them raise: failures come back as
`success=False` with a message, so a hook dispatcher can always report
something useful.
"""
from __future__ import annotations

import logging
from pathlib import Path

from ledger.config import RetentionSettings, load_project_settings
from ledger.db.connection import open_database
from ledger.errors import InvalidInputError
from ledger.models import (
    BackupResult,
    CleanupResult,
    CommitResult,
    FinalizeResult,
    IngestResult,
    RetentionState,
    SessionStartResult,
    StaleCleanupResult,
)
from ledger.project_paths import LedgerPaths
from ledger.services.ingest import IngestService
from ledger.services.retention import POLICIES, RetentionService
from ledger.session_links import SessionLinkResolver

logger = logging.getLogger("ledger.operations")


def _project(project_dir: str | Path | None) -> LedgerPaths:
    if not project_dir:
        raise InvalidInputError("project directory is required")
    paths = LedgerPaths.for_project(project_dir)
    if not paths.project_dir.is_dir():
        raise InvalidInputError(f"Project directory not found: {paths.project_dir}")
    return paths


def _transcript(log_path: str | Path | None) -> Path:
    if not log_path:
        raise InvalidInputError("transcript path is required")
    path = Path(log_path)
    if not path.is_file():
        raise InvalidInputError(f"Transcript not found: {path}")
    return path


def _require_log_id(log_id: str | None) -> str:
    token = (log_id or "").strip()
    if not token:
        raise InvalidInputError("session id is required")
    return token


def _resolver(paths: LedgerPaths, settings: RetentionSettings) -> SessionLinkResolver:
    return SessionLinkResolver(paths, breadcrumb_max_age_seconds=settings.breadcrumb_max_age_seconds)


async def ingest(log_id: str, log_path: str | Path, project_dir: str | Path) -> IngestResult:
    """Persist interactions appended to the transcript since the last save."""
    try:
        log_id = _require_log_id(log_id)
        transcript = _transcript(log_path)
        paths = _project(project_dir)
        settings = load_project_settings(paths.project_dir)
        async with open_database(paths.db_path) as db:
            return await IngestService(db, paths, resolver=_resolver(paths, settings)).ingest(log_id, transcript)
    except InvalidInputError as exc:
        return IngestResult(success=False, message=str(exc))
    except Exception as exc:  # noqa: BLE001
        logger.exception("Ingest failed for %s", log_id)
        return IngestResult(success=False, message=f"Ingest failed: {exc}")


async def backup(log_id: str, log_path: str | Path, project_dir: str | Path) -> BackupResult:
    """Snapshot the session's interactions before the assistant compacts it."""
    try:
        log_id = _require_log_id(log_id)
        transcript = _transcript(log_path)
        paths = _project(project_dir)
        settings = load_project_settings(paths.project_dir)
        async with open_database(paths.db_path) as db:
            service = IngestService(db, paths, resolver=_resolver(paths, settings))
            return await service.snapshot_backup(log_id, transcript)
    except InvalidInputError as exc:
        return BackupResult(success=False, message=str(exc))
    except Exception as exc:  # noqa: BLE001
        logger.exception("Backup failed for %s", log_id)
        return BackupResult(success=False, message=f"Backup failed: {exc}")


async def commit(log_id: str, project_dir: str | Path) -> CommitResult:
    """Flag a log as committed so retention never deletes it."""
    try:
        log_id = _require_log_id(log_id)
        paths = _project(project_dir)
        settings = load_project_settings(paths.project_dir)
        async with open_database(paths.db_path) as db:
            return await RetentionService(db, paths, resolver=_resolver(paths, settings)).commit(log_id)
    except InvalidInputError as exc:
        return CommitResult(success=False, message=str(exc))
    except Exception as exc:  # noqa: BLE001
        logger.exception("Commit failed for %s", log_id)
        return CommitResult(success=False, message=f"Commit failed: {exc}")


async def cleanup(log_id: str, project_dir: str | Path) -> CleanupResult:
    """Delete one log's data unless it was committed or summarized."""
    try:
        log_id = _require_log_id(log_id)
        paths = _project(project_dir)
        if not paths.db_path.exists():
            return CleanupResult(success=True, message="No data yet")
        settings = load_project_settings(paths.project_dir)
        async with open_database(paths.db_path) as db:
            service = RetentionService(db, paths, resolver=_resolver(paths, settings))
            return await service.cleanup_uncommitted(log_id)
    except InvalidInputError as exc:
        return CleanupResult(success=False, message=str(exc))
    except Exception as exc:  # noqa: BLE001
        logger.exception("Cleanup failed for %s", log_id)
        return CleanupResult(success=False, message=f"Cleanup failed: {exc}")


async def cleanup_stale(project_dir: str | Path, grace_days: float | None = None) -> StaleCleanupResult:
    """Sweep uncommitted logs whose last update is older than the grace period."""
    try:
        paths = _project(project_dir)
        if not paths.db_path.exists():
            return StaleCleanupResult(success=True, message="No data yet")
        settings = load_project_settings(paths.project_dir)
        days = settings.grace_days if grace_days is None else grace_days
        async with open_database(paths.db_path) as db:
            service = RetentionService(db, paths, resolver=_resolver(paths, settings))
            return await service.cleanup_stale(days)
    except InvalidInputError as exc:
        return StaleCleanupResult(success=False, message=str(exc))
    except Exception as exc:  # noqa: BLE001
        logger.exception("Stale cleanup failed in %s", project_dir)
        return StaleCleanupResult(success=False, message=f"Stale cleanup failed: {exc}")


async def finalize(
    log_id: str,
    log_path: str | Path | None,
    project_dir: str | Path,
    *,
    policy: str | None = None,
    grace_days: float | None = None,
    reason: str = "",
) -> FinalizeResult:
    """Session-end handler: final save, then apply the retention policy."""
    try:
        log_id = _require_log_id(log_id)
        paths = _project(project_dir)
        settings = load_project_settings(paths.project_dir)
        chosen_policy = (policy or settings.policy).strip().lower()
        if chosen_policy not in POLICIES:
            raise InvalidInputError(f"Unknown cleanup policy: {chosen_policy}")
        days = settings.grace_days if grace_days is None else grace_days
        async with open_database(paths.db_path) as db:
            service = RetentionService(db, paths, resolver=_resolver(paths, settings))
            return await service.finalize(log_id, log_path, policy=chosen_policy, grace_days=days, reason=reason)
    except InvalidInputError as exc:
        return FinalizeResult(success=False, state=RetentionState.ACTIVE, message=str(exc))
    except Exception as exc:  # noqa: BLE001
        logger.exception("Finalize failed for %s", log_id)
        return FinalizeResult(success=False, state=RetentionState.ACTIVE, message=f"Finalize failed: {exc}")


async def session_start(log_id: str, project_dir: str | Path) -> SessionStartResult:
    """Startup handler: consume a pending continuation breadcrumb."""
    try:
        log_id = _require_log_id(log_id)
        paths = _project(project_dir)
        settings = load_project_settings(paths.project_dir)
        resolver = _resolver(paths, settings)
        linked = resolver.consume_breadcrumb(log_id)
        return SessionStartResult(
            success=True,
            sessionId=resolver.resolve(log_id),
            linked=linked,
            message="Linked to previous session" if linked else "No pending link",
        )
    except InvalidInputError as exc:
        return SessionStartResult(success=False, message=str(exc))
    except Exception as exc:  # noqa: BLE001
        logger.exception("Session start handling failed for %s", log_id)
        return SessionStartResult(success=False, message=f"Session start failed: {exc}")
