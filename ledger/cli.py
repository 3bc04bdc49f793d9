#!/usr/bin/env python3
"""Command-line entry point for ledger operations.

Usage:
  ledger ingest --session <id> --transcript <path> [--project <dir>]
  ledger backup --session <id> --transcript <path> [--project <dir>]
  ledger commit --session <id> [--project <dir>]
  ledger cleanup --session <id> [--project <dir>]
  ledger cleanup-stale [--grace-days 7] [--project <dir>]
  ledger finalize --session <id> [--transcript <path>] [--policy grace] [--grace-days 7]
  ledger session-start --session <id> [--project <dir>]

Hooks can pass their JSON payload on stdin with --hook-input instead of
--session/--transcript/--project. The result is printed as JSON on stdout;
logs go to stderr.
"""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from typing import Any, Sequence

from ledger import config, observability, operations
from ledger.models import OperationResult

logger = logging.getLogger("ledger.cli")

# Commands whose failure must not fail the calling hook.
_ALWAYS_SUCCEED = {"cleanup", "cleanup-stale", "finalize", "session-start"}


def _read_hook_input() -> dict[str, Any]:
    raw = sys.stdin.read()
    if not raw.strip():
        return {}
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        logger.warning("Ignoring malformed hook input: %s", exc)
        return {}
    return payload if isinstance(payload, dict) else {}


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="ledger", description="Incremental transcript ledger")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log progress at INFO level")
    subparsers = parser.add_subparsers(dest="command", required=True)

    def add(name: str, help_text: str, *, transcript: bool = False, session: bool = True) -> argparse.ArgumentParser:
        sub = subparsers.add_parser(name, help=help_text)
        if session:
            sub.add_argument("--session", default="", help="Transcript log (session) id")
            sub.add_argument("--hook-input", action="store_true", help="Read the hook JSON payload from stdin")
        if transcript:
            sub.add_argument("--transcript", default="", help="Path to the JSONL transcript")
        sub.add_argument("--project", default="", help="Project directory (default: current directory)")
        return sub

    add("ingest", "Save new interactions from the transcript", transcript=True)
    add("backup", "Snapshot interactions before compaction", transcript=True)
    add("commit", "Mark the session as committed")
    add("cleanup", "Delete an uncommitted session's data")
    stale = add("cleanup-stale", "Delete uncommitted sessions past the grace period", session=False)
    stale.add_argument("--grace-days", type=float, default=None)
    finalize = add("finalize", "Session-end handling and retention", transcript=True)
    finalize.add_argument("--policy", choices=config.CLEANUP_POLICIES, default=None)
    finalize.add_argument("--grace-days", type=float, default=None)
    finalize.add_argument("--reason", default="")
    add("session-start", "Session-start handling (continuation links)")
    return parser


async def _run(args: argparse.Namespace) -> OperationResult:
    hook: dict[str, Any] = _read_hook_input() if getattr(args, "hook_input", False) else {}
    session_id = getattr(args, "session", "") or hook.get("session_id", "")
    transcript = getattr(args, "transcript", "") or hook.get("transcript_path", "")
    project = args.project or hook.get("cwd") or os.getcwd()

    if args.command == "ingest":
        return await operations.ingest(session_id, transcript, project)
    if args.command == "backup":
        return await operations.backup(session_id, transcript, project)
    if args.command == "commit":
        return await operations.commit(session_id, project)
    if args.command == "cleanup":
        return await operations.cleanup(session_id, project)
    if args.command == "cleanup-stale":
        return await operations.cleanup_stale(project, args.grace_days)
    if args.command == "finalize":
        return await operations.finalize(
            session_id,
            transcript or None,
            project,
            policy=args.policy,
            grace_days=args.grace_days,
            reason=args.reason or hook.get("reason", ""),
        )
    return await operations.session_start(session_id, project)


def main(argv: Sequence[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    level = logging.INFO if args.verbose else getattr(logging, str(config.LOG_LEVEL).upper(), logging.WARNING)
    logging.basicConfig(level=level, stream=sys.stderr, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    observability.initialize()
    try:
        result = asyncio.run(_run(args))
    finally:
        observability.shutdown()

    print(result.model_dump_json())
    if result.success or args.command in _ALWAYS_SUCCEED:
        return 0
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
