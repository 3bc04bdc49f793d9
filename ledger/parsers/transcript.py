"""Parse an append-only JSONL transcript into conversational interactions.

Parsing is incremental: the caller passes the last line it already saved and
only lines past that offset are decoded. Every line is still counted so the
returned `totalLines` can become the next offset.
"""
from __future__ import annotations

import bisect
import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable

from ledger.date_utils import MAX_TIMESTAMP, parse_timestamp
from ledger.errors import TranscriptReadError
from ledger.models import (
    ParsedInteraction,
    ProgressEvent,
    ToolDetail,
    ToolResultMeta,
    TranscriptParseResult,
)
from ledger.parsers.correlation import MinuteBucketCorrelator, TurnCorrelator

logger = logging.getLogger("ledger.parser")

_COMMAND_NAME_PATTERN = re.compile(r"<command-name>([^<]+)</command-name>")
_RESULT_PATH_PATTERN = re.compile(r"(?:^|\s)((?:/|\./)\S+\.\w+)\b")
_LOCAL_COMMAND_PREFIXES = ("<local-command-stdout>", "<local-command-caveat>")
_PLAN_MODE_TOOLS = {"EnterPlanMode": True, "ExitPlanMode": False}
_IGNORED_PROGRESS_TYPES = {"hook_progress"}

# Which tool_use input field is worth remembering for each tool.
_TOOL_DETAIL_KEYS: dict[str, str] = {
    "Bash": "command",
    "Read": "file_path",
    "Edit": "file_path",
    "MultiEdit": "file_path",
    "Write": "file_path",
    "NotebookEdit": "notebook_path",
    "Glob": "pattern",
    "Grep": "pattern",
}
_FILE_INPUT_KEYS = ("file_path", "notebook_path")

_MAX_DT = parse_timestamp(MAX_TIMESTAMP)


@dataclass
class _UserTurn:
    at: datetime
    timestamp: str
    text: str
    is_compact_summary: bool


@dataclass
class _AssistantEntry:
    at: datetime
    timestamp: str
    thinking: list[str] = field(default_factory=list)
    text: list[str] = field(default_factory=list)
    tool_details: list[ToolDetail] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.thinking or self.text or self.tool_details)


def _optional_str(value: Any) -> str | None:
    return value if isinstance(value, str) else None


def _message_content(entry: dict[str, Any]) -> Any:
    message = entry.get("message")
    if not isinstance(message, dict):
        return None
    return message.get("content")


def _tool_detail(name: str, tool_input: Any) -> ToolDetail:
    key = _TOOL_DETAIL_KEYS.get(name)
    value = tool_input.get(key) if key and isinstance(tool_input, dict) else None
    return ToolDetail(name=name, detail=value if isinstance(value, str) else None)


def _tool_result_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if content is None:
        return ""
    try:
        return json.dumps(content)
    except (TypeError, ValueError):
        return str(content)


def _is_user_turn(entry: dict[str, Any]) -> bool:
    if entry.get("type") != "user" or entry.get("isMeta") is True:
        return False
    message = entry.get("message")
    if not isinstance(message, dict) or message.get("role") != "user":
        return False
    content = message.get("content")
    if not isinstance(content, str):
        return False
    return not content.startswith(_LOCAL_COMMAND_PREFIXES)


def _read_entries(path: Path, last_saved_line: int) -> tuple[list[tuple[datetime, dict[str, Any]]], int, int]:
    entries: list[tuple[datetime, dict[str, Any]]] = []
    total_lines = 0
    skipped = 0
    try:
        with path.open("r", encoding="utf-8", errors="replace") as handle:
            for line_number, line in enumerate(handle, start=1):
                total_lines = line_number
                if line_number <= last_saved_line:
                    continue
                line = line.strip()
                if not line:
                    continue
                try:
                    entry = json.loads(line)
                except json.JSONDecodeError:
                    skipped += 1
                    logger.debug("Skipping malformed line %s in %s", line_number, path)
                    continue
                if not isinstance(entry, dict):
                    skipped += 1
                    continue
                if entry.get("type") not in {"user", "assistant", "progress"}:
                    continue
                at = parse_timestamp(entry.get("timestamp"))
                if at is None:
                    skipped += 1
                    logger.debug("Skipping line %s in %s: unparsable timestamp", line_number, path)
                    continue
                entries.append((at, entry))
    except OSError as exc:
        raise TranscriptReadError(f"Cannot read transcript {path}: {exc}") from exc
    return entries, total_lines, skipped


def parse_transcript_incremental(
    path: str | Path,
    last_saved_line: int = 0,
    *,
    correlator_factory: Callable[[], TurnCorrelator[Any]] = MinuteBucketCorrelator,
) -> TranscriptParseResult:
    """Parse interactions recorded after `last_saved_line`.

    Raises TranscriptReadError if the file cannot be read. Individual bad lines
    are skipped and counted in `skippedLines`.
    """
    log_path = Path(path)
    entries, total_lines, skipped = _read_entries(log_path, max(0, int(last_saved_line)))

    tool_names: dict[str, str] = {}
    tool_files: dict[str, str] = {}
    plan_markers: list[tuple[datetime, bool]] = []
    nested_plan_mode = False
    in_plan = False

    user_turns: list[_UserTurn] = []
    assistant_entries: list[_AssistantEntry] = []
    result_correlator = correlator_factory()
    progress_correlator = correlator_factory()

    for at, entry in entries:
        entry_type = entry.get("type")
        timestamp = str(entry.get("timestamp"))
        content = _message_content(entry)

        if entry_type == "assistant" and isinstance(content, list):
            parsed = _AssistantEntry(at=at, timestamp=timestamp)
            for block in content:
                if not isinstance(block, dict):
                    continue
                block_type = block.get("type")
                if block_type == "thinking" and block.get("thinking"):
                    parsed.thinking.append(str(block["thinking"]))
                elif block_type == "text" and block.get("text"):
                    parsed.text.append(str(block["text"]))
                elif block_type == "tool_use" and block.get("name"):
                    name = str(block["name"])
                    tool_input = block.get("input")
                    tool_id = block.get("id")
                    if isinstance(tool_id, str):
                        tool_names[tool_id] = name
                        if isinstance(tool_input, dict):
                            for key in _FILE_INPUT_KEYS:
                                if isinstance(tool_input.get(key), str):
                                    tool_files[tool_id] = tool_input[key]
                                    break
                    if name in _PLAN_MODE_TOOLS:
                        entering = _PLAN_MODE_TOOLS[name]
                        if entering and in_plan:
                            nested_plan_mode = True
                            logger.warning(
                                "Nested plan-mode entry at %s in %s; plan-mode flags for later turns are unreliable",
                                timestamp,
                                log_path,
                            )
                        in_plan = entering
                        plan_markers.append((at, entering))
                    parsed.tool_details.append(_tool_detail(name, tool_input))
            if not parsed.is_empty:
                assistant_entries.append(parsed)

        elif entry_type == "user":
            if isinstance(content, list):
                for block in content:
                    if not isinstance(block, dict) or block.get("type") != "tool_result":
                        continue
                    tool_use_id = block.get("tool_use_id")
                    if not isinstance(tool_use_id, str):
                        continue
                    text = _tool_result_text(block.get("content"))
                    line_count = text.count("\n") + 1 if text else 0
                    file_path = tool_files.get(tool_use_id)
                    if not file_path:
                        match = _RESULT_PATH_PATTERN.search(text)
                        file_path = match.group(1) if match else None
                    result_correlator.add(
                        timestamp,
                        ToolResultMeta(
                            toolUseId=tool_use_id,
                            toolName=tool_names.get(tool_use_id),
                            success=not bool(block.get("is_error")),
                            contentLength=len(text),
                            lineCount=line_count if line_count > 1 else None,
                            filePath=file_path,
                        ),
                    )
            elif _is_user_turn(entry):
                user_turns.append(
                    _UserTurn(
                        at=at,
                        timestamp=timestamp,
                        text=content,
                        is_compact_summary=bool(entry.get("isCompactSummary")),
                    )
                )

        elif entry_type == "progress":
            data = entry.get("data")
            if not isinstance(data, dict):
                continue
            progress_type = data.get("type")
            if not isinstance(progress_type, str) or progress_type in _IGNORED_PROGRESS_TYPES:
                continue
            event = ProgressEvent(
                type=progress_type,
                timestamp=timestamp,
                hookEvent=_optional_str(data.get("hookEvent")),
                hookName=_optional_str(data.get("hookName")),
                toolName=_optional_str(data.get("toolName")),
            )
            if progress_type == "agent_progress":
                event.prompt = _optional_str(data.get("prompt"))
                event.agentId = _optional_str(data.get("agentId"))
            progress_correlator.add(timestamp, event)

    def plan_mode_at(moment: datetime) -> bool:
        active = False
        for marker_at, entering in plan_markers:
            if marker_at > moment:
                break
            active = entering
        return active

    def build(timestamp: str, at: datetime, responses: list[_AssistantEntry], **fields: Any) -> ParsedInteraction:
        tools_used: list[str] = []
        tool_details: list[ToolDetail] = []
        for response in responses:
            for detail in response.tool_details:
                tool_details.append(detail)
                if detail.name not in tools_used:
                    tools_used.append(detail.name)
        return ParsedInteraction(
            timestamp=timestamp,
            assistantText="\n".join(text for response in responses for text in response.text),
            thinkingText="\n".join(text for response in responses for text in response.thinking),
            toolsUsed=tools_used,
            toolDetails=tool_details,
            toolResults=result_correlator.for_turn(timestamp),
            progressEvents=progress_correlator.for_turn(timestamp),
            inPlanMode=plan_mode_at(at),
            **fields,
        )

    # Stable sort keeps file order among equal timestamps.
    assistant_entries.sort(key=lambda item: item.at)
    assistant_times = [item.at for item in assistant_entries]
    interactions: list[ParsedInteraction] = []

    first_turn_at = user_turns[0].at if user_turns else _MAX_DT
    orphans = assistant_entries[: bisect.bisect_left(assistant_times, first_turn_at)]
    if orphans:
        continuation = build(orphans[0].timestamp, orphans[0].at, orphans, isContinuation=True)
        if continuation.has_response:
            interactions.append(continuation)

    for index, turn in enumerate(user_turns):
        upper = user_turns[index + 1].at if index + 1 < len(user_turns) else _MAX_DT
        start = bisect.bisect_left(assistant_times, turn.at)
        end = bisect.bisect_left(assistant_times, upper)
        responses = assistant_entries[start:end]
        if not responses:
            continue
        command = _COMMAND_NAME_PATTERN.search(turn.text)
        interactions.append(
            build(
                turn.timestamp,
                turn.at,
                responses,
                userText=turn.text,
                slashCommand=command.group(1).strip() if command else None,
                isCompactSummary=turn.is_compact_summary,
            )
        )

    return TranscriptParseResult(
        interactions=interactions,
        totalLines=total_lines,
        skippedLines=skipped,
        planModeNested=nested_plan_mode,
    )
