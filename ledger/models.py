"""Pydantic models shared across the parser, store and operations."""
from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

# ── Parsed transcript models ────────────────────────────────────────


class ToolDetail(BaseModel):
    name: str
    detail: Optional[str] = None


class ToolResultMeta(BaseModel):
    toolUseId: str
    toolName: Optional[str] = None
    success: bool = True
    contentLength: int = 0
    lineCount: Optional[int] = None
    filePath: Optional[str] = None


class ProgressEvent(BaseModel):
    type: str
    timestamp: str
    hookEvent: Optional[str] = None
    hookName: Optional[str] = None
    toolName: Optional[str] = None
    prompt: Optional[str] = None
    agentId: Optional[str] = None


class ParsedInteraction(BaseModel):
    """One user turn and the assistant activity that answered it."""

    timestamp: str
    userText: str = ""
    assistantText: str = ""
    thinkingText: str = ""
    toolsUsed: list[str] = Field(default_factory=list)
    toolDetails: list[ToolDetail] = Field(default_factory=list)
    toolResults: list[ToolResultMeta] = Field(default_factory=list)
    progressEvents: list[ProgressEvent] = Field(default_factory=list)
    inPlanMode: bool = False
    slashCommand: Optional[str] = None
    isCompactSummary: bool = False
    isContinuation: bool = False

    @property
    def has_response(self) -> bool:
        return bool(self.assistantText or self.thinkingText)


class TranscriptParseResult(BaseModel):
    interactions: list[ParsedInteraction] = Field(default_factory=list)
    totalLines: int = 0
    skippedLines: int = 0
    planModeNested: bool = False


# ── Persistent state models ─────────────────────────────────────────


class SaveState(BaseModel):
    logId: str
    canonicalSessionId: str
    projectPath: str
    lastSavedTimestamp: Optional[str] = None
    lastSavedLine: int = 0
    isCommitted: bool = False
    createdAt: str = ""
    updatedAt: str = ""


class SessionLink(BaseModel):
    masterSessionId: str
    logId: str
    linkedAt: str


class WorkPeriod(BaseModel):
    logId: str
    startedAt: str
    endedAt: Optional[str] = None


class PendingLinkBreadcrumb(BaseModel):
    logId: str
    canonicalSessionId: str
    reason: str = ""
    createdAt: str


class RetentionState(str, Enum):
    ACTIVE = "active"
    FINALIZING = "finalizing"
    COMPLETE = "complete"
    UNCOMMITTED = "uncommitted"
    GRACE_PENDING = "grace-pending"
    DELETED = "deleted"
    RECONCILED_COMPLETE = "reconciled-complete"
    NO_RECORD = "no-record"


# ── Operation results ───────────────────────────────────────────────


class OperationResult(BaseModel):
    success: bool = True
    message: str = ""


class IngestResult(OperationResult):
    sessionId: Optional[str] = None
    insertedCount: int = 0
    replacedCount: int = 0
    totalLines: int = 0
    mergedFromBackup: int = 0


class CommitResult(OperationResult):
    sessionId: Optional[str] = None


class CleanupResult(OperationResult):
    deleted: bool = False
    count: int = 0


class StaleCleanupResult(OperationResult):
    deletedSessions: int = 0
    deletedInteractions: int = 0


class BackupResult(OperationResult):
    sessionId: Optional[str] = None
    interactionCount: int = 0


class FinalizeResult(OperationResult):
    sessionId: Optional[str] = None
    state: RetentionState = RetentionState.ACTIVE
    ingest: Optional[IngestResult] = None
    cleanup: Optional[CleanupResult] = None
    staleCleanup: Optional[StaleCleanupResult] = None


class SessionStartResult(OperationResult):
    sessionId: Optional[str] = None
    linked: bool = False
