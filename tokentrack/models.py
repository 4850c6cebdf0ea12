"""Pydantic models for session identity and the reporting API."""
from __future__ import annotations

import hashlib
from typing import Generic, Literal, Optional, TypeVar, Union

from pydantic import BaseModel, Field

T = TypeVar("T")


class PaginatedResponse(BaseModel, Generic[T]):
    items: list[T]
    total: int
    offset: int
    limit: int


# ── Session identity ───────────────────────────────────────────────

class PlaceholderSession(BaseModel):
    """A project known from the state file that has not produced a session yet."""

    kind: Literal["placeholder"] = "placeholder"
    projectPath: str

    @property
    def storage_id(self) -> str:
        digest = hashlib.sha1(self.projectPath.encode("utf-8")).hexdigest()[:16]
        return f"P-{digest}"


class RealSession(BaseModel):
    kind: Literal["real"] = "real"
    sessionId: str
    projectPath: str

    @property
    def storage_id(self) -> str:
        return self.sessionId


SessionKind = Union[PlaceholderSession, RealSession]


# ── Reporting models ───────────────────────────────────────────────

class SessionTotals(BaseModel):
    id: str
    kind: Literal["placeholder", "real"] = "real"
    projectPath: str
    createdAt: str = ""
    updatedAt: str = ""
    inputTokens: int = 0
    outputTokens: int = 0
    cacheCreationTokens: int = 0
    cacheReadTokens: int = 0
    costUsd: float = 0.0
    linesAdded: int = 0
    linesRemoved: int = 0
    webSearchRequests: int = 0
    apiDurationMs: int = 0
    totalDurationMs: int = 0
    conversationCount: int = 0


class ConversationRecord(BaseModel):
    sessionId: str
    index: int
    startedAt: str = ""
    endedAt: str = ""
    inputTokens: int = 0
    outputTokens: int = 0
    cacheCreationTokens: int = 0
    cacheReadTokens: int = 0
    costUsd: float = 0.0
    linesAdded: int = 0
    linesRemoved: int = 0
    webSearchRequests: int = 0


class RawSnapshotRecord(BaseModel):
    id: int
    sessionId: str
    projectPath: str
    capturedAt: str
    inputTokens: int = 0
    outputTokens: int = 0
    cacheCreationTokens: int = 0
    cacheReadTokens: int = 0
    costUsd: float = 0.0
    linesAdded: int = 0
    linesRemoved: int = 0
    webSearchRequests: int = 0
    raw: dict = Field(default_factory=dict)


class ProjectSummary(BaseModel):
    projectPath: str
    sessionCount: int = 0
    totalInputTokens: int = 0
    totalOutputTokens: int = 0
    totalCacheCreationTokens: int = 0
    totalCacheReadTokens: int = 0
    totalCostUsd: float = 0.0
    lastActivity: Optional[str] = None
    hasPlaceholder: bool = False


class CycleSummary(BaseModel):
    projectsObserved: int = 0
    sessionsObserved: int = 0
    snapshotsRecorded: int = 0
    deltasRecorded: int = 0
    errors: int = 0
    durationMs: float = 0.0


class TrackerStatus(BaseModel):
    running: bool = False
    statePath: str = ""
    trackedSessions: int = 0
    activeProjects: list[str] = Field(default_factory=list)
    intervalSeconds: float = 0.0
    consecutiveFailures: int = 0
    maxConsecutiveFailures: int = 0
    circuitOpen: bool = False
    cyclesRun: int = 0
    lastCycle: Optional[CycleSummary] = None
    lastError: Optional[str] = None
