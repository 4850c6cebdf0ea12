"""Read-only session, conversation and snapshot queries."""
from __future__ import annotations

import json
import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Query, Request

from tokentrack.db.gateway import PersistenceGateway
from tokentrack.models import (
    ConversationRecord,
    PaginatedResponse,
    ProjectSummary,
    RawSnapshotRecord,
    SessionTotals,
)

logger = logging.getLogger("tokentrack.api")

sessions_router = APIRouter(prefix="/api/sessions", tags=["sessions"])
projects_router = APIRouter(prefix="/api/projects", tags=["projects"])


def _get_gateway(request: Request) -> PersistenceGateway:
    tracker = getattr(request.app.state, "tracker", None)
    gateway = getattr(tracker, "gateway", None)
    if gateway is None:
        raise HTTPException(status_code=503, detail="Tracker not initialized")
    return gateway


def _safe_json(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        return value
    if not value:
        return {}
    try:
        parsed = json.loads(value)
    except (TypeError, json.JSONDecodeError):
        return {}
    return parsed if isinstance(parsed, dict) else {}


def session_from_row(row: dict[str, Any]) -> SessionTotals:
    return SessionTotals(
        id=row["id"],
        kind=row.get("kind") or "real",
        projectPath=row.get("project_path") or "",
        createdAt=row.get("started_at") or "",
        updatedAt=row.get("ended_at") or "",
        inputTokens=row.get("total_input_tokens") or 0,
        outputTokens=row.get("total_output_tokens") or 0,
        cacheCreationTokens=row.get("total_cache_creation_tokens") or 0,
        cacheReadTokens=row.get("total_cache_read_tokens") or 0,
        costUsd=row.get("total_cost_usd") or 0.0,
        linesAdded=row.get("lines_added") or 0,
        linesRemoved=row.get("lines_removed") or 0,
        webSearchRequests=row.get("web_search_requests") or 0,
        apiDurationMs=row.get("api_duration_ms") or 0,
        totalDurationMs=row.get("total_duration_ms") or 0,
        conversationCount=row.get("conversation_count") or 0,
    )


def conversation_from_row(row: dict[str, Any]) -> ConversationRecord:
    return ConversationRecord(
        sessionId=row["session_id"],
        index=row["conversation_index"],
        startedAt=row.get("started_at") or "",
        endedAt=row.get("ended_at") or "",
        inputTokens=row.get("input_tokens") or 0,
        outputTokens=row.get("output_tokens") or 0,
        cacheCreationTokens=row.get("cache_creation_tokens") or 0,
        cacheReadTokens=row.get("cache_read_tokens") or 0,
        costUsd=row.get("cost_usd") or 0.0,
        linesAdded=row.get("lines_added") or 0,
        linesRemoved=row.get("lines_removed") or 0,
        webSearchRequests=row.get("web_search_requests") or 0,
    )


def snapshot_from_row(row: dict[str, Any]) -> RawSnapshotRecord:
    return RawSnapshotRecord(
        id=row["id"],
        sessionId=row["session_id"],
        projectPath=row.get("project_path") or "",
        capturedAt=row.get("timestamp") or "",
        inputTokens=row.get("input_tokens") or 0,
        outputTokens=row.get("output_tokens") or 0,
        cacheCreationTokens=row.get("cache_creation_tokens") or 0,
        cacheReadTokens=row.get("cache_read_tokens") or 0,
        costUsd=row.get("cost_usd") or 0.0,
        linesAdded=row.get("lines_added") or 0,
        linesRemoved=row.get("lines_removed") or 0,
        webSearchRequests=row.get("web_search_requests") or 0,
        raw=_safe_json(row.get("raw_data")),
    )


async def _resolve_session_row(gateway: PersistenceGateway, session_id: str) -> dict[str, Any]:
    row = await gateway.sessions.get_by_id(session_id)
    if row:
        return row
    # Accept short ids (first few characters) when they are unambiguous.
    matches = await gateway.sessions.find_by_prefix(session_id) if len(session_id) >= 4 else []
    if len(matches) == 1:
        row = await gateway.sessions.get_by_id(matches[0]["id"])
        if row:
            return row
    if len(matches) > 1:
        raise HTTPException(status_code=409, detail=f"Session id prefix '{session_id}' is ambiguous")
    raise HTTPException(status_code=404, detail=f"Session '{session_id}' not found")


@sessions_router.get("", response_model=PaginatedResponse[SessionTotals])
async def list_sessions(
    request: Request,
    project: str | None = Query(default=None, description="Filter by project path"),
    include_placeholders: bool = Query(default=False),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=500),
):
    gateway = _get_gateway(request)
    rows = await gateway.sessions.list_paginated(offset, limit, project, include_placeholders)
    total = await gateway.sessions.count(project, include_placeholders)
    return PaginatedResponse[SessionTotals](
        items=[session_from_row(r) for r in rows],
        total=total,
        offset=offset,
        limit=limit,
    )


@sessions_router.get("/{session_id}", response_model=SessionTotals)
async def get_session(request: Request, session_id: str):
    gateway = _get_gateway(request)
    return session_from_row(await _resolve_session_row(gateway, session_id))


@sessions_router.get("/{session_id}/conversations", response_model=list[ConversationRecord])
async def list_conversations(request: Request, session_id: str):
    gateway = _get_gateway(request)
    row = await _resolve_session_row(gateway, session_id)
    rows = await gateway.conversations.list_for_session(row["id"])
    return [conversation_from_row(r) for r in rows]


@sessions_router.get("/{session_id}/snapshots", response_model=list[RawSnapshotRecord])
async def list_snapshots(
    request: Request,
    session_id: str,
    limit: int = Query(default=100, ge=1, le=1000),
):
    gateway = _get_gateway(request)
    row = await _resolve_session_row(gateway, session_id)
    rows = await gateway.snapshots.list_for_session(row["id"], limit)
    return [snapshot_from_row(r) for r in rows]


@projects_router.get("", response_model=list[ProjectSummary])
async def list_projects(request: Request):
    gateway = _get_gateway(request)
    rows = await gateway.sessions.list_projects()
    return [
        ProjectSummary(
            projectPath=r["project_path"],
            sessionCount=r.get("session_count") or 0,
            totalInputTokens=r.get("total_input") or 0,
            totalOutputTokens=r.get("total_output") or 0,
            totalCacheCreationTokens=r.get("total_cache_creation") or 0,
            totalCacheReadTokens=r.get("total_cache_read") or 0,
            totalCostUsd=r.get("total_cost") or 0.0,
            lastActivity=r.get("last_activity"),
            hasPlaceholder=bool(r.get("placeholder_count")),
        )
        for r in rows
    ]
