"""Tracker status and manual poll API."""
from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, Request

from tokentrack.errors import CircuitOpenError
from tokentrack.models import CycleSummary, TrackerStatus

logger = logging.getLogger("tokentrack.api")

tracker_router = APIRouter(prefix="/api/tracker", tags=["tracker"])


def _get_tracker(request: Request):
    tracker = getattr(request.app.state, "tracker", None)
    if tracker is None:
        raise HTTPException(status_code=503, detail="Tracker not initialized")
    return tracker


@tracker_router.get("/status", response_model=TrackerStatus)
async def tracker_status(request: Request):
    return _get_tracker(request).status()


@tracker_router.post("/poll", response_model=CycleSummary)
async def trigger_poll(request: Request):
    """Run one reconciliation cycle now, unless one is already running."""
    tracker = _get_tracker(request)
    try:
        result = await tracker.poll_now()
    except CircuitOpenError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    if result is None:
        status = tracker.status()
        raise HTTPException(
            status_code=409,
            detail=status.lastError or "A reconciliation cycle is already in progress",
        )
    logger.info(f"Manual poll recorded {result.deltas_recorded} deltas")
    return CycleSummary(
        projectsObserved=result.projects_observed,
        sessionsObserved=result.sessions_observed,
        snapshotsRecorded=result.snapshots_recorded,
        deltasRecorded=result.deltas_recorded,
        errors=result.errors,
        durationMs=round(result.duration_ms, 3),
    )
