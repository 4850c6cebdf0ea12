"""Tokentrack FastAPI app: reporting API with the tracker in its lifespan."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from tokentrack.observability import initialize as initialize_observability, shutdown as shutdown_observability
from tokentrack.routers.sessions import projects_router, sessions_router
from tokentrack.routers.tracker import tracker_router
from tokentrack.tracking.service import TrackerService

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("tokentrack")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    logger.info("Tokentrack starting up")
    initialize_observability(app)

    tracker = getattr(app.state, "tracker", None) or TrackerService()
    app.state.tracker = tracker
    await tracker.start()

    yield

    logger.info("Tokentrack shutting down")
    await tracker.stop()
    shutdown_observability(app)


app = FastAPI(
    title="Tokentrack API",
    description="Read-only access to Claude Code token sessions, conversations and snapshots",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(sessions_router)
app.include_router(projects_router)
app.include_router(tracker_router)


@app.get("/api/health")
def health():
    """Health check endpoint."""
    tracker = getattr(app.state, "tracker", None)
    status = tracker.status() if tracker else None
    return {
        "status": "ok" if status and not status.circuitOpen else "degraded",
        "tracker": "running" if status and status.running else "stopped",
        "circuitOpen": bool(status and status.circuitOpen),
    }
