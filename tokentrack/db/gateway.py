"""Persistence gateway used by the reconciliation cycle.

Exposes the four write operations the cycle needs and groups one project's
writes into a single transaction, so a failure never leaves a partial
project record visible. Every driver error surfaces as ``StorageError``.
"""
from __future__ import annotations

import logging
import sqlite3
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import aiosqlite

from tokentrack.date_utils import utc_now_iso
from tokentrack.db.repositories import (
    SqliteConversationRepository,
    SqliteSessionRepository,
    SqliteSnapshotRepository,
)
from tokentrack.errors import StorageError
from tokentrack.models import PlaceholderSession, RealSession, SessionKind
from tokentrack.tracking.snapshot import DeltaRecord, Snapshot

logger = logging.getLogger("tokentrack.db")

# sqlite3 raises OverflowError for integers outside the signed 64-bit range.
_DRIVER_ERRORS = (aiosqlite.Error, sqlite3.Error, OverflowError)


class PersistenceGateway:
    def __init__(self, db: aiosqlite.Connection):
        self.db = db
        self.sessions = SqliteSessionRepository(db)
        self.conversations = SqliteConversationRepository(db)
        self.snapshots = SqliteSnapshotRepository(db)
        self._closed = False

    @asynccontextmanager
    async def transaction(self, label: str = "cycle") -> AsyncIterator["PersistenceGateway"]:
        try:
            yield self
        except BaseException:
            try:
                await self.db.rollback()
            except _DRIVER_ERRORS as exc:
                logger.error(f"Rollback failed after {label} error: {exc}")
            raise
        else:
            try:
                await self.db.commit()
            except _DRIVER_ERRORS as exc:
                await self.db.rollback()
                raise StorageError("commit", None, exc) from exc

    async def ensure_session(self, kind: SessionKind) -> bool:
        """Create the session row if absent. Never touches an existing row."""
        try:
            return await self.sessions.ensure(kind.storage_id, kind.projectPath, kind.kind, utc_now_iso())
        except _DRIVER_ERRORS as exc:
            raise StorageError("ensure_session", kind.storage_id, exc) from exc

    async def ensure_placeholder(self, project_path: str) -> bool:
        """Register a placeholder unless the project already has a real session."""
        placeholder = PlaceholderSession(projectPath=project_path)
        try:
            if await self.sessions.has_real_session(project_path):
                return False
        except _DRIVER_ERRORS as exc:
            raise StorageError("ensure_placeholder", placeholder.storage_id, exc) from exc
        return await self.ensure_session(placeholder)

    async def append_raw_snapshot(
        self,
        session: RealSession,
        snapshot: Snapshot,
        raw: dict[str, Any] | None = None,
    ) -> int:
        try:
            return await self.snapshots.append(session.sessionId, session.projectPath, snapshot, raw)
        except _DRIVER_ERRORS as exc:
            raise StorageError("append_raw_snapshot", session.sessionId, exc) from exc

    async def upsert_session_totals(self, session_id: str, snapshot: Snapshot) -> None:
        try:
            updated = await self.sessions.update_totals(session_id, snapshot, utc_now_iso())
        except _DRIVER_ERRORS as exc:
            raise StorageError("upsert_session_totals", session_id, exc) from exc
        if updated == 0:
            raise StorageError(
                "upsert_session_totals",
                session_id,
                LookupError("session row does not exist"),
            )

    async def append_delta(self, session_id: str, delta: DeltaRecord) -> int:
        try:
            return await self.conversations.append(session_id, delta)
        except _DRIVER_ERRORS as exc:
            raise StorageError("append_delta", session_id, exc) from exc

    async def latest_snapshots(self) -> list[dict]:
        try:
            return await self.snapshots.latest_per_session()
        except _DRIVER_ERRORS as exc:
            raise StorageError("latest_snapshots", None, exc) from exc

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self.db.commit()
        finally:
            await self.db.close()
        logger.info("Persistence gateway closed")
