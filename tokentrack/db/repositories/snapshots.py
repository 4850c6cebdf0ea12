"""SQLite implementation of the raw snapshot (audit trail) repository."""
from __future__ import annotations

import json
from typing import Any

import aiosqlite

from tokentrack.date_utils import format_utc
from tokentrack.tracking.snapshot import Snapshot


class SqliteSnapshotRepository:
    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def append(
        self,
        session_id: str,
        project_path: str,
        snapshot: Snapshot,
        raw: dict[str, Any] | None = None,
    ) -> int:
        cur = await self.db.execute(
            """INSERT INTO session_snapshots
                (session_id, project_path, timestamp, raw_data,
                 input_tokens, output_tokens, cache_creation_tokens, cache_read_tokens,
                 cost_usd, lines_added, lines_removed, web_search_requests)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                session_id,
                project_path,
                format_utc(snapshot.captured_at),
                json.dumps(raw if raw is not None else snapshot.to_dict(), default=str),
                snapshot.input_tokens,
                snapshot.output_tokens,
                snapshot.cache_creation_tokens,
                snapshot.cache_read_tokens,
                snapshot.cost_usd,
                snapshot.lines_added,
                snapshot.lines_removed,
                snapshot.web_search_requests,
            ),
        )
        row_id = cur.lastrowid
        await cur.close()
        return int(row_id or 0)

    async def list_for_session(self, session_id: str, limit: int = 100) -> list[dict]:
        async with self.db.execute(
            """SELECT * FROM session_snapshots WHERE session_id = ?
               ORDER BY timestamp DESC, id DESC LIMIT ?""",
            (session_id, limit),
        ) as cur:
            return [dict(r) for r in await cur.fetchall()]

    async def count_for_session(self, session_id: str) -> int:
        async with self.db.execute(
            "SELECT COUNT(*) FROM session_snapshots WHERE session_id = ?", (session_id,)
        ) as cur:
            row = await cur.fetchone()
        return row[0] if row else 0

    async def latest_per_session(self) -> list[dict]:
        """Most recent audit row for every real session."""
        async with self.db.execute(
            """SELECT ss.* FROM session_snapshots ss
               JOIN sessions s ON s.id = ss.session_id AND s.kind = 'real'
               WHERE ss.id = (
                   SELECT MAX(inner_ss.id) FROM session_snapshots inner_ss
                   WHERE inner_ss.session_id = ss.session_id
               )"""
        ) as cur:
            return [dict(r) for r in await cur.fetchall()]
