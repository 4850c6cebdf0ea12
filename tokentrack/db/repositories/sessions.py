"""SQLite implementation of the session totals repository.

Write methods do not commit; the persistence gateway groups them into one
transaction per project.
"""
from __future__ import annotations

import aiosqlite

from tokentrack.tracking.snapshot import Snapshot


class SqliteSessionRepository:
    """Session rows hold the latest cumulative totals, never deltas."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def ensure(self, session_id: str, project_path: str, kind: str, now: str) -> bool:
        """Insert the session if absent. Returns True when a row was created."""
        cur = await self.db.execute(
            """INSERT OR IGNORE INTO sessions (id, project_path, kind, started_at, ended_at)
               VALUES (?, ?, ?, ?, ?)""",
            (session_id, project_path, kind, now, now),
        )
        created = cur.rowcount == 1
        await cur.close()
        return created

    async def has_real_session(self, project_path: str) -> bool:
        async with self.db.execute(
            "SELECT 1 FROM sessions WHERE project_path = ? AND kind = 'real' LIMIT 1",
            (project_path,),
        ) as cur:
            return await cur.fetchone() is not None

    async def update_totals(self, session_id: str, snapshot: Snapshot, now: str) -> int:
        cur = await self.db.execute(
            """UPDATE sessions SET
                ended_at = ?,
                total_input_tokens = ?,
                total_output_tokens = ?,
                total_cache_creation_tokens = ?,
                total_cache_read_tokens = ?,
                total_cost_usd = ?,
                api_duration_ms = ?,
                total_duration_ms = ?,
                lines_added = ?,
                lines_removed = ?,
                web_search_requests = ?
               WHERE id = ?""",
            (
                now,
                snapshot.input_tokens,
                snapshot.output_tokens,
                snapshot.cache_creation_tokens,
                snapshot.cache_read_tokens,
                snapshot.cost_usd,
                snapshot.api_duration_ms,
                snapshot.total_duration_ms,
                snapshot.lines_added,
                snapshot.lines_removed,
                snapshot.web_search_requests,
                session_id,
            ),
        )
        updated = cur.rowcount
        await cur.close()
        return updated

    async def get_by_id(self, session_id: str) -> dict | None:
        async with self.db.execute(
            """SELECT s.*, (SELECT COUNT(*) FROM conversations c WHERE c.session_id = s.id)
                       AS conversation_count
               FROM sessions s WHERE s.id = ?""",
            (session_id,),
        ) as cur:
            row = await cur.fetchone()
            return dict(row) if row else None

    async def find_by_prefix(self, prefix: str) -> list[dict]:
        """Sessions whose id starts with ``prefix`` (short ids are accepted by the API)."""
        escaped = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        async with self.db.execute(
            "SELECT * FROM sessions WHERE id LIKE ? ESCAPE '\\' ORDER BY started_at DESC LIMIT 10",
            (f"{escaped}%",),
        ) as cur:
            return [dict(r) for r in await cur.fetchall()]

    def _filter_clause(self, project_path: str | None, include_placeholders: bool) -> tuple[str, list]:
        clauses: list[str] = []
        params: list = []
        if project_path:
            clauses.append("s.project_path = ?")
            params.append(project_path)
        if not include_placeholders:
            clauses.append("s.kind = 'real'")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        return where, params

    async def list_paginated(
        self,
        offset: int,
        limit: int,
        project_path: str | None = None,
        include_placeholders: bool = False,
    ) -> list[dict]:
        where, params = self._filter_clause(project_path, include_placeholders)
        query = f"""SELECT s.*, (SELECT COUNT(*) FROM conversations c WHERE c.session_id = s.id)
                           AS conversation_count
                    FROM sessions s {where}
                    ORDER BY s.ended_at DESC, s.started_at DESC
                    LIMIT ? OFFSET ?"""
        async with self.db.execute(query, (*params, limit, offset)) as cur:
            return [dict(r) for r in await cur.fetchall()]

    async def count(self, project_path: str | None = None, include_placeholders: bool = False) -> int:
        where, params = self._filter_clause(project_path, include_placeholders)
        async with self.db.execute(f"SELECT COUNT(*) FROM sessions s {where}", params) as cur:
            row = await cur.fetchone()
        return row[0] if row else 0

    async def list_projects(self) -> list[dict]:
        """Per-project aggregates over real sessions, most recently active first."""
        async with self.db.execute(
            """SELECT
                project_path,
                SUM(CASE WHEN kind = 'real' THEN 1 ELSE 0 END) AS session_count,
                SUM(CASE WHEN kind = 'real' THEN total_input_tokens ELSE 0 END) AS total_input,
                SUM(CASE WHEN kind = 'real' THEN total_output_tokens ELSE 0 END) AS total_output,
                SUM(CASE WHEN kind = 'real' THEN total_cache_creation_tokens ELSE 0 END) AS total_cache_creation,
                SUM(CASE WHEN kind = 'real' THEN total_cache_read_tokens ELSE 0 END) AS total_cache_read,
                SUM(CASE WHEN kind = 'real' THEN total_cost_usd ELSE 0 END) AS total_cost,
                MAX(CASE WHEN kind = 'real' THEN ended_at END) AS last_activity,
                SUM(CASE WHEN kind = 'placeholder' THEN 1 ELSE 0 END) AS placeholder_count
               FROM sessions
               GROUP BY project_path
               ORDER BY COALESCE(MAX(CASE WHEN kind = 'real' THEN ended_at END), '') DESC,
                        project_path ASC"""
        ) as cur:
            return [dict(r) for r in await cur.fetchall()]
