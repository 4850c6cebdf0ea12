"""SQLite implementation of the delta-record (conversation) repository."""
from __future__ import annotations

import aiosqlite

from tokentrack.date_utils import format_utc
from tokentrack.tracking.snapshot import DeltaRecord


class SqliteConversationRepository:
    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def next_index(self, session_id: str) -> int:
        async with self.db.execute(
            "SELECT COALESCE(MAX(conversation_index), 0) FROM conversations WHERE session_id = ?",
            (session_id,),
        ) as cur:
            row = await cur.fetchone()
        return int(row[0]) + 1

    async def append(self, session_id: str, delta: DeltaRecord) -> int:
        """Append a delta with the next per-session index and return that index."""
        index = await self.next_index(session_id)
        await self.db.execute(
            """INSERT INTO conversations
                (session_id, conversation_index, started_at, ended_at,
                 input_tokens, output_tokens, cache_creation_tokens, cache_read_tokens,
                 cost_usd, lines_added, lines_removed, web_search_requests)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                session_id,
                index,
                format_utc(delta.started_at) if delta.started_at else None,
                format_utc(delta.ended_at) if delta.ended_at else None,
                delta.input_tokens,
                delta.output_tokens,
                delta.cache_creation_tokens,
                delta.cache_read_tokens,
                delta.cost_usd,
                delta.lines_added,
                delta.lines_removed,
                delta.web_search_requests,
            ),
        )
        return index

    async def list_for_session(self, session_id: str) -> list[dict]:
        async with self.db.execute(
            "SELECT * FROM conversations WHERE session_id = ? ORDER BY conversation_index",
            (session_id,),
        ) as cur:
            return [dict(r) for r in await cur.fetchall()]
