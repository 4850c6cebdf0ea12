"""Database schema creation and versioning.

All CREATE TABLE statements for the token store.
Uses IF NOT EXISTS for idempotent runs, and upgrades stores created by the
earlier Node tracker (same table names, fewer columns) in place.
"""
from __future__ import annotations

import logging

import aiosqlite

logger = logging.getLogger("tokentrack.db")

SCHEMA_VERSION = 2

_TABLES = """
-- ── Schema version tracking ────────────────────────────────────────
CREATE TABLE IF NOT EXISTS schema_version (
    version   INTEGER NOT NULL,
    applied   TEXT NOT NULL DEFAULT (datetime('now'))
);

-- ── 1. Sessions (cumulative totals, overwritten every cycle) ───────
-- started_at is the creation time, ended_at the last update time.
CREATE TABLE IF NOT EXISTS sessions (
    id                          TEXT PRIMARY KEY,
    project_path                TEXT NOT NULL,
    kind                        TEXT NOT NULL DEFAULT 'real',
    started_at                  TEXT NOT NULL,
    ended_at                    TEXT,
    total_input_tokens          INTEGER DEFAULT 0,
    total_output_tokens         INTEGER DEFAULT 0,
    total_cache_creation_tokens INTEGER DEFAULT 0,
    total_cache_read_tokens     INTEGER DEFAULT 0,
    total_cost_usd              REAL DEFAULT 0,
    api_duration_ms             INTEGER DEFAULT 0,
    total_duration_ms           INTEGER DEFAULT 0,
    lines_added                 INTEGER DEFAULT 0,
    lines_removed               INTEGER DEFAULT 0,
    web_search_requests         INTEGER DEFAULT 0
);

CREATE INDEX IF NOT EXISTS idx_sessions_project ON sessions (project_path);
CREATE INDEX IF NOT EXISTS idx_sessions_started ON sessions (started_at);

-- ── 2. Conversations (delta records, immutable) ────────────────────
CREATE TABLE IF NOT EXISTS conversations (
    id                    INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id            TEXT NOT NULL,
    conversation_index    INTEGER NOT NULL,
    started_at            TEXT,
    ended_at              TEXT,
    input_tokens          INTEGER DEFAULT 0,
    output_tokens         INTEGER DEFAULT 0,
    cache_creation_tokens INTEGER DEFAULT 0,
    cache_read_tokens     INTEGER DEFAULT 0,
    cost_usd              REAL DEFAULT 0,
    lines_added           INTEGER DEFAULT 0,
    lines_removed         INTEGER DEFAULT 0,
    web_search_requests   INTEGER DEFAULT 0
);

CREATE INDEX IF NOT EXISTS idx_conversations_session ON conversations (session_id);

-- ── 3. Raw snapshots (append-only audit trail) ─────────────────────
CREATE TABLE IF NOT EXISTS session_snapshots (
    id                    INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id            TEXT NOT NULL,
    project_path          TEXT NOT NULL,
    timestamp             TEXT NOT NULL,
    raw_data              TEXT NOT NULL,
    input_tokens          INTEGER,
    output_tokens         INTEGER,
    cache_creation_tokens INTEGER,
    cache_read_tokens     INTEGER,
    cost_usd              REAL,
    lines_added           INTEGER,
    lines_removed         INTEGER,
    web_search_requests   INTEGER
);

CREATE INDEX IF NOT EXISTS idx_snapshots_session ON session_snapshots (session_id);
CREATE INDEX IF NOT EXISTS idx_snapshots_timestamp ON session_snapshots (timestamp);
"""


async def _column_exists(db: aiosqlite.Connection, table: str, column: str) -> bool:
    async with db.execute(f"PRAGMA table_info({table})") as cur:
        rows = await cur.fetchall()
    return any(row[1] == column for row in rows)


async def _ensure_column(db: aiosqlite.Connection, table: str, column: str, definition: str) -> None:
    if await _column_exists(db, table, column):
        return
    await db.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")


async def _ensure_index(db: aiosqlite.Connection, ddl: str) -> None:
    await db.execute(ddl)


async def run_migrations(db: aiosqlite.Connection) -> None:
    """Create all tables and upgrade older stores. Idempotent."""
    try:
        async with db.execute("SELECT MAX(version) FROM schema_version") as cur:
            row = await cur.fetchone()
            current_version = row[0] if row and row[0] else 0
    except aiosqlite.Error:
        current_version = 0

    if current_version >= SCHEMA_VERSION:
        logger.info(f"Schema is up to date (version {current_version})")
        return

    logger.info(f"Migrating schema from version {current_version} to {SCHEMA_VERSION}")
    await db.executescript(_TABLES)

    # Columns missing from stores written by the Node tracker
    await _ensure_column(db, "sessions", "kind", "TEXT NOT NULL DEFAULT 'real'")
    await _ensure_column(db, "conversations", "lines_added", "INTEGER DEFAULT 0")
    await _ensure_column(db, "conversations", "lines_removed", "INTEGER DEFAULT 0")
    await _ensure_column(db, "conversations", "web_search_requests", "INTEGER DEFAULT 0")
    await _ensure_column(db, "session_snapshots", "lines_added", "INTEGER")
    await _ensure_column(db, "session_snapshots", "lines_removed", "INTEGER")
    await _ensure_column(db, "session_snapshots", "web_search_requests", "INTEGER")

    # The Node tracker marked placeholder rows only through their id text.
    await db.execute(
        "UPDATE sessions SET kind = 'placeholder' WHERE kind = 'real' AND id LIKE 'placeholder-%'"
    )

    await _ensure_index(
        db,
        "CREATE UNIQUE INDEX IF NOT EXISTS idx_conversations_order ON conversations (session_id, conversation_index)",
    )
    await _ensure_index(db, "CREATE INDEX IF NOT EXISTS idx_sessions_kind ON sessions (project_path, kind)")

    await db.execute(
        "INSERT INTO schema_version (version) VALUES (?)",
        (SCHEMA_VERSION,),
    )
    await db.commit()
    logger.info(f"Migrations complete, schema version {SCHEMA_VERSION}")
