"""Database connection factory.

Opens the async SQLite store in WAL mode so the reporting API can read while
the tracker writes.
"""
from __future__ import annotations

import logging
from pathlib import Path

import aiosqlite

from tokentrack import config

logger = logging.getLogger("tokentrack.db")


async def open_connection(db_path: Path | str | None = None) -> aiosqlite.Connection:
    """Open a new connection. ``":memory:"`` is accepted for tests."""
    target = str(db_path or config.DB_PATH)
    if target != ":memory:":
        Path(target).parent.mkdir(parents=True, exist_ok=True)
    conn = await aiosqlite.connect(target)
    conn.row_factory = aiosqlite.Row
    if target != ":memory:":
        # Enable WAL mode for better concurrent read performance
        await conn.execute("PRAGMA journal_mode=WAL")
    await conn.execute("PRAGMA busy_timeout=5000")
    logger.info(f"Database connection established: {target}")
    return conn
