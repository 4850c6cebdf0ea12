import unittest
from datetime import datetime, timezone

import aiosqlite

from tokentrack.db.gateway import PersistenceGateway
from tokentrack.db.sqlite_migrations import SCHEMA_VERSION, run_migrations
from tokentrack.errors import StorageError
from tokentrack.models import PlaceholderSession, RealSession
from tokentrack.tracking.snapshot import DeltaRecord, Snapshot

_T0 = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)
_T1 = datetime(2026, 3, 1, 9, 0, 30, tzinfo=timezone.utc)

# Shape of a store written by the earlier Node tracker.
_LEGACY_SCHEMA = """
CREATE TABLE sessions (
    id TEXT PRIMARY KEY,
    project_path TEXT NOT NULL,
    started_at DATETIME DEFAULT CURRENT_TIMESTAMP,
    ended_at DATETIME,
    total_input_tokens INTEGER DEFAULT 0,
    total_output_tokens INTEGER DEFAULT 0,
    total_cache_creation_tokens INTEGER DEFAULT 0,
    total_cache_read_tokens INTEGER DEFAULT 0,
    total_cost_usd REAL DEFAULT 0,
    api_duration_ms INTEGER DEFAULT 0,
    total_duration_ms INTEGER DEFAULT 0,
    lines_added INTEGER DEFAULT 0,
    lines_removed INTEGER DEFAULT 0,
    web_search_requests INTEGER DEFAULT 0
);
CREATE TABLE conversations (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id TEXT NOT NULL,
    conversation_index INTEGER NOT NULL,
    started_at DATETIME DEFAULT CURRENT_TIMESTAMP,
    ended_at DATETIME,
    input_tokens INTEGER DEFAULT 0,
    output_tokens INTEGER DEFAULT 0,
    cache_creation_tokens INTEGER DEFAULT 0,
    cache_read_tokens INTEGER DEFAULT 0,
    cost_usd REAL DEFAULT 0
);
CREATE TABLE session_snapshots (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id TEXT NOT NULL,
    project_path TEXT NOT NULL,
    timestamp DATETIME DEFAULT CURRENT_TIMESTAMP,
    raw_data TEXT NOT NULL,
    input_tokens INTEGER,
    output_tokens INTEGER,
    cache_creation_tokens INTEGER,
    cache_read_tokens INTEGER,
    cost_usd REAL
);
INSERT INTO sessions (id, project_path) VALUES ('placeholder-1700000000000', '/work/legacy');
INSERT INTO sessions (id, project_path, total_input_tokens) VALUES ('abc-123', '/work/legacy', 42);
"""


async def _columns(db: aiosqlite.Connection, table: str) -> set[str]:
    async with db.execute(f"PRAGMA table_info({table})") as cur:
        return {row[1] for row in await cur.fetchall()}


class MigrationTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.db = await aiosqlite.connect(":memory:")
        self.db.row_factory = aiosqlite.Row

    async def asyncTearDown(self) -> None:
        await self.db.close()

    async def test_migrations_are_idempotent(self) -> None:
        await run_migrations(self.db)
        await run_migrations(self.db)

        async with self.db.execute("SELECT MAX(version), COUNT(*) FROM schema_version") as cur:
            version, applied = await cur.fetchone()
        self.assertEqual(version, SCHEMA_VERSION)
        self.assertEqual(applied, 1)
        self.assertIn("kind", await _columns(self.db, "sessions"))

    async def test_legacy_store_is_upgraded_in_place(self) -> None:
        await self.db.executescript(_LEGACY_SCHEMA)
        await self.db.commit()

        await run_migrations(self.db)

        self.assertIn("kind", await _columns(self.db, "sessions"))
        self.assertTrue({"lines_added", "lines_removed", "web_search_requests"} <= await _columns(self.db, "conversations"))
        self.assertTrue(
            {"lines_added", "lines_removed", "web_search_requests"} <= await _columns(self.db, "session_snapshots")
        )

        async with self.db.execute("SELECT id, kind, total_input_tokens FROM sessions ORDER BY id") as cur:
            rows = [tuple(r) for r in await cur.fetchall()]
        self.assertEqual(rows, [("abc-123", "real", 42), ("placeholder-1700000000000", "placeholder", 0)])


class SessionRepositoryTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.db = await aiosqlite.connect(":memory:")
        self.db.row_factory = aiosqlite.Row
        await run_migrations(self.db)
        self.gateway = PersistenceGateway(self.db)
        self.session = RealSession(sessionId="abcd-1234", projectPath="/work/alpha")

    async def asyncTearDown(self) -> None:
        await self.gateway.close()

    async def test_ensure_creates_once_and_never_overwrites(self) -> None:
        async with self.gateway.transaction():
            self.assertTrue(await self.gateway.ensure_session(self.session))
            await self.gateway.upsert_session_totals("abcd-1234", Snapshot(input_tokens=10, captured_at=_T0))
        first = await self.gateway.sessions.get_by_id("abcd-1234")

        async with self.gateway.transaction():
            self.assertFalse(await self.gateway.ensure_session(self.session))
        second = await self.gateway.sessions.get_by_id("abcd-1234")

        self.assertEqual(second["started_at"], first["started_at"])
        self.assertEqual(second["total_input_tokens"], 10)
        self.assertEqual(second["kind"], "real")

    async def test_upsert_for_unknown_session_is_a_storage_error(self) -> None:
        with self.assertRaises(StorageError) as ctx:
            await self.gateway.upsert_session_totals("missing", Snapshot())
        self.assertEqual(ctx.exception.operation, "upsert_session_totals")

    async def test_integer_overflow_is_a_storage_error(self) -> None:
        too_large = Snapshot(input_tokens=2**63, captured_at=_T0)
        async with self.gateway.transaction():
            await self.gateway.ensure_session(self.session)

        with self.assertRaises(StorageError) as ctx:
            await self.gateway.append_raw_snapshot(self.session, too_large, {"lastSessionId": "abcd-1234"})
        self.assertEqual(ctx.exception.operation, "append_raw_snapshot")
        self.assertIsInstance(ctx.exception.cause, OverflowError)

        with self.assertRaises(StorageError) as ctx:
            await self.gateway.upsert_session_totals("abcd-1234", too_large)
        self.assertEqual(ctx.exception.operation, "upsert_session_totals")

    async def test_conversation_indexes_are_dense_per_session(self) -> None:
        other = RealSession(sessionId="other", projectPath="/work/beta")
        delta = DeltaRecord(input_tokens=5, started_at=_T0, ended_at=_T1)
        async with self.gateway.transaction():
            await self.gateway.ensure_session(self.session)
            await self.gateway.ensure_session(other)
            indexes = [
                await self.gateway.append_delta("abcd-1234", delta),
                await self.gateway.append_delta("other", delta),
                await self.gateway.append_delta("abcd-1234", delta),
            ]

        self.assertEqual(indexes, [1, 1, 2])
        rows = await self.gateway.conversations.list_for_session("abcd-1234")
        self.assertEqual([r["conversation_index"] for r in rows], [1, 2])
        self.assertEqual(rows[0]["started_at"], "2026-03-01T09:00:00.000Z")
        self.assertEqual(rows[0]["ended_at"], "2026-03-01T09:00:30.000Z")

    async def test_rollback_discards_every_write_in_the_transaction(self) -> None:
        with self.assertRaises(RuntimeError):
            async with self.gateway.transaction():
                await self.gateway.ensure_session(self.session)
                await self.gateway.append_raw_snapshot(self.session, Snapshot(captured_at=_T0), {"lastSessionId": "x"})
                raise RuntimeError("interrupted")

        self.assertIsNone(await self.gateway.sessions.get_by_id("abcd-1234"))
        self.assertEqual(await self.gateway.snapshots.count_for_session("abcd-1234"), 0)

    async def test_placeholder_is_skipped_when_project_has_real_session(self) -> None:
        async with self.gateway.transaction():
            self.assertTrue(await self.gateway.ensure_placeholder("/work/beta"))
            self.assertFalse(await self.gateway.ensure_placeholder("/work/beta"))
            await self.gateway.ensure_session(self.session)
            self.assertFalse(await self.gateway.ensure_placeholder("/work/alpha"))

        placeholder_id = PlaceholderSession(projectPath="/work/beta").storage_id
        row = await self.gateway.sessions.get_by_id(placeholder_id)
        self.assertEqual(row["kind"], "placeholder")
        self.assertEqual(await self.gateway.sessions.count(), 1)
        self.assertEqual(await self.gateway.sessions.count(include_placeholders=True), 2)

    async def test_prefix_lookup_escapes_wildcards(self) -> None:
        async with self.gateway.transaction():
            await self.gateway.ensure_session(self.session)
            await self.gateway.ensure_session(RealSession(sessionId="ab_x", projectPath="/work/alpha"))

        self.assertEqual([r["id"] for r in await self.gateway.sessions.find_by_prefix("abcd")], ["abcd-1234"])
        self.assertEqual([r["id"] for r in await self.gateway.sessions.find_by_prefix("ab_")], ["ab_x"])
        self.assertEqual(await self.gateway.sessions.find_by_prefix("zz%"), [])

    async def test_latest_snapshots_only_cover_real_sessions(self) -> None:
        async with self.gateway.transaction():
            await self.gateway.ensure_session(self.session)
            await self.gateway.append_raw_snapshot(self.session, Snapshot(input_tokens=1, captured_at=_T0))
            await self.gateway.append_raw_snapshot(self.session, Snapshot(input_tokens=2, captured_at=_T1))

        latest = await self.gateway.latest_snapshots()
        self.assertEqual(len(latest), 1)
        self.assertEqual(latest[0]["input_tokens"], 2)

    async def test_project_summary_ignores_placeholder_totals(self) -> None:
        async with self.gateway.transaction():
            await self.gateway.ensure_placeholder("/work/beta")
            await self.gateway.ensure_session(self.session)
            await self.gateway.upsert_session_totals(
                "abcd-1234", Snapshot(input_tokens=7, output_tokens=3, cost_usd=0.02)
            )

        projects = {p["project_path"]: p for p in await self.gateway.sessions.list_projects()}
        self.assertEqual(projects["/work/alpha"]["session_count"], 1)
        self.assertEqual(projects["/work/alpha"]["total_input"], 7)
        self.assertEqual(projects["/work/beta"]["session_count"], 0)
        self.assertEqual(projects["/work/beta"]["placeholder_count"], 1)

    async def test_close_is_idempotent(self) -> None:
        await self.gateway.close()
        await self.gateway.close()


if __name__ == "__main__":
    unittest.main()
