"""One reconciliation pass over the Claude Code state file.

Each pass reads the state file exactly once, then for every project with a
session id: ensures the session row, appends the raw snapshot, appends a
delta when the counters moved, and overwrites the session totals. All four
writes for a project share one transaction. The registry baseline for a
project advances only after its transaction commits, so a project that fails
is retried against the old baseline on the next pass.
"""
from __future__ import annotations

import logging
import time
from pathlib import Path, PurePath
from typing import Any, Callable

from tokentrack.date_utils import parse_iso, utc_now
from tokentrack.db.gateway import PersistenceGateway
from tokentrack.errors import CycleFailedError, StorageError
from tokentrack.models import RealSession
from tokentrack.observability import record_delta, start_span
from tokentrack.parsers.claude_state import StateReading, extract_snapshot, read_state, session_id_of
from tokentrack.tracking.detector import (
    DEFAULT_COST_EPSILON,
    DeltaPolicy,
    compute_delta,
    has_changed,
    regressed_fields,
)
from tokentrack.tracking.registry import SessionRegistry
from tokentrack.tracking.snapshot import CycleResult, DeltaRecord, Snapshot

logger = logging.getLogger("tokentrack.reconcile")


def _short(project_path: str) -> str:
    return PurePath(project_path).name or project_path


def _signed(value: float) -> str:
    return f"+{value}" if value > 0 else str(value)


def _snapshot_from_row(row: dict[str, Any]) -> Snapshot:
    return Snapshot(
        input_tokens=int(row.get("input_tokens") or 0),
        output_tokens=int(row.get("output_tokens") or 0),
        cache_creation_tokens=int(row.get("cache_creation_tokens") or 0),
        cache_read_tokens=int(row.get("cache_read_tokens") or 0),
        cost_usd=float(row.get("cost_usd") or 0.0),
        lines_added=int(row.get("lines_added") or 0),
        lines_removed=int(row.get("lines_removed") or 0),
        web_search_requests=int(row.get("web_search_requests") or 0),
        captured_at=parse_iso(row.get("timestamp")) or utc_now(),
    )


class ReconciliationCycle:
    def __init__(
        self,
        gateway: PersistenceGateway,
        registry: SessionRegistry,
        state_path: Path,
        *,
        cost_epsilon: float = DEFAULT_COST_EPSILON,
        delta_policy: DeltaPolicy = DeltaPolicy.RAW,
        register_placeholders: bool = True,
        reader: Callable[[Path], StateReading] = read_state,
    ):
        self.gateway = gateway
        self.registry = registry
        self.state_path = state_path
        self.cost_epsilon = cost_epsilon
        self.delta_policy = delta_policy
        self.register_placeholders = register_placeholders
        self._reader = reader
        self._source_missing = False

    async def seed_from_store(self) -> int:
        """Load the last audited snapshot of every real session as the comparison baseline."""
        rows = await self.gateway.latest_snapshots()
        for row in rows:
            self.registry.observe(row["session_id"], _snapshot_from_row(row), row.get("project_path"))
        logger.info(f"Seeded registry with {len(rows)} session baselines from the store")
        return len(rows)

    async def run_once(self) -> CycleResult:
        started = time.perf_counter()
        result = CycleResult()

        # Raises SourceMalformedError before anything is touched.
        reading = self._reader(self.state_path)
        self._note_source_presence(reading)
        result.projects_observed = len(reading.projects)

        with start_span("tokentrack.cycle", {"projects": result.projects_observed}):
            active_now: set[str] = set()
            for project_path, record in reading.projects.items():
                session_id = session_id_of(record)
                if session_id is None:
                    if self.register_placeholders:
                        await self._register_placeholder(project_path, result)
                    continue
                active_now.add(project_path)
                await self._reconcile_project(project_path, session_id, record, reading, result)

            change = self.registry.reconcile_activity(active_now)

        result.sessions_started = sorted(change.started)
        result.sessions_ended = sorted(change.ended)
        for project_path in result.sessions_started:
            logger.info(f"Session active: {_short(project_path)}")
        result.duration_ms = (time.perf_counter() - started) * 1000.0
        return result

    def _note_source_presence(self, reading: StateReading) -> None:
        if not reading.exists and not self._source_missing:
            logger.warning(f"Claude state file not found at {reading.path} - waiting for Claude Code to start")
        elif reading.exists and self._source_missing:
            logger.info(f"Claude state file appeared at {reading.path}")
        self._source_missing = not reading.exists

    async def _register_placeholder(self, project_path: str, result: CycleResult) -> None:
        try:
            async with self.gateway.transaction("placeholder"):
                created = await self.gateway.ensure_placeholder(project_path)
        except StorageError as exc:
            result.errors += 1
            raise CycleFailedError("ensure_placeholder", project_path, result, exc) from exc
        if created:
            logger.info(f"Registered project: {_short(project_path)}")

    async def _reconcile_project(
        self,
        project_path: str,
        session_id: str,
        record: dict[str, Any],
        reading: StateReading,
        result: CycleResult,
    ) -> None:
        session = RealSession(sessionId=session_id, projectPath=project_path)
        current = extract_snapshot(record, captured_at=reading.read_at)
        previous = self.registry.previous_snapshot(session_id)
        delta: DeltaRecord | None = None
        stage = "ensure_session"
        try:
            async with self.gateway.transaction(f"project {project_path}"):
                created = await self.gateway.ensure_session(session)

                stage = "append_raw_snapshot"
                await self.gateway.append_raw_snapshot(session, current, raw=record)

                if previous is not None and has_changed(previous, current, self.cost_epsilon):
                    delta = compute_delta(previous, current, self.delta_policy)
                    stage = "append_delta"
                    await self.gateway.append_delta(session_id, delta)

                stage = "upsert_session_totals"
                await self.gateway.upsert_session_totals(session_id, current)
                stage = "commit"
        except StorageError as exc:
            result.errors += 1
            raise CycleFailedError(stage, project_path, result, exc) from exc

        self.registry.observe(session_id, current, project_path)
        result.sessions_observed += 1
        result.snapshots_recorded += 1

        if created:
            logger.info(
                f"New session {session_id[:8]}... in {_short(project_path)} "
                f"(tokens {current.input_tokens}/{current.output_tokens}/{current.cache_creation_tokens})"
            )
        if delta is not None:
            result.deltas_recorded += 1
            self._log_delta(project_path, session_id, previous, current, delta)
            record_delta(project_path, delta)

    def _log_delta(
        self,
        project_path: str,
        session_id: str,
        previous: Snapshot,
        current: Snapshot,
        delta: DeltaRecord,
    ) -> None:
        regressed = regressed_fields(previous, current)
        if regressed:
            action = "persisting signed delta" if self.delta_policy is DeltaPolicy.RAW else "clamping to zero"
            logger.warning(
                f"Counters decreased for session {session_id[:8]}... in {_short(project_path)} "
                f"({', '.join(regressed)}); {action}"
            )
        logger.info(
            f"Token change in {_short(project_path)} [{session_id[:8]}...] "
            f"input {_signed(delta.input_tokens)} output {_signed(delta.output_tokens)} "
            f"cache_creation {_signed(delta.cache_creation_tokens)} cache_read {_signed(delta.cache_read_tokens)} "
            f"cost ${delta.cost_usd:.6f}"
        )
        if delta.lines_added or delta.lines_removed:
            logger.info(f"  code {_signed(delta.lines_added)} added, {_signed(delta.lines_removed)} removed")
        if delta.web_search_requests:
            logger.info(f"  web searches {_signed(delta.web_search_requests)}")
