"""Tracker lifecycle: wiring, initial capture, polling, graceful shutdown."""
from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Optional

import aiosqlite

from tokentrack import config
from tokentrack.db.connection import open_connection
from tokentrack.db.gateway import PersistenceGateway
from tokentrack.db.sqlite_migrations import run_migrations
from tokentrack.models import CycleSummary, TrackerStatus
from tokentrack.tracking.detector import DeltaPolicy
from tokentrack.tracking.reconciler import ReconciliationCycle
from tokentrack.tracking.registry import SessionRegistry
from tokentrack.tracking.scheduler import AdaptiveScheduler
from tokentrack.tracking.snapshot import CycleResult

logger = logging.getLogger("tokentrack")


class TrackerService:
    """Owns one registry, one gateway and one scheduler for the process."""

    def __init__(
        self,
        *,
        state_path: Path | None = None,
        db_path: Path | str | None = None,
        active_interval: float | None = None,
        idle_interval: float | None = None,
        max_failures: int | None = None,
        cost_epsilon: float | None = None,
        delta_policy: DeltaPolicy | str | None = None,
        seed_from_store: bool | None = None,
        register_placeholders: bool | None = None,
        status_log_seconds: int | None = None,
    ):
        self.state_path = Path(state_path or config.STATE_PATH).expanduser()
        self.db_path = db_path or config.DB_PATH
        self.active_interval = active_interval or config.ACTIVE_INTERVAL_SECONDS
        self.idle_interval = idle_interval or config.IDLE_INTERVAL_SECONDS
        self.max_failures = max_failures or config.MAX_CONSECUTIVE_FAILURES
        self.cost_epsilon = config.COST_EPSILON if cost_epsilon is None else cost_epsilon
        self.delta_policy = DeltaPolicy(delta_policy or config.DELTA_POLICY)
        self.seed_from_store = config.SEED_FROM_STORE if seed_from_store is None else seed_from_store
        self.register_placeholders = (
            config.REGISTER_PLACEHOLDERS if register_placeholders is None else register_placeholders
        )
        self.status_log_seconds = (
            config.STATUS_LOG_SECONDS if status_log_seconds is None else status_log_seconds
        )

        self.registry = SessionRegistry()
        self.gateway: Optional[PersistenceGateway] = None
        self.reconciler: Optional[ReconciliationCycle] = None
        self.scheduler: Optional[AdaptiveScheduler] = None
        self._status_task: Optional[asyncio.Task] = None
        self._stopped = asyncio.Event()
        self._stopping = False

    async def start(self, db: aiosqlite.Connection | None = None) -> CycleResult | None:
        """Open the store, capture the initial state and begin polling."""
        if db is None:
            db = await open_connection(self.db_path)
        await run_migrations(db)
        self.gateway = PersistenceGateway(db)
        if self._stopping:
            # stop() finished before the store was attached.
            await self.gateway.close()
            return None
        self.reconciler = ReconciliationCycle(
            self.gateway,
            self.registry,
            self.state_path,
            cost_epsilon=self.cost_epsilon,
            delta_policy=self.delta_policy,
            register_placeholders=self.register_placeholders,
        )
        self.scheduler = AdaptiveScheduler(
            self.reconciler.run_once,
            lambda: self.registry.has_active,
            active_interval=self.active_interval,
            idle_interval=self.idle_interval,
            max_failures=self.max_failures,
            on_terminal=self._on_terminal,
        )
        logger.info(f"Tracking Claude state at {self.state_path} (delta policy: {self.delta_policy.value})")

        if self.seed_from_store:
            await self.reconciler.seed_from_store()
        if self._stopping:
            return None

        # Initial capture: first observations create sessions without deltas.
        initial = await self.scheduler.run_cycle()
        if initial is not None:
            logger.info(
                f"Initial state captured: {initial.sessions_observed} sessions across "
                f"{initial.projects_observed} projects"
            )
        # Either the breaker tripped or stop() ran during the capture.
        if self.scheduler.tripped or self._stopping:
            return initial

        self.scheduler.start()
        if self.status_log_seconds > 0:
            self._status_task = asyncio.create_task(self._status_loop(self.status_log_seconds))
        logger.info("Token tracker started")
        return initial

    async def poll_now(self) -> CycleResult | None:
        if self.scheduler is None:
            raise RuntimeError("Tracker not started")
        return await self.scheduler.run_cycle()

    async def stop(self) -> None:
        """Stop polling and close the store. Safe to call at any time, more than once."""
        if self._stopping:
            await self._stopped.wait()
            return
        self._stopping = True
        try:
            if self._status_task is not None:
                self._status_task.cancel()
                try:
                    await self._status_task
                except asyncio.CancelledError:
                    pass
                self._status_task = None
            if self.scheduler is not None:
                await self.scheduler.stop()
            if self.gateway is not None:
                await self.gateway.close()
            logger.info("Token tracker stopped")
        finally:
            self._stopped.set()

    async def wait_stopped(self) -> None:
        await self._stopped.wait()

    @property
    def tripped(self) -> bool:
        return bool(self.scheduler and self.scheduler.tripped)

    async def _on_terminal(self) -> None:
        logger.critical("Circuit breaker open - shutting down tracker")
        await self.stop()

    def status(self) -> TrackerStatus:
        scheduler = self.scheduler
        last = scheduler.last_result if scheduler else None
        return TrackerStatus(
            running=bool(scheduler and scheduler.is_running),
            statePath=str(self.state_path),
            trackedSessions=len(self.registry),
            activeProjects=sorted(self.registry.active_projects),
            intervalSeconds=scheduler.interval if scheduler else 0.0,
            consecutiveFailures=scheduler.consecutive_failures if scheduler else 0,
            maxConsecutiveFailures=self.max_failures,
            circuitOpen=self.tripped,
            cyclesRun=scheduler.cycles_run if scheduler else 0,
            lastCycle=CycleSummary(
                projectsObserved=last.projects_observed,
                sessionsObserved=last.sessions_observed,
                snapshotsRecorded=last.snapshots_recorded,
                deltasRecorded=last.deltas_recorded,
                errors=last.errors,
                durationMs=round(last.duration_ms, 3),
            ) if last else None,
            lastError=scheduler.last_error if scheduler else None,
        )

    def log_state(self) -> None:
        scheduler = self.scheduler
        logger.info("Current tracker state")
        for line in self.registry.describe():
            logger.info(line)
        if scheduler is not None:
            logger.info(
                f"Interval {scheduler.interval}s, consecutive errors "
                f"{scheduler.consecutive_failures}/{scheduler.max_failures}"
            )

    async def _status_loop(self, every: int) -> None:
        while True:
            await asyncio.sleep(every)
            self.log_state()
