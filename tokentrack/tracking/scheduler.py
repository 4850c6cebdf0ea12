"""Adaptive polling scheduler with a consecutive-failure circuit breaker."""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

from tokentrack.errors import (
    CircuitOpenError,
    CycleFailedError,
    SourceMalformedError,
    StorageError,
    TrackerError,
)
from tokentrack.observability import record_cycle, record_cycle_failure
from tokentrack.tracking.snapshot import CycleResult

logger = logging.getLogger("tokentrack.scheduler")

CycleRunner = Callable[[], Awaitable[CycleResult]]
TerminalCallback = Callable[[], Awaitable[None]]


def failure_stage(exc: BaseException) -> str:
    if isinstance(exc, CycleFailedError):
        return exc.stage
    if isinstance(exc, SourceMalformedError):
        return "read_source"
    if isinstance(exc, StorageError):
        return exc.operation
    return "unexpected"


class AdaptiveScheduler:
    """Runs reconciliation cycles strictly one at a time.

    The next cycle is scheduled at ``active_interval`` while any project is
    active and at ``idle_interval`` otherwise. The interval is only re-armed
    when it actually changes. After ``max_failures`` consecutive failed cycles
    the breaker opens: no further cycles run and ``on_terminal`` is awaited.
    """

    def __init__(
        self,
        run_cycle: CycleRunner,
        is_active: Callable[[], bool],
        *,
        active_interval: float = 0.5,
        idle_interval: float = 2.0,
        max_failures: int = 10,
        on_terminal: Optional[TerminalCallback] = None,
    ):
        if active_interval <= 0 or idle_interval <= 0:
            raise ValueError("Polling intervals must be positive")
        if max_failures < 1:
            raise ValueError("max_failures must be at least 1")
        self._run_cycle = run_cycle
        self._is_active = is_active
        self.active_interval = active_interval
        self.idle_interval = idle_interval
        self.max_failures = max_failures
        self._on_terminal = on_terminal

        self.interval = active_interval
        self.rearm_count = 0
        self.consecutive_failures = 0
        self.cycles_run = 0
        self.tripped = False
        self.last_result: CycleResult | None = None
        self.last_error: str | None = None

        self._cycle_in_progress = False
        self._idle = asyncio.Event()
        self._idle.set()
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def cycle_in_progress(self) -> bool:
        return self._cycle_in_progress

    def start(self) -> None:
        if self.is_running:
            logger.warning("Scheduler already running")
            return
        if self.tripped:
            raise CircuitOpenError(self.consecutive_failures)
        self._stop_event.clear()
        self._task = asyncio.create_task(self._loop(), name="tokentrack-scheduler")
        logger.info(f"Scheduler started (interval {self.interval}s)")

    async def stop(self) -> None:
        """Stop scheduling. A cycle already running is allowed to finish."""
        self._stop_event.set()
        task = self._task
        if task is not None and task is not asyncio.current_task():
            await task
        self._task = None
        # A manually triggered cycle may still be in flight.
        await self._idle.wait()

    async def wait_closed(self) -> None:
        if self._task is not None:
            await asyncio.shield(self._task)

    async def run_cycle(self) -> CycleResult | None:
        """Run one guarded cycle. Returns None if skipped or failed."""
        if self.tripped:
            raise CircuitOpenError(self.consecutive_failures)
        if self._cycle_in_progress:
            logger.debug("Cycle already in progress, skipping trigger")
            return None

        self._cycle_in_progress = True
        self._idle.clear()
        started = time.perf_counter()
        failure: Exception | None = None
        try:
            result = await self._run_cycle()
        except Exception as exc:  # noqa: BLE001 - every failure counts toward the breaker
            failure = exc
        finally:
            self._cycle_in_progress = False
            self._idle.set()

        if failure is not None:
            record_cycle("error", (time.perf_counter() - started) * 1000.0)
            await self._record_failure(failure)
            return None

        self.cycles_run += 1
        self.consecutive_failures = 0
        self.last_result = result
        self.last_error = None
        record_cycle("ok", result.duration_ms)
        self._retune()
        return result

    async def _record_failure(self, exc: Exception) -> None:
        self.cycles_run += 1
        self.consecutive_failures += 1
        self.last_error = str(exc)
        if isinstance(exc, CycleFailedError):
            self.last_result = exc.partial_result
        record_cycle_failure(failure_stage(exc))

        counter = f"{self.consecutive_failures}/{self.max_failures}"
        if isinstance(exc, TrackerError):
            logger.error(f"Polling error {counter} [{failure_stage(exc)}]: {exc}")
        else:
            logger.exception(f"Polling error {counter} [unexpected]: {exc}")

        if self.consecutive_failures >= self.max_failures:
            await self._trip()

    async def _trip(self) -> None:
        self.tripped = True
        self._stop_event.set()
        logger.critical(
            f"Too many consecutive errors ({self.consecutive_failures}) - stopping tracker"
        )
        if self._on_terminal is not None:
            await self._on_terminal()

    def _retune(self) -> None:
        active = self._is_active()
        wanted = self.active_interval if active else self.idle_interval
        if wanted == self.interval:
            return
        self.interval = wanted
        self.rearm_count += 1
        logger.info(f"Polling interval: {self.interval}s ({'active' if active else 'idle'})")

    async def _loop(self) -> None:
        try:
            while not self._stop_event.is_set():
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
                    break
                except asyncio.TimeoutError:
                    pass
                await self.run_cycle()
        finally:
            logger.info("Scheduler stopped")
