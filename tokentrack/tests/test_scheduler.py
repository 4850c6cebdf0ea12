import asyncio
import unittest

from tokentrack.errors import CircuitOpenError, CycleFailedError, SourceMalformedError, StorageError
from tokentrack.tracking.scheduler import AdaptiveScheduler, failure_stage
from tokentrack.tracking.snapshot import CycleResult


class _ScriptedCycles:
    """Cycle runner that replays a script of results and exceptions."""

    def __init__(self, script):
        self.script = list(script)
        self.calls = 0

    async def __call__(self) -> CycleResult:
        self.calls += 1
        step = self.script.pop(0) if self.script else CycleResult()
        if isinstance(step, BaseException):
            raise step
        return step


def _malformed() -> SourceMalformedError:
    return SourceMalformedError("/tmp/.claude.json", "invalid JSON at line 1 column 2: Expecting value")


class AdaptiveSchedulerTests(unittest.IsolatedAsyncioTestCase):
    def _scheduler(self, runner, active=lambda: False, **kwargs) -> AdaptiveScheduler:
        kwargs.setdefault("active_interval", 0.5)
        kwargs.setdefault("idle_interval", 2.0)
        kwargs.setdefault("max_failures", 3)
        return AdaptiveScheduler(runner, active, **kwargs)

    async def test_circuit_opens_after_ceiling_and_stops_issuing_cycles(self) -> None:
        runner = _ScriptedCycles([_malformed(), _malformed(), _malformed(), CycleResult(projects_observed=1)])
        terminal_calls = []

        async def on_terminal() -> None:
            terminal_calls.append(True)

        scheduler = self._scheduler(runner, on_terminal=on_terminal)

        with self.assertLogs("tokentrack.scheduler", level="ERROR") as logs:
            for _ in range(3):
                self.assertIsNone(await scheduler.run_cycle())

        self.assertTrue(scheduler.tripped)
        self.assertEqual(scheduler.consecutive_failures, 3)
        self.assertEqual(terminal_calls, [True])
        self.assertTrue(any("Polling error 3/3" in line for line in logs.output))
        self.assertTrue(any("CRITICAL" in line for line in logs.output))

        with self.assertRaises(CircuitOpenError):
            await scheduler.run_cycle()
        self.assertEqual(runner.calls, 3)

    async def test_running_loop_never_processes_state_after_trip(self) -> None:
        runner = _ScriptedCycles([_malformed(), _malformed(), _malformed(), CycleResult(projects_observed=1)])
        scheduler = self._scheduler(runner, active_interval=0.01, idle_interval=0.01)

        with self.assertLogs("tokentrack.scheduler", level="ERROR"):
            scheduler.start()
            await asyncio.wait_for(scheduler.wait_closed(), timeout=5)

        self.assertTrue(scheduler.tripped)
        self.assertFalse(scheduler.is_running)
        self.assertEqual(runner.calls, 3)
        self.assertIsNone(scheduler.last_result)

    async def test_success_resets_failure_counter(self) -> None:
        runner = _ScriptedCycles([_malformed(), _malformed(), CycleResult(), _malformed()])
        scheduler = self._scheduler(runner)

        with self.assertLogs("tokentrack.scheduler", level="ERROR"):
            await scheduler.run_cycle()
            await scheduler.run_cycle()
            self.assertEqual(scheduler.consecutive_failures, 2)
            await scheduler.run_cycle()
            self.assertEqual(scheduler.consecutive_failures, 0)
            await scheduler.run_cycle()

        self.assertEqual(scheduler.consecutive_failures, 1)
        self.assertFalse(scheduler.tripped)

    async def test_interval_follows_activity_and_rearms_only_on_change(self) -> None:
        state = {"active": True}
        scheduler = self._scheduler(_ScriptedCycles([]), active=lambda: state["active"])
        self.assertEqual(scheduler.interval, 0.5)

        await scheduler.run_cycle()
        await scheduler.run_cycle()
        self.assertEqual(scheduler.interval, 0.5)
        self.assertEqual(scheduler.rearm_count, 0)

        state["active"] = False
        with self.assertLogs("tokentrack.scheduler", level="INFO") as logs:
            await scheduler.run_cycle()
        self.assertEqual(scheduler.interval, 2.0)
        self.assertEqual(scheduler.rearm_count, 1)
        self.assertTrue(any("Polling interval: 2.0s" in line for line in logs.output))

        await scheduler.run_cycle()
        await scheduler.run_cycle()
        self.assertEqual(scheduler.rearm_count, 1)

        state["active"] = True
        await scheduler.run_cycle()
        self.assertEqual(scheduler.interval, 0.5)
        self.assertEqual(scheduler.rearm_count, 2)

    async def test_failed_cycle_does_not_retune(self) -> None:
        scheduler = self._scheduler(_ScriptedCycles([_malformed()]), active=lambda: False)
        with self.assertLogs("tokentrack.scheduler", level="ERROR"):
            await scheduler.run_cycle()
        self.assertEqual(scheduler.interval, 0.5)
        self.assertEqual(scheduler.rearm_count, 0)

    async def test_overlapping_trigger_is_skipped(self) -> None:
        release = asyncio.Event()
        calls = []

        async def slow_cycle() -> CycleResult:
            calls.append(1)
            await release.wait()
            return CycleResult()

        scheduler = self._scheduler(slow_cycle)
        first = asyncio.create_task(scheduler.run_cycle())
        await asyncio.sleep(0)
        self.assertTrue(scheduler.cycle_in_progress)

        self.assertIsNone(await scheduler.run_cycle())

        release.set()
        self.assertIsInstance(await first, CycleResult)
        self.assertEqual(len(calls), 1)
        self.assertFalse(scheduler.cycle_in_progress)

    async def test_stop_waits_for_cycle_in_flight(self) -> None:
        entered = asyncio.Event()
        release = asyncio.Event()
        finished = []

        async def slow_cycle() -> CycleResult:
            entered.set()
            await release.wait()
            finished.append(True)
            return CycleResult()

        scheduler = self._scheduler(slow_cycle, active_interval=0.01, idle_interval=0.01)
        scheduler.start()
        await asyncio.wait_for(entered.wait(), timeout=5)

        stopper = asyncio.create_task(scheduler.stop())
        await asyncio.sleep(0.02)
        self.assertFalse(stopper.done())

        release.set()
        await asyncio.wait_for(stopper, timeout=5)
        self.assertEqual(finished, [True])
        self.assertFalse(scheduler.is_running)

    async def test_stop_before_first_tick_runs_nothing(self) -> None:
        runner = _ScriptedCycles([])
        scheduler = self._scheduler(runner, active_interval=10, idle_interval=10)
        scheduler.start()
        await scheduler.stop()
        self.assertEqual(runner.calls, 0)

    async def test_unexpected_exception_counts_as_failure(self) -> None:
        scheduler = self._scheduler(_ScriptedCycles([RuntimeError("boom")]), max_failures=1)
        with self.assertLogs("tokentrack.scheduler", level="ERROR") as logs:
            await scheduler.run_cycle()
        self.assertTrue(scheduler.tripped)
        self.assertTrue(any("[unexpected]" in line for line in logs.output))

    async def test_partial_result_is_kept_for_status(self) -> None:
        partial = CycleResult(projects_observed=3, sessions_observed=1, errors=1)
        exc = CycleFailedError("append_delta", "/b", partial, StorageError("append_delta", "sb", OSError("disk full")))
        scheduler = self._scheduler(_ScriptedCycles([exc]))
        with self.assertLogs("tokentrack.scheduler", level="ERROR") as logs:
            await scheduler.run_cycle()
        self.assertIs(scheduler.last_result, partial)
        self.assertIn("append_delta", scheduler.last_error)
        self.assertTrue(any("/b" in line for line in logs.output))

    def test_failure_stage_names(self) -> None:
        self.assertEqual(failure_stage(_malformed()), "read_source")
        self.assertEqual(failure_stage(StorageError("append_delta", "s", OSError())), "append_delta")
        self.assertEqual(failure_stage(ValueError()), "unexpected")

    def test_rejects_invalid_configuration(self) -> None:
        with self.assertRaises(ValueError):
            AdaptiveScheduler(_ScriptedCycles([]), lambda: False, active_interval=0)
        with self.assertRaises(ValueError):
            AdaptiveScheduler(_ScriptedCycles([]), lambda: False, max_failures=0)


if __name__ == "__main__":
    unittest.main()
