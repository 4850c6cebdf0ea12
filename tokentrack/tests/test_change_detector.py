import unittest
from dataclasses import replace
from datetime import datetime, timedelta, timezone

from tokentrack.tracking.detector import DeltaPolicy, compute_delta, has_changed, regressed_fields
from tokentrack.tracking.snapshot import TRACKED_COUNTERS, Snapshot

_T0 = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


def _snap(**overrides) -> Snapshot:
    base = {
        "input_tokens": 100,
        "output_tokens": 40,
        "cache_creation_tokens": 500,
        "cache_read_tokens": 2000,
        "cost_usd": 0.25,
        "lines_added": 10,
        "lines_removed": 2,
        "web_search_requests": 1,
        "captured_at": _T0,
    }
    base.update(overrides)
    return Snapshot(**base)


class HasChangedTests(unittest.TestCase):
    def test_each_tracked_counter_triggers_a_change(self) -> None:
        previous = _snap()
        for name in TRACKED_COUNTERS:
            with self.subTest(field=name):
                current = replace(previous, **{name: getattr(previous, name) + 1})
                self.assertTrue(has_changed(previous, current))

    def test_cost_beyond_epsilon_is_a_change(self) -> None:
        previous = _snap(cost_usd=0.001)
        self.assertTrue(has_changed(previous, replace(previous, cost_usd=0.0010021)))

    def test_cost_within_epsilon_is_not_a_change(self) -> None:
        previous = _snap(cost_usd=0.0010000)
        self.assertFalse(has_changed(previous, replace(previous, cost_usd=0.0010004)))

    def test_timestamp_only_difference_is_not_a_change(self) -> None:
        previous = _snap()
        current = replace(previous, captured_at=_T0 + timedelta(minutes=5))
        self.assertFalse(has_changed(previous, current))

    def test_informational_durations_are_not_tracked(self) -> None:
        previous = _snap()
        current = replace(previous, api_duration_ms=9000, total_duration_ms=12000)
        self.assertFalse(has_changed(previous, current))

    def test_custom_epsilon(self) -> None:
        previous = _snap(cost_usd=1.0)
        current = replace(previous, cost_usd=1.004)
        self.assertFalse(has_changed(previous, current, epsilon=0.01))
        self.assertTrue(has_changed(previous, current, epsilon=0.001))


class ComputeDeltaTests(unittest.TestCase):
    def test_raw_delta_round_trips_onto_previous(self) -> None:
        previous = _snap()
        current = _snap(
            input_tokens=180,
            output_tokens=35,
            cache_creation_tokens=500,
            cache_read_tokens=2600,
            cost_usd=0.31,
            lines_added=25,
            lines_removed=2,
            web_search_requests=0,
            captured_at=_T0 + timedelta(seconds=30),
        )

        delta = compute_delta(previous, current)
        applied = delta.apply_to(previous)

        for name in TRACKED_COUNTERS:
            self.assertEqual(applied[name], getattr(current, name), name)
        self.assertAlmostEqual(applied["cost_usd"], current.cost_usd)
        self.assertEqual(delta.started_at, previous.captured_at)
        self.assertEqual(delta.ended_at, current.captured_at)

    def test_raw_policy_keeps_negative_values(self) -> None:
        previous = _snap(input_tokens=25, cost_usd=0.5)
        current = _snap(input_tokens=5, cost_usd=0.1)

        delta = compute_delta(previous, current, DeltaPolicy.RAW)

        self.assertEqual(delta.input_tokens, -20)
        self.assertAlmostEqual(delta.cost_usd, -0.4)
        self.assertTrue(delta.is_regression)

    def test_clamped_policy_floors_negatives_to_zero(self) -> None:
        previous = _snap(input_tokens=25, output_tokens=10, cost_usd=0.5)
        current = _snap(input_tokens=5, output_tokens=30, cost_usd=0.1)

        delta = compute_delta(previous, current, DeltaPolicy.CLAMPED)

        self.assertEqual(delta.input_tokens, 0)
        self.assertEqual(delta.output_tokens, 20)
        self.assertEqual(delta.cost_usd, 0.0)
        self.assertIsInstance(delta.cost_usd, float)
        self.assertFalse(delta.is_regression)

    def test_regressed_fields_lists_decreasing_counters(self) -> None:
        previous = _snap(input_tokens=25, lines_removed=4, cost_usd=0.5)
        current = _snap(input_tokens=5, lines_removed=4, cost_usd=0.2)
        self.assertEqual(regressed_fields(previous, current), ["input_tokens", "cost_usd"])


if __name__ == "__main__":
    unittest.main()
