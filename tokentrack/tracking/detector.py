"""Change detection and delta calculation between consecutive snapshots."""
from __future__ import annotations

from enum import Enum

from tokentrack.tracking.snapshot import TRACKED_COUNTERS, DeltaRecord, Snapshot

DEFAULT_COST_EPSILON = 1e-6


class DeltaPolicy(str, Enum):
    RAW = "raw"
    CLAMPED = "clamped"


def has_changed(previous: Snapshot, current: Snapshot, epsilon: float = DEFAULT_COST_EPSILON) -> bool:
    """True when any tracked counter differs. ``captured_at`` is ignored."""
    for name in TRACKED_COUNTERS:
        if getattr(previous, name) != getattr(current, name):
            return True
    return abs(current.cost_usd - previous.cost_usd) > epsilon


def compute_delta(
    previous: Snapshot,
    current: Snapshot,
    policy: DeltaPolicy = DeltaPolicy.RAW,
) -> DeltaRecord:
    """Field-wise ``current - previous``.

    Under ``DeltaPolicy.CLAMPED`` every negative field is floored to zero; under
    ``DeltaPolicy.RAW`` the sign is kept so consumers can see counter resets.
    """
    values: dict[str, float] = {
        name: getattr(current, name) - getattr(previous, name) for name in TRACKED_COUNTERS
    }
    values["cost_usd"] = current.cost_usd - previous.cost_usd
    if policy is DeltaPolicy.CLAMPED:
        values = {name: max(0, value) for name, value in values.items()}
        values["cost_usd"] = float(values["cost_usd"])
    return DeltaRecord(
        **values,
        started_at=previous.captured_at,
        ended_at=current.captured_at,
    )


def regressed_fields(previous: Snapshot, current: Snapshot) -> list[str]:
    """Names of counters that went backwards between two snapshots."""
    fields = [name for name in TRACKED_COUNTERS if getattr(current, name) < getattr(previous, name)]
    if current.cost_usd < previous.cost_usd:
        fields.append("cost_usd")
    return fields
