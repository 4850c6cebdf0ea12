"""Value types flowing through the reconciliation engine."""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any

from tokentrack.date_utils import format_utc, utc_now

# Counters compared by the change detector and differenced by the delta calculator.
TRACKED_COUNTERS = (
    "input_tokens",
    "output_tokens",
    "cache_creation_tokens",
    "cache_read_tokens",
    "lines_added",
    "lines_removed",
    "web_search_requests",
)


@dataclass(frozen=True)
class Snapshot:
    """Normalized cumulative counters for one session at one observation."""

    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_tokens: int = 0
    cache_read_tokens: int = 0
    cost_usd: float = 0.0
    lines_added: int = 0
    lines_removed: int = 0
    web_search_requests: int = 0
    # Informational, never compared.
    api_duration_ms: int = 0
    total_duration_ms: int = 0
    captured_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["captured_at"] = format_utc(self.captured_at)
        return payload


@dataclass(frozen=True)
class DeltaRecord:
    """Signed difference between two consecutive snapshots of one session."""

    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_tokens: int = 0
    cache_read_tokens: int = 0
    cost_usd: float = 0.0
    lines_added: int = 0
    lines_removed: int = 0
    web_search_requests: int = 0
    started_at: datetime | None = None
    ended_at: datetime | None = None

    @property
    def is_regression(self) -> bool:
        if self.cost_usd < 0:
            return True
        return any(getattr(self, name) < 0 for name in TRACKED_COUNTERS)

    def apply_to(self, snapshot: Snapshot) -> dict[str, float]:
        """Return ``snapshot + self`` for every differenced field."""
        applied: dict[str, float] = {
            name: getattr(snapshot, name) + getattr(self, name) for name in TRACKED_COUNTERS
        }
        applied["cost_usd"] = snapshot.cost_usd + self.cost_usd
        return applied


@dataclass
class CycleResult:
    projects_observed: int = 0
    sessions_observed: int = 0
    snapshots_recorded: int = 0
    deltas_recorded: int = 0
    sessions_started: list[str] = field(default_factory=list)
    sessions_ended: list[str] = field(default_factory=list)
    errors: int = 0
    duration_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return self.errors == 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
