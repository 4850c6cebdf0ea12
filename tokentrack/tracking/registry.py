"""In-memory comparison state for the reconciliation cycle.

Only the running cycle touches the registry, so it carries no locking. It is
the baseline for change detection, not the durable record.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import PurePath
from typing import Iterable

from tokentrack.tracking.snapshot import Snapshot

logger = logging.getLogger("tokentrack.registry")


@dataclass(frozen=True)
class ActivityChange:
    started: frozenset[str]
    ended: frozenset[str]


class SessionRegistry:
    def __init__(self) -> None:
        self._snapshots: dict[str, Snapshot] = {}
        self._project_by_session: dict[str, str] = {}
        self._active: set[str] = set()

    def __len__(self) -> int:
        return len(self._snapshots)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._snapshots

    def observe(self, session_id: str, snapshot: Snapshot, project_path: str | None = None) -> None:
        self._snapshots[session_id] = snapshot
        if project_path is not None:
            self._project_by_session[session_id] = project_path

    def previous_snapshot(self, session_id: str) -> Snapshot | None:
        return self._snapshots.get(session_id)

    def project_for(self, session_id: str) -> str | None:
        return self._project_by_session.get(session_id)

    def mark_active(self, project_path: str) -> bool:
        """Return True when the project was not active before."""
        if project_path in self._active:
            return False
        self._active.add(project_path)
        return True

    def mark_inactive(self, project_path: str) -> bool:
        """Return True when the project was active before."""
        if project_path not in self._active:
            return False
        self._active.discard(project_path)
        logger.info("Session ended: %s", PurePath(project_path).name or project_path)
        return True

    def reconcile_activity(self, current: Iterable[str]) -> ActivityChange:
        """Replace the active set with ``current`` and report the transitions."""
        current_set = set(current)
        started = {path for path in current_set if self.mark_active(path)}
        ended = {path for path in list(self._active - current_set) if self.mark_inactive(path)}
        return ActivityChange(started=frozenset(started), ended=frozenset(ended))

    @property
    def active_projects(self) -> frozenset[str]:
        return frozenset(self._active)

    @property
    def has_active(self) -> bool:
        return bool(self._active)

    def describe(self) -> list[str]:
        """Human-readable dump of the tracked baselines, one line per session."""
        lines = [
            f"Active projects: {len(self._active)}",
            f"Tracked snapshots: {len(self._snapshots)}",
        ]
        for session_id, snap in self._snapshots.items():
            lines.append(
                f"  {session_id[:8]}... tokens {snap.input_tokens}/{snap.output_tokens}/"
                f"{snap.cache_creation_tokens}/{snap.cache_read_tokens} "
                f"cost ${snap.cost_usd:.6f} at {snap.captured_at.isoformat()}"
            )
        return lines
