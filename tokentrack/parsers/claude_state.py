"""Read Claude Code's ``.claude.json`` state file and normalize project counters."""
from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from tokentrack.date_utils import utc_now
from tokentrack.errors import SourceMalformedError
from tokentrack.tracking.snapshot import Snapshot

logger = logging.getLogger("tokentrack.source")

# Snapshot field -> key written by Claude Code on each project entry.
_SNAPSHOT_KEYS: dict[str, str] = {
    "input_tokens": "lastTotalInputTokens",
    "output_tokens": "lastTotalOutputTokens",
    "cache_creation_tokens": "lastTotalCacheCreationInputTokens",
    "cache_read_tokens": "lastTotalCacheReadInputTokens",
    "lines_added": "lastLinesAdded",
    "lines_removed": "lastLinesRemoved",
    "web_search_requests": "lastTotalWebSearchRequests",
    "api_duration_ms": "lastAPIDuration",
    "total_duration_ms": "lastDuration",
}
_COST_KEY = "lastCost"
# Largest value an INTEGER column can hold.
SQLITE_INTEGER_MAX = 2**63 - 1
_SESSION_ID_KEY = "lastSessionId"


@dataclass
class StateReading:
    """One frozen read of the state file: project path -> raw project record."""

    path: Path
    exists: bool
    projects: dict[str, dict[str, Any]] = field(default_factory=dict)
    read_at: datetime = field(default_factory=utc_now)


def _clamp(value: int) -> int:
    return min(max(0, value), SQLITE_INTEGER_MAX)


def _to_int(raw: Any) -> int:
    if isinstance(raw, bool) or raw is None:
        return 0
    if isinstance(raw, int):
        return _clamp(raw)
    if isinstance(raw, float):
        return _clamp(int(raw)) if math.isfinite(raw) else 0
    if isinstance(raw, str):
        try:
            return _clamp(int(float(raw.strip())))
        except (ValueError, OverflowError):
            return 0
    return 0


def _to_float(raw: Any) -> float:
    if isinstance(raw, bool) or raw is None:
        return 0.0
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(value):
        return 0.0
    return max(0.0, value)


def session_id_of(record: dict[str, Any]) -> str | None:
    value = record.get(_SESSION_ID_KEY)
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def extract_snapshot(record: dict[str, Any], captured_at: datetime | None = None) -> Snapshot:
    """Normalize one project record. Missing or non-numeric fields read as zero."""
    values = {name: _to_int(record.get(key)) for name, key in _SNAPSHOT_KEYS.items()}
    return Snapshot(
        **values,
        cost_usd=_to_float(record.get(_COST_KEY)),
        captured_at=captured_at or utc_now(),
    )


def read_state(path: Path) -> StateReading:
    """Read the whole state file once.

    A missing file yields an empty reading. Unparseable content, or a
    ``projects`` value of the wrong shape, raises ``SourceMalformedError`` so no
    subset of a half-written file is ever processed.
    """
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return StateReading(path=path, exists=False)
    except UnicodeDecodeError as exc:
        raise SourceMalformedError(path, f"not valid UTF-8 ({exc.reason})") from exc
    except OSError as exc:
        raise SourceMalformedError(path, f"unreadable: {exc}") from exc

    if not text.strip():
        # Claude Code truncates the file before rewriting it.
        raise SourceMalformedError(path, "file is empty")

    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise SourceMalformedError(path, f"invalid JSON at line {exc.lineno} column {exc.colno}: {exc.msg}") from exc

    if not isinstance(data, dict):
        raise SourceMalformedError(path, f"top-level value is {type(data).__name__}, expected object")

    projects = data.get("projects")
    if projects is None:
        logger.debug("No projects found in %s", path)
        return StateReading(path=path, exists=True)
    if not isinstance(projects, dict):
        raise SourceMalformedError(path, f"'projects' is {type(projects).__name__}, expected object")

    normalized: dict[str, dict[str, Any]] = {}
    for project_path, record in projects.items():
        if not isinstance(record, dict):
            raise SourceMalformedError(
                path, f"project '{project_path}' is {type(record).__name__}, expected object"
            )
        normalized[str(project_path)] = record
    return StateReading(path=path, exists=True, projects=normalized)
