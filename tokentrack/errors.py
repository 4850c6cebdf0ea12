"""Tracker error taxonomy.

A missing state file is not an error (it reads as zero projects). Everything
else that stops a reconciliation cycle derives from ``TrackerError`` so the
scheduler can count it toward the circuit breaker.
"""
from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from tokentrack.tracking.snapshot import CycleResult


class TrackerError(Exception):
    """Base class for failures that abort a reconciliation cycle."""


class SourceMalformedError(TrackerError):
    def __init__(self, path: Path | str, detail: str):
        self.path = str(path)
        self.detail = detail
        super().__init__(f"Malformed state source {self.path}: {detail}")


class StorageError(TrackerError):
    def __init__(self, operation: str, session_id: str | None, cause: BaseException):
        self.operation = operation
        self.session_id = session_id
        self.cause = cause
        target = f" (session {session_id})" if session_id else ""
        super().__init__(f"Storage failure during {operation}{target}: {cause}")


class CycleFailedError(TrackerError):
    """A cycle stopped part-way. Projects processed before ``project_path`` were committed."""

    def __init__(
        self,
        stage: str,
        project_path: str,
        partial_result: "CycleResult",
        cause: BaseException,
    ):
        self.stage = stage
        self.project_path = project_path
        self.partial_result = partial_result
        self.cause = cause
        super().__init__(f"Cycle failed at stage '{stage}' for project {project_path}: {cause}")


class CircuitOpenError(TrackerError):
    def __init__(self, failures: int):
        self.failures = failures
        super().__init__(f"Circuit breaker open after {failures} consecutive failures")
