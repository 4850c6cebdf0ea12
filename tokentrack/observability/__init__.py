"""Observability helpers."""

from tokentrack.observability.otel import (
    initialize,
    shutdown,
    start_span,
    record_cycle,
    record_cycle_failure,
    record_delta,
)

__all__ = [
    "initialize",
    "shutdown",
    "start_span",
    "record_cycle",
    "record_cycle_failure",
    "record_delta",
]
