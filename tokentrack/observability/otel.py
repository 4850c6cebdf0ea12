"""OpenTelemetry + Prometheus fallback wiring for the tracker."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from pathlib import PurePath
from typing import Any

from fastapi import FastAPI

from tokentrack import config

logger = logging.getLogger("tokentrack.observability")


_initialized = False
_enabled = False
_tracer: Any | None = None
_trace_provider: Any | None = None
_meter_provider: Any | None = None
_fastapi_instrumentor: Any | None = None

_cycle_counter: Any | None = None
_cycle_latency_hist: Any | None = None
_cycle_failure_counter: Any | None = None
_delta_counter: Any | None = None
_tokens_counter: Any | None = None
_cost_counter: Any | None = None

_prom_enabled = False
_prom_cycle_counter: Any | None = None
_prom_cycle_latency_hist: Any | None = None
_prom_cycle_failure_counter: Any | None = None
_prom_delta_counter: Any | None = None
_prom_tokens_counter: Any | None = None
_prom_cost_counter: Any | None = None

_TOKEN_DIRECTIONS = (
    ("input", "input_tokens"),
    ("output", "output_tokens"),
    ("cache_creation", "cache_creation_tokens"),
    ("cache_read", "cache_read_tokens"),
)


def _normalize_otlp_endpoint(base_endpoint: str, signal_path: str) -> str:
    endpoint = (base_endpoint or "").strip()
    if not endpoint:
        return ""
    if endpoint.endswith(signal_path):
        return endpoint
    if endpoint.endswith("/"):
        endpoint = endpoint[:-1]
    if endpoint.endswith("/v1"):
        return f"{endpoint}{signal_path[3:]}"
    return f"{endpoint}{signal_path}"


def _project_label(project_path: str) -> str:
    return PurePath(project_path).name or project_path or "unknown"


def _prom_labels(**extra: str) -> dict[str, str]:
    return {key: (value or "").strip() or "unknown" for key, value in extra.items()}


def _start_prometheus() -> None:
    global _prom_enabled
    global _prom_cycle_counter, _prom_cycle_latency_hist, _prom_cycle_failure_counter
    global _prom_delta_counter, _prom_tokens_counter, _prom_cost_counter

    try:
        from prometheus_client import Counter, Histogram, start_http_server

        start_http_server(config.PROM_PORT)
        _prom_cycle_counter = Counter(
            "tokentrack_cycles_total",
            "Reconciliation cycles by outcome",
            ["result"],
        )
        _prom_cycle_latency_hist = Histogram(
            "tokentrack_cycle_latency_ms",
            "Reconciliation cycle latency",
            ["result"],
        )
        _prom_cycle_failure_counter = Counter(
            "tokentrack_cycle_failures_total",
            "Failed reconciliation cycles by stage",
            ["stage"],
        )
        _prom_delta_counter = Counter(
            "tokentrack_deltas_total",
            "Delta records persisted",
            ["project"],
        )
        _prom_tokens_counter = Counter(
            "tokentrack_tokens_total",
            "Token deltas by direction",
            ["direction", "project"],
        )
        _prom_cost_counter = Counter(
            "tokentrack_cost_usd_total",
            "Cost deltas in USD",
            ["project"],
        )
        _prom_enabled = True
        logger.info("Prometheus metrics server listening on port %s", config.PROM_PORT)
    except Exception as exc:  # noqa: BLE001
        logger.warning("Prometheus metrics not started: %s", exc)
        _prom_enabled = False


def initialize(app: FastAPI | None = None) -> None:
    global _initialized, _enabled, _tracer, _trace_provider, _meter_provider, _fastapi_instrumentor
    global _cycle_counter, _cycle_latency_hist, _cycle_failure_counter
    global _delta_counter, _tokens_counter, _cost_counter

    if _initialized:
        if _enabled and app and _fastapi_instrumentor:
            _fastapi_instrumentor.instrument_app(app)
        return

    _initialized = True

    if config.PROM_PORT > 0:
        _start_prometheus()

    if not config.OTEL_ENABLED:
        logger.info("OpenTelemetry disabled (TOKENTRACK_OTEL_ENABLED=false)")
        return

    try:
        from opentelemetry import metrics, trace
        from opentelemetry.exporter.otlp.proto.http.metric_exporter import OTLPMetricExporter
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
        from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
        from opentelemetry.sdk.metrics import MeterProvider
        from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor
    except ImportError as exc:
        logger.warning("OpenTelemetry dependencies unavailable: %s", exc)
        return

    traces_endpoint = _normalize_otlp_endpoint(config.OTEL_ENDPOINT, "/v1/traces")
    metrics_endpoint = _normalize_otlp_endpoint(config.OTEL_ENDPOINT, "/v1/metrics")
    service_name = config.OTEL_SERVICE_NAME or "tokentrack"

    resource = Resource.create(
        {
            "service.name": service_name,
            "service.namespace": "tokentrack",
        }
    )

    trace_provider = TracerProvider(resource=resource)
    trace_provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=traces_endpoint or None)))
    trace.set_tracer_provider(trace_provider)

    metric_reader = PeriodicExportingMetricReader(
        OTLPMetricExporter(endpoint=metrics_endpoint or None)
    )
    meter_provider = MeterProvider(resource=resource, metric_readers=[metric_reader])
    metrics.set_meter_provider(meter_provider)
    meter = metrics.get_meter("tokentrack.tracker")

    _cycle_counter = meter.create_counter(
        "tokentrack_cycles_total",
        unit="1",
        description="Reconciliation cycles by outcome",
    )
    _cycle_latency_hist = meter.create_histogram(
        "tokentrack_cycle_latency_ms",
        unit="ms",
        description="Reconciliation cycle latency",
    )
    _cycle_failure_counter = meter.create_counter(
        "tokentrack_cycle_failures_total",
        unit="1",
        description="Failed reconciliation cycles by stage",
    )
    _delta_counter = meter.create_counter(
        "tokentrack_deltas_total",
        unit="1",
        description="Delta records persisted",
    )
    _tokens_counter = meter.create_counter(
        "tokentrack_tokens_total",
        unit="1",
        description="Token deltas by direction",
    )
    _cost_counter = meter.create_counter(
        "tokentrack_cost_usd_total",
        unit="usd",
        description="Cost deltas in USD",
    )

    _trace_provider = trace_provider
    _meter_provider = meter_provider
    _tracer = trace.get_tracer("tokentrack.tracker")
    _fastapi_instrumentor = FastAPIInstrumentor()
    _enabled = True

    if app:
        _fastapi_instrumentor.instrument_app(app)

    logger.info(
        "OpenTelemetry initialized (service=%s endpoint=%s)",
        service_name,
        config.OTEL_ENDPOINT,
    )


def shutdown(app: FastAPI | None = None) -> None:
    global _enabled
    if not _initialized:
        return
    try:
        if app and _fastapi_instrumentor:
            _fastapi_instrumentor.uninstrument_app(app)
    except Exception as exc:  # noqa: BLE001
        logger.debug("FastAPI uninstrument failed: %s", exc)
    for provider in (_meter_provider, _trace_provider):
        if provider is None:
            continue
        try:
            provider.shutdown()
        except Exception as exc:  # noqa: BLE001
            logger.debug("Telemetry provider shutdown failed: %s", exc)
    _enabled = False


@contextmanager
def start_span(name: str, attributes: dict[str, Any] | None = None):
    if not _enabled or _tracer is None:
        yield None
        return
    with _tracer.start_as_current_span(name) as span:
        if attributes:
            for key, value in attributes.items():
                if value is not None:
                    span.set_attribute(key, value)
        yield span


def record_cycle(result: str, duration_ms: float) -> None:
    labels = {"result": result or "unknown"}
    latency = max(0.0, float(duration_ms))
    if _enabled and _cycle_counter is not None:
        _cycle_counter.add(1, labels)
    if _enabled and _cycle_latency_hist is not None:
        _cycle_latency_hist.record(latency, labels)
    if _prom_enabled and _prom_cycle_counter is not None:
        _prom_cycle_counter.labels(**_prom_labels(**labels)).inc()
    if _prom_enabled and _prom_cycle_latency_hist is not None:
        _prom_cycle_latency_hist.labels(**_prom_labels(**labels)).observe(latency)


def record_cycle_failure(stage: str) -> None:
    labels = {"stage": stage or "unknown"}
    if _enabled and _cycle_failure_counter is not None:
        _cycle_failure_counter.add(1, labels)
    if _prom_enabled and _prom_cycle_failure_counter is not None:
        _prom_cycle_failure_counter.labels(**_prom_labels(**labels)).inc()


def record_delta(project_path: str, delta: Any) -> None:
    """Count one persisted delta and its positive token and cost components."""
    project = _project_label(project_path)
    if _enabled and _delta_counter is not None:
        _delta_counter.add(1, {"project": project})
    if _prom_enabled and _prom_delta_counter is not None:
        _prom_delta_counter.labels(**_prom_labels(project=project)).inc()

    # Counters only move forward; regressions are visible in the delta rows.
    for direction, attr in _TOKEN_DIRECTIONS:
        amount = max(0, int(getattr(delta, attr, 0) or 0))
        if amount == 0:
            continue
        if _enabled and _tokens_counter is not None:
            _tokens_counter.add(amount, {"direction": direction, "project": project})
        if _prom_enabled and _prom_tokens_counter is not None:
            _prom_tokens_counter.labels(**_prom_labels(direction=direction, project=project)).inc(amount)

    cost = float(getattr(delta, "cost_usd", 0.0) or 0.0)
    if cost > 0:
        if _enabled and _cost_counter is not None:
            _cost_counter.add(cost, {"project": project})
        if _prom_enabled and _prom_cost_counter is not None:
            _prom_cost_counter.labels(**_prom_labels(project=project)).inc(cost)
