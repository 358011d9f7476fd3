"""Tracing helpers for publish and consume paths."""

from hometrip_bus.observability.tracer import (
    MockTracer,
    NullTracer,
    OpenTelemetryTracer,
    SpanKindEnum,
    Tracer,
    create_tracer,
    extract_trace_context,
    inject_trace_context,
)

__all__ = [
    "MockTracer",
    "NullTracer",
    "OpenTelemetryTracer",
    "SpanKindEnum",
    "Tracer",
    "create_tracer",
    "extract_trace_context",
    "inject_trace_context",
]
