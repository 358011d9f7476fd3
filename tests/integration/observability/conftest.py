"""
Shared pytest fixtures for observability integration tests.

Spans are captured with the OpenTelemetry SDK's in-memory exporter.
"""

from __future__ import annotations

from collections.abc import Callable, Generator
from typing import Any

import pytest
from opentelemetry import trace
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

# Module-level storage for the global test provider
_test_provider: Any = None


@pytest.fixture(scope="session", autouse=True)
def setup_test_tracing() -> Generator[Any, None, None]:
    """
    Set up a global TracerProvider once for the test session.

    The global provider can only be set once per process, so an already
    configured SDK provider is reused.
    """
    global _test_provider

    current_provider = trace.get_tracer_provider()
    if isinstance(current_provider, TracerProvider):
        _test_provider = current_provider
    else:
        _test_provider = TracerProvider()
        trace.set_tracer_provider(_test_provider)

    yield _test_provider


@pytest.fixture
def trace_exporter(setup_test_tracing: Any) -> Generator[InMemorySpanExporter, None, None]:
    """In-memory exporter attached to the session provider for one test."""
    exporter = InMemorySpanExporter()
    _test_provider.add_span_processor(SimpleSpanProcessor(exporter))

    yield exporter

    # Processors cannot be removed from a provider; stop this one exporting.
    exporter.shutdown()


@pytest.fixture
def find_span(trace_exporter: InMemorySpanExporter) -> Callable[[str], Any | None]:
    """Find the first finished span whose name contains a substring."""

    def _find_span(name_contains: str) -> Any | None:
        spans = trace_exporter.get_finished_spans()
        return next((s for s in spans if name_contains in s.name), None)

    return _find_span
