"""Subscription handler normalization and outcomes."""

from hometrip_bus.handlers.adapter import (
    AsyncHandlerFunc,
    EventHandler,
    HandlerAdapter,
    HandlerOutcome,
    HandlerResult,
    get_handler_name,
    resolve_outcome,
)

__all__ = [
    "AsyncHandlerFunc",
    "EventHandler",
    "HandlerAdapter",
    "HandlerOutcome",
    "HandlerResult",
    "get_handler_name",
    "resolve_outcome",
]
