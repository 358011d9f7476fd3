"""
Handler adapter for subscription callbacks.

Services register handlers in several shapes: plain functions, coroutine
functions, or objects exposing a ``handle()`` method. This module normalizes
all of them to one async callable returning a ``HandlerOutcome``, which the
consumer maps onto ack / nack-requeue / nack-discard.
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from hometrip_bus.envelope import EventEnvelope

logger = logging.getLogger(__name__)


class HandlerOutcome(Enum):
    """
    Settlement requested by a handler for one delivery.

    Values:
        ACK: Processing finished; remove the message from the queue
        REQUEUE: Transient failure; make the message available again
        DISCARD: Permanent failure; drop the message without redelivery
    """

    ACK = "ack"
    REQUEUE = "requeue"
    DISCARD = "discard"

    @property
    def severity(self) -> int:
        return _SEVERITY[self]

    @classmethod
    def worst(cls, outcomes: list[HandlerOutcome]) -> HandlerOutcome:
        """Combine the outcomes of several handlers for one delivery.

        DISCARD beats REQUEUE beats ACK. No outcomes means ACK.
        """
        if not outcomes:
            return cls.ACK
        return max(outcomes, key=lambda outcome: outcome.severity)


_SEVERITY = {
    HandlerOutcome.ACK: 0,
    HandlerOutcome.REQUEUE: 1,
    HandlerOutcome.DISCARD: 2,
}

HandlerResult = HandlerOutcome | bool | None
AsyncHandlerFunc = Callable[["EventEnvelope"], Awaitable[HandlerResult]]


@runtime_checkable
class EventHandler(Protocol):
    """Object-style handler with a ``handle()`` method (sync or async)."""

    def handle(self, envelope: EventEnvelope) -> Any: ...


def get_handler_name(handler: Any) -> str:
    """
    Get a descriptive name for a handler for logging and debugging.

    Args:
        handler: Any handler object (class instance, function, lambda)

    Returns:
        String name for the handler
    """
    if inspect.isfunction(handler) or inspect.ismethod(handler):
        return str(getattr(handler, "__qualname__", handler.__name__))
    if hasattr(handler, "__name__"):
        return str(handler.__name__)
    return str(handler.__class__.__name__)


def resolve_outcome(result: Any) -> HandlerOutcome:
    """
    Translate a handler's return value into an outcome.

    ``None`` and ``True`` acknowledge, ``False`` requeues, a
    ``HandlerOutcome`` is used as is. Any other value is treated as success
    and logged, since handlers commonly return incidental values.
    """
    if isinstance(result, HandlerOutcome):
        return result
    if result is None or result is True:
        return HandlerOutcome.ACK
    if result is False:
        return HandlerOutcome.REQUEUE
    logger.debug(
        f"Handler returned {type(result).__name__}; treating as ACK",
        extra={"result_type": type(result).__name__},
    )
    return HandlerOutcome.ACK


class HandlerAdapter:
    """
    Adapter that normalizes subscription handlers to a consistent async interface.

    Accepts:
    - Objects with async or sync ``handle()`` method
    - Async callable functions
    - Sync callable functions (a returned awaitable is awaited)

    Exceptions raised by the handler propagate out of ``handle()``; the
    consumer converts them into ``HandlerOutcome.REQUEUE``.

    Example:
        >>> async def on_booking(envelope):
        ...     await notify(envelope.data["bookingId"])
        >>> adapter = HandlerAdapter(on_booking)
        >>> await adapter.handle(envelope)
        <HandlerOutcome.ACK: 'ack'>

    Attributes:
        original: The original unwrapped handler
        name: Descriptive name for logging
    """

    def __init__(self, handler: Any) -> None:
        """
        Initialize the adapter with a handler.

        Raises:
            TypeError: If handler doesn't have handle() method and isn't callable
        """
        self._original = handler
        self._name = get_handler_name(handler)
        self._call = self._normalize(handler)

    @staticmethod
    def _normalize(handler: Any) -> Callable[[EventEnvelope], Any]:
        handle_method = getattr(handler, "handle", None)
        if handle_method is not None and callable(handle_method):
            return handle_method  # type: ignore[no-any-return]
        if callable(handler):
            return handler  # type: ignore[no-any-return]
        raise TypeError(f"Handler must have a handle() method or be callable, got {type(handler)}")

    @property
    def original(self) -> Any:
        """Get the original unwrapped handler."""
        return self._original

    @property
    def name(self) -> str:
        """Get the handler's descriptive name."""
        return self._name

    async def handle(self, envelope: EventEnvelope) -> HandlerOutcome:
        """Invoke the handler and resolve its outcome."""
        result = self._call(envelope)
        if inspect.isawaitable(result):
            result = await result
        return resolve_outcome(result)

    def __eq__(self, other: object) -> bool:
        """Check equality based on original handler identity."""
        if isinstance(other, HandlerAdapter):
            return self._original is other._original
        return self._original is other

    def __hash__(self) -> int:
        """Hash based on original handler identity."""
        return id(self._original)

    def __repr__(self) -> str:
        return f"HandlerAdapter({self._name})"


__all__ = [
    "AsyncHandlerFunc",
    "EventHandler",
    "HandlerAdapter",
    "HandlerOutcome",
    "HandlerResult",
    "get_handler_name",
    "resolve_outcome",
]
