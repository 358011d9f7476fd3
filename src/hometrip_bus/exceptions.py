"""Library exceptions for the hometrip_bus package."""


class EventBusError(Exception):
    """Base exception for the event bus library."""

    pass


class NotConnectedError(EventBusError):
    """Raised when an operation requires a live broker connection."""

    def __init__(self, operation: str) -> None:
        self.operation = operation
        super().__init__(f"EventBus not connected: cannot {operation}")


class SerializationError(EventBusError):
    """Raised when a message body cannot be encoded or decoded."""

    def __init__(self, message: str, event_type: str | None = None) -> None:
        self.event_type = event_type
        prefix = f"Failed to serialize {event_type}: " if event_type else ""
        super().__init__(f"{prefix}{message}")


class InvalidRoutingKeyError(EventBusError, ValueError):
    """Raised when a routing key or binding pattern is malformed."""

    def __init__(self, key: str, reason: str) -> None:
        self.key = key
        self.reason = reason
        super().__init__(f"Invalid routing key {key!r}: {reason}")


class ReconnectExhaustedError(EventBusError):
    """Raised when automatic reconnection gave up after the configured attempts."""

    def __init__(self, attempts: int) -> None:
        self.attempts = attempts
        super().__init__(f"Max reconnection attempts reached ({attempts})")


class StartupError(EventBusError):
    """Raised when a service cannot reach the broker during startup."""

    pass


class ShutdownTimeoutError(EventBusError):
    """Graceful shutdown did not finish inside its window; reported in the shutdown result."""

    def __init__(self, timeout: float) -> None:
        self.timeout = timeout
        super().__init__(f"Shutdown did not complete within {timeout}s")


__all__ = [
    "EventBusError",
    "NotConnectedError",
    "SerializationError",
    "InvalidRoutingKeyError",
    "ReconnectExhaustedError",
    "StartupError",
    "ShutdownTimeoutError",
]
