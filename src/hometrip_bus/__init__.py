"""
hometrip_bus: shared event bus and service lifecycle for HomeTrip services.

Each service owns one ``EventBus`` (one broker connection, one channel,
the durable ``hometrip_events`` topic exchange) and usually drives it
through a ``ServiceLifecycle``:

    >>> from hometrip_bus import EventBus, EventBusSettings, ServiceLifecycle
    >>> bus = EventBus(EventBusSettings().to_config())
    >>> lifecycle = ServiceLifecycle(bus)
    >>> exit_code = await lifecycle.run([("booking.*", on_booking_event)])
"""

from hometrip_bus.bus import (
    ConnectionManager,
    ConnectionState,
    EventBus,
    EventBusStats,
    HealthCheckResult,
    Publisher,
    ReconnectState,
    Subscriber,
    Subscription,
)
from hometrip_bus.config import EventBusConfig, EventBusSettings
from hometrip_bus.envelope import EventEnvelope, build_envelope
from hometrip_bus.exceptions import (
    EventBusError,
    InvalidRoutingKeyError,
    NotConnectedError,
    ReconnectExhaustedError,
    SerializationError,
    ShutdownTimeoutError,
    StartupError,
)
from hometrip_bus.handlers import HandlerAdapter, HandlerOutcome
from hometrip_bus.lifecycle import (
    LifecyclePhase,
    ServiceLifecycle,
    ShutdownReason,
    ShutdownResult,
)
from hometrip_bus.routing import topic_matches, validate_pattern, validate_routing_key

__version__ = "0.1.0"

__all__ = [
    "ConnectionManager",
    "ConnectionState",
    "EventBus",
    "EventBusConfig",
    "EventBusError",
    "EventBusSettings",
    "EventBusStats",
    "EventEnvelope",
    "HandlerAdapter",
    "HandlerOutcome",
    "HealthCheckResult",
    "InvalidRoutingKeyError",
    "LifecyclePhase",
    "NotConnectedError",
    "Publisher",
    "ReconnectExhaustedError",
    "ReconnectState",
    "SerializationError",
    "ServiceLifecycle",
    "ShutdownReason",
    "ShutdownResult",
    "ShutdownTimeoutError",
    "StartupError",
    "Subscriber",
    "Subscription",
    "build_envelope",
    "topic_matches",
    "validate_pattern",
    "validate_routing_key",
]
