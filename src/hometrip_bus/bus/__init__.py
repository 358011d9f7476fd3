"""
RabbitMQ-backed event bus.

Components:
- ConnectionManager: connection, channel, exchange and the reconnect loop
- Publisher: persistent JSON publishes to the topic exchange
- Subscriber: queue bindings, handler dispatch, ack/requeue/discard
- EventBus: the facade services use
"""

from hometrip_bus.bus.connection import ConnectionManager, ConnectionState
from hometrip_bus.bus.consumer import Subscriber, Subscription
from hometrip_bus.bus.event_bus import EventBus, HealthCheckResult
from hometrip_bus.bus.publisher import Publisher
from hometrip_bus.bus.reconnect import ReconnectState
from hometrip_bus.bus.stats import EventBusStats

__all__ = [
    "ConnectionManager",
    "ConnectionState",
    "EventBus",
    "EventBusStats",
    "HealthCheckResult",
    "Publisher",
    "ReconnectState",
    "Subscriber",
    "Subscription",
]
