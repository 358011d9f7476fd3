"""
Test utilities for hometrip_bus.

Components:
    InMemoryBroker: in-process broker whose ``connect`` replaces
        ``aio_pika.connect``, for exercising the real bus, consumer and
        lifecycle code without RabbitMQ
    RecordingSleep: records reconnect delays instead of waiting them out

Example:
    >>> from hometrip_bus.testing import InMemoryBroker
    >>> broker = InMemoryBroker()
    >>> bus = EventBus(config, connector=broker.connect)

Note:
    This module is intended for test code only. It should not be imported
    in production code paths.
"""

from hometrip_bus.testing.broker import (
    InMemoryBroker,
    InMemoryChannel,
    InMemoryConnection,
    InMemoryExchange,
    InMemoryIncomingMessage,
    InMemoryQueue,
)
from hometrip_bus.testing.sleep import RecordingSleep

__all__ = [
    "InMemoryBroker",
    "InMemoryChannel",
    "InMemoryConnection",
    "InMemoryExchange",
    "InMemoryIncomingMessage",
    "InMemoryQueue",
    "RecordingSleep",
]
