"""
EventBus: the per-service entry point.

Wires the connection manager, publisher and subscriber around one
configuration, one stats object and one tracer. Construct it explicitly and
pass it to the code that needs it; there is no module-level instance.

Example:
    >>> bus = EventBus(EventBusConfig(service_name="review-service"))
    >>> if not await bus.connect():
    ...     raise SystemExit(1)
    >>> await bus.subscribe("booking.*", on_booking_event)
    >>> await bus.publish("review.created", {"type": "review.created", "data": {...}})
    >>> await bus.close()
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlsplit

from hometrip_bus.bus.connection import (
    ConnectionManager,
    ConnectionState,
    Connector,
    ExhaustedCallback,
    SleepFunc,
)
from hometrip_bus.bus.consumer import Subscriber, Subscription
from hometrip_bus.bus.publisher import Publisher
from hometrip_bus.bus.stats import EventBusStats
from hometrip_bus.config import EventBusConfig
from hometrip_bus.observability import Tracer, create_tracer

logger = logging.getLogger(__name__)


@dataclass
class HealthCheckResult:
    """Result of a health check on the event bus.

    Attributes:
        healthy: True if the connection and channel are open.
        connection_status: "connected", "connecting", "disconnected" or
            "exhausted".
        channel_status: "open", "closed" or "not_initialized".
        reconnect_attempts: Attempts since the last successful connect.
        error: Last connection error, if unhealthy.
        details: Configuration and subscription details.

    Example:
        >>> result = await bus.health_check()
        >>> if not result.healthy:
        ...     print(f"Unhealthy: {result.error}")
    """

    healthy: bool
    connection_status: str
    channel_status: str
    reconnect_attempts: int = 0
    error: str | None = None
    details: dict[str, Any] = field(default_factory=dict)


class EventBus:
    """
    Publish/subscribe over a durable topic exchange for one service.

    Args:
        config: Bus configuration (defaults to ``EventBusConfig()``)
        connector: Replacement for ``aio_pika.connect``
        sleep: Replacement for ``asyncio.sleep`` used by the reconnect backoff
        tracer: Tracer for publish/consume spans; created from
            ``config.enable_tracing`` when omitted
        on_exhausted: Called with ``ReconnectExhaustedError`` when automatic
            reconnection gives up
    """

    def __init__(
        self,
        config: EventBusConfig | None = None,
        *,
        connector: Connector | None = None,
        sleep: SleepFunc | None = None,
        tracer: Tracer | None = None,
        on_exhausted: ExhaustedCallback | None = None,
    ) -> None:
        self._config = config or EventBusConfig()
        self._stats = EventBusStats()
        self._tracer = tracer or create_tracer(__name__, self._config.enable_tracing)

        self._connection = ConnectionManager(
            self._config,
            connector=connector,
            sleep=sleep,
            on_exhausted=on_exhausted,
        )
        self._publisher = Publisher(
            self._connection, self._config, stats=self._stats, tracer=self._tracer
        )
        self._subscriber = Subscriber(
            self._connection, self._config, stats=self._stats, tracer=self._tracer
        )

    # =========================================================================
    # Properties
    # =========================================================================

    @property
    def config(self) -> EventBusConfig:
        return self._config

    @property
    def connection(self) -> ConnectionManager:
        return self._connection

    @property
    def state(self) -> ConnectionState:
        return self._connection.state

    @property
    def is_connected(self) -> bool:
        return self._connection.is_connected

    @property
    def reconnect_attempts(self) -> int:
        return self._connection.reconnect_attempts

    @property
    def subscriptions(self) -> list[Subscription]:
        return self._subscriber.subscriptions

    @property
    def stats(self) -> EventBusStats:
        self._stats.reconnections = self._connection.reconnections
        return self._stats

    def set_exhausted_callback(self, callback: ExhaustedCallback | None) -> None:
        self._connection.set_exhausted_callback(callback)

    # =========================================================================
    # Operations
    # =========================================================================

    async def connect(self) -> bool:
        """Connect and declare the exchange. Never raises for broker errors.

        Returns:
            True on success; False after logging and scheduling a reconnect
        """
        return await self._connection.connect()

    async def publish(
        self,
        routing_key: str,
        message: Any,
        *,
        metadata: Mapping[str, Any] | None = None,
    ) -> bool:
        """Publish ``message`` under ``routing_key``. Returns False instead of raising."""
        return await self._publisher.publish(routing_key, message, metadata=metadata)

    async def publish_event(
        self,
        event_name: str,
        data: Any,
        *,
        metadata: Mapping[str, Any] | None = None,
    ) -> bool:
        """Publish ``data`` as ``event_name``, using the name as routing key."""
        return await self._publisher.publish_event(event_name, data, metadata=metadata)

    async def publish_batch(self, items: Iterable[tuple[str, Any]]) -> list[bool]:
        return await self._publisher.publish_batch(items)

    async def subscribe(
        self,
        pattern: str,
        handler: Any,
        *,
        queue_name: str | None = None,
        exclusive: bool = False,
    ) -> Subscription:
        """Bind ``pattern`` and attach ``handler``.

        Raises:
            NotConnectedError: If called before a successful connect
        """
        return await self._subscriber.subscribe(
            pattern, handler, queue_name=queue_name, exclusive=exclusive
        )

    async def close(self, drain_timeout: float | None = None) -> None:
        """Stop consuming, wait for in-flight handlers, then close channel and connection.

        Safe to call repeatedly.

        Args:
            drain_timeout: Seconds to wait for in-flight handlers; defaults to
                ``config.shutdown_timeout``
        """
        timeout = self._config.shutdown_timeout if drain_timeout is None else drain_timeout
        logger.debug(
            "Closing event bus",
            extra={"service": self._config.service_name, "in_flight": self._subscriber.in_flight},
        )
        await self._subscriber.stop_consuming()
        await self._subscriber.drain(timeout)
        await self._connection.close()

    # =========================================================================
    # Status
    # =========================================================================

    def get_status(self) -> dict[str, Any]:
        """Snapshot for readiness endpoints and diagnostics."""
        url = urlsplit(self._config.rabbitmq_url)
        return {
            "connected": self.is_connected,
            "state": self.state.value,
            "reconnect_attempts": self.reconnect_attempts,
            "max_reconnect_attempts": self._config.max_reconnect_attempts,
            "host": url.hostname,
            "port": url.port,
            "exchange": self._config.exchange_name,
            "service": self._config.service_name,
            "subscriptions": [
                {"pattern": sub.pattern, "queue": sub.queue_name, "handler": sub.handler_name}
                for sub in self.subscriptions
            ],
            "in_flight": self._subscriber.in_flight,
            "stats": self.stats.to_dict(),
        }

    async def health_check(self) -> HealthCheckResult:
        """Check connection and channel state without touching the broker."""
        channel = self._connection.channel
        if channel is None:
            channel_status = "not_initialized"
        elif channel.is_closed:
            channel_status = "closed"
        else:
            channel_status = "open"

        healthy = self.is_connected and channel_status == "open"
        return HealthCheckResult(
            healthy=healthy,
            connection_status=self.state.value,
            channel_status=channel_status,
            reconnect_attempts=self.reconnect_attempts,
            error=None if healthy else self._connection.last_error,
            details={
                "exchange": self._config.exchange_name,
                "service": self._config.service_name,
                "queues": self._subscriber.queue_names,
                "prefetch_count": self._config.prefetch_count,
                "in_flight": self._subscriber.in_flight,
            },
        )

    async def __aenter__(self) -> EventBus:
        await self.connect()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()


__all__ = ["EventBus", "HealthCheckResult"]
