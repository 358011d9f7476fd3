"""
Publisher for the HomeTrip event exchange.

``publish()`` reports failure through its return value instead of raising,
so a service can finish its own work even when the event fan-out fails.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable, Mapping
from datetime import UTC, datetime
from typing import Any

from aio_pika import DeliveryMode, Message

from hometrip_bus.bus.connection import ConnectionManager
from hometrip_bus.bus.stats import EventBusStats
from hometrip_bus.config import EventBusConfig
from hometrip_bus.envelope import EventEnvelope, build_envelope
from hometrip_bus.exceptions import InvalidRoutingKeyError, SerializationError
from hometrip_bus.observability import (
    NullTracer,
    SpanKindEnum,
    Tracer,
    inject_trace_context,
)
from hometrip_bus.observability.attributes import (
    ATTR_EVENT_TYPE,
    ATTR_MESSAGING_DESTINATION,
    ATTR_MESSAGING_MESSAGE_ID,
    ATTR_MESSAGING_OPERATION,
    ATTR_MESSAGING_SYSTEM,
    ATTR_ROUTING_KEY,
    ATTR_SERVICE_NAME,
    MESSAGING_SYSTEM,
)
from hometrip_bus.routing import validate_routing_key

logger = logging.getLogger(__name__)


class Publisher:
    """
    Publishes envelopes to the topic exchange.

    Calls from one instance reach the broker in call order: channel writes
    are serialized by a FIFO ``asyncio.Lock``.
    """

    def __init__(
        self,
        connection: ConnectionManager,
        config: EventBusConfig,
        *,
        stats: EventBusStats | None = None,
        tracer: Tracer | None = None,
    ) -> None:
        self._connection = connection
        self._config = config
        self._stats = stats or EventBusStats()
        self._tracer = tracer or NullTracer()
        self._lock = asyncio.Lock()

    async def publish(
        self,
        routing_key: str,
        message: Any,
        *,
        metadata: Mapping[str, Any] | None = None,
    ) -> bool:
        """Publish one message under ``routing_key``.

        Args:
            routing_key: Concrete topic, e.g. ``booking.completed``
            message: An ``EventEnvelope``, a mapping with envelope fields
                (``type``/``data``/...), or any JSON-representable payload
            metadata: Extra envelope metadata

        Returns:
            True if the exchange accepted the message, False otherwise
        """
        if not self._connection.is_connected:
            self._reject_disconnected(routing_key)
            return False

        try:
            validate_routing_key(routing_key)
            envelope = build_envelope(
                message,
                routing_key=routing_key,
                service=self._config.service_name,
                metadata=metadata,
            )
            body = envelope.to_bytes()
        except (InvalidRoutingKeyError, SerializationError) as e:
            self._record_failure()
            logger.error(
                f"Cannot publish to {routing_key!r}: {e}",
                extra={
                    "routing_key": routing_key,
                    "error": str(e),
                    "error_type": type(e).__name__,
                },
            )
            return False

        return await self._send(routing_key, envelope, body)

    async def publish_event(
        self,
        event_name: str,
        data: Any,
        *,
        metadata: Mapping[str, Any] | None = None,
    ) -> bool:
        """Publish ``data`` as event ``event_name``, routed by its own name."""
        if not self._connection.is_connected:
            self._reject_disconnected(event_name)
            return False
        try:
            envelope = EventEnvelope(
                type=event_name,
                data=data,
                service=self._config.service_name,
                metadata=dict(metadata or {}),
            )
        except ValueError as e:
            self._record_failure()
            logger.error(
                f"Cannot publish event {event_name!r}: {e}",
                extra={"routing_key": event_name, "error": str(e)},
            )
            return False
        return await self.publish(event_name, envelope)

    async def publish_batch(self, items: Iterable[tuple[str, Any]]) -> list[bool]:
        """Publish ``(routing_key, message)`` pairs in order.

        Returns:
            One result per item, in input order
        """
        return [await self.publish(routing_key, message) for routing_key, message in items]

    async def _send(self, routing_key: str, envelope: EventEnvelope, body: bytes) -> bool:
        attributes = {
            ATTR_MESSAGING_SYSTEM: MESSAGING_SYSTEM,
            ATTR_MESSAGING_DESTINATION: self._config.exchange_name,
            ATTR_MESSAGING_OPERATION: "publish",
            ATTR_MESSAGING_MESSAGE_ID: envelope.id,
            ATTR_ROUTING_KEY: routing_key,
            ATTR_EVENT_TYPE: envelope.type,
            ATTR_SERVICE_NAME: self._config.service_name,
        }

        with self._tracer.span_with_kind(
            "hometrip.event_bus.publish",
            kind=SpanKindEnum.PRODUCER,
            attributes=attributes,
        ):
            headers: dict[str, Any] = {
                "event_type": envelope.type,
                "service": envelope.service,
            }
            if self._tracer.enabled:
                inject_trace_context(headers)

            amqp_message = Message(
                body=body,
                content_type="application/json",
                content_encoding="utf-8",
                delivery_mode=DeliveryMode.PERSISTENT,
                message_id=envelope.id,
                timestamp=envelope.timestamp,
                type=envelope.type,
                app_id=envelope.service,
                headers=headers,
            )

            async with self._lock:
                exchange = self._connection.exchange
                if not self._connection.is_connected or exchange is None:
                    self._reject_disconnected(routing_key)
                    return False
                try:
                    await exchange.publish(amqp_message, routing_key=routing_key)
                except Exception as e:
                    self._record_failure()
                    logger.error(
                        f"Failed to publish {envelope.type}: {e}",
                        exc_info=True,
                        extra={
                            "message_id": envelope.id,
                            "event_type": envelope.type,
                            "routing_key": routing_key,
                            "error": str(e),
                            "error_type": type(e).__name__,
                        },
                    )
                    return False

        self._stats.events_published += 1
        self._stats.last_publish_at = datetime.now(UTC)
        logger.debug(
            f"Published {envelope.type}",
            extra={
                "message_id": envelope.id,
                "event_type": envelope.type,
                "routing_key": routing_key,
            },
        )
        return True

    def _reject_disconnected(self, routing_key: str) -> None:
        self._stats.publish_failures += 1
        logger.warning(
            "EventBus not connected, cannot publish event",
            extra={"routing_key": routing_key, "state": self._connection.state.value},
        )

    def _record_failure(self) -> None:
        self._stats.publish_failures += 1
        self._stats.record_error()


__all__ = ["Publisher"]
