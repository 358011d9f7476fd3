"""
Subscriber / consumer for the HomeTrip event exchange.

Each subscription binds a queue to the exchange with a topic pattern and
attaches a handler. Several subscriptions may share one queue; a delivery on
a shared queue goes to every subscription whose pattern matches its routing
key, and the most severe outcome settles the message:

    ACK      -> basic.ack
    REQUEUE  -> basic.nack(requeue=True)   (handler raised or returned False)
    DISCARD  -> basic.nack(requeue=False)  (malformed body or handler asked)

Every delivery runs in its own task. Concurrency is bounded twice: by the
channel prefetch and by a semaphore of ``max_concurrent_handlers``.
"""

from __future__ import annotations

import asyncio
import contextlib
import functools
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from aio_pika.abc import (
    AbstractChannel,
    AbstractExchange,
    AbstractIncomingMessage,
    AbstractQueue,
)

from hometrip_bus.bus.connection import ConnectionManager
from hometrip_bus.bus.stats import EventBusStats
from hometrip_bus.config import EventBusConfig
from hometrip_bus.envelope import EventEnvelope
from hometrip_bus.exceptions import EventBusError, NotConnectedError, SerializationError
from hometrip_bus.handlers import HandlerAdapter, HandlerOutcome
from hometrip_bus.observability import (
    NullTracer,
    SpanKindEnum,
    Tracer,
    extract_trace_context,
)
from hometrip_bus.observability.attributes import (
    ATTR_EVENT_TYPE,
    ATTR_HANDLER_OUTCOME,
    ATTR_MESSAGING_DESTINATION,
    ATTR_MESSAGING_MESSAGE_ID,
    ATTR_MESSAGING_OPERATION,
    ATTR_MESSAGING_SYSTEM,
    ATTR_QUEUE_NAME,
    ATTR_ROUTING_KEY,
    MESSAGING_SYSTEM,
)
from hometrip_bus.routing import topic_matches, validate_pattern

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Subscription:
    """
    A registered ``{pattern, queue, handler}`` association.

    Attributes:
        pattern: Topic binding pattern (``booking.*``)
        queue_name: Queue the pattern is bound to; empty for a server-named
            exclusive queue
        handler: Normalized handler
        exclusive: Whether the queue is private to this connection
    """

    pattern: str
    queue_name: str
    handler: HandlerAdapter
    exclusive: bool = False
    subscription_id: str = field(default_factory=lambda: uuid4().hex[:12])

    @property
    def handler_name(self) -> str:
        return self.handler.name

    def matches(self, routing_key: str) -> bool:
        return topic_matches(self.pattern, routing_key)


@dataclass
class _QueueRegistration:
    """Broker-side state for one logical queue, rebuilt after every reconnect."""

    key: str
    name: str
    exclusive: bool
    subscriptions: list[Subscription] = field(default_factory=list)
    queue: AbstractQueue | None = None
    consumer_tag: str | None = None
    bound_patterns: set[str] = field(default_factory=set)

    def reset(self) -> None:
        self.queue = None
        self.consumer_tag = None
        self.bound_patterns.clear()

    @property
    def declared_name(self) -> str:
        if self.queue is not None:
            return str(self.queue.name)
        return self.name


class Subscriber:
    """
    Registers subscriptions and processes deliveries.

    Registrations are permanent for the life of the instance. After a
    reconnect the connection manager calls ``restore()``, which re-declares
    every queue, re-binds its patterns and restarts its consumer.
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

        self._queues: dict[str, _QueueRegistration] = {}
        self._setup_lock = asyncio.Lock()
        self._semaphore = asyncio.Semaphore(config.handler_concurrency)
        self._in_flight: set[asyncio.Task[None]] = set()

        connection.add_connected_hook(self.restore)

    @property
    def subscriptions(self) -> list[Subscription]:
        return [sub for registration in self._queues.values() for sub in registration.subscriptions]

    @property
    def in_flight(self) -> int:
        """Deliveries currently being processed."""
        return len(self._in_flight)

    @property
    def queue_names(self) -> list[str]:
        """Queue names as declared on the broker (server names for exclusive queues)."""
        return [registration.declared_name for registration in self._queues.values()]

    # =========================================================================
    # Registration
    # =========================================================================

    async def subscribe(
        self,
        pattern: str,
        handler: Any,
        *,
        queue_name: str | None = None,
        exclusive: bool = False,
    ) -> Subscription:
        """
        Bind ``pattern`` to a queue and attach ``handler``.

        Args:
            pattern: Topic pattern; ``*`` matches one word, ``#`` zero or more
            handler: Callable or object with ``handle()``; receives the
                decoded ``EventEnvelope``
            queue_name: Queue to bind; defaults to ``<service>.<pattern>``.
                Subscriptions naming the same queue share it.
            exclusive: Use a queue private to this connection. Without a
                ``queue_name`` the broker names it.

        Raises:
            NotConnectedError: If called before a successful connect
            InvalidRoutingKeyError: If the pattern is malformed
            TypeError: If the handler is not callable
            EventBusError: If the broker rejects the queue setup
        """
        if not self._connection.is_connected:
            raise NotConnectedError("subscribe")

        validate_pattern(pattern)
        adapter = HandlerAdapter(handler)

        if exclusive and queue_name is None:
            key, name = f"exclusive:{uuid4().hex}", ""
        else:
            name = queue_name or self._config.queue_name_for(pattern)
            key = name

        async with self._setup_lock:
            registration = self._queues.get(key)
            if registration is None:
                registration = _QueueRegistration(key=key, name=name, exclusive=exclusive)
                self._queues[key] = registration
            elif registration.exclusive != exclusive:
                raise EventBusError(
                    f"Queue {name!r} already registered with exclusive={registration.exclusive}"
                )

            subscription = Subscription(
                pattern=pattern,
                queue_name=name,
                handler=adapter,
                exclusive=exclusive,
            )
            registration.subscriptions.append(subscription)

            channel = self._connection.channel
            exchange = self._connection.exchange
            try:
                if channel is None or exchange is None:
                    raise NotConnectedError("subscribe")
                await self._ensure_queue(registration, channel, exchange)
            except Exception as e:
                registration.subscriptions.remove(subscription)
                if not registration.subscriptions:
                    del self._queues[key]
                if isinstance(e, EventBusError):
                    raise
                logger.error(
                    f"Failed to subscribe to {pattern!r}: {e}",
                    exc_info=True,
                    extra={
                        "pattern": pattern,
                        "queue": name,
                        "error": str(e),
                        "error_type": type(e).__name__,
                    },
                )
                raise EventBusError(f"Failed to subscribe to {pattern!r}: {e}") from e

        logger.info(
            f"Subscribed to {pattern}",
            extra={
                "pattern": pattern,
                "queue": registration.declared_name,
                "handler": adapter.name,
                "exclusive": exclusive,
            },
        )
        return subscription

    async def _ensure_queue(
        self,
        registration: _QueueRegistration,
        channel: AbstractChannel,
        exchange: AbstractExchange,
    ) -> None:
        if registration.queue is None:
            if registration.exclusive:
                registration.queue = await channel.declare_queue(
                    registration.name,
                    durable=False,
                    exclusive=True,
                    auto_delete=True,
                )
            else:
                registration.queue = await channel.declare_queue(
                    registration.name,
                    durable=self._config.durable,
                )

        queue = registration.queue
        for subscription in registration.subscriptions:
            if subscription.pattern in registration.bound_patterns:
                continue
            await queue.bind(exchange, routing_key=subscription.pattern)
            registration.bound_patterns.add(subscription.pattern)

        if registration.consumer_tag is None:
            registration.consumer_tag = await queue.consume(
                functools.partial(self._on_message, registration),
                no_ack=False,
            )

    async def restore(self, channel: AbstractChannel, exchange: AbstractExchange) -> None:
        """Re-create queues, bindings and consumers on a fresh channel."""
        if not self._queues:
            return

        async with self._setup_lock:
            restored = 0
            for registration in list(self._queues.values()):
                registration.reset()
                try:
                    await self._ensure_queue(registration, channel, exchange)
                    restored += 1
                except Exception as e:
                    logger.error(
                        f"Failed to restore queue {registration.name!r}: {e}",
                        exc_info=True,
                        extra={
                            "queue": registration.name,
                            "error": str(e),
                            "error_type": type(e).__name__,
                        },
                    )

        logger.info(
            f"Restored {restored}/{len(self._queues)} queue subscriptions",
            extra={"queues": self.queue_names},
        )

    # =========================================================================
    # Delivery processing
    # =========================================================================

    async def _on_message(
        self,
        registration: _QueueRegistration,
        message: AbstractIncomingMessage,
    ) -> None:
        task = asyncio.get_running_loop().create_task(self._process(registration, message))
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)

    async def _process(
        self,
        registration: _QueueRegistration,
        message: AbstractIncomingMessage,
    ) -> None:
        async with self._semaphore:
            self._stats.events_consumed += 1
            self._stats.last_consume_at = datetime.now(UTC)
            routing_key = message.routing_key or ""

            try:
                envelope = EventEnvelope.from_bytes(message.body)
            except SerializationError as e:
                self._stats.record_error()
                logger.error(
                    "Discarding malformed message",
                    extra={
                        "routing_key": routing_key,
                        "message_id": message.message_id,
                        "queue": registration.declared_name,
                        "error": str(e),
                    },
                )
                await self._settle(message, HandlerOutcome.DISCARD, routing_key)
                return

            matching = [sub for sub in registration.subscriptions if sub.matches(routing_key)]
            if not matching:
                logger.warning(
                    f"No subscription matches {routing_key!r} "
                    f"on queue {registration.declared_name!r}",
                    extra={
                        "routing_key": routing_key,
                        "event_type": envelope.type,
                        "queue": registration.declared_name,
                    },
                )
                await self._settle(message, HandlerOutcome.ACK, routing_key)
                return

            attributes = {
                ATTR_MESSAGING_SYSTEM: MESSAGING_SYSTEM,
                ATTR_MESSAGING_DESTINATION: self._config.exchange_name,
                ATTR_MESSAGING_OPERATION: "process",
                ATTR_MESSAGING_MESSAGE_ID: envelope.id,
                ATTR_ROUTING_KEY: routing_key,
                ATTR_EVENT_TYPE: envelope.type,
                ATTR_QUEUE_NAME: registration.declared_name,
            }
            parent = extract_trace_context(message.headers) if self._tracer.enabled else None

            with self._tracer.span_with_kind(
                "hometrip.event_bus.process",
                kind=SpanKindEnum.CONSUMER,
                attributes=attributes,
                context=parent,
            ) as span:
                outcomes = [
                    await self._invoke(subscription, envelope, message) for subscription in matching
                ]
                outcome = HandlerOutcome.worst(outcomes)
                if span is not None:
                    span.set_attribute(ATTR_HANDLER_OUTCOME, outcome.value)

            await self._settle(message, outcome, routing_key)

    async def _invoke(
        self,
        subscription: Subscription,
        envelope: EventEnvelope,
        message: AbstractIncomingMessage,
    ) -> HandlerOutcome:
        try:
            return await subscription.handler.handle(envelope)
        except Exception as e:
            self._stats.handler_errors += 1
            self._stats.record_error()
            logger.error(
                f"Handler {subscription.handler_name} failed for {envelope.type}: {e}",
                exc_info=True,
                extra={
                    "handler": subscription.handler_name,
                    "event_type": envelope.type,
                    "routing_key": message.routing_key,
                    "message_id": envelope.id,
                    "redelivered": message.redelivered,
                    "error": str(e),
                    "error_type": type(e).__name__,
                },
            )
            return HandlerOutcome.REQUEUE

    async def _settle(
        self,
        message: AbstractIncomingMessage,
        outcome: HandlerOutcome,
        routing_key: str,
    ) -> None:
        try:
            if outcome is HandlerOutcome.ACK:
                await message.ack()
                self._stats.messages_acked += 1
            elif outcome is HandlerOutcome.REQUEUE:
                await message.nack(requeue=True)
                self._stats.messages_requeued += 1
            else:
                await message.nack(requeue=False)
                self._stats.messages_discarded += 1
        except Exception as e:
            # Channel is gone; the broker redelivers unsettled messages.
            logger.warning(
                f"Failed to {outcome.value} message: {e}",
                extra={
                    "routing_key": routing_key,
                    "message_id": message.message_id,
                    "outcome": outcome.value,
                    "error": str(e),
                    "error_type": type(e).__name__,
                },
            )
            return

        logger.debug(
            f"Settled message with {outcome.value}",
            extra={
                "routing_key": routing_key,
                "message_id": message.message_id,
                "outcome": outcome.value,
            },
        )

    # =========================================================================
    # Shutdown
    # =========================================================================

    async def stop_consuming(self) -> None:
        """Cancel broker consumers so no new deliveries arrive."""
        for registration in self._queues.values():
            queue, tag = registration.queue, registration.consumer_tag
            registration.reset()
            if queue is None or tag is None:
                continue
            try:
                await queue.cancel(tag)
            except Exception as e:
                logger.warning(
                    f"Failed to cancel consumer on {queue.name!r}: {e}",
                    extra={"queue": queue.name, "error": str(e)},
                )

    async def drain(self, timeout: float | None = None) -> bool:
        """Wait for in-flight deliveries.

        Returns:
            True if all deliveries finished, False if the timeout expired
            (remaining tasks are cancelled and their messages left unsettled)
        """
        if not self._in_flight:
            return True

        pending_count = len(self._in_flight)
        logger.info(
            f"Waiting for {pending_count} in-flight messages",
            extra={"in_flight": pending_count, "timeout": timeout},
        )
        _, pending = await asyncio.wait(set(self._in_flight), timeout=timeout)
        if not pending:
            return True

        logger.warning(
            f"{len(pending)} in-flight messages did not finish; cancelling",
            extra={"in_flight": len(pending), "timeout": timeout},
        )
        for task in pending:
            task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await asyncio.gather(*pending, return_exceptions=True)
        return False


__all__ = ["Subscriber", "Subscription"]
