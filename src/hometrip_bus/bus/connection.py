"""
Connection manager for the HomeTrip event bus.

Owns the broker connection, the single channel and the topic exchange.
Reconnection is driven here rather than by aio-pika's robust connection so
the backoff schedule, the attempt limit and the "give up" signal are
explicit and testable:

    DISCONNECTED -> CONNECTING -> CONNECTED -> DISCONNECTED (reconnecting)
                                           \\-> EXHAUSTED (after max attempts)

Both the connector (``aio_pika.connect``) and the sleep function can be
injected, which lets tests drive the reconnect loop without a broker or
real timers.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from enum import Enum
from typing import Any

import aio_pika
from aio_pika import ExchangeType
from aio_pika.abc import AbstractChannel, AbstractConnection, AbstractExchange

from hometrip_bus.bus.reconnect import ReconnectState
from hometrip_bus.config import EventBusConfig, sanitize_url
from hometrip_bus.exceptions import ReconnectExhaustedError

logger = logging.getLogger(__name__)

Connector = Callable[..., Awaitable[AbstractConnection]]
SleepFunc = Callable[[float], Awaitable[Any]]
ConnectedHook = Callable[[AbstractChannel, AbstractExchange], Awaitable[None]]
ExhaustedCallback = Callable[[ReconnectExhaustedError], Any]


class ConnectionState(Enum):
    """Lifecycle state of the broker connection."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    EXHAUSTED = "exhausted"


class ConnectionManager:
    """
    Manages one connection, one channel and the topic exchange.

    ``connect()`` never raises for broker failures: it logs, schedules the
    reconnect loop and returns False. Unexpected connection or channel
    closure schedules the same loop. At most one reconnect task exists at
    any time.

    Hooks registered with ``add_connected_hook()`` run after every
    successful (re)connect with the fresh channel and exchange; the
    subscriber uses this to restore its queues and consumers.

    Example:
        >>> manager = ConnectionManager(EventBusConfig(service_name="booking"))
        >>> if await manager.connect():
        ...     await manager.exchange.publish(message, routing_key="booking.created")
        >>> await manager.close()
    """

    def __init__(
        self,
        config: EventBusConfig,
        *,
        connector: Connector | None = None,
        sleep: SleepFunc | None = None,
        on_exhausted: ExhaustedCallback | None = None,
    ) -> None:
        self._config = config
        self._connector = connector
        self._sleep = sleep or asyncio.sleep
        self._on_exhausted = on_exhausted

        self._reconnect = ReconnectState(
            max_attempts=config.max_reconnect_attempts,
            base_delay=config.reconnect_delay,
        )
        self._state = ConnectionState.DISCONNECTED
        self._connection: AbstractConnection | None = None
        self._channel: AbstractChannel | None = None
        self._exchange: AbstractExchange | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        self._closed = False
        self._connected_hooks: list[ConnectedHook] = []

        self.reconnections = 0
        self.connected_at: datetime | None = None
        self.last_error: str | None = None

    # =========================================================================
    # Properties
    # =========================================================================

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    @property
    def channel(self) -> AbstractChannel | None:
        return self._channel

    @property
    def exchange(self) -> AbstractExchange | None:
        return self._exchange

    @property
    def reconnect_attempts(self) -> int:
        """Reconnect attempts made since the last successful connect."""
        return self._reconnect.attempts

    @property
    def reconnect_state(self) -> ReconnectState:
        return self._reconnect

    @property
    def reconnecting(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    def set_exhausted_callback(self, callback: ExhaustedCallback | None) -> None:
        self._on_exhausted = callback

    def add_connected_hook(self, hook: ConnectedHook) -> None:
        """Run ``hook(channel, exchange)`` after every successful connect."""
        self._connected_hooks.append(hook)

    # =========================================================================
    # Connect / close
    # =========================================================================

    async def connect(self) -> bool:
        """Open the connection, channel and exchange.

        Returns:
            True on success. On failure the error is logged, a reconnect is
            scheduled and False is returned.
        """
        if self.is_connected:
            logger.warning("EventBus already connected")
            return True

        self._closed = False
        await self._cancel_reconnect()

        if await self._establish():
            return True

        self._schedule_reconnect()
        return False

    async def close(self) -> None:
        """Close channel then connection. Safe to call more than once."""
        already_closed = self._closed and self._connection is None
        self._closed = True
        await self._cancel_reconnect()

        self._exchange = None
        self._state = ConnectionState.DISCONNECTED
        self.connected_at = None

        # Each reference is dropped only after it is closed.
        channel = self._channel
        if channel is not None and not channel.is_closed:
            try:
                await channel.close()
            except Exception as e:
                logger.warning(
                    f"Error closing channel: {e}",
                    extra={"error": str(e), "error_type": type(e).__name__},
                )
        self._channel = None

        connection = self._connection
        if connection is not None and not connection.is_closed:
            try:
                await connection.close()
            except Exception as e:
                logger.warning(
                    f"Error closing connection: {e}",
                    extra={"error": str(e), "error_type": type(e).__name__},
                )
        self._connection = None

        if not already_closed:
            logger.info(
                "Disconnected from RabbitMQ",
                extra={"service": self._config.service_name},
            )

    async def _establish(self) -> bool:
        # A channel-level error leaves the old connection open.
        if self._connection is not None:
            await self._discard_transport()

        self._state = ConnectionState.CONNECTING
        connector = self._connector or aio_pika.connect

        try:
            connection = await connector(
                self._config.rabbitmq_url,
                timeout=self._config.connect_timeout,
                heartbeat=self._config.heartbeat,
                client_properties={"connection_name": self._config.service_name},
            )
            self._connection = connection

            channel = await connection.channel()
            self._channel = channel
            await channel.set_qos(prefetch_count=self._config.prefetch_count)

            self._exchange = await channel.declare_exchange(
                self._config.exchange_name,
                ExchangeType.TOPIC,
                durable=self._config.durable,
            )
        except asyncio.CancelledError:
            await self._discard_transport()
            self._state = ConnectionState.DISCONNECTED
            raise
        except Exception as e:
            self.last_error = f"{type(e).__name__}: {e}"
            logger.error(
                f"Failed to connect to RabbitMQ: {e}",
                extra={
                    "rabbitmq_url": sanitize_url(self._config.rabbitmq_url),
                    "exchange": self._config.exchange_name,
                    "attempt": self._reconnect.attempts,
                    "error": str(e),
                    "error_type": type(e).__name__,
                },
            )
            await self._discard_transport()
            self._state = ConnectionState.DISCONNECTED
            return False

        # Partial setups are discarded above and never reach the callbacks.
        connection.close_callbacks.add(self._on_connection_close)
        channel.close_callbacks.add(self._on_channel_close)

        self._state = ConnectionState.CONNECTED
        self._reconnect.reset()
        self.connected_at = datetime.now(UTC)
        logger.info(
            "Connected to RabbitMQ",
            extra={
                "rabbitmq_url": sanitize_url(self._config.rabbitmq_url),
                "exchange": self._config.exchange_name,
                "prefetch_count": self._config.prefetch_count,
                "service": self._config.service_name,
            },
        )

        for hook in list(self._connected_hooks):
            if not self.is_connected:
                break
            try:
                await hook(channel, self._exchange)
            except Exception as e:
                logger.error(
                    f"Post-connect hook failed: {e}",
                    exc_info=True,
                    extra={"error": str(e), "error_type": type(e).__name__},
                )
        return True

    async def _discard_transport(self) -> None:
        connection = self._connection
        self._connection = None
        self._channel = None
        self._exchange = None
        if connection is None or connection.is_closed:
            return
        try:
            await connection.close()
        except Exception as e:
            logger.debug(f"Ignoring error while discarding partial connection: {e}")

    # =========================================================================
    # Close callbacks
    # =========================================================================

    def _on_connection_close(self, sender: Any, exception: BaseException | None = None) -> None:
        """aio-pika close callback for the connection (synchronous)."""
        if sender is not None and sender is not self._connection:
            return
        self._handle_unexpected_close("connection", exception)

    def _on_channel_close(self, sender: Any, exception: BaseException | None = None) -> None:
        """aio-pika close callback for the channel (synchronous)."""
        if sender is not None and sender is not self._channel:
            return
        self._handle_unexpected_close("channel", exception)

    def _handle_unexpected_close(self, source: str, exception: BaseException | None) -> None:
        if self._closed or self._state is not ConnectionState.CONNECTED:
            return

        self._state = ConnectionState.DISCONNECTED
        self.connected_at = None
        if exception is not None:
            self.last_error = f"{type(exception).__name__}: {exception}"
        logger.warning(
            f"RabbitMQ {source} closed unexpectedly: {exception}",
            extra={
                "source": source,
                "error": str(exception) if exception else None,
                "error_type": type(exception).__name__ if exception else None,
            },
        )
        self._schedule_reconnect()

    # =========================================================================
    # Reconnect loop
    # =========================================================================

    def _schedule_reconnect(self) -> None:
        if self._closed or self.reconnecting:
            return
        self._reconnect_task = asyncio.get_running_loop().create_task(
            self._reconnect_loop(),
            name=f"hometrip-bus-reconnect-{self._config.service_name}",
        )

    async def _reconnect_loop(self) -> None:
        while not self._closed:
            claimed = self._reconnect.next_attempt()
            if claimed is None:
                await self._give_up()
                return

            attempt, delay = claimed
            logger.info(
                f"Reconnecting to RabbitMQ in {delay}s "
                f"(attempt {attempt}/{self._reconnect.max_attempts})",
                extra={
                    "attempt": attempt,
                    "max_attempts": self._reconnect.max_attempts,
                    "delay_seconds": delay,
                },
            )
            await self._sleep(delay)
            if self._closed:
                return

            if await self._establish() and self.is_connected:
                self.reconnections += 1
                return

    async def _give_up(self) -> None:
        self._state = ConnectionState.EXHAUSTED
        error = ReconnectExhaustedError(self._reconnect.attempts)
        logger.error(
            "Max reconnection attempts reached",
            extra={
                "attempts": self._reconnect.attempts,
                "rabbitmq_url": sanitize_url(self._config.rabbitmq_url),
                "last_error": self.last_error,
            },
        )
        if self._on_exhausted is None:
            return
        try:
            result = self._on_exhausted(error)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(
                f"Exhaustion callback failed: {e}",
                exc_info=True,
                extra={"error": str(e), "error_type": type(e).__name__},
            )

    async def _cancel_reconnect(self) -> None:
        task = self._reconnect_task
        self._reconnect_task = None
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task


__all__ = [
    "ConnectedHook",
    "ConnectionManager",
    "ConnectionState",
    "Connector",
    "ExhaustedCallback",
    "SleepFunc",
]
