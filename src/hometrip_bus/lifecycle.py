"""
Service lifecycle around an EventBus.

The coordinator runs the startup, steady-state and shutdown sequence every
HomeTrip service shares:

1. ``start()``: connect (failure is fatal) and register subscriptions
2. wait for SIGTERM/SIGINT, a programmatic request, or reconnect exhaustion
3. ``shutdown()``: run cleanup callbacks, drain and close the bus, all
   inside ``shutdown_timeout`` (30 s by default). If the window expires the
   process is forced to exit with status 1.

A second termination signal while shutting down forces exit immediately.

Example:
    >>> bus = EventBus(EventBusSettings().to_config())
    >>> lifecycle = ServiceLifecycle(bus)
    >>> lifecycle.on_shutdown(http_server.stop)
    >>> exit_code = await lifecycle.run([("booking.*", on_booking_event)])
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from hometrip_bus.bus.event_bus import EventBus
from hometrip_bus.exceptions import (
    EventBusError,
    ReconnectExhaustedError,
    ShutdownTimeoutError,
    StartupError,
)

logger = logging.getLogger(__name__)

ExitFunc = Callable[[int], Any]

# Share of the shutdown window kept back for closing channel and connection.
CLOSE_MARGIN_SECONDS = 5.0
CLOSE_MARGIN_FRACTION = 0.2


class LifecyclePhase(Enum):
    """Phases of a service's life."""

    CREATED = "created"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    FORCED = "forced"


class ShutdownReason(Enum):
    """What triggered the shutdown sequence."""

    SIGNAL_SIGTERM = "signal_sigterm"
    SIGNAL_SIGINT = "signal_sigint"
    PROGRAMMATIC = "programmatic"
    RECONNECT_EXHAUSTED = "reconnect_exhausted"
    DOUBLE_SIGNAL = "double_signal"


@dataclass(frozen=True)
class ShutdownResult:
    """
    Result of a shutdown.

    Attributes:
        phase: STOPPED for a graceful shutdown, FORCED otherwise
        duration_seconds: Time spent shutting down
        reason: What requested the shutdown
        exit_code: Process exit status the service should report
        forced: True if the shutdown window expired
        error: Description of the failure, if any
    """

    phase: LifecyclePhase
    duration_seconds: float
    reason: ShutdownReason | None
    exit_code: int
    forced: bool = False
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase.value,
            "duration_seconds": self.duration_seconds,
            "reason": self.reason.value if self.reason else None,
            "exit_code": self.exit_code,
            "forced": self.forced,
            "error": self.error,
        }


class ServiceLifecycle:
    """
    Drives connect, subscribe and time-bounded shutdown for one service.

    Args:
        bus: The service's event bus
        shutdown_timeout: Graceful shutdown window; defaults to
            ``bus.config.shutdown_timeout``
        exit_func: Called with the exit status when shutdown must be forced
            (timeout or second signal). Defaults to ``os._exit``.
    """

    def __init__(
        self,
        bus: EventBus,
        *,
        shutdown_timeout: float | None = None,
        exit_func: ExitFunc | None = None,
    ) -> None:
        self._bus = bus
        self._timeout = shutdown_timeout or bus.config.shutdown_timeout
        self._exit = exit_func or os._exit

        self._phase = LifecyclePhase.CREATED
        self._shutdown_event = asyncio.Event()
        self._shutdown_requested = False
        self._reason: ShutdownReason | None = None
        self._exit_code = 0
        self._callbacks: list[Callable[[], Awaitable[None]]] = []
        self._shutdown_task: asyncio.Task[ShutdownResult] | None = None
        self._signals_registered = False

        bus.set_exhausted_callback(self._on_reconnect_exhausted)

    # =========================================================================
    # Properties
    # =========================================================================

    @property
    def bus(self) -> EventBus:
        return self._bus

    @property
    def phase(self) -> LifecyclePhase:
        return self._phase

    @property
    def reason(self) -> ShutdownReason | None:
        return self._reason

    @property
    def is_shutting_down(self) -> bool:
        return self._shutdown_requested

    @property
    def is_ready(self) -> bool:
        """True while running with a live broker connection."""
        return (
            self._phase is LifecyclePhase.RUNNING
            and not self._shutdown_requested
            and self._bus.is_connected
        )

    def status(self) -> dict[str, Any]:
        """Readiness payload, e.g. for a ``/ready`` endpoint."""
        return {
            "ready": self.is_ready,
            "phase": self._phase.value,
            "shutting_down": self._shutdown_requested,
            "event_bus": self._bus.get_status(),
            "timestamp": datetime.now(UTC).isoformat(),
        }

    # =========================================================================
    # Startup
    # =========================================================================

    async def start(self, subscriptions: Iterable[tuple[str, Any]] = ()) -> None:
        """
        Connect and register subscriptions.

        Args:
            subscriptions: ``(pattern, handler)`` pairs

        Raises:
            StartupError: If the broker cannot be reached or a subscription
                cannot be set up
        """
        self._phase = LifecyclePhase.STARTING
        if not await self._bus.connect():
            self._phase = LifecyclePhase.STOPPED
            await self._bus.close(drain_timeout=0)
            raise StartupError("Could not connect to the event broker at startup")

        try:
            for pattern, handler in subscriptions:
                await self._bus.subscribe(pattern, handler)
        except EventBusError as e:
            self._phase = LifecyclePhase.STOPPED
            await self._bus.close(drain_timeout=0)
            raise StartupError(f"Could not register subscriptions: {e}") from e

        self._phase = LifecyclePhase.RUNNING
        logger.info(
            "Service started",
            extra={
                "service": self._bus.config.service_name,
                "subscriptions": len(self._bus.subscriptions),
            },
        )

    # =========================================================================
    # Signals and shutdown requests
    # =========================================================================

    def register_signals(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        """Route SIGTERM and SIGINT to graceful shutdown."""
        if self._signals_registered:
            logger.warning("Signal handlers already registered")
            return

        loop = loop or asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self.handle_signal, sig)
            except NotImplementedError:
                logger.warning(
                    "Signal handling not supported on this platform",
                    extra={"signal": sig.name},
                )
        self._signals_registered = True

    def unregister_signals(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        if not self._signals_registered:
            return
        loop = loop or asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.remove_signal_handler(sig)
            except NotImplementedError:
                pass
        self._signals_registered = False

    def handle_signal(self, sig: signal.Signals) -> None:
        """First signal requests graceful shutdown; a second one forces exit."""
        if self._shutdown_requested:
            logger.warning(
                "Received second shutdown signal, forcing exit",
                extra={"signal": sig.name, "phase": self._phase.value},
            )
            self._phase = LifecyclePhase.FORCED
            self._reason = ShutdownReason.DOUBLE_SIGNAL
            self._exit(1)
            return

        reason = (
            ShutdownReason.SIGNAL_SIGTERM if sig == signal.SIGTERM else ShutdownReason.SIGNAL_SIGINT
        )
        logger.info(
            f"{sig.name} received, shutting down gracefully",
            extra={"signal": sig.name, "timeout": self._timeout},
        )
        self.request_shutdown(reason)

    def request_shutdown(
        self,
        reason: ShutdownReason = ShutdownReason.PROGRAMMATIC,
        exit_code: int = 0,
    ) -> None:
        """Ask the service to shut down. Later requests are ignored."""
        if self._shutdown_requested:
            return
        self._shutdown_requested = True
        self._reason = reason
        self._exit_code = exit_code
        logger.info(
            "Shutdown requested",
            extra={"reason": reason.value, "exit_code": exit_code},
        )
        self._shutdown_event.set()

    async def wait_for_shutdown(self) -> None:
        await self._shutdown_event.wait()

    def on_shutdown(self, callback: Callable[[], Awaitable[None]]) -> None:
        """Register async cleanup run before the bus closes, in registration order."""
        self._callbacks.append(callback)

    def _on_reconnect_exhausted(self, error: ReconnectExhaustedError) -> None:
        logger.error(
            "Event bus gave up reconnecting; terminating service",
            extra={"attempts": error.attempts, "service": self._bus.config.service_name},
        )
        self.request_shutdown(ShutdownReason.RECONNECT_EXHAUSTED, exit_code=1)

    # =========================================================================
    # Shutdown
    # =========================================================================

    async def shutdown(self) -> ShutdownResult:
        """
        Run cleanup callbacks and close the bus within the shutdown window.

        Concurrent and repeated calls share one shutdown. If the window
        expires, logs "Forced shutdown - timeout exceeded" and calls
        ``exit_func(1)``.
        """
        if self._shutdown_task is None:
            if not self._shutdown_requested:
                self.request_shutdown()
            self._shutdown_task = asyncio.get_running_loop().create_task(self._shutdown())
        return await asyncio.shield(self._shutdown_task)

    @property
    def close_margin(self) -> float:
        """Seconds of the shutdown window reserved for closing the connection."""
        return min(CLOSE_MARGIN_SECONDS, self._timeout * CLOSE_MARGIN_FRACTION)

    async def _shutdown(self) -> ShutdownResult:
        self._phase = LifecyclePhase.STOPPING
        loop = asyncio.get_running_loop()
        started = loop.time()
        margin = self.close_margin
        graceful_deadline = started + self._timeout - margin

        try:
            await asyncio.wait_for(
                self._graceful_close(graceful_deadline), timeout=self._timeout - margin
            )
        except TimeoutError:
            self._phase = LifecyclePhase.FORCED
            logger.error(
                "Forced shutdown - timeout exceeded",
                extra={"timeout": self._timeout, "reason": self._reason_value},
            )
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._bus.connection.close(), timeout=margin)
            duration = loop.time() - started
            result = ShutdownResult(
                phase=LifecyclePhase.FORCED,
                duration_seconds=duration,
                reason=self._reason,
                exit_code=1,
                forced=True,
                error=str(ShutdownTimeoutError(self._timeout)),
            )
            self._exit(1)
            return result

        duration = asyncio.get_running_loop().time() - started
        self._phase = LifecyclePhase.STOPPED
        logger.info(
            "Service stopped",
            extra={
                "duration_seconds": round(duration, 3),
                "reason": self._reason_value,
                "exit_code": self._exit_code,
            },
        )
        return ShutdownResult(
            phase=LifecyclePhase.STOPPED,
            duration_seconds=duration,
            reason=self._reason,
            exit_code=self._exit_code,
        )

    async def _graceful_close(self, deadline: float) -> None:
        """Run callbacks, then drain and close, leaving ``close_margin`` for the close."""
        for callback in self._callbacks:
            try:
                await callback()
            except Exception as e:
                logger.error(
                    "Shutdown callback error",
                    exc_info=True,
                    extra={"error": str(e), "error_type": type(e).__name__},
                )
        remaining = deadline - asyncio.get_running_loop().time()
        await self._bus.close(drain_timeout=max(0.0, remaining - self.close_margin))

    @property
    def _reason_value(self) -> str | None:
        return self._reason.value if self._reason else None

    # =========================================================================
    # Run
    # =========================================================================

    async def run(
        self,
        subscriptions: Iterable[tuple[str, Any]] = (),
        *,
        install_signals: bool = True,
    ) -> int:
        """
        Start, wait for a shutdown request, shut down.

        Returns:
            Exit status: 0 after a requested shutdown, 1 after a startup
            failure, reconnect exhaustion or a forced shutdown
        """
        try:
            await self.start(subscriptions)
        except StartupError as e:
            logger.error(str(e), extra={"service": self._bus.config.service_name})
            return 1

        if install_signals:
            self.register_signals()
        try:
            await self.wait_for_shutdown()
        finally:
            result = await self.shutdown()
            if install_signals:
                self.unregister_signals()
        return result.exit_code


__all__ = [
    "LifecyclePhase",
    "ServiceLifecycle",
    "ShutdownReason",
    "ShutdownResult",
]
