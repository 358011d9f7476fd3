"""Unit tests for ServiceLifecycle startup, signals and time-bounded shutdown."""

from __future__ import annotations

import asyncio
import logging
import signal
from unittest.mock import MagicMock

import pytest

from hometrip_bus import EventBus
from hometrip_bus.exceptions import StartupError
from hometrip_bus.lifecycle import (
    LifecyclePhase,
    ServiceLifecycle,
    ShutdownReason,
    ShutdownResult,
)
from hometrip_bus.testing import InMemoryBroker, RecordingSleep


async def on_booking(event: object) -> None:
    pass


async def wait_for_phase(lifecycle: ServiceLifecycle, phase: LifecyclePhase) -> None:
    for _ in range(200):
        if lifecycle.phase is phase:
            return
        await asyncio.sleep(0.001)
    raise AssertionError(f"lifecycle never reached {phase}")


@pytest.fixture
def exit_func() -> MagicMock:
    return MagicMock()


@pytest.fixture
def lifecycle(bus: EventBus, exit_func: MagicMock) -> ServiceLifecycle:
    return ServiceLifecycle(bus, exit_func=exit_func)


class TestStartup:
    @pytest.mark.asyncio
    async def test_start_connects_and_subscribes(
        self, lifecycle: ServiceLifecycle, bus: EventBus
    ) -> None:
        await lifecycle.start([("booking.*", on_booking), ("payment.#", on_booking)])

        assert lifecycle.phase is LifecyclePhase.RUNNING
        assert lifecycle.is_ready is True
        assert [sub.pattern for sub in bus.subscriptions] == ["booking.*", "payment.#"]
        await lifecycle.shutdown()

    @pytest.mark.asyncio
    async def test_start_fails_when_broker_unreachable(
        self, lifecycle: ServiceLifecycle, bus: EventBus, broker: InMemoryBroker
    ) -> None:
        """A failed initial connect is fatal and leaves no reconnect running."""
        broker.available = False

        with pytest.raises(StartupError):
            await lifecycle.start([("booking.*", on_booking)])

        assert lifecycle.phase is LifecyclePhase.STOPPED
        assert bus.connection.reconnecting is False
        assert broker.connect_calls == 1

    @pytest.mark.asyncio
    async def test_start_fails_on_bad_subscription(
        self, lifecycle: ServiceLifecycle, bus: EventBus
    ) -> None:
        with pytest.raises(StartupError, match="subscriptions"):
            await lifecycle.start([("booking.comp*", on_booking)])

        assert bus.is_connected is False

    @pytest.mark.asyncio
    async def test_run_returns_one_on_startup_failure(
        self, lifecycle: ServiceLifecycle, broker: InMemoryBroker
    ) -> None:
        broker.available = False

        assert await lifecycle.run([("booking.*", on_booking)], install_signals=False) == 1


class TestShutdown:
    """Tests for graceful and forced shutdown."""

    @pytest.mark.asyncio
    async def test_requested_shutdown_exits_zero(
        self, lifecycle: ServiceLifecycle, bus: EventBus, exit_func: MagicMock
    ) -> None:
        task = asyncio.create_task(
            lifecycle.run([("booking.*", on_booking)], install_signals=False)
        )
        await wait_for_phase(lifecycle, LifecyclePhase.RUNNING)

        lifecycle.request_shutdown()

        assert await asyncio.wait_for(task, timeout=2.0) == 0
        assert lifecycle.phase is LifecyclePhase.STOPPED
        assert lifecycle.reason is ShutdownReason.PROGRAMMATIC
        assert bus.is_connected is False
        exit_func.assert_not_called()

    @pytest.mark.asyncio
    async def test_callbacks_run_in_order_before_bus_closes(
        self, lifecycle: ServiceLifecycle, bus: EventBus, caplog: pytest.LogCaptureFixture
    ) -> None:
        calls: list[str] = []

        async def first() -> None:
            calls.append(f"first connected={bus.is_connected}")

        async def broken() -> None:
            raise RuntimeError("cleanup failed")

        async def last() -> None:
            calls.append("last")

        for callback in (first, broken, last):
            lifecycle.on_shutdown(callback)
        await lifecycle.start()

        with caplog.at_level(logging.ERROR):
            result = await lifecycle.shutdown()

        assert calls == ["first connected=True", "last"]
        assert result.phase is LifecyclePhase.STOPPED
        assert "Shutdown callback error" in caplog.text

    @pytest.mark.asyncio
    async def test_timeout_forces_exit_with_status_one(
        self,
        bus: EventBus,
        broker: InMemoryBroker,
        exit_func: MagicMock,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        lifecycle = ServiceLifecycle(bus, shutdown_timeout=0.05, exit_func=exit_func)
        open_at_exit: list[int] = []
        exit_func.side_effect = lambda code: open_at_exit.append(len(broker.open_connections))

        async def stuck() -> None:
            await asyncio.Event().wait()

        lifecycle.on_shutdown(stuck)
        await lifecycle.start()

        with caplog.at_level(logging.ERROR):
            result = await lifecycle.shutdown()

        exit_func.assert_called_once_with(1)
        assert open_at_exit == [0]
        assert result.forced is True
        assert result.exit_code == 1
        assert result.phase is LifecyclePhase.FORCED
        assert "0.05" in (result.error or "")
        assert "Forced shutdown - timeout exceeded" in caplog.text
        await bus.close()

    @pytest.mark.asyncio
    async def test_hung_handler_is_cancelled_and_bus_closed_in_window(
        self, bus: EventBus, broker: InMemoryBroker, exit_func: MagicMock
    ) -> None:
        lifecycle = ServiceLifecycle(bus, shutdown_timeout=0.2, exit_func=exit_func)
        never = asyncio.Event()

        async def hung(event: object) -> None:
            await never.wait()

        await lifecycle.start([("booking.*", hung)])
        assert await bus.publish_event("booking.created", {"bookingId": 1})
        for _ in range(200):
            if bus.get_status()["in_flight"] == 1:
                break
            await asyncio.sleep(0.001)

        result = await lifecycle.shutdown()

        exit_func.assert_not_called()
        assert result.forced is False
        assert result.duration_seconds < 0.2
        assert bus.get_status()["in_flight"] == 0
        assert broker.open_connections == []
        assert broker.message_count("test-service.booking.*") == 1

    def test_close_margin_is_capped(self, bus: EventBus) -> None:
        assert ServiceLifecycle(bus, shutdown_timeout=30.0).close_margin == 5.0
        assert ServiceLifecycle(bus, shutdown_timeout=0.5).close_margin == pytest.approx(0.1)

    @pytest.mark.asyncio
    async def test_concurrent_shutdowns_share_one_result(
        self, lifecycle: ServiceLifecycle
    ) -> None:
        await lifecycle.start()

        first, second = await asyncio.gather(lifecycle.shutdown(), lifecycle.shutdown())

        assert first is second
        assert isinstance(first, ShutdownResult)

    @pytest.mark.asyncio
    async def test_shutdown_result_to_dict(self, lifecycle: ServiceLifecycle) -> None:
        await lifecycle.start()

        result = (await lifecycle.shutdown()).to_dict()

        assert result["phase"] == "stopped"
        assert result["reason"] == "programmatic"
        assert result["exit_code"] == 0
        assert result["forced"] is False

    @pytest.mark.asyncio
    async def test_reconnect_exhaustion_terminates_with_status_one(
        self,
        lifecycle: ServiceLifecycle,
        broker: InMemoryBroker,
        recording_sleep: RecordingSleep,
    ) -> None:
        task = asyncio.create_task(
            lifecycle.run([("booking.*", on_booking)], install_signals=False)
        )
        await wait_for_phase(lifecycle, LifecyclePhase.RUNNING)

        broker.available = False
        broker.drop_connections()

        assert await asyncio.wait_for(task, timeout=2.0) == 1
        assert lifecycle.reason is ShutdownReason.RECONNECT_EXHAUSTED
        assert recording_sleep.delays == [0.5, 1.0, 2.0]


class TestSignals:
    """Tests for SIGTERM/SIGINT handling."""

    @pytest.mark.asyncio
    async def test_first_signal_requests_graceful_shutdown(
        self, lifecycle: ServiceLifecycle, exit_func: MagicMock
    ) -> None:
        lifecycle.handle_signal(signal.SIGTERM)

        assert lifecycle.is_shutting_down is True
        assert lifecycle.reason is ShutdownReason.SIGNAL_SIGTERM
        exit_func.assert_not_called()

    @pytest.mark.asyncio
    async def test_sigint_reason(self, lifecycle: ServiceLifecycle) -> None:
        lifecycle.handle_signal(signal.SIGINT)

        assert lifecycle.reason is ShutdownReason.SIGNAL_SIGINT

    @pytest.mark.asyncio
    async def test_second_signal_forces_exit(
        self,
        lifecycle: ServiceLifecycle,
        exit_func: MagicMock,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        lifecycle.handle_signal(signal.SIGTERM)

        with caplog.at_level(logging.WARNING):
            lifecycle.handle_signal(signal.SIGINT)

        exit_func.assert_called_once_with(1)
        assert lifecycle.phase is LifecyclePhase.FORCED
        assert lifecycle.reason is ShutdownReason.DOUBLE_SIGNAL
        assert "second shutdown signal" in caplog.text

    @pytest.mark.asyncio
    async def test_register_and_unregister_signal_handlers(
        self, lifecycle: ServiceLifecycle
    ) -> None:
        loop = MagicMock()

        lifecycle.register_signals(loop)
        lifecycle.register_signals(loop)
        lifecycle.unregister_signals(loop)

        assert loop.add_signal_handler.call_count == 2
        loop.add_signal_handler.assert_any_call(
            signal.SIGTERM, lifecycle.handle_signal, signal.SIGTERM
        )
        loop.add_signal_handler.assert_any_call(
            signal.SIGINT, lifecycle.handle_signal, signal.SIGINT
        )
        assert loop.remove_signal_handler.call_count == 2

    @pytest.mark.asyncio
    async def test_status_reports_readiness(self, lifecycle: ServiceLifecycle) -> None:
        assert lifecycle.status()["ready"] is False

        await lifecycle.start()
        status = lifecycle.status()

        assert status["ready"] is True
        assert status["phase"] == "running"
        assert status["event_bus"]["connected"] is True

        lifecycle.request_shutdown()
        assert lifecycle.status()["ready"] is False
        await lifecycle.shutdown()
