"""Unit tests for the EventBus facade: status, health and context manager."""

from __future__ import annotations

import pytest

from hometrip_bus import EventBus, EventBusConfig
from hometrip_bus.bus import ConnectionState, HealthCheckResult
from hometrip_bus.exceptions import NotConnectedError
from hometrip_bus.observability import NullTracer, OpenTelemetryTracer
from hometrip_bus.testing import InMemoryBroker, RecordingSleep


class TestConstruction:
    def test_default_config(self) -> None:
        bus = EventBus()

        assert bus.config == EventBusConfig()
        assert bus.state is ConnectionState.DISCONNECTED
        assert bus.is_connected is False

    def test_tracer_follows_config(self) -> None:
        traced = EventBus(EventBusConfig(enable_tracing=True))
        untraced = EventBus(EventBusConfig(enable_tracing=False))

        assert isinstance(traced._tracer, OpenTelemetryTracer)
        assert isinstance(untraced._tracer, NullTracer)


class TestLifecycle:
    """connect / close on the in-memory broker."""

    @pytest.mark.asyncio
    async def test_connect_declares_topic_exchange(
        self, bus: EventBus, broker: InMemoryBroker
    ) -> None:
        assert await bus.connect() is True

        assert "hometrip_events" in broker.exchanges
        assert broker.connect_kwargs["client_properties"] == {"connection_name": "test-service"}
        await bus.close()

    @pytest.mark.asyncio
    async def test_close_twice_is_safe(self, bus: EventBus, broker: InMemoryBroker) -> None:
        await bus.connect()

        await bus.close()
        await bus.close()

        assert bus.state is ConnectionState.DISCONNECTED
        assert broker.open_connections == []

    @pytest.mark.asyncio
    async def test_subscribe_before_connect_raises(self, bus: EventBus) -> None:
        async def handler(event: object) -> None:
            pass

        with pytest.raises(NotConnectedError):
            await bus.subscribe("booking.*", handler)

    @pytest.mark.asyncio
    async def test_async_context_manager(
        self, config: EventBusConfig, broker: InMemoryBroker, recording_sleep: RecordingSleep
    ) -> None:
        async with EventBus(
            config, connector=broker.connect, sleep=recording_sleep, tracer=NullTracer()
        ) as bus:
            assert bus.is_connected
            assert await bus.publish_event("user.created", {"userId": 1})

        assert bus.is_connected is False
        assert broker.published_routing_keys() == ["user.created"]

    @pytest.mark.asyncio
    async def test_channel_error_reconnect_keeps_one_connection(
        self, connected_bus: EventBus, broker: InMemoryBroker
    ) -> None:
        """A channel-only close replaces the old connection instead of leaking it."""
        await connected_bus.subscribe("config.*", lambda event: None, exclusive=True)
        old_connection = broker.open_connections[0]

        connected_bus.connection.channel._terminate(RuntimeError("PRECONDITION_FAILED"))
        assert len(broker.open_connections) == 1
        await connected_bus.connection._reconnect_task

        assert connected_bus.is_connected
        assert old_connection.is_closed
        assert len(broker.open_connections) == 1
        exclusive = [name for name in broker.queues if name.startswith("amq.gen-")]
        assert len(exclusive) == 1
        assert broker.queue(exclusive[0]).owner is broker.open_connections[0]

        await connected_bus.close()

        assert broker.open_connections == []


class TestStatus:
    """Tests for get_status() and health_check()."""

    @pytest.mark.asyncio
    async def test_status_of_connected_bus(self, connected_bus: EventBus) -> None:
        async def on_booking(event: object) -> None:
            pass

        await connected_bus.subscribe("booking.*", on_booking)
        await connected_bus.publish_event("booking.created", {"bookingId": "b-1"})

        status = connected_bus.get_status()

        assert status["connected"] is True
        assert status["state"] == "connected"
        assert status["reconnect_attempts"] == 0
        assert status["max_reconnect_attempts"] == 3
        assert status["host"] == "localhost"
        assert status["port"] == 5672
        assert status["exchange"] == "hometrip_events"
        assert status["service"] == "test-service"
        assert status["subscriptions"] == [
            {
                "pattern": "booking.*",
                "queue": "test-service.booking.*",
                "handler": "TestStatus.test_status_of_connected_bus.<locals>.on_booking",
            }
        ]
        assert status["stats"]["events_published"] == 1

    @pytest.mark.asyncio
    async def test_status_never_exposes_credentials(self, bus: EventBus) -> None:
        assert "secret" not in repr(bus.get_status())

    @pytest.mark.asyncio
    async def test_health_check_connected(self, connected_bus: EventBus) -> None:
        result = await connected_bus.health_check()

        assert isinstance(result, HealthCheckResult)
        assert result.healthy is True
        assert result.connection_status == "connected"
        assert result.channel_status == "open"
        assert result.error is None
        assert result.details["exchange"] == "hometrip_events"

    @pytest.mark.asyncio
    async def test_health_check_before_connect(self, bus: EventBus) -> None:
        result = await bus.health_check()

        assert result.healthy is False
        assert result.connection_status == "disconnected"
        assert result.channel_status == "not_initialized"

    @pytest.mark.asyncio
    async def test_health_check_reports_last_error(
        self, bus: EventBus, broker: InMemoryBroker
    ) -> None:
        broker.available = False

        assert await bus.connect() is False
        result = await bus.health_check()

        assert result.healthy is False
        assert result.error is not None
        assert "ConnectionRefusedError" in result.error
        await bus.close()

    @pytest.mark.asyncio
    async def test_stats_include_reconnections(
        self, connected_bus: EventBus, broker: InMemoryBroker
    ) -> None:
        broker.drop_connections()
        await connected_bus.connection._reconnect_task

        assert connected_bus.is_connected
        assert connected_bus.stats.reconnections == 1
