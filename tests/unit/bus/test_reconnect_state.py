"""Unit tests for the reconnect backoff state."""

from __future__ import annotations

import pytest

from hometrip_bus.bus.reconnect import ReconnectState


class TestReconnectState:
    """Tests for ReconnectState schedule and counters."""

    def test_default_schedule_doubles_from_five_seconds(self) -> None:
        """Default schedule is 5, 10, 20, ... for ten attempts."""
        state = ReconnectState()

        schedule = state.schedule()

        assert len(schedule) == 10
        assert schedule[:4] == [5.0, 10.0, 20.0, 40.0]
        assert schedule[-1] == 5.0 * 2**9

    def test_delay_for_attempt(self) -> None:
        state = ReconnectState(max_attempts=3, base_delay=0.5)

        assert state.delay_for(1) == 0.5
        assert state.delay_for(2) == 1.0
        assert state.delay_for(3) == 2.0

    def test_delay_for_rejects_attempt_zero(self) -> None:
        with pytest.raises(ValueError, match="attempt"):
            ReconnectState().delay_for(0)

    def test_next_attempt_claims_until_exhausted(self) -> None:
        """Each claim increments the counter until max_attempts is reached."""
        state = ReconnectState(max_attempts=2, base_delay=1.0)

        assert state.next_attempt() == (1, 1.0)
        assert state.next_attempt() == (2, 2.0)
        assert state.exhausted is True
        assert state.next_attempt() is None
        assert state.attempts == 2

    def test_reset_restarts_schedule(self) -> None:
        state = ReconnectState(max_attempts=3, base_delay=1.0)
        state.next_attempt()
        state.next_attempt()

        state.reset()

        assert state.attempts == 0
        assert state.exhausted is False
        assert state.next_attempt() == (1, 1.0)

    def test_zero_attempts_is_immediately_exhausted(self) -> None:
        state = ReconnectState(max_attempts=0)

        assert state.exhausted is True
        assert state.schedule() == []
        assert state.next_attempt() is None

    @pytest.mark.parametrize(
        ("kwargs", "message"),
        [
            ({"max_attempts": -1}, "max_attempts"),
            ({"base_delay": 0}, "base_delay"),
            ({"base_delay": -2.0}, "base_delay"),
        ],
    )
    def test_invalid_values_rejected(self, kwargs: dict, message: str) -> None:
        with pytest.raises(ValueError, match=message):
            ReconnectState(**kwargs)
