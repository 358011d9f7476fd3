"""
Reconnect backoff state.

Attempt ``n`` (starting at 1) waits ``base_delay * 2 ** (n - 1)`` seconds
before dialing the broker again. With the defaults (5 s, 10 attempts) the
schedule is 5, 10, 20, ... 2560 seconds.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class ReconnectState:
    """
    Attempt counter and backoff schedule for the connection manager.

    Attributes:
        max_attempts: Attempts allowed before reconnection is abandoned
        base_delay: Delay in seconds before the first attempt
        attempts: Attempts scheduled since the last successful connect
    """

    max_attempts: int = 10
    base_delay: float = 5.0
    attempts: int = 0

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if self.max_attempts < 0:
            raise ValueError(f"max_attempts must be >= 0, got {self.max_attempts}.")
        if self.base_delay <= 0:
            raise ValueError(f"base_delay must be positive, got {self.base_delay}.")

    def delay_for(self, attempt: int) -> float:
        """Backoff before the given 1-based attempt."""
        if attempt < 1:
            raise ValueError(f"attempt must be >= 1, got {attempt}.")
        return float(self.base_delay * 2 ** (attempt - 1))

    def schedule(self) -> list[float]:
        """Full delay sequence for attempts 1..max_attempts."""
        return [self.delay_for(n) for n in range(1, self.max_attempts + 1)]

    @property
    def exhausted(self) -> bool:
        return self.attempts >= self.max_attempts

    def next_attempt(self) -> tuple[int, float] | None:
        """Claim the next attempt.

        Returns:
            ``(attempt, delay)`` or None when no attempts remain
        """
        if self.exhausted:
            return None
        self.attempts += 1
        return self.attempts, self.delay_for(self.attempts)

    def reset(self) -> None:
        self.attempts = 0


__all__ = ["ReconnectState"]
