"""Operational counters for one event bus instance."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from typing import Any


@dataclass
class EventBusStats:
    """Statistics for event bus operations.

    Attributes:
        events_published: Messages accepted by the exchange.
        publish_failures: publish() calls that returned False, including
            calls made while disconnected.
        events_consumed: Deliveries received from any queue.
        messages_acked: Deliveries positively acknowledged.
        messages_requeued: Deliveries negatively acknowledged with requeue.
        messages_discarded: Deliveries rejected without requeue (malformed
            bodies and handlers returning DISCARD).
        handler_errors: Handler invocations that raised.
        reconnections: Successful reconnects after a connection loss.
        last_publish_at: Timestamp of the last successful publish.
        last_consume_at: Timestamp of the last delivery.
        last_error_at: Timestamp of the last publish or handler error.
    """

    events_published: int = 0
    publish_failures: int = 0
    events_consumed: int = 0
    messages_acked: int = 0
    messages_requeued: int = 0
    messages_discarded: int = 0
    handler_errors: int = 0
    reconnections: int = 0
    last_publish_at: datetime | None = None
    last_consume_at: datetime | None = None
    last_error_at: datetime | None = None

    def record_error(self) -> None:
        self.last_error_at = datetime.now(UTC)

    def to_dict(self) -> dict[str, Any]:
        """Plain dict with ISO timestamps, suitable for a status endpoint."""
        result = asdict(self)
        for key, value in result.items():
            if isinstance(value, datetime):
                result[key] = value.isoformat()
        return result


__all__ = ["EventBusStats"]
