"""
Booking Consumer Example

A minimal review service that:
- loads its broker settings from the environment (RABBITMQ_URL, SERVICE_NAME, ...)
- subscribes to every booking event
- publishes a follow-up event when a booking completes
- shuts down gracefully on SIGTERM / SIGINT

Run with a local RabbitMQ:

    docker run -p 5672:5672 rabbitmq:3-management
    SERVICE_NAME=review-service python examples/booking_consumer.py
"""

import asyncio
import logging
import sys

from hometrip_bus import (
    EventBus,
    EventBusSettings,
    EventEnvelope,
    HandlerOutcome,
    ServiceLifecycle,
)

logger = logging.getLogger("review-service")


class ReviewRequester:
    """Asks guests for a review once their stay is over.

    A failed follow-up publish requeues the booking event.
    """

    def __init__(self, bus: EventBus) -> None:
        self._bus = bus

    async def handle(self, event: EventEnvelope) -> HandlerOutcome | None:
        booking_id = event.data.get("bookingId") if isinstance(event.data, dict) else None
        if booking_id is None:
            logger.warning(f"Booking event {event.id} has no bookingId, discarding")
            return HandlerOutcome.DISCARD

        if event.type != "booking.completed":
            logger.info(f"Ignoring {event.type} for booking {booking_id}")
            return None

        published = await self._bus.publish_event(
            "review.requested",
            {"bookingId": booking_id},
            metadata={"causationId": event.id},
        )
        return HandlerOutcome.ACK if published else HandlerOutcome.REQUEUE


async def main() -> int:
    bus = EventBus(EventBusSettings().to_config())
    lifecycle = ServiceLifecycle(bus)

    async def log_stats() -> None:
        logger.info(f"Final stats: {bus.stats.to_dict()}")

    lifecycle.on_shutdown(log_stats)
    return await lifecycle.run([("booking.*", ReviewRequester(bus))])


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    sys.exit(asyncio.run(main()))
