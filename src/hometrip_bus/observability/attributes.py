"""
Standard span attributes for hometrip_bus.

These follow OpenTelemetry messaging semantic conventions where applicable.
"""

# =============================================================================
# Messaging Attributes
# =============================================================================

ATTR_MESSAGING_SYSTEM = "messaging.system"
"""Messaging system identifier, always "rabbitmq" here."""

ATTR_MESSAGING_DESTINATION = "messaging.destination.name"
"""Exchange the message is published to or consumed from."""

ATTR_MESSAGING_OPERATION = "messaging.operation"
"""One of "publish" or "process"."""

ATTR_MESSAGING_MESSAGE_ID = "messaging.message.id"
"""Envelope / AMQP message id."""

ATTR_ROUTING_KEY = "messaging.rabbitmq.destination.routing_key"
"""Routing key of the message."""

# =============================================================================
# Bus Attributes
# =============================================================================

ATTR_EVENT_TYPE = "hometrip.event.type"
"""Envelope type (e.g. 'booking.completed')."""

ATTR_SERVICE_NAME = "hometrip.service.name"
"""Service that owns the bus instance."""

ATTR_QUEUE_NAME = "hometrip.queue.name"
"""Queue a delivery was consumed from."""

ATTR_HANDLER_OUTCOME = "hometrip.handler.outcome"
"""Settlement applied to a delivery: ack, requeue or discard."""

MESSAGING_SYSTEM = "rabbitmq"


__all__ = [
    "ATTR_EVENT_TYPE",
    "ATTR_HANDLER_OUTCOME",
    "ATTR_MESSAGING_DESTINATION",
    "ATTR_MESSAGING_MESSAGE_ID",
    "ATTR_MESSAGING_OPERATION",
    "ATTR_MESSAGING_SYSTEM",
    "ATTR_QUEUE_NAME",
    "ATTR_ROUTING_KEY",
    "ATTR_SERVICE_NAME",
    "MESSAGING_SYSTEM",
]
