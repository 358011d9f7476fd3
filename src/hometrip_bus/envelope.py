"""
Message envelope carried on the HomeTrip event exchange.

Every message body is a UTF-8 JSON object:

    {"id": "...", "type": "booking.completed", "data": {...},
     "timestamp": "2024-05-01T12:00:00Z", "service": "booking-service",
     "metadata": {}}

Older producers send ``eventName`` instead of ``type``; both are accepted
when decoding, ``type`` is always written.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError
from pydantic_core import PydanticSerializationError

from hometrip_bus.exceptions import SerializationError


class EventEnvelope(BaseModel):
    """
    Unit of transmission between services.

    Attributes:
        id: Unique message identifier (also used as the AMQP message_id)
        type: Event name, usually equal to the routing key
        data: Event payload; any JSON-representable value
        timestamp: When the event was produced (UTC)
        service: Name of the producing service
        metadata: Free-form context (correlation ids, actor, ...)
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    id: str = Field(default_factory=lambda: str(uuid4()))
    type: str = Field(
        min_length=1,
        validation_alias=AliasChoices("type", "eventName"),
    )
    data: Any = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    service: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def event_name(self) -> str:
        """Alias of ``type`` kept for callers using the older field name."""
        return self.type

    def to_bytes(self) -> bytes:
        """Serialize to a UTF-8 JSON body."""
        try:
            return self.model_dump_json().encode("utf-8")
        except PydanticSerializationError as e:
            raise SerializationError(str(e), event_type=self.type) from e

    @classmethod
    def from_bytes(cls, body: bytes) -> EventEnvelope:
        """Parse a message body.

        Raises:
            SerializationError: If the body is not a JSON object with a
                non-empty ``type``/``eventName``
        """
        try:
            return cls.model_validate_json(body)
        except (ValidationError, UnicodeDecodeError) as e:
            raise SerializationError(f"Malformed message body: {e}") from e


def build_envelope(
    message: Any,
    *,
    routing_key: str,
    service: str,
    metadata: Mapping[str, Any] | None = None,
) -> EventEnvelope:
    """
    Coerce a publish argument into an envelope.

    - An ``EventEnvelope`` is used as is (``service`` filled in when unset).
    - A mapping with a ``data`` key is read as envelope fields; a missing
      ``type`` defaults to the routing key.
    - Anything else becomes the ``data`` of a new envelope typed by the
      routing key.

    Raises:
        SerializationError: If the envelope fields are invalid
    """
    if isinstance(message, EventEnvelope):
        if message.service is None:
            return message.model_copy(update={"service": service})
        return message

    try:
        if isinstance(message, Mapping) and "data" in message:
            fields = dict(message)
            event_name = fields.pop("eventName", None)
            if not fields.get("type"):
                fields["type"] = event_name or routing_key
            fields.setdefault("service", service)
            if metadata:
                fields["metadata"] = {**fields.get("metadata", {}), **metadata}
            return EventEnvelope.model_validate(fields)

        return EventEnvelope(
            type=routing_key,
            data=message,
            service=service,
            metadata=dict(metadata or {}),
        )
    except ValidationError as e:
        raise SerializationError(str(e), event_type=routing_key) from e


__all__ = [
    "EventEnvelope",
    "build_envelope",
]
