"""
Topic routing rules.

Routing keys are dot-separated words (``booking.completed``). Binding
patterns may use ``*`` for exactly one word and ``#`` for zero or more
words (``booking.*``, ``payment.#``, ``#``). The broker does the actual
routing; these helpers validate keys before they reach it and let the
consumer pick which handlers on a shared queue apply to a delivery.
"""

from __future__ import annotations

from functools import lru_cache

from hometrip_bus.exceptions import InvalidRoutingKeyError

MAX_ROUTING_KEY_BYTES = 255
WILDCARD_ONE = "*"
WILDCARD_MANY = "#"


def _check_common(key: str) -> list[str]:
    if not isinstance(key, str) or not key:
        raise InvalidRoutingKeyError(str(key), "must be a non-empty string")
    if len(key.encode("utf-8")) > MAX_ROUTING_KEY_BYTES:
        raise InvalidRoutingKeyError(key, f"longer than {MAX_ROUTING_KEY_BYTES} bytes")
    words = key.split(".")
    if any(not word for word in words):
        raise InvalidRoutingKeyError(key, "contains an empty word")
    return words


def validate_routing_key(routing_key: str) -> str:
    """Validate a concrete routing key used for publishing.

    Raises:
        InvalidRoutingKeyError: If the key is empty, too long, has empty
            words or contains wildcards
    """
    words = _check_common(routing_key)
    if any(WILDCARD_ONE in word or WILDCARD_MANY in word for word in words):
        raise InvalidRoutingKeyError(routing_key, "wildcards are only allowed in patterns")
    return routing_key


def validate_pattern(pattern: str) -> str:
    """Validate a binding pattern.

    Wildcards must occupy a whole word: ``booking.*`` is valid,
    ``booking.comp*`` is not.

    Raises:
        InvalidRoutingKeyError: If the pattern is malformed
    """
    words = _check_common(pattern)
    for word in words:
        if word in (WILDCARD_ONE, WILDCARD_MANY):
            continue
        if WILDCARD_ONE in word or WILDCARD_MANY in word:
            raise InvalidRoutingKeyError(pattern, f"wildcard inside word {word!r}")
    return pattern


@lru_cache(maxsize=1024)
def topic_matches(pattern: str, routing_key: str) -> bool:
    """Return True if ``routing_key`` is routed by a binding on ``pattern``.

    Example:
        >>> topic_matches("booking.*", "booking.completed")
        True
        >>> topic_matches("booking.*", "booking.completed.v2")
        False
        >>> topic_matches("payment.#", "payment")
        True
    """
    pattern_words = pattern.split(".")
    key_words = routing_key.split(".")

    # matches[j] is True when the pattern prefix consumed so far matches key_words[:j]
    matches = [True] + [False] * len(key_words)
    for word in pattern_words:
        if word == WILDCARD_MANY:
            for j in range(1, len(key_words) + 1):
                matches[j] = matches[j] or matches[j - 1]
            continue
        for j in range(len(key_words), 0, -1):
            matches[j] = matches[j - 1] and (word == WILDCARD_ONE or word == key_words[j - 1])
        matches[0] = False
    return matches[len(key_words)]


__all__ = [
    "MAX_ROUTING_KEY_BYTES",
    "topic_matches",
    "validate_pattern",
    "validate_routing_key",
]
