"""Naming conventions, routing-key grammar and topic matching."""

from __future__ import annotations

import re
from typing import TYPE_CHECKING

from .ports import BindingSpec, ExchangeKind, ExchangeSpec, QueueSpec, Topology

if TYPE_CHECKING:
    from collections.abc import Iterable

    from .config import ConsumerSettings

EXCHANGE_PREFIX = "agora"
ROUTING_KEY_RE = re.compile(r"^[a-z0-9-]+\.[a-z0-9-]+\.[a-z0-9-]+$")
PRODUCER_RE = re.compile(r"^[a-z0-9-]+$")
_PATTERN_SEGMENT_RE = re.compile(r"^(?:[a-z0-9-]+|\*|#)$")


def is_valid_routing_key(routing_key: str) -> bool:
    return bool(ROUTING_KEY_RE.match(routing_key))


def exchange_name(service: str, domain: str) -> str:
    """Topic exchange owned by *service* for *domain*."""
    return f"{EXCHANGE_PREFIX}.{service}.{domain}"


def exchange_for(producer: str, routing_key: str) -> str:
    """Destination exchange of an envelope: ``agora.<producer>.<domain>``."""
    parts = routing_key.split(".")
    if len(parts) != 3:
        raise ValueError(
            f"Routing key {routing_key!r} is not <service>.<domain>.<action>"
        )
    return exchange_name(producer, parts[1])


def validate_pattern(pattern: str) -> None:
    """Raise ValueError unless *pattern* is a valid binding pattern."""
    segments = pattern.split(".")
    if not segments or not all(_PATTERN_SEGMENT_RE.match(s) for s in segments):
        raise ValueError(f"Invalid binding pattern {pattern!r}")


def exchange_for_pattern(pattern: str) -> str:
    """Exchange a binding pattern attaches to.

    The service and domain segments select the exchange, so they must be
    literal.
    """
    validate_pattern(pattern)
    segments = pattern.split(".")
    if len(segments) < 2 or any(s in ("*", "#") for s in segments[:2]):
        raise ValueError(
            f"Binding pattern {pattern!r} needs literal service and domain segments"
        )
    return exchange_name(segments[0], segments[1])


def _segments_match(pattern: tuple[str, ...], key: tuple[str, ...]) -> bool:
    if not pattern:
        return not key
    head, rest = pattern[0], pattern[1:]
    if head == "#":
        return any(_segments_match(rest, key[i:]) for i in range(len(key) + 1))
    if not key:
        return False
    if head in ("*", key[0]):
        return _segments_match(rest, key[1:])
    return False


def topic_matches(pattern: str, routing_key: str) -> bool:
    """AMQP topic semantics: ``*`` is one segment, ``#`` zero or more."""
    return _segments_match(tuple(pattern.split(".")), tuple(routing_key.split(".")))


def consumer_topology(settings: ConsumerSettings, patterns: Iterable[str]) -> Topology:
    """Main queue bound to each pattern, plus its DLX and DLQ.

    Broker-side rejections without requeue land in the DLQ through the
    queue's dead-letter exchange.
    """
    topology = Topology(
        exchanges=[ExchangeSpec(settings.dlx_name, ExchangeKind.DIRECT)],
        queues=[
            QueueSpec(
                settings.queue_name,
                arguments={
                    "x-dead-letter-exchange": settings.dlx_name,
                    "x-dead-letter-routing-key": settings.dlq_name,
                },
            ),
            QueueSpec(settings.dlq_name),
        ],
        bindings=[
            BindingSpec(settings.dlq_name, settings.dlx_name, settings.dlq_name),
        ],
    )
    seen: set[str] = set()
    for pattern in patterns:
        exchange = exchange_for_pattern(pattern)
        if exchange not in seen:
            seen.add(exchange)
            topology.exchanges.append(ExchangeSpec(exchange, ExchangeKind.TOPIC))
        topology.bindings.append(BindingSpec(settings.queue_name, exchange, pattern))
    return topology
