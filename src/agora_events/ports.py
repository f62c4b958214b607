"""Ports consumed by the runtime: broker transport, deliveries, dedup and delay."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable
    from datetime import timedelta


class ExchangeKind(str, enum.Enum):
    TOPIC = "topic"
    DIRECT = "direct"


@dataclass(frozen=True)
class ExchangeSpec:
    name: str
    kind: ExchangeKind = ExchangeKind.TOPIC
    durable: bool = True


@dataclass(frozen=True)
class QueueSpec:
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    durable: bool = True


@dataclass(frozen=True)
class BindingSpec:
    queue: str
    exchange: str
    routing_key: str


@dataclass
class Topology:
    """Exchanges, queues and bindings a component needs declared."""

    exchanges: list[ExchangeSpec] = field(default_factory=list)
    queues: list[QueueSpec] = field(default_factory=list)
    bindings: list[BindingSpec] = field(default_factory=list)

    def merge(self, other: Topology) -> Topology:
        return Topology(
            exchanges=[*self.exchanges, *other.exchanges],
            queues=[*self.queues, *other.queues],
            bindings=[*self.bindings, *other.bindings],
        )


@dataclass(frozen=True)
class OutgoingMessage:
    """A message ready for the wire.

    ``exchange=""`` targets the broker's default exchange, where the routing
    key is a queue name. ``expiration`` is the per-message TTL in seconds.
    """

    exchange: str
    routing_key: str
    body: bytes
    headers: dict[str, str] = field(default_factory=dict)
    message_id: str | None = None
    expiration: float | None = None
    content_type: str = "application/json"


@runtime_checkable
class IDelivery(Protocol):
    """One broker delivery awaiting acknowledgement."""

    @property
    def body(self) -> bytes: ...

    @property
    def headers(self) -> dict[str, Any]: ...

    @property
    def redelivered(self) -> bool: ...

    async def ack(self) -> None: ...

    async def reject(self, *, requeue: bool) -> None: ...


@runtime_checkable
class IBrokerTransport(Protocol):
    """
    Port for the broker: declare topology, publish with confirms, consume.

    Publishing and consuming must not share a channel so that backpressure
    on one side never stalls the other.
    """

    async def declare(self, topology: Topology) -> None:
        """Declare exchanges, queues and bindings (idempotent)."""
        ...

    async def publish(self, message: OutgoingMessage) -> None:
        """Publish and return once the broker confirmed; raise TransportError."""
        ...

    async def consume(
        self,
        queue: str,
        on_delivery: Callable[[IDelivery], Awaitable[None]],
        *,
        prefetch: int,
    ) -> str:
        """Start consuming *queue*; returns a consumer tag."""
        ...

    async def cancel(self, consumer_tag: str) -> None:
        """Stop delivering to the consumer identified by *consumer_tag*."""
        ...

    async def health_check(self) -> bool: ...


class DedupStatus(str, enum.Enum):
    NEW = "new"
    IN_PROGRESS = "in-progress"
    SUCCEEDED = "succeeded"


@runtime_checkable
class IDedupStore(Protocol):
    """Shared state behind the idempotency guard."""

    async def check_and_mark(
        self, key: str, in_progress_ttl: timedelta
    ) -> DedupStatus:
        """Atomically mark *key* in-progress if absent; return prior status."""
        ...

    async def mark_succeeded(self, key: str, retention: timedelta) -> None: ...

    async def release(self, key: str) -> None:
        """Drop an in-progress marker so a later attempt may run."""
        ...

    async def purge_expired(self) -> int:
        """Evict expired records; returns how many were removed."""
        ...


@runtime_checkable
class IDelayStrategy(Protocol):
    """Makes a message invisible to consumers until its delay has elapsed."""

    def topology(self) -> Topology: ...

    async def defer(
        self,
        body: bytes,
        headers: dict[str, str],
        *,
        message_id: str,
        attempt: int,
        delay: float,
    ) -> None:
        """Re-inject the message into the consumer queue after *delay* seconds."""
        ...
