"""In-memory broker for tests with topic routing, TTL and dead-lettering."""

from __future__ import annotations

import asyncio
import collections
import itertools
import logging
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any

from ..exceptions import PublishError, TransportError
from ..ports import ExchangeKind, OutgoingMessage, Topology
from ..topology import topic_matches

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from ..ports import BindingSpec, IDelivery

logger = logging.getLogger("agora_events.memory")


@dataclass
class _Entry:
    message: OutgoingMessage
    redelivered: bool = False
    delivery_tag: int = 0


@dataclass
class _Consumer:
    tag: str
    callback: Callable[[IDelivery], Awaitable[None]]
    prefetch: int
    unacked: dict[int, _Entry] = field(default_factory=dict)


@dataclass
class _Queue:
    name: str
    arguments: dict[str, Any]
    ready: collections.deque[_Entry] = field(default_factory=collections.deque)
    consumers: list[_Consumer] = field(default_factory=list)
    # Cancelled consumers keep their unacked deliveries until close().
    detached: list[_Consumer] = field(default_factory=list)


class InMemoryDelivery:
    """IDelivery backed by an InMemoryBroker queue."""

    def __init__(
        self, broker: InMemoryBroker, queue: _Queue, consumer: _Consumer, entry: _Entry
    ) -> None:
        self._broker = broker
        self._queue = queue
        self._consumer = consumer
        self._entry = entry
        self.settled: str | None = None

    @property
    def body(self) -> bytes:
        return self._entry.message.body

    @property
    def headers(self) -> dict[str, Any]:
        return dict(self._entry.message.headers)

    @property
    def redelivered(self) -> bool:
        return self._entry.redelivered

    async def ack(self) -> None:
        self._settle("ack")
        self._broker._schedule_pump(self._queue)

    async def reject(self, *, requeue: bool) -> None:
        self._settle("requeue" if requeue else "reject")
        if requeue:
            self._queue.ready.appendleft(replace(self._entry, redelivered=True))
        else:
            self._broker._dead_letter(self._queue, self._entry.message)
        self._broker._schedule_pump(self._queue)

    def _settle(self, outcome: str) -> None:
        if self.settled is not None:
            raise TransportError(f"Delivery already settled ({self.settled})")
        self.settled = outcome
        self._consumer.unacked.pop(self._entry.delivery_tag, None)


class InMemoryBroker:
    """IBrokerTransport emulating the broker features the runtime relies on.

    - ``""`` default exchange routes by queue name; topic exchanges use AMQP
      wildcard matching; direct exchanges need an exact key.
    - Per-message ``expiration`` on a queue without consumers dead-letters
      the message through ``x-dead-letter-exchange`` after the delay
      multiplied by ``time_scale`` (0 makes delays instantaneous while still
      recording them in ``expirations``).
    - ``reject(requeue=False)`` dead-letters; ``close()`` requeues unacked
      deliveries like a dropped connection.
    """

    def __init__(self, *, time_scale: float = 1.0) -> None:
        self._time_scale = time_scale
        self._exchanges: dict[str, ExchangeKind] = {}
        self._queues: dict[str, _Queue] = {}
        self._bindings: list[BindingSpec] = []
        self._tags = itertools.count(1)
        self._tasks: set[asyncio.Task[None]] = set()
        self._timers: set[asyncio.TimerHandle] = set()
        self.published: list[OutgoingMessage] = []
        self.expirations: list[tuple[str, float]] = []
        self.fail_publish: Callable[[OutgoingMessage], bool] | None = None

    async def declare(self, topology: Topology) -> None:
        for exchange in topology.exchanges:
            self._exchanges.setdefault(exchange.name, exchange.kind)
        for queue in topology.queues:
            if queue.name not in self._queues:
                self._queues[queue.name] = _Queue(queue.name, dict(queue.arguments))
        for binding in topology.bindings:
            if binding not in self._bindings:
                self._bindings.append(binding)

    async def publish(self, message: OutgoingMessage) -> None:
        if self.fail_publish is not None and self.fail_publish(message):
            raise PublishError(f"Publish to {message.exchange!r} refused")
        if message.exchange and message.exchange not in self._exchanges:
            raise PublishError(f"No exchange {message.exchange!r}")
        self.published.append(message)
        self._route(message)

    def _route(self, message: OutgoingMessage) -> None:
        if not message.exchange:
            targets = []
            if message.routing_key in self._queues:
                targets.append(message.routing_key)
        else:
            kind = self._exchanges[message.exchange]
            targets = []
            for binding in self._bindings:
                if binding.exchange != message.exchange or binding.queue in targets:
                    continue
                if kind is ExchangeKind.TOPIC:
                    matched = topic_matches(binding.routing_key, message.routing_key)
                else:
                    matched = binding.routing_key == message.routing_key
                if matched:
                    targets.append(binding.queue)
        if not targets:
            logger.debug(
                "Unroutable message %s on %r", message.routing_key, message.exchange
            )
        for name in targets:
            self._enqueue(self._queues[name], message)

    def _enqueue(self, queue: _Queue, message: OutgoingMessage) -> None:
        entry = _Entry(message)
        queue.ready.append(entry)
        if message.expiration is not None and not queue.consumers:
            self.expirations.append((queue.name, message.expiration))
            loop = asyncio.get_running_loop()
            handle: asyncio.TimerHandle

            def expire() -> None:
                self._timers.discard(handle)
                if entry in queue.ready:
                    queue.ready.remove(entry)
                    self._dead_letter(queue, entry.message)

            handle = loop.call_later(message.expiration * self._time_scale, expire)
            self._timers.add(handle)
        self._schedule_pump(queue)

    def _dead_letter(self, queue: _Queue, message: OutgoingMessage) -> None:
        exchange = queue.arguments.get("x-dead-letter-exchange")
        if exchange is None:
            logger.debug("Dropping message from %s (no DLX)", queue.name)
            return
        routing_key = queue.arguments.get(
            "x-dead-letter-routing-key", message.routing_key
        )
        headers = {**message.headers, "x-first-death-queue": queue.name}
        self._route(
            replace(
                message,
                exchange=exchange,
                routing_key=routing_key,
                headers=headers,
                expiration=None,
            )
        )

    async def consume(
        self,
        queue: str,
        on_delivery: Callable[[IDelivery], Awaitable[None]],
        *,
        prefetch: int,
    ) -> str:
        if queue not in self._queues:
            raise TransportError(f"No queue {queue!r}")
        tag = f"ctag-{next(self._tags)}"
        target = self._queues[queue]
        target.consumers.append(_Consumer(tag, on_delivery, max(1, prefetch)))
        self._schedule_pump(target)
        return tag

    async def cancel(self, consumer_tag: str) -> None:
        for queue in self._queues.values():
            for consumer in queue.consumers:
                if consumer.tag == consumer_tag:
                    queue.detached.append(consumer)
            queue.consumers = [c for c in queue.consumers if c.tag != consumer_tag]

    async def health_check(self) -> bool:
        return True

    def _schedule_pump(self, queue: _Queue) -> None:
        while queue.ready:
            consumer = next(
                (c for c in queue.consumers if len(c.unacked) < c.prefetch), None
            )
            if consumer is None:
                return
            entry = queue.ready.popleft()
            entry.delivery_tag = next(self._tags)
            consumer.unacked[entry.delivery_tag] = entry
            delivery = InMemoryDelivery(self, queue, consumer, entry)
            task = asyncio.get_running_loop().create_task(consumer.callback(delivery))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    def messages(self, queue: str) -> list[OutgoingMessage]:
        """Messages currently ready (not delivered) in *queue*."""
        return [entry.message for entry in self._queues[queue].ready]

    def unacked_count(self, queue: str) -> int:
        target = self._queues[queue]
        return sum(len(c.unacked) for c in [*target.consumers, *target.detached])

    async def close(self) -> None:
        """Drop consumers and requeue their unacked deliveries."""
        for queue in self._queues.values():
            for consumer in [*queue.consumers, *queue.detached]:
                for entry in consumer.unacked.values():
                    queue.ready.appendleft(replace(entry, redelivered=True))
                consumer.unacked.clear()
            queue.consumers.clear()
            queue.detached.clear()
        for handle in self._timers:
            handle.cancel()
        self._timers.clear()

    async def wait_idle(self, timeout: float = 5.0) -> None:
        """Wait until no timers, callbacks or deliverable messages remain."""

        async def _idle() -> None:
            while True:
                await asyncio.sleep(0)
                pending_timers = any(not h.cancelled() for h in self._timers)
                busy = any(
                    c.unacked or (q.ready and q.consumers)
                    for q in self._queues.values()
                    for c in q.consumers
                )
                if not pending_timers and not busy and not self._tasks:
                    return
                await asyncio.sleep(0.001)

        await asyncio.wait_for(_idle(), timeout)
