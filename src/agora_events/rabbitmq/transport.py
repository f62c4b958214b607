"""RabbitMQTransport: IBrokerTransport over aio-pika with publisher confirms."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

import aio_pika
from aio_pika.exceptions import AMQPError

from ..exceptions import PublishError, TransportError
from ..ports import ExchangeKind

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from aio_pika.abc import AbstractExchange, AbstractIncomingMessage, AbstractQueue

    from ..ports import IDelivery, OutgoingMessage, Topology
    from .connection import RabbitMQConnectionManager

logger = logging.getLogger("agora_events.rabbitmq")

_EXCHANGE_TYPES = {
    ExchangeKind.TOPIC: aio_pika.ExchangeType.TOPIC,
    ExchangeKind.DIRECT: aio_pika.ExchangeType.DIRECT,
}


class RabbitMQDelivery:
    """IDelivery wrapping an aio-pika incoming message."""

    def __init__(self, message: AbstractIncomingMessage) -> None:
        self._message = message

    @property
    def body(self) -> bytes:
        return self._message.body

    @property
    def headers(self) -> dict[str, Any]:
        return dict(self._message.headers or {})

    @property
    def redelivered(self) -> bool:
        return bool(self._message.redelivered)

    async def ack(self) -> None:
        try:
            await self._message.ack()
        except (AMQPError, ConnectionError) as e:
            raise TransportError(f"ack failed: {e}") from e

    async def reject(self, *, requeue: bool) -> None:
        try:
            await self._message.reject(requeue=requeue)
        except (AMQPError, ConnectionError) as e:
            raise TransportError(f"reject failed: {e}") from e


class RabbitMQTransport:
    """RabbitMQ adapter implementing IBrokerTransport.

    Declarations and consumers run on the consume channel; publishes go
    through the confirm-enabled publish channel and return only once the
    broker acknowledged them.
    """

    def __init__(
        self,
        connection: RabbitMQConnectionManager,
        *,
        publish_timeout: float | None = 10.0,
    ) -> None:
        """Configure transport.

        Args:
            connection: Shared process-wide connection manager.
            publish_timeout: Seconds to wait for a publisher confirm.
        """
        self._connection = connection
        self._publish_timeout = publish_timeout
        self._exchanges: dict[str, AbstractExchange] = {}
        self._queues: dict[str, AbstractQueue] = {}
        self._consumers: dict[str, AbstractQueue] = {}

    async def declare(self, topology: Topology) -> None:
        """Declare exchanges, queues and bindings on the consume channel."""
        await self._connection.connect()
        channel = self._connection.consume_channel
        try:
            for spec in topology.exchanges:
                await channel.declare_exchange(
                    spec.name, _EXCHANGE_TYPES[spec.kind], durable=spec.durable
                )
            for queue_spec in topology.queues:
                self._queues[queue_spec.name] = await channel.declare_queue(
                    queue_spec.name,
                    durable=queue_spec.durable,
                    arguments=queue_spec.arguments or None,
                )
            for binding in topology.bindings:
                await self._queues[binding.queue].bind(
                    binding.exchange, routing_key=binding.routing_key
                )
        except (AMQPError, ConnectionError, OSError) as e:
            raise TransportError(f"Topology declaration failed: {e}") from e
        logger.debug(
            "Declared %d exchanges, %d queues, %d bindings",
            len(topology.exchanges),
            len(topology.queues),
            len(topology.bindings),
        )

    async def _exchange(self, name: str) -> AbstractExchange:
        channel = self._connection.publish_channel
        if not name:
            return channel.default_exchange
        if name not in self._exchanges:
            self._exchanges[name] = await channel.get_exchange(name, ensure=False)
        return self._exchanges[name]

    async def publish(self, message: OutgoingMessage) -> None:
        """Publish *message* and wait for the broker confirm."""
        try:
            await self._connection.connect()
            exchange = await self._exchange(message.exchange)
            await exchange.publish(
                aio_pika.Message(
                    body=message.body,
                    headers=dict(message.headers),
                    message_id=message.message_id,
                    content_type=message.content_type,
                    delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
                    expiration=message.expiration,
                ),
                routing_key=message.routing_key,
                timeout=self._publish_timeout,
            )
        except (AMQPError, ConnectionError, OSError, asyncio.TimeoutError) as e:
            raise PublishError(
                f"Publish to {message.exchange or '<default>'}"
                f"/{message.routing_key} failed: {e}"
            ) from e

    async def consume(
        self,
        queue: str,
        on_delivery: Callable[[IDelivery], Awaitable[None]],
        *,
        prefetch: int,
    ) -> str:
        """Consume *queue* with manual acknowledgement and bounded prefetch."""
        await self._connection.connect()
        channel = self._connection.consume_channel
        try:
            await channel.set_qos(prefetch_count=prefetch)
            target = self._queues.get(queue)
            if target is None:
                target = await channel.get_queue(queue, ensure=True)
                self._queues[queue] = target

            async def on_message(raw: AbstractIncomingMessage) -> None:
                await on_delivery(RabbitMQDelivery(raw))

            tag = await target.consume(on_message, no_ack=False)
        except (AMQPError, ConnectionError, OSError) as e:
            raise TransportError(f"Consume on {queue} failed: {e}") from e
        self._consumers[tag] = target
        return tag

    async def cancel(self, consumer_tag: str) -> None:
        queue = self._consumers.pop(consumer_tag, None)
        if queue is None:
            return
        try:
            await queue.cancel(consumer_tag)
        except (AMQPError, ConnectionError) as e:
            raise TransportError(f"Cancel failed: {e}") from e

    async def health_check(self) -> bool:
        """Return True if the connection is healthy."""
        return await self._connection.health_check()
