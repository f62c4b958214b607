"""Process-wide RabbitMQ connection with separate publish and consume channels."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

import aio_pika
from aio_pika.exceptions import AMQPError

from ..config import BrokerSettings
from ..exceptions import TransportError

if TYPE_CHECKING:
    from aio_pika.abc import AbstractChannel, AbstractRobustConnection

logger = logging.getLogger("agora_events.rabbitmq")


class RabbitMQConnectionManager:
    """Owns the single robust connection shared by publishers and consumers.

    Construct once at startup, ``connect()``, hand it to the transport, and
    ``close()`` at shutdown. Publishing uses its own confirm-enabled channel
    so consumer flow control never blocks publishes and vice versa.
    """

    def __init__(
        self,
        settings: BrokerSettings | None = None,
        **connect_kwargs: Any,
    ) -> None:
        """Configure connection settings and optional aio_pika connect kwargs."""
        self._settings = settings if settings is not None else BrokerSettings()
        self._connect_kwargs = connect_kwargs
        self._connection: AbstractRobustConnection | None = None
        self._publish_channel: AbstractChannel | None = None
        self._consume_channel: AbstractChannel | None = None

    async def connect(self) -> None:
        """Establish connection and both channels. Idempotent if connected."""
        if self._connection is not None and not self._connection.is_closed:
            return
        try:
            kwargs = dict(self._connect_kwargs)
            if self._settings.connection_name:
                kwargs.setdefault(
                    "client_properties",
                    {"connection_name": self._settings.connection_name},
                )
            self._connection = await aio_pika.connect_robust(
                self._settings.url, **kwargs
            )
            self._publish_channel = await self._connection.channel(
                publisher_confirms=self._settings.publisher_confirms
            )
            self._consume_channel = await self._connection.channel(
                publisher_confirms=True
            )
        except (AMQPError, ConnectionError, OSError, ValueError) as e:
            raise TransportError(str(e)) from e
        logger.info("Connected to RabbitMQ")

    async def close(self) -> None:
        """Close channels and connection."""
        for channel in (self._consume_channel, self._publish_channel):
            if channel is not None and not channel.is_closed:
                await channel.close()
        self._consume_channel = None
        self._publish_channel = None
        if self._connection is not None:
            await self._connection.close()
            self._connection = None
        logger.info("RabbitMQ connection closed")

    @property
    def publish_channel(self) -> AbstractChannel:
        """Channel dedicated to publishing; raises if not connected."""
        if self._publish_channel is None:
            raise TransportError("Not connected; call connect() first")
        return self._publish_channel

    @property
    def consume_channel(self) -> AbstractChannel:
        """Channel for declarations and consumers; raises if not connected."""
        if self._consume_channel is None:
            raise TransportError("Not connected; call connect() first")
        return self._consume_channel

    async def health_check(self) -> bool:
        """Return True if connection and channels are open."""
        if self._connection is None or self._publish_channel is None:
            return False
        return not self._connection.is_closed and not self._publish_channel.is_closed
