"""RabbitMQ transport adapter built on aio-pika."""

from __future__ import annotations

from .connection import RabbitMQConnectionManager
from .transport import RabbitMQDelivery, RabbitMQTransport

__all__ = [
    "RabbitMQConnectionManager",
    "RabbitMQDelivery",
    "RabbitMQTransport",
]
