"""In-memory broker transport for testing and local runs."""

from __future__ import annotations

from .broker import InMemoryBroker, InMemoryDelivery

__all__ = [
    "InMemoryBroker",
    "InMemoryDelivery",
]
