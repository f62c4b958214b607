"""Correlation ID carried from a dispatched event into the events it causes."""

from __future__ import annotations

import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterator

# Bound per dispatch task, so concurrent workers never see each other's id.
_dispatch_correlation: ContextVar[str | None] = ContextVar(
    "agora_events_correlation_id", default=None
)


def get_correlation_id() -> str | None:
    """Correlation id of the event being handled, if any."""
    return _dispatch_correlation.get()


def generate_correlation_id() -> str:
    return uuid.uuid4().hex


def resolve_correlation_id(explicit: str | None = None) -> str:
    """Pick the id for an outgoing envelope: explicit, inherited, or new."""
    return explicit or _dispatch_correlation.get() or generate_correlation_id()


@contextmanager
def correlation_scope(correlation_id: str | None) -> Iterator[str | None]:
    """Bind *correlation_id* for the duration of a handler invocation.

    Envelopes published by the handler inherit it.
    """
    token = _dispatch_correlation.set(correlation_id)
    try:
        yield correlation_id
    finally:
        _dispatch_correlation.reset(token)
