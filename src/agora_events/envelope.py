"""Immutable wire models: envelope, retry state and dead-letter wrapper."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EnvelopeHeaders(BaseModel):
    """Out-of-band metadata travelling as transport headers.

    ``trace`` holds the propagation fields (``traceparent``, ``tracestate``,
    ``baggage``) written by the trace propagator.
    """

    model_config = ConfigDict(frozen=True)

    correlation_id: str | None = None
    user_id: str | None = None
    tenant_id: str | None = None
    service_name: str | None = None
    trace: dict[str, str] = Field(default_factory=dict)


class Envelope(BaseModel):
    """Unit of communication; immutable once published.

    JSON body: ``{eventId, timestamp, version, producer, routingKey, payload}``.
    ``headers`` never goes into the body.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    event_id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        alias="eventId",
    )
    timestamp: datetime = Field(default_factory=_utcnow)
    schema_version: int = Field(default=1, alias="version")
    producer: str
    routing_key: str = Field(..., alias="routingKey")
    payload: dict[str, Any] = Field(default_factory=dict)
    headers: EnvelopeHeaders = Field(default_factory=EnvelopeHeaders, exclude=True)

    @property
    def domain(self) -> str:
        """Second segment of the routing key."""
        parts = self.routing_key.split(".")
        return parts[1] if len(parts) > 1 else ""

    def with_headers(self, **changes: Any) -> Envelope:
        """Copy with some header fields replaced; the body is untouched."""
        return self.model_copy(
            update={"headers": self.headers.model_copy(update=changes)}
        )


class ErrorInfo(BaseModel):
    """Failure classification recorded on retries and dead letters."""

    model_config = ConfigDict(frozen=True)

    kind: str
    message: str
    context: str | None = None


class RetryState(BaseModel):
    """Ephemeral retry bookkeeping attached to a message via headers."""

    model_config = ConfigDict(frozen=True)

    attempt: int = Field(default=0, ge=0)
    last_error: ErrorInfo | None = None
    next_eligible_at: datetime | None = None


class DeadLetterEnvelope(BaseModel):
    """Terminal wrapper published to the dead-letter queue.

    ``original`` is None when the delivered bytes never decoded; the bytes
    are then kept as text in ``raw_body``.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    original: Envelope | None
    error: ErrorInfo
    retry_count: int = Field(..., ge=0, alias="retryCount")
    dead_lettered_at: datetime = Field(default_factory=_utcnow, alias="deadLetteredAt")
    raw_body: str | None = Field(default=None, alias="rawBody")
