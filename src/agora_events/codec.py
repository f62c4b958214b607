"""EnvelopeCodec: JSON body plus out-of-band headers, with validation."""

from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError as PydanticValidationError
from pydantic_core import PydanticSerializationError

from .envelope import (
    DeadLetterEnvelope,
    Envelope,
    EnvelopeHeaders,
    ErrorInfo,
    RetryState,
)
from .exceptions import MalformedMessageError, ValidationError
from .topology import PRODUCER_RE, ROUTING_KEY_RE

if TYPE_CHECKING:
    from collections.abc import Mapping

logger = logging.getLogger("agora_events.codec")

HEADER_USER_ID = "x-user-id"
HEADER_TENANT_ID = "x-store-id"
HEADER_SERVICE_NAME = "x-service-name"
HEADER_CORRELATION_ID = "x-correlation-id"
TRACE_FIELDS = ("traceparent", "tracestate", "baggage")

HEADER_RETRY_ATTEMPT = "x-retry-attempt"
HEADER_LAST_ERROR_KIND = "x-last-error-kind"
HEADER_LAST_ERROR = "x-last-error"
HEADER_NEXT_ELIGIBLE_AT = "x-next-eligible-at"

# AMQP header values are kept short; full diagnostics go to the DLQ body.
_MAX_HEADER_TEXT = 1024

WIRE_FIELDS = frozenset(
    {"eventId", "timestamp", "version", "producer", "routingKey", "payload"}
)

_ENVELOPE_HEADERS = {
    HEADER_USER_ID: "user_id",
    HEADER_TENANT_ID: "tenant_id",
    HEADER_SERVICE_NAME: "service_name",
    HEADER_CORRELATION_ID: "correlation_id",
}


def _text(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


class EnvelopeCodec:
    """Serialize/deserialize envelopes to/from JSON bytes and header maps.

    ``decode(encode(e), encode_headers(e)) == e`` for every valid envelope.
    """

    def validate(self, envelope: Envelope) -> None:
        """Raise ValidationError if *envelope* breaks the wire contract."""
        errors: dict[str, list[str]] = {}

        event_id = getattr(envelope, "event_id", None)
        if not event_id:
            errors.setdefault("eventId", []).append("required")
        else:
            try:
                uuid.UUID(str(event_id))
            except ValueError:
                errors.setdefault("eventId", []).append("not a valid UUID")

        producer = getattr(envelope, "producer", None)
        if not producer:
            errors.setdefault("producer", []).append("required")
        elif not PRODUCER_RE.match(producer):
            errors.setdefault("producer", []).append("must be lower-kebab")

        routing_key = getattr(envelope, "routing_key", None)
        if not routing_key:
            errors.setdefault("routingKey", []).append("required")
        elif not ROUTING_KEY_RE.match(routing_key):
            errors.setdefault("routingKey", []).append(
                "must match <service>.<domain>.<action> in lower-kebab"
            )
        elif producer and routing_key.split(".", 1)[0] != producer:
            # the exchange is picked from producer, bindings from the key
            errors.setdefault("routingKey", []).append(
                f"service segment must equal producer {producer!r}"
            )

        version = getattr(envelope, "schema_version", None)
        if not isinstance(version, int) or version < 1:
            errors.setdefault("version", []).append("must be a positive integer")

        if getattr(envelope, "timestamp", None) is None:
            errors.setdefault("timestamp", []).append("required")

        if errors:
            raise ValidationError(errors, envelope=envelope)

    def encode(self, envelope: Envelope) -> bytes:
        """Validate and encode the envelope body to JSON bytes."""
        self.validate(envelope)
        try:
            data = envelope.model_dump(mode="json", by_alias=True)
            return json.dumps(data, separators=(",", ":")).encode("utf-8")
        except (TypeError, ValueError, PydanticSerializationError) as e:
            raise ValidationError({"payload": [str(e)]}, envelope=envelope) from e

    def decode(
        self, body: bytes, headers: Mapping[str, Any] | None = None
    ) -> Envelope:
        """Decode JSON bytes (and transport headers) into an Envelope.

        Raises MalformedMessageError for anything that is not a structurally
        complete envelope, ValidationError for a complete but invalid one.
        """
        try:
            data = json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise MalformedMessageError(f"Undecodable message body: {e}") from e
        if not isinstance(data, dict):
            raise MalformedMessageError(
                f"Envelope must be a JSON object, got {type(data).__name__}"
            )
        missing = WIRE_FIELDS - data.keys()
        if missing:
            raise MalformedMessageError(
                f"Envelope is missing fields: {', '.join(sorted(missing))}"
            )
        fields = {key: data[key] for key in WIRE_FIELDS}
        try:
            envelope = Envelope.model_validate(
                {**fields, "headers": self.decode_headers(headers or {})}
            )
        except PydanticValidationError as e:
            raise MalformedMessageError(str(e)) from e
        self.validate(envelope)
        return envelope

    def encode_headers(self, envelope: Envelope) -> dict[str, str]:
        """Transport headers for *envelope*; unset fields are omitted."""
        headers: dict[str, str] = {}
        for header, attr in _ENVELOPE_HEADERS.items():
            value = getattr(envelope.headers, attr)
            if value is not None:
                headers[header] = value
        headers.update(envelope.headers.trace)
        return headers

    def decode_headers(self, headers: Mapping[str, Any]) -> EnvelopeHeaders:
        """Rebuild EnvelopeHeaders; unknown transport headers are ignored."""
        values: dict[str, Any] = {
            attr: _text(headers[header])
            for header, attr in _ENVELOPE_HEADERS.items()
            if headers.get(header) is not None
        }
        values["trace"] = {
            name: _text(headers[name]) for name in TRACE_FIELDS if name in headers
        }
        return EnvelopeHeaders(**values)

    def encode_retry_state(self, state: RetryState) -> dict[str, str]:
        headers = {HEADER_RETRY_ATTEMPT: str(state.attempt)}
        if state.last_error is not None:
            headers[HEADER_LAST_ERROR_KIND] = state.last_error.kind
            headers[HEADER_LAST_ERROR] = state.last_error.message[:_MAX_HEADER_TEXT]
        if state.next_eligible_at is not None:
            headers[HEADER_NEXT_ELIGIBLE_AT] = state.next_eligible_at.isoformat()
        return headers

    def decode_retry_state(self, headers: Mapping[str, Any]) -> RetryState:
        """Read retry headers; a first delivery has none and yields attempt 0."""
        raw_attempt = headers.get(HEADER_RETRY_ATTEMPT)
        attempt = 0
        if raw_attempt is not None:
            try:
                attempt = max(0, int(_text(raw_attempt)))
            except ValueError:
                logger.warning(
                    "Ignoring invalid %s header: %r", HEADER_RETRY_ATTEMPT, raw_attempt
                )

        last_error = None
        if headers.get(HEADER_LAST_ERROR_KIND) is not None:
            last_error = ErrorInfo(
                kind=_text(headers[HEADER_LAST_ERROR_KIND]),
                message=_text(headers.get(HEADER_LAST_ERROR, "")),
            )

        next_eligible_at = None
        raw_next = headers.get(HEADER_NEXT_ELIGIBLE_AT)
        if raw_next is not None:
            try:
                next_eligible_at = datetime.fromisoformat(_text(raw_next))
            except ValueError:
                logger.warning(
                    "Ignoring invalid %s header: %r", HEADER_NEXT_ELIGIBLE_AT, raw_next
                )

        return RetryState(
            attempt=attempt,
            last_error=last_error,
            next_eligible_at=next_eligible_at,
        )

    def encode_dead_letter(self, dead_letter: DeadLetterEnvelope) -> bytes:
        data = dead_letter.model_dump(mode="json", by_alias=True)
        return json.dumps(data, separators=(",", ":")).encode("utf-8")

    def decode_dead_letter(self, body: bytes) -> DeadLetterEnvelope:
        try:
            return DeadLetterEnvelope.model_validate_json(body)
        except PydanticValidationError as e:
            raise MalformedMessageError(str(e)) from e
