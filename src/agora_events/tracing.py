"""TraceContextPropagator: W3C trace context across the broker boundary."""

from __future__ import annotations

import contextlib
import logging
from typing import TYPE_CHECKING, Any

from opentelemetry import propagate, trace
from opentelemetry.context import Context
from opentelemetry.trace import SpanKind, Status, StatusCode

if TYPE_CHECKING:
    from collections.abc import Iterator, Mapping, MutableMapping

    from opentelemetry.propagators.textmap import TextMapPropagator
    from opentelemetry.trace import Span, Tracer

logger = logging.getLogger("agora_events.tracing")

_TRACER_NAME = "agora-events"


def _header_text(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


class TraceContextPropagator:
    """Injects and extracts trace context on transport headers.

    Uses the globally configured OpenTelemetry propagator (W3C
    ``traceparent``/``tracestate`` and ``baggage`` by default) unless one is
    passed in. A missing or malformed header never fails a message: extraction
    then yields an empty context and the consumer span becomes a new root.
    """

    def __init__(
        self,
        propagator: TextMapPropagator | None = None,
        tracer: Tracer | None = None,
    ) -> None:
        self._propagator = propagator
        self._tracer = tracer or trace.get_tracer(_TRACER_NAME)

    def _textmap(self) -> TextMapPropagator:
        return self._propagator or propagate.get_global_textmap()

    def inject(self, headers: MutableMapping[str, str]) -> MutableMapping[str, str]:
        """Add the current trace/span identifiers to *headers* (in place)."""
        try:
            self._textmap().inject(headers)
        except Exception:  # noqa: BLE001
            logger.debug("Trace context injection failed", exc_info=True)
        return headers

    def extract(self, headers: Mapping[str, Any]) -> Context:
        """Reconstruct the remote context; empty (new root) when absent."""
        carrier = {str(k): _header_text(v) for k, v in headers.items()}
        try:
            return self._textmap().extract(carrier)
        except Exception:  # noqa: BLE001
            logger.debug("Malformed trace headers, starting a new root", exc_info=True)
            return Context()

    @contextlib.contextmanager
    def publish_span(
        self, routing_key: str, attributes: dict[str, Any]
    ) -> Iterator[Span]:
        """PRODUCER span around a publish; inject inside it."""
        with self._tracer.start_as_current_span(
            f"publish {routing_key}",
            kind=SpanKind.PRODUCER,
            attributes=_span_attributes(attributes),
        ) as span:
            yield span

    @contextlib.contextmanager
    def consume_span(
        self,
        routing_key: str,
        headers: Mapping[str, Any],
        attributes: dict[str, Any],
    ) -> Iterator[Span]:
        """CONSUMER span continuing the producer's trace."""
        with self._tracer.start_as_current_span(
            f"process {routing_key}",
            context=self.extract(headers),
            kind=SpanKind.CONSUMER,
            attributes=_span_attributes(attributes),
            record_exception=False,
            set_status_on_exception=False,
        ) as span:
            yield span


def mark_span_error(span: Span, exc: BaseException) -> None:
    with contextlib.suppress(Exception):
        span.record_exception(exc)
        span.set_status(Status(StatusCode.ERROR, str(exc)))


def _span_attributes(attributes: dict[str, Any]) -> dict[str, Any]:
    return {
        key: value if isinstance(value, (str, bool, int, float)) else str(value)
        for key, value in attributes.items()
        if value is not None
    }
