"""DeadLetterRouter: wrap exhausted or unprocessable messages for the DLQ."""

from __future__ import annotations

import logging
import traceback
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from .codec import EnvelopeCodec
from .envelope import DeadLetterEnvelope, ErrorInfo
from .exceptions import DeadLetterPublishFailure, TransportError, error_kind
from .instrumentation import DEAD_LETTER, get_hook_registry, operation_name
from .metrics import get_default_metrics
from .ports import OutgoingMessage

if TYPE_CHECKING:
    from collections.abc import Mapping

    from .config import ConsumerSettings
    from .envelope import Envelope
    from .instrumentation import HookRegistry
    from .metrics import MessagingMetrics
    from .ports import IBrokerTransport

logger = logging.getLogger("agora_events.dead_letter")

_UNDECODED_ROUTING_KEY = "undecoded"


def describe_error(exc: BaseException) -> ErrorInfo:
    """ErrorInfo with the formatted traceback as context."""
    context = "".join(
        traceback.format_exception(type(exc), exc, exc.__traceback__)
    ).strip()
    return ErrorInfo(kind=error_kind(exc), message=str(exc), context=context or None)


class DeadLetterRouter:
    """Publishes DeadLetterEnvelopes to ``<service>.<domain>.dlq``.

    The envelope goes through the DLX ``<service>.<domain>.dlx`` with the DLQ
    name as routing key. A failed dead-letter publish is never swallowed: it
    is logged at CRITICAL and raised as DeadLetterPublishFailure.
    """

    def __init__(
        self,
        transport: IBrokerTransport,
        settings: ConsumerSettings,
        *,
        codec: EnvelopeCodec | None = None,
        metrics: MessagingMetrics | None = None,
        hooks: HookRegistry | None = None,
    ) -> None:
        self._transport = transport
        self._settings = settings
        self._codec = codec if codec is not None else EnvelopeCodec()
        self._metrics = metrics if metrics is not None else get_default_metrics()
        self._hooks = hooks if hooks is not None else get_hook_registry()

    async def dead_letter(
        self,
        envelope: Envelope | None,
        error: BaseException | ErrorInfo,
        retry_count: int,
        *,
        raw_body: bytes | None = None,
        transport_headers: Mapping[str, object] | None = None,
    ) -> DeadLetterEnvelope:
        """Build and publish a DeadLetterEnvelope; return it once confirmed.

        *envelope* is None for bytes that never decoded; pass them as
        *raw_body* so operators can inspect them.
        """
        info = error if isinstance(error, ErrorInfo) else describe_error(error)
        dead_letter = DeadLetterEnvelope(
            original=envelope,
            error=info,
            retry_count=retry_count,
            dead_lettered_at=datetime.now(timezone.utc),
            raw_body=(
                raw_body.decode("utf-8", errors="replace")
                if raw_body is not None and envelope is None
                else None
            ),
        )
        headers: dict[str, str] = {
            str(k): str(v)
            for k, v in (transport_headers or {}).items()
            if isinstance(v, (str, int, float))
        }
        if envelope is not None:
            headers.update(self._codec.encode_headers(envelope))
        headers["x-error-kind"] = info.kind
        routing_key = envelope.routing_key if envelope else _UNDECODED_ROUTING_KEY
        event_id = envelope.event_id if envelope else None
        message = OutgoingMessage(
            exchange=self._settings.dlx_name,
            routing_key=self._settings.dlq_name,
            body=self._codec.encode_dead_letter(dead_letter),
            headers=headers,
            message_id=event_id,
        )

        async def _publish() -> None:
            with self._metrics.time("dead_letter"):
                await self._transport.publish(message)

        try:
            await self._hooks.execute_all(
                operation_name(DEAD_LETTER, routing_key),
                {
                    "event.id": event_id,
                    "error.kind": info.kind,
                    "retry.count": retry_count,
                },
                _publish,
            )
        except TransportError as e:
            logger.critical(
                "Dead-letter publish failed for %s; message at risk of loss",
                event_id or "<undecoded message>",
                exc_info=True,
                extra={"event_id": event_id, "routing_key": routing_key},
            )
            raise DeadLetterPublishFailure(
                f"Could not dead-letter {event_id or 'undecoded message'}: {e}",
                event_id=event_id,
            ) from e

        self._metrics.dead_lettered.labels(routing_key=routing_key).inc()
        logger.warning(
            "Dead-lettered %s to %s after %d retries (%s: %s)",
            event_id or "<undecoded message>",
            self._settings.dlq_name,
            retry_count,
            info.kind,
            info.message,
            extra={"event_id": event_id, "routing_key": routing_key},
        )
        return dead_letter
