"""Publisher: envelopes onto the producer's topic exchange with confirms."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel

from .codec import EnvelopeCodec
from .correlation import resolve_correlation_id
from .envelope import Envelope
from .exceptions import PublishError, TransportError
from .instrumentation import PUBLISH, get_hook_registry, operation_name
from .metrics import get_default_metrics
from .ports import ExchangeKind, ExchangeSpec, OutgoingMessage, Topology
from .topology import exchange_for
from .tracing import TraceContextPropagator, mark_span_error

if TYPE_CHECKING:
    from .instrumentation import HookRegistry
    from .metrics import MessagingMetrics
    from .ports import IBrokerTransport

logger = logging.getLogger("agora_events.publisher")


class Publisher:
    """Publishes envelopes to ``agora.<producer>.<domain>``.

    ``publish`` returns only after the broker confirmed the message and
    raises PublishError otherwise. There is no internal retry: callers that
    need one (an outbox relay, say) own it.
    """

    def __init__(
        self,
        transport: IBrokerTransport,
        *,
        service_name: str | None = None,
        codec: EnvelopeCodec | None = None,
        propagator: TraceContextPropagator | None = None,
        metrics: MessagingMetrics | None = None,
        hooks: HookRegistry | None = None,
    ) -> None:
        """Configure publisher.

        Args:
            transport: Broker transport sharing the process-wide connection.
            service_name: Default producer and ``x-service-name`` header.
            codec: Envelope codec; default EnvelopeCodec().
            propagator: Trace propagator; default uses the global one.
            metrics: Metric sink; default process-wide metrics.
            hooks: Instrumentation hooks; default context registry.
        """
        self._transport = transport
        self._service_name = service_name
        self._codec = codec if codec is not None else EnvelopeCodec()
        self._propagator = (
            propagator if propagator is not None else TraceContextPropagator()
        )
        self._metrics = metrics if metrics is not None else get_default_metrics()
        self._hooks = hooks if hooks is not None else get_hook_registry()
        self._declared: set[str] = set()

    async def _ensure_exchange(self, name: str) -> None:
        if name in self._declared:
            return
        try:
            await self._transport.declare(
                Topology(exchanges=[ExchangeSpec(name, ExchangeKind.TOPIC)])
            )
        except TransportError as e:
            raise PublishError(f"Cannot declare exchange {name}: {e}") from e
        self._declared.add(name)

    async def publish(self, envelope: Envelope) -> Envelope:
        """Publish *envelope*; return it as sent (with headers filled in).

        Raises:
            ValidationError: The envelope breaks the wire contract.
            PublishError: The broker did not confirm the message.
        """
        self._codec.validate(envelope)
        exchange = exchange_for(envelope.producer, envelope.routing_key)
        correlation_id = resolve_correlation_id(envelope.headers.correlation_id)
        envelope = envelope.with_headers(
            correlation_id=correlation_id,
            service_name=envelope.headers.service_name
            or self._service_name
            or envelope.producer,
        )
        attributes = {
            "messaging.system": "rabbitmq",
            "messaging.destination.name": exchange,
            "messaging.rabbitmq.destination.routing_key": envelope.routing_key,
            "messaging.message.id": envelope.event_id,
            "correlation_id": correlation_id,
        }

        async def _send() -> Envelope:
            with self._propagator.publish_span(
                envelope.routing_key, attributes
            ) as span:
                trace: dict[str, str] = {}
                self._propagator.inject(trace)
                sent = envelope.with_headers(trace=trace) if trace else envelope
                message = OutgoingMessage(
                    exchange=exchange,
                    routing_key=sent.routing_key,
                    body=self._codec.encode(sent),
                    headers=self._codec.encode_headers(sent),
                    message_id=sent.event_id,
                )
                try:
                    with self._metrics.time("publish"):
                        await self._ensure_exchange(exchange)
                        await self._transport.publish(message)
                except TransportError as e:
                    mark_span_error(span, e)
                    if isinstance(e, PublishError):
                        raise
                    raise PublishError(str(e)) from e
                return sent

        published: Envelope = await self._hooks.execute_all(
            operation_name(PUBLISH, envelope.routing_key), attributes, _send
        )
        logger.debug(
            "Published %s to %s",
            published.event_id,
            exchange,
            extra={
                "event_id": published.event_id,
                "routing_key": published.routing_key,
            },
        )
        return published

    async def emit(
        self,
        routing_key: str,
        payload: dict[str, Any] | BaseModel,
        *,
        producer: str | None = None,
        schema_version: int = 1,
        user_id: str | None = None,
        tenant_id: str | None = None,
        correlation_id: str | None = None,
    ) -> Envelope:
        """Build an envelope around *payload* and publish it.

        *producer* defaults to the service segment of *routing_key*; the
        publisher's own service name travels in the ``x-service-name`` header.
        """
        if isinstance(payload, BaseModel):
            data = payload.model_dump(mode="json")
        else:
            data = dict(payload)
        envelope = Envelope(
            producer=producer or routing_key.split(".", 1)[0],
            routing_key=routing_key,
            schema_version=schema_version,
            payload=data,
        ).with_headers(
            user_id=user_id,
            tenant_id=tenant_id,
            correlation_id=correlation_id,
        )
        return await self.publish(envelope)
