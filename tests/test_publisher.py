"""Tests for Publisher over the in-memory broker."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from opentelemetry.sdk.trace.export.in_memory_span_exporter import (
    InMemorySpanExporter,
)
from opentelemetry.trace import SpanKind, StatusCode
from pydantic import BaseModel

from agora_events.codec import EnvelopeCodec
from agora_events.config import ConsumerSettings
from agora_events.correlation import correlation_scope
from agora_events.envelope import Envelope
from agora_events.exceptions import PublishError, TransportError, ValidationError
from agora_events.instrumentation import HookRegistry
from agora_events.memory import InMemoryBroker
from agora_events.metrics import MessagingMetrics
from agora_events.publisher import Publisher
from agora_events.topology import consumer_topology
from agora_events.tracing import TraceContextPropagator

QUEUE = "search.catalog.events-queue"


class ItemPublished(BaseModel):
    sku: str
    price: int


@pytest_asyncio.fixture
async def bound_broker(
    broker: InMemoryBroker, settings: ConsumerSettings
) -> InMemoryBroker:
    await broker.declare(consumer_topology(settings, ["product.item.*"]))
    return broker


@pytest.fixture
def publisher(
    bound_broker: InMemoryBroker,
    propagator: TraceContextPropagator,
    metrics: MessagingMetrics,
    hooks: HookRegistry,
) -> Publisher:
    return Publisher(
        bound_broker,
        service_name="product",
        propagator=propagator,
        metrics=metrics,
        hooks=hooks,
    )


@pytest.mark.asyncio
async def test_publish_routes_to_producer_exchange(
    publisher: Publisher, bound_broker: InMemoryBroker, envelope: Envelope
) -> None:
    sent = await publisher.publish(envelope)

    (message,) = bound_broker.messages(QUEUE)
    assert message.exchange == "agora.product.item"
    assert message.routing_key == "product.item.published"
    assert message.message_id == envelope.event_id
    assert EnvelopeCodec().decode(message.body, message.headers) == sent
    assert sent.headers.correlation_id == "corr-1"
    assert sent.headers.service_name == "product"


@pytest.mark.asyncio
async def test_publish_injects_trace_context(
    publisher: Publisher,
    bound_broker: InMemoryBroker,
    envelope: Envelope,
    span_exporter: InMemorySpanExporter,
) -> None:
    sent = await publisher.publish(envelope)

    (span,) = span_exporter.get_finished_spans()
    assert span.name == "publish product.item.published"
    assert span.kind is SpanKind.PRODUCER
    (message,) = bound_broker.messages(QUEUE)
    trace_id = format(span.context.trace_id, "032x")
    assert trace_id in message.headers["traceparent"]
    assert sent.headers.trace["traceparent"] == message.headers["traceparent"]


@pytest.mark.asyncio
async def test_correlation_id_from_context_or_generated(
    publisher: Publisher, envelope: Envelope
) -> None:
    bare = envelope.with_headers(correlation_id=None)
    with correlation_scope("request-42"):
        inherited = await publisher.publish(bare)
    assert inherited.headers.correlation_id == "request-42"

    generated = await publisher.publish(bare)
    assert generated.headers.correlation_id
    assert generated.headers.correlation_id != "request-42"


@pytest.mark.asyncio
async def test_emit_builds_envelope_from_model(
    publisher: Publisher, bound_broker: InMemoryBroker
) -> None:
    sent = await publisher.emit(
        "product.item.published",
        ItemPublished(sku="SKU-9", price=500),
        user_id="u-1",
        tenant_id="store-1",
    )
    assert sent.producer == "product"
    assert sent.payload == {"sku": "SKU-9", "price": 500}
    (message,) = bound_broker.messages(QUEUE)
    assert message.headers["x-store-id"] == "store-1"


@pytest.mark.asyncio
async def test_emit_routes_by_routing_key_not_service_name(
    bound_broker: InMemoryBroker,
    metrics: MessagingMetrics,
    hooks: HookRegistry,
) -> None:
    publisher = Publisher(
        bound_broker, service_name="catalog-api", metrics=metrics, hooks=hooks
    )
    sent = await publisher.emit("product.item.published", {"sku": "SKU-3"})

    assert sent.producer == "product"
    (message,) = bound_broker.messages(QUEUE)
    assert message.exchange == "agora.product.item"
    assert message.headers["x-service-name"] == "catalog-api"


@pytest.mark.asyncio
async def test_producer_must_own_routing_key(
    publisher: Publisher, bound_broker: InMemoryBroker
) -> None:
    with pytest.raises(ValidationError, match="service segment"):
        await publisher.emit(
            "product.item.published", {"sku": "SKU-3"}, producer="catalog-api"
        )
    assert bound_broker.published == []


@pytest.mark.asyncio
async def test_invalid_envelope_is_not_published(
    publisher: Publisher, bound_broker: InMemoryBroker, envelope: Envelope
) -> None:
    with pytest.raises(ValidationError):
        await publisher.publish(envelope.model_copy(update={"routing_key": "bad"}))
    assert bound_broker.published == []


@pytest.mark.asyncio
async def test_refused_publish_raises_publish_error(
    publisher: Publisher,
    bound_broker: InMemoryBroker,
    envelope: Envelope,
    span_exporter: InMemorySpanExporter,
) -> None:
    bound_broker.fail_publish = lambda message: True
    with pytest.raises(PublishError):
        await publisher.publish(envelope)
    (span,) = span_exporter.get_finished_spans()
    assert span.status.status_code is StatusCode.ERROR


@pytest.mark.asyncio
async def test_transport_errors_are_wrapped(
    metrics: MessagingMetrics, hooks: HookRegistry, envelope: Envelope
) -> None:
    transport = MagicMock()
    transport.declare = AsyncMock()
    transport.publish = AsyncMock(side_effect=TransportError("connection lost"))
    publisher = Publisher(transport, metrics=metrics, hooks=hooks)

    with pytest.raises(PublishError, match="connection lost") as exc_info:
        await publisher.publish(envelope)
    assert isinstance(exc_info.value.__cause__, TransportError)
    transport.publish.assert_awaited_once()


@pytest.mark.asyncio
async def test_exchange_declared_once(
    metrics: MessagingMetrics, hooks: HookRegistry, envelope: Envelope
) -> None:
    transport = MagicMock()
    transport.declare = AsyncMock()
    transport.publish = AsyncMock()
    publisher = Publisher(transport, metrics=metrics, hooks=hooks)

    await publisher.publish(envelope)
    await publisher.publish(envelope)

    transport.declare.assert_awaited_once()
    topology = transport.declare.await_args.args[0]
    assert [e.name for e in topology.exchanges] == ["agora.product.item"]
    assert transport.publish.await_count == 2
