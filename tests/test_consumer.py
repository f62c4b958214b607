"""End-to-end tests for ConsumerRuntime over the in-memory broker."""

from __future__ import annotations

import asyncio
from typing import Any

import pytest
from opentelemetry.sdk.trace.export.in_memory_span_exporter import (
    InMemorySpanExporter,
)
from prometheus_client import CollectorRegistry
from pydantic import BaseModel

from agora_events.codec import EnvelopeCodec
from agora_events.config import ConsumerSettings, InProgressPolicy
from agora_events.consumer import ConsumerRuntime, MessageContext, MessageState
from agora_events.correlation import get_correlation_id
from agora_events.envelope import DeadLetterEnvelope, Envelope
from agora_events.exceptions import (
    DeadLetterPublishFailure,
    HandlerError,
    PermanentHandlerError,
)
from agora_events.idempotency import IdempotencyGuard
from agora_events.instrumentation import HookRegistry
from agora_events.memory import InMemoryBroker
from agora_events.metrics import MessagingMetrics
from agora_events.ports import DedupStatus, OutgoingMessage
from agora_events.publisher import Publisher
from agora_events.tracing import TraceContextPropagator

QUEUE = "search.catalog.events-queue"
DLQ = "search.catalog.dlq"


class ItemPublished(BaseModel):
    sku: str
    price: int


class _FakeDelivery:
    """IDelivery stand-in recording how it was settled."""

    def __init__(self, body: bytes, headers: dict[str, Any] | None = None) -> None:
        self.body = body
        self.headers = headers or {}
        self.redelivered = False
        self.outcome: str | None = None

    async def ack(self) -> None:
        self.outcome = "ack"

    async def reject(self, *, requeue: bool) -> None:
        self.outcome = "requeue" if requeue else "reject"


@pytest.fixture
def runtime(
    broker: InMemoryBroker,
    settings: ConsumerSettings,
    metrics: MessagingMetrics,
    hooks: HookRegistry,
    propagator: TraceContextPropagator,
) -> ConsumerRuntime:
    return ConsumerRuntime(
        broker, settings, metrics=metrics, hooks=hooks, propagator=propagator
    )


@pytest.fixture
def publisher(
    broker: InMemoryBroker,
    metrics: MessagingMetrics,
    hooks: HookRegistry,
    propagator: TraceContextPropagator,
) -> Publisher:
    return Publisher(broker, metrics=metrics, hooks=hooks, propagator=propagator)


def _dead_letters(broker: InMemoryBroker) -> list[DeadLetterEnvelope]:
    codec = EnvelopeCodec()
    return [codec.decode_dead_letter(m.body) for m in broker.messages(DLQ)]


@pytest.mark.asyncio
async def test_successful_dispatch(
    runtime: ConsumerRuntime,
    publisher: Publisher,
    broker: InMemoryBroker,
    envelope: Envelope,
    registry: CollectorRegistry,
) -> None:
    received: list[tuple[Any, MessageContext, str | None]] = []

    async def handler(payload: Any, context: MessageContext) -> None:
        received.append((payload, context, get_correlation_id()))

    runtime.subscribe("product.item.*", handler)
    await runtime.start()
    try:
        await publisher.publish(envelope)
        await broker.wait_idle()
    finally:
        await runtime.stop()

    ((payload, context, correlation_id),) = received
    assert payload == {"sku": "SKU-1", "price": 1999}
    assert context.envelope.event_id == envelope.event_id
    assert context.envelope.headers.tenant_id == "store-7"
    assert context.attempt == 0
    assert correlation_id == "corr-1"
    assert broker.messages(QUEUE) == []
    assert broker.messages(DLQ) == []
    assert (
        registry.get_sample_value(
            "agora_events_processed_total", {"routing_key": "product.item.published"}
        )
        == 1
    )


@pytest.mark.asyncio
async def test_transient_failures_back_off_then_dead_letter(
    runtime: ConsumerRuntime,
    publisher: Publisher,
    broker: InMemoryBroker,
    envelope: Envelope,
) -> None:
    attempts: list[int] = []

    async def handler(payload: Any, context: MessageContext) -> None:
        attempts.append(context.attempt)
        raise HandlerError("search index unavailable")

    runtime.subscribe("product.item.published", handler)
    await runtime.start()
    try:
        await publisher.publish(envelope)
        await broker.wait_idle()
    finally:
        await runtime.stop()

    assert attempts == [0, 1, 2, 3]
    assert broker.expirations == [
        ("search.catalog.events-retry-1-queue", 1.0),
        ("search.catalog.events-retry-2-queue", 2.0),
        ("search.catalog.events-retry-3-queue", 4.0),
    ]
    (dead,) = _dead_letters(broker)
    assert dead.retry_count == 3
    assert dead.error.kind == "HandlerError"
    assert dead.error.message == "search index unavailable"
    assert dead.original is not None
    assert dead.original.event_id == envelope.event_id
    assert dead.original.payload == envelope.payload


@pytest.mark.asyncio
async def test_unexpected_exceptions_are_transient(
    runtime: ConsumerRuntime,
    publisher: Publisher,
    broker: InMemoryBroker,
    envelope: Envelope,
) -> None:
    calls = 0

    async def handler(payload: Any, context: MessageContext) -> None:
        nonlocal calls
        calls += 1
        if calls < 3:
            raise ConnectionResetError("peer reset")

    runtime.subscribe("product.item.#", handler)
    await runtime.start()
    try:
        await publisher.publish(envelope)
        await broker.wait_idle()
    finally:
        await runtime.stop()

    assert calls == 3
    assert broker.messages(DLQ) == []


@pytest.mark.asyncio
async def test_permanent_failure_dead_letters_without_retry(
    runtime: ConsumerRuntime,
    publisher: Publisher,
    broker: InMemoryBroker,
    envelope: Envelope,
) -> None:
    calls = 0

    async def handler(payload: Any, context: MessageContext) -> None:
        nonlocal calls
        calls += 1
        raise PermanentHandlerError("price must be positive")

    runtime.subscribe("product.item.*", handler)
    await runtime.start()
    try:
        await publisher.publish(envelope)
        await broker.wait_idle()
    finally:
        await runtime.stop()

    assert calls == 1
    assert broker.expirations == []
    (dead,) = _dead_letters(broker)
    assert dead.retry_count == 0
    assert dead.error.kind == "PermanentHandlerError"
    assert dead.error.context is not None


@pytest.mark.asyncio
async def test_malformed_bytes_never_reach_handler(
    runtime: ConsumerRuntime, broker: InMemoryBroker
) -> None:
    calls = 0

    async def handler(payload: Any, context: MessageContext) -> None:
        nonlocal calls
        calls += 1

    runtime.subscribe("product.item.*", handler)
    await runtime.start()
    try:
        await broker.publish(
            OutgoingMessage(
                exchange="agora.product.item",
                routing_key="product.item.published",
                body=b"{not json",
            )
        )
        await broker.wait_idle()
    finally:
        await runtime.stop()

    assert calls == 0
    (dead,) = _dead_letters(broker)
    assert dead.original is None
    assert dead.raw_body == "{not json"
    assert dead.error.kind == "MalformedMessageError"
    assert dead.retry_count == 0


@pytest.mark.asyncio
async def test_payload_model_hydration(
    runtime: ConsumerRuntime, publisher: Publisher, broker: InMemoryBroker
) -> None:
    received: list[ItemPublished] = []

    async def handler(payload: ItemPublished, context: MessageContext) -> None:
        received.append(payload)

    runtime.subscribe("product.item.*", handler, payload_model=ItemPublished)
    await runtime.start()
    try:
        await publisher.emit("product.item.published", {"sku": "A", "price": 10})
        await publisher.emit("product.item.published", {"sku": "B", "price": "ten"})
        await broker.wait_idle()
    finally:
        await runtime.stop()

    assert received == [ItemPublished(sku="A", price=10)]
    (dead,) = _dead_letters(broker)
    assert dead.error.kind == "ValidationError"
    assert "price" in dead.error.message
    assert dead.retry_count == 0


@pytest.mark.asyncio
async def test_duplicate_delivery_runs_handler_once(
    broker: InMemoryBroker,
    settings: ConsumerSettings,
    metrics: MessagingMetrics,
    hooks: HookRegistry,
    publisher: Publisher,
    envelope: Envelope,
) -> None:
    runtime = ConsumerRuntime(
        broker,
        settings.model_copy(update={"concurrency": 4}),
        metrics=metrics,
        hooks=hooks,
    )
    calls = 0

    async def handler(payload: Any, context: MessageContext) -> None:
        nonlocal calls
        calls += 1
        await asyncio.sleep(0.01)

    runtime.subscribe("product.item.*", handler)
    await runtime.start()
    try:
        await asyncio.gather(publisher.publish(envelope), publisher.publish(envelope))
        await broker.wait_idle()
        await publisher.publish(envelope)
        await broker.wait_idle()
    finally:
        await runtime.stop()

    assert calls == 1
    assert broker.messages(QUEUE) == []


@pytest.mark.asyncio
async def test_consumer_span_continues_producer_trace(
    runtime: ConsumerRuntime,
    publisher: Publisher,
    broker: InMemoryBroker,
    envelope: Envelope,
    span_exporter: InMemorySpanExporter,
) -> None:
    async def handler(payload: Any, context: MessageContext) -> None:
        return None

    runtime.subscribe("product.item.*", handler)
    await runtime.start()
    try:
        await publisher.publish(envelope)
        await broker.wait_idle()
    finally:
        await runtime.stop()

    spans = {s.name: s for s in span_exporter.get_finished_spans()}
    producer = spans["publish product.item.published"]
    consumer = spans["process product.item.published"]
    assert consumer.context.trace_id == producer.context.trace_id
    assert consumer.parent is not None
    assert consumer.parent.span_id == producer.context.span_id


@pytest.mark.asyncio
async def test_dispatch_hooks_wrap_handler(
    runtime: ConsumerRuntime,
    publisher: Publisher,
    broker: InMemoryBroker,
    envelope: Envelope,
    hooks: HookRegistry,
) -> None:
    operations: list[str] = []

    async def hook(operation, attributes, next_handler):  # type: ignore[no-untyped-def]
        operations.append(operation)
        return await next_handler()

    hooks.register(hook, operations=["consumer.*"])

    async def handler(payload: Any, context: MessageContext) -> None:
        return None

    runtime.subscribe("product.item.*", handler)
    await runtime.start()
    try:
        await publisher.publish(envelope)
        await broker.wait_idle()
    finally:
        await runtime.stop()

    assert operations == ["consumer.dispatch.product.item.published"]


# -- single-delivery state machine ---------------------------------------------


@pytest.mark.asyncio
async def test_in_progress_duplicate_is_postponed(
    runtime: ConsumerRuntime, broker: InMemoryBroker, envelope: Envelope
) -> None:
    async def handler(payload: Any, context: MessageContext) -> None:
        raise AssertionError("must not run")

    runtime.subscribe("product.item.*", handler)
    await broker.declare(runtime.topology())
    guard = runtime._guard  # noqa: SLF001
    await guard.check_and_mark(envelope.event_id)

    codec = EnvelopeCodec()
    headers = {
        **codec.encode_headers(envelope),
        "x-retry-attempt": "2",
    }
    delivery = _FakeDelivery(codec.encode(envelope), headers)
    assert await runtime.handle_delivery(delivery) is MessageState.DEFERRED
    assert delivery.outcome == "ack"
    assert broker.expirations == [("search.catalog.events-retry-1-queue", 1.0)]

    await broker.wait_idle()
    (redelivered,) = broker.messages(QUEUE)
    assert codec.decode_retry_state(redelivered.headers).attempt == 2
    assert await guard.check_and_mark(envelope.event_id) is DedupStatus.IN_PROGRESS


@pytest.mark.asyncio
async def test_in_progress_duplicate_redelivery_is_bounded(
    settings: ConsumerSettings,
    metrics: MessagingMetrics,
    hooks: HookRegistry,
    envelope: Envelope,
) -> None:
    broker = InMemoryBroker(time_scale=0.1)
    runtime = ConsumerRuntime(broker, settings, metrics=metrics, hooks=hooks)
    publisher = Publisher(broker, metrics=metrics, hooks=hooks)
    states: list[MessageState] = []
    handle_delivery = runtime.handle_delivery

    async def counting(delivery: Any) -> MessageState:
        state = await handle_delivery(delivery)
        states.append(state)
        return state

    runtime.handle_delivery = counting  # type: ignore[method-assign]
    calls = 0

    async def handler(payload: Any, context: MessageContext) -> None:
        nonlocal calls
        calls += 1
        await asyncio.sleep(0.2)

    runtime.subscribe("product.item.*", handler)
    await runtime.start()
    try:
        await publisher.publish(envelope)
        await publisher.publish(envelope)
        await broker.wait_idle()
    finally:
        await runtime.stop()

    assert calls == 1
    assert len(states) < 10
    assert states.count(MessageState.SUCCEEDED) == 1
    assert MessageState.SKIPPED in states
    assert broker.messages(QUEUE) == []


@pytest.mark.asyncio
async def test_in_progress_duplicate_dropped_by_policy(
    broker: InMemoryBroker,
    settings: ConsumerSettings,
    metrics: MessagingMetrics,
    hooks: HookRegistry,
    envelope: Envelope,
) -> None:
    guard = IdempotencyGuard()
    runtime = ConsumerRuntime(
        broker,
        settings.model_copy(update={"in_progress_policy": InProgressPolicy.DROP}),
        guard=guard,
        metrics=metrics,
        hooks=hooks,
    )

    async def handler(payload: Any, context: MessageContext) -> None:
        raise AssertionError("must not run")

    runtime.subscribe("product.item.*", handler)
    await guard.check_and_mark(envelope.event_id)

    codec = EnvelopeCodec()
    delivery = _FakeDelivery(codec.encode(envelope), codec.encode_headers(envelope))
    assert await runtime.handle_delivery(delivery) is MessageState.SKIPPED
    assert delivery.outcome == "ack"


@pytest.mark.asyncio
async def test_failed_retry_publish_requeues_delivery(
    runtime: ConsumerRuntime,
    broker: InMemoryBroker,
    envelope: Envelope,
) -> None:
    async def handler(payload: Any, context: MessageContext) -> None:
        raise HandlerError("flaky")

    runtime.subscribe("product.item.*", handler)
    await broker.declare(runtime.topology())
    broker.fail_publish = lambda message: message.exchange == ""

    codec = EnvelopeCodec()
    delivery = _FakeDelivery(codec.encode(envelope), codec.encode_headers(envelope))
    assert await runtime.handle_delivery(delivery) is MessageState.DEFERRED
    assert delivery.outcome == "requeue"
    assert (
        await runtime._guard.check_and_mark(envelope.event_id)  # noqa: SLF001
        is DedupStatus.NEW
    )


@pytest.mark.asyncio
async def test_unmatched_routing_key_is_permanent(
    runtime: ConsumerRuntime, broker: InMemoryBroker
) -> None:
    async def handler(payload: Any, context: MessageContext) -> None:
        raise AssertionError("must not run")

    runtime.subscribe("product.item.*", handler)
    await broker.declare(runtime.topology())

    stray = Envelope(producer="order", routing_key="order.line.created")
    codec = EnvelopeCodec()
    delivery = _FakeDelivery(codec.encode(stray), codec.encode_headers(stray))
    assert await runtime.handle_delivery(delivery) is MessageState.DEAD_LETTERED
    assert delivery.outcome == "ack"
    (dead,) = _dead_letters(broker)
    assert dead.error.kind == "ValidationError"


# -- lifecycle ---------------------------------------------------------------


@pytest.mark.asyncio
async def test_dead_letter_failure_stops_runtime(
    runtime: ConsumerRuntime,
    publisher: Publisher,
    broker: InMemoryBroker,
    settings: ConsumerSettings,
    envelope: Envelope,
) -> None:
    async def handler(payload: Any, context: MessageContext) -> None:
        raise PermanentHandlerError("bad data")

    runtime.subscribe("product.item.*", handler)
    run_task = asyncio.create_task(runtime.run())
    await asyncio.sleep(0)
    broker.fail_publish = lambda message: message.exchange == settings.dlx_name

    await publisher.publish(envelope)
    with pytest.raises(DeadLetterPublishFailure):
        await asyncio.wait_for(run_task, timeout=5)

    assert broker.unacked_count(QUEUE) == 1
    await broker.close()
    assert len(broker.messages(QUEUE)) == 1


@pytest.mark.asyncio
async def test_stop_waits_for_in_flight_handlers(
    runtime: ConsumerRuntime,
    publisher: Publisher,
    broker: InMemoryBroker,
    envelope: Envelope,
) -> None:
    started = asyncio.Event()
    release = asyncio.Event()
    finished: list[str] = []

    async def handler(payload: Any, context: MessageContext) -> None:
        started.set()
        await release.wait()
        finished.append(context.envelope.event_id)

    runtime.subscribe("product.item.*", handler)
    await runtime.start()
    await publisher.publish(envelope)
    await asyncio.wait_for(started.wait(), timeout=5)

    stopping = asyncio.create_task(runtime.stop(grace=5))
    await asyncio.sleep(0.01)
    assert not stopping.done()
    release.set()
    await stopping

    assert finished == [envelope.event_id]
    assert broker.unacked_count(QUEUE) == 0


@pytest.mark.asyncio
async def test_stop_abandons_handlers_after_grace(
    broker: InMemoryBroker,
    settings: ConsumerSettings,
    metrics: MessagingMetrics,
    hooks: HookRegistry,
    publisher: Publisher,
    envelope: Envelope,
) -> None:
    guard = IdempotencyGuard()
    runtime = ConsumerRuntime(
        broker, settings, guard=guard, metrics=metrics, hooks=hooks
    )
    started = asyncio.Event()

    async def handler(payload: Any, context: MessageContext) -> None:
        started.set()
        await asyncio.Event().wait()

    runtime.subscribe("product.item.*", handler)
    await runtime.start()
    await publisher.publish(envelope)
    await asyncio.wait_for(started.wait(), timeout=5)

    await runtime.stop(grace=0.05)

    assert broker.unacked_count(QUEUE) == 1
    assert await guard.check_and_mark(envelope.event_id) is DedupStatus.NEW
    await broker.close()
    assert len(broker.messages(QUEUE)) == 1


@pytest.mark.asyncio
async def test_subscribe_validates_pattern_and_lifecycle(
    runtime: ConsumerRuntime,
) -> None:
    async def handler(payload: Any, context: MessageContext) -> None:
        return None

    with pytest.raises(ValueError, match="literal service and domain"):
        runtime.subscribe("*.item.published", handler)
    with pytest.raises(RuntimeError, match="No subscriptions"):
        await runtime.start()

    runtime.subscribe("product.item.*", handler)
    await runtime.start()
    try:
        with pytest.raises(RuntimeError, match="before start"):
            runtime.subscribe("product.variant.*", handler)
    finally:
        await runtime.stop()

