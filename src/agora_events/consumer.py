"""ConsumerRuntime: bounded worker pool driving the per-message state machine."""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError as PydanticValidationError

from .codec import EnvelopeCodec
from .config import InProgressPolicy
from .correlation import correlation_scope
from .dead_letter import DeadLetterRouter
from .exceptions import (
    DeadLetterPublishFailure,
    ErrorDisposition,
    MalformedMessageError,
    TransportError,
    ValidationError,
    classify_error,
)
from .idempotency import IdempotencyGuard
from .instrumentation import DISPATCH, get_hook_registry, operation_name
from .metrics import get_default_metrics
from .ports import DedupStatus
from .retry import RetryPolicy, RetryScheduler, TtlDelayQueue
from .topology import consumer_topology, exchange_for_pattern, topic_matches
from .tracing import TraceContextPropagator, mark_span_error

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from pydantic import BaseModel

    from .config import ConsumerSettings
    from .envelope import Envelope, RetryState
    from .instrumentation import HookRegistry
    from .metrics import MessagingMetrics
    from .ports import IBrokerTransport, IDelivery, Topology

logger = logging.getLogger("agora_events.consumer")


class MessageState(str, enum.Enum):
    """Where a delivery ended up; every state but the first three is terminal."""

    RECEIVED = "received"
    DECODING = "decoding"
    DISPATCHED = "dispatched"
    SUCCEEDED = "succeeded"
    RETRY_SCHEDULED = "retry-scheduled"
    DEAD_LETTERED = "dead-lettered"
    SKIPPED = "skipped"
    DEFERRED = "deferred"


@dataclass(frozen=True)
class MessageContext:
    """What a handler gets besides the payload."""

    envelope: Envelope
    headers: dict[str, Any]
    retry_state: RetryState

    @property
    def attempt(self) -> int:
        return self.retry_state.attempt


@dataclass(frozen=True)
class Subscription:
    pattern: str
    handler: Callable[[Any, MessageContext], Awaitable[None]]
    payload_model: type[BaseModel] | None = None


@dataclass
class _Lifecycle:
    workers: list[asyncio.Task[None]] = field(default_factory=list)
    consumer_tag: str | None = None
    stopping: bool = False
    stopped: asyncio.Event = field(default_factory=asyncio.Event)
    fatal: BaseException | None = None
    stop_task: asyncio.Task[None] | None = None


class ConsumerRuntime:
    """Consumes ``<service>.<domain>.<purpose>-queue`` with a worker pool.

    Per delivery: decode, deduplicate, dispatch to the first matching
    subscription, then ack after success, a scheduled retry or a confirmed
    dead letter. Handler failures are classified; transient ones are
    retried with backoff up to ``max_retries``, everything else is
    dead-lettered. A DeadLetterPublishFailure stops the runtime and is
    re-raised from :meth:`run`.

    Usage::

        runtime = ConsumerRuntime(transport, settings)
        runtime.subscribe("catalog.product.*", on_product_event)
        await runtime.run()
    """

    def __init__(
        self,
        transport: IBrokerTransport,
        settings: ConsumerSettings,
        *,
        codec: EnvelopeCodec | None = None,
        guard: IdempotencyGuard | None = None,
        retry_scheduler: RetryScheduler | None = None,
        dead_letter_router: DeadLetterRouter | None = None,
        propagator: TraceContextPropagator | None = None,
        metrics: MessagingMetrics | None = None,
        hooks: HookRegistry | None = None,
    ) -> None:
        self._transport = transport
        self._settings = settings
        self._codec = codec if codec is not None else EnvelopeCodec()
        self._metrics = metrics if metrics is not None else get_default_metrics()
        self._hooks = hooks if hooks is not None else get_hook_registry()
        if guard is None:
            guard = IdempotencyGuard(
                retention=settings.retention,
                in_progress_ttl=settings.in_progress_window,
            )
        self._guard = guard
        if retry_scheduler is None:
            retry_scheduler = RetryScheduler(
                TtlDelayQueue(transport, settings),
                RetryPolicy.from_settings(settings),
                codec=self._codec,
                metrics=self._metrics,
                hooks=self._hooks,
            )
        self._retry_scheduler = retry_scheduler
        if dead_letter_router is None:
            dead_letter_router = DeadLetterRouter(
                transport,
                settings,
                codec=self._codec,
                metrics=self._metrics,
                hooks=self._hooks,
            )
        self._dead_letter_router = dead_letter_router
        self._propagator = (
            propagator if propagator is not None else TraceContextPropagator()
        )
        self._subscriptions: list[Subscription] = []
        self._queue: asyncio.Queue[IDelivery] = asyncio.Queue()
        self._in_flight = 0
        self._lifecycle = _Lifecycle()

    @property
    def settings(self) -> ConsumerSettings:
        return self._settings

    @property
    def subscriptions(self) -> list[Subscription]:
        return list(self._subscriptions)

    def subscribe(
        self,
        pattern: str,
        handler: Callable[[Any, MessageContext], Awaitable[None]],
        *,
        payload_model: type[BaseModel] | None = None,
    ) -> Subscription:
        """Bind *pattern* on the service queue and route matches to *handler*.

        The handler receives the payload (hydrated into *payload_model* when
        given) and a MessageContext. Subscriptions are matched in the order
        they were added.
        """
        if self._lifecycle.consumer_tag is not None:
            raise RuntimeError("subscribe() must be called before start()")
        exchange_for_pattern(pattern)
        subscription = Subscription(pattern, handler, payload_model)
        self._subscriptions.append(subscription)
        return subscription

    def topology(self) -> Topology:
        """Main queue, DLX/DLQ, pattern bindings and retry delay queues."""
        return consumer_topology(
            self._settings, [s.pattern for s in self._subscriptions]
        ).merge(self._retry_scheduler.topology())

    # -- lifecycle ---------------------------------------------------------

    async def start(self) -> None:
        """Declare topology, spawn workers and begin consuming."""
        if self._lifecycle.consumer_tag is not None:
            return
        if not self._subscriptions:
            raise RuntimeError("No subscriptions; call subscribe() first")
        self._lifecycle = _Lifecycle()
        await self._transport.declare(self.topology())
        self._lifecycle.workers = [
            asyncio.create_task(self._worker(), name=f"agora-events-worker-{i}")
            for i in range(self._settings.concurrency)
        ]
        self._lifecycle.consumer_tag = await self._transport.consume(
            self._settings.queue_name,
            self._on_delivery,
            prefetch=self._settings.concurrency,
        )
        logger.info(
            "Consuming %s with %d workers (%d bindings)",
            self._settings.queue_name,
            self._settings.concurrency,
            len(self._subscriptions),
        )

    async def stop(self, grace: float | None = None) -> None:
        """Stop consuming and drain in-flight work.

        Waits up to *grace* seconds (default ``shutdown_grace``) for workers
        to finish, then cancels them; their deliveries stay un-acked and
        the broker redelivers them.
        """
        lifecycle = self._lifecycle
        if lifecycle.stopping:
            await lifecycle.stopped.wait()
            return
        lifecycle.stopping = True
        grace = self._settings.shutdown_grace if grace is None else grace

        if lifecycle.consumer_tag is not None:
            try:
                await self._transport.cancel(lifecycle.consumer_tag)
            except TransportError:
                logger.warning("Failed to cancel consumer", exc_info=True)

        if self._in_flight:
            try:
                await asyncio.wait_for(self._queue.join(), timeout=grace)
            except asyncio.TimeoutError:
                logger.warning(
                    "Shutdown grace of %.1fs elapsed; abandoning %d deliveries",
                    grace,
                    self._in_flight,
                )

        for worker in lifecycle.workers:
            worker.cancel()
        await asyncio.gather(*lifecycle.workers, return_exceptions=True)
        lifecycle.workers = []
        lifecycle.consumer_tag = None
        # Deliveries never picked up stay un-acked in the broker.
        while not self._queue.empty():
            self._queue.get_nowait()
            self._queue.task_done()
        self._in_flight = 0
        lifecycle.stopped.set()
        logger.info("Consumer on %s stopped", self._settings.queue_name)

    async def run(self) -> None:
        """Start, then block until stopped; re-raises a fatal error."""
        await self.start()
        lifecycle = self._lifecycle
        try:
            await lifecycle.stopped.wait()
        except asyncio.CancelledError:
            await self.stop()
            raise
        if lifecycle.fatal is not None:
            raise lifecycle.fatal

    async def _on_delivery(self, delivery: IDelivery) -> None:
        self._in_flight += 1
        await self._queue.put(delivery)

    async def _worker(self) -> None:
        while True:
            delivery = await self._queue.get()
            try:
                await self.handle_delivery(delivery)
            except DeadLetterPublishFailure as e:
                self._abort(e)
            except Exception:  # noqa: BLE001
                logger.exception("Unexpected error processing delivery")
                await self._requeue(delivery)
            finally:
                self._in_flight = max(0, self._in_flight - 1)
                self._queue.task_done()

    def _abort(self, exc: DeadLetterPublishFailure) -> None:
        lifecycle = self._lifecycle
        if lifecycle.fatal is None:
            lifecycle.fatal = exc
        logger.critical(
            "Stopping consumer on %s: %s", self._settings.queue_name, exc
        )
        if lifecycle.stop_task is None:
            lifecycle.stop_task = asyncio.get_running_loop().create_task(self.stop())

    async def _requeue(self, delivery: IDelivery) -> None:
        try:
            await delivery.reject(requeue=True)
        except TransportError:
            logger.warning("Could not requeue delivery", exc_info=True)

    # -- per-message state machine ------------------------------------------

    async def handle_delivery(self, delivery: IDelivery) -> MessageState:
        """Process one delivery to a terminal state and settle it.

        Raises DeadLetterPublishFailure when a message must be dead-lettered
        and the broker refuses it; the delivery is then left un-acked.
        """
        headers = delivery.headers
        retry_state = self._codec.decode_retry_state(headers)

        try:
            envelope = self._codec.decode(delivery.body, headers)
        except (MalformedMessageError, ValidationError) as e:
            return await self._reject_undecodable(delivery, retry_state, e)

        extra = {
            "event_id": envelope.event_id,
            "routing_key": envelope.routing_key,
            "attempt": retry_state.attempt,
        }
        try:
            status = await self._guard.check_and_mark(envelope.event_id)
        except TransportError:
            logger.warning(
                "Dedup store unavailable for %s; requeueing",
                envelope.event_id,
                exc_info=True,
                extra=extra,
            )
            await delivery.reject(requeue=True)
            return MessageState.DEFERRED
        if status is DedupStatus.SUCCEEDED:
            logger.debug("Skipping already handled %s", envelope.event_id, extra=extra)
            await delivery.ack()
            return MessageState.SKIPPED
        if status is DedupStatus.IN_PROGRESS:
            if self._settings.in_progress_policy is InProgressPolicy.DROP:
                await delivery.ack()
                return MessageState.SKIPPED
            try:
                await self._retry_scheduler.postpone(envelope, retry_state)
            except TransportError:
                logger.warning(
                    "Could not postpone in-progress duplicate %s; requeueing",
                    envelope.event_id,
                    exc_info=True,
                    extra=extra,
                )
                await delivery.reject(requeue=True)
                return MessageState.DEFERRED
            await delivery.ack()
            return MessageState.DEFERRED

        context = MessageContext(envelope, headers, retry_state)
        try:
            await self._dispatch(envelope, context)
        except asyncio.CancelledError:
            await self._release(envelope.event_id)
            raise
        except Exception as e:  # noqa: BLE001
            return await self._handle_failure(delivery, envelope, retry_state, e)

        try:
            await self._guard.mark_succeeded(envelope.event_id)
        except TransportError:
            logger.warning(
                "Could not record success of %s", envelope.event_id, extra=extra
            )
        self._metrics.processed.labels(routing_key=envelope.routing_key).inc()
        await delivery.ack()
        logger.debug("Handled %s", envelope.event_id, extra=extra)
        return MessageState.SUCCEEDED

    async def _reject_undecodable(
        self,
        delivery: IDelivery,
        retry_state: RetryState,
        exc: MalformedMessageError | ValidationError,
    ) -> MessageState:
        envelope = exc.envelope if isinstance(exc, ValidationError) else None
        routing_key = envelope.routing_key if envelope is not None else "undecoded"
        self._metrics.failed.labels(
            routing_key=routing_key, disposition=ErrorDisposition.PERMANENT.value
        ).inc()
        logger.warning(
            "Dead-lettering undecodable message: %s",
            exc,
            extra={"routing_key": routing_key},
        )
        await self._dead_letter_router.dead_letter(
            envelope,
            exc,
            retry_state.attempt,
            raw_body=delivery.body,
            transport_headers=delivery.headers,
        )
        await delivery.ack()
        return MessageState.DEAD_LETTERED

    async def _dispatch(self, envelope: Envelope, context: MessageContext) -> None:
        subscription = self._match(envelope.routing_key)
        attributes = {
            "messaging.system": "rabbitmq",
            "messaging.destination.name": self._settings.queue_name,
            "messaging.rabbitmq.destination.routing_key": envelope.routing_key,
            "messaging.message.id": envelope.event_id,
            "retry.attempt": context.attempt,
            "correlation_id": envelope.headers.correlation_id,
        }

        async def _invoke() -> None:
            with self._metrics.time("dispatch"):
                if subscription is None:
                    raise ValidationError(
                        f"No handler for {envelope.routing_key}", envelope=envelope
                    )
                payload = self._hydrate(subscription, envelope)
                await subscription.handler(payload, context)

        with self._propagator.consume_span(
            envelope.routing_key, context.headers, attributes
        ) as span, correlation_scope(envelope.headers.correlation_id):
            try:
                await self._hooks.execute_all(
                    operation_name(DISPATCH, envelope.routing_key), attributes, _invoke
                )
            except Exception as e:
                mark_span_error(span, e)
                raise

    def _match(self, routing_key: str) -> Subscription | None:
        for subscription in self._subscriptions:
            if topic_matches(subscription.pattern, routing_key):
                return subscription
        return None

    @staticmethod
    def _hydrate(subscription: Subscription, envelope: Envelope) -> Any:
        if subscription.payload_model is None:
            return envelope.payload
        try:
            return subscription.payload_model.model_validate(envelope.payload)
        except PydanticValidationError as e:
            errors: dict[str, list[str]] = {}
            for error in e.errors():
                path = ".".join(str(part) for part in error["loc"]) or "payload"
                errors.setdefault(path, []).append(error["msg"])
            raise ValidationError(errors, envelope=envelope) from e

    async def _handle_failure(
        self,
        delivery: IDelivery,
        envelope: Envelope,
        retry_state: RetryState,
        exc: Exception,
    ) -> MessageState:
        await self._release(envelope.event_id)
        disposition = classify_error(exc)
        self._metrics.failed.labels(
            routing_key=envelope.routing_key, disposition=disposition.value
        ).inc()
        if disposition is ErrorDisposition.FATAL:
            raise exc
        extra = {
            "event_id": envelope.event_id,
            "routing_key": envelope.routing_key,
            "attempt": retry_state.attempt,
        }

        if disposition is ErrorDisposition.TRANSIENT and (
            self._retry_scheduler.policy.should_retry(retry_state.attempt)
        ):
            logger.warning(
                "Handler failed for %s on attempt %d: %s",
                envelope.event_id,
                retry_state.attempt,
                exc,
                extra=extra,
            )
            try:
                await self._retry_scheduler.schedule_retry(envelope, retry_state, exc)
            except TransportError:
                logger.error(
                    "Retry publish failed for %s; requeueing",
                    envelope.event_id,
                    exc_info=True,
                    extra=extra,
                )
                await delivery.reject(requeue=True)
                return MessageState.DEFERRED
            await delivery.ack()
            return MessageState.RETRY_SCHEDULED

        logger.error(
            "Handler failed for %s (%s) after %d retries; dead-lettering",
            envelope.event_id,
            disposition.value,
            retry_state.attempt,
            exc_info=exc,
            extra=extra,
        )
        await self._dead_letter_router.dead_letter(
            envelope, exc, retry_state.attempt, transport_headers=delivery.headers
        )
        await delivery.ack()
        return MessageState.DEAD_LETTERED

    async def _release(self, event_id: str) -> None:
        try:
            await self._guard.release(event_id)
        except TransportError:
            logger.warning("Could not release in-progress marker for %s", event_id)
