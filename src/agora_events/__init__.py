"""Reliable event delivery over RabbitMQ with retries and dead letters."""

from __future__ import annotations

from .codec import EnvelopeCodec
from .config import BrokerSettings, ConsumerSettings, InProgressPolicy
from .consumer import ConsumerRuntime, MessageContext, MessageState, Subscription
from .correlation import (
    correlation_scope,
    get_correlation_id,
    resolve_correlation_id,
)
from .dead_letter import DeadLetterRouter
from .envelope import (
    DeadLetterEnvelope,
    Envelope,
    EnvelopeHeaders,
    ErrorInfo,
    RetryState,
)
from .exceptions import (
    AgoraEventsError,
    DeadLetterPublishFailure,
    ErrorDisposition,
    HandlerError,
    MalformedMessageError,
    PermanentHandlerError,
    PublishError,
    TransportError,
    ValidationError,
    classify_error,
)
from .idempotency import IdempotencyGuard, InMemoryDedupStore, RedisDedupStore
from .instrumentation import HookRegistry, get_hook_registry, set_hook_registry
from .memory import InMemoryBroker
from .metrics import MessagingMetrics
from .ports import DedupStatus, IBrokerTransport, IDedupStore, IDelayStrategy
from .publisher import Publisher
from .retry import RetryPolicy, RetryScheduler, TtlDelayQueue
from .tracing import TraceContextPropagator

__all__ = [
    "AgoraEventsError",
    "BrokerSettings",
    "ConsumerRuntime",
    "ConsumerSettings",
    "DeadLetterEnvelope",
    "DeadLetterPublishFailure",
    "DeadLetterRouter",
    "DedupStatus",
    "Envelope",
    "EnvelopeCodec",
    "EnvelopeHeaders",
    "ErrorDisposition",
    "ErrorInfo",
    "HandlerError",
    "HookRegistry",
    "IBrokerTransport",
    "IDedupStore",
    "IDelayStrategy",
    "IdempotencyGuard",
    "InMemoryBroker",
    "InMemoryDedupStore",
    "InProgressPolicy",
    "MalformedMessageError",
    "MessageContext",
    "MessageState",
    "MessagingMetrics",
    "PermanentHandlerError",
    "PublishError",
    "Publisher",
    "RedisDedupStore",
    "RetryPolicy",
    "RetryScheduler",
    "RetryState",
    "Subscription",
    "TraceContextPropagator",
    "TransportError",
    "TtlDelayQueue",
    "ValidationError",
    "classify_error",
    "correlation_scope",
    "get_correlation_id",
    "get_hook_registry",
    "resolve_correlation_id",
    "set_hook_registry",
]
