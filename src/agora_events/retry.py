"""RetryScheduler: exponential backoff and delayed re-injection."""

from __future__ import annotations

import logging
import random
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

from .codec import EnvelopeCodec
from .envelope import ErrorInfo, RetryState
from .exceptions import error_kind
from .instrumentation import RETRY, get_hook_registry, operation_name
from .metrics import get_default_metrics
from .ports import OutgoingMessage, QueueSpec, Topology

if TYPE_CHECKING:
    from collections.abc import Callable

    from .config import ConsumerSettings
    from .envelope import Envelope
    from .instrumentation import HookRegistry
    from .metrics import MessagingMetrics
    from .ports import IBrokerTransport, IDelayStrategy

logger = logging.getLogger("agora_events.retry")

# Floor for postponing in-progress duplicates when base_delay is 0.
MIN_POSTPONE_DELAY = 0.1


class RetryPolicy:
    """Bounded retries with capped exponential backoff.

    ``attempt`` is 0-based: the first delivery is attempt 0 and the delay
    before the next one is ``base_delay * 2**attempt`` capped at ``max_delay``.
    """

    def __init__(
        self,
        *,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        jitter: bool = False,
    ) -> None:
        """Configure retry behavior.

        Args:
            max_retries: Retries allowed after the first delivery.
            base_delay: Delay in seconds before the first retry.
            max_delay: Cap on delay in seconds.
            jitter: If True, scale delays by a random factor in [0.5, 1.0]
                so the cap still holds.
        """
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if base_delay < 0 or max_delay < 0:
            raise ValueError("base_delay and max_delay must be >= 0")
        if base_delay > max_delay:
            raise ValueError("base_delay must be <= max_delay")
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter = jitter

    @classmethod
    def from_settings(cls, settings: ConsumerSettings) -> RetryPolicy:
        return cls(
            max_retries=settings.max_retries,
            base_delay=settings.base_delay,
            max_delay=settings.max_delay,
            jitter=settings.jitter,
        )

    def should_retry(self, attempt: int) -> bool:
        """Return True if a failure at *attempt* may be retried."""
        return 0 <= attempt < self.max_retries

    def delay_for(self, attempt: int) -> float:
        """Delay in seconds before retrying a failure at *attempt*."""
        if attempt < 0:
            return 0.0
        delay = min(self.base_delay * (2**attempt), self.max_delay)
        if self.jitter:
            delay = delay * (0.5 + random.random() / 2)  # noqa: S311
        return float(max(0.0, delay))


class TtlDelayQueue:
    """Delay through broker message expiry and dead-lettering.

    Each retry level waits in ``<service>.<domain>.<purpose>-retry-<n>-queue``,
    a consumer-less queue whose dead-letter target is the main queue via the
    default exchange. Messages carry a per-message expiration; when it lapses
    the broker moves them back to the main queue, so they are never visible
    to a consumer earlier. One queue per level keeps delays in a queue
    uniform, since the broker only expires messages at the queue head.
    """

    def __init__(self, transport: IBrokerTransport, settings: ConsumerSettings) -> None:
        self._transport = transport
        self._settings = settings

    def _queue_for(self, attempt: int) -> str:
        level = min(max(attempt, 1), max(self._settings.max_retries, 1))
        return self._settings.delay_queue_name(level)

    def topology(self) -> Topology:
        arguments = {
            "x-dead-letter-exchange": "",
            "x-dead-letter-routing-key": self._settings.queue_name,
        }
        return Topology(
            queues=[
                QueueSpec(self._settings.delay_queue_name(level), dict(arguments))
                for level in range(1, max(self._settings.max_retries, 1) + 1)
            ]
        )

    async def defer(
        self,
        body: bytes,
        headers: dict[str, str],
        *,
        message_id: str,
        attempt: int,
        delay: float,
    ) -> None:
        await self._transport.publish(
            OutgoingMessage(
                exchange="",
                routing_key=self._queue_for(attempt),
                body=body,
                headers=headers,
                message_id=message_id,
                expiration=delay,
            )
        )


class RetryScheduler:
    """Re-injects failed envelopes into the pipeline after a backoff delay.

    Never invokes handlers; the consumer picks the message up again once the
    delay strategy releases it.
    """

    def __init__(
        self,
        delay: IDelayStrategy,
        policy: RetryPolicy | None = None,
        *,
        codec: EnvelopeCodec | None = None,
        metrics: MessagingMetrics | None = None,
        hooks: HookRegistry | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._delay = delay
        self._policy = policy if policy is not None else RetryPolicy()
        self._codec = codec if codec is not None else EnvelopeCodec()
        self._metrics = metrics if metrics is not None else get_default_metrics()
        self._hooks = hooks if hooks is not None else get_hook_registry()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    def topology(self) -> Topology:
        return self._delay.topology()

    async def schedule_retry(
        self,
        envelope: Envelope,
        retry_state: RetryState,
        error: BaseException | None = None,
    ) -> RetryState:
        """Increment the attempt and re-publish *envelope* through the delay.

        Raises ValueError when *retry_state* has no retries left, and the
        transport's error when the delayed publish fails.
        """
        if not self._policy.should_retry(retry_state.attempt):
            raise ValueError(
                f"Event {envelope.event_id} exhausted "
                f"{self._policy.max_retries} retries"
            )
        delay = self._policy.delay_for(retry_state.attempt)
        last_error = retry_state.last_error
        if error is not None:
            last_error = ErrorInfo(kind=error_kind(error), message=str(error))
        next_state = RetryState(
            attempt=retry_state.attempt + 1,
            last_error=last_error,
            next_eligible_at=self._clock() + timedelta(seconds=delay),
        )
        headers = {
            **self._codec.encode_headers(envelope),
            **self._codec.encode_retry_state(next_state),
        }
        body = self._codec.encode(envelope)

        async def _defer() -> None:
            with self._metrics.time("retry"):
                await self._delay.defer(
                    body,
                    headers,
                    message_id=envelope.event_id,
                    attempt=next_state.attempt,
                    delay=delay,
                )
            self._metrics.retried.labels(routing_key=envelope.routing_key).inc()

        await self._hooks.execute_all(
            operation_name(RETRY, envelope.routing_key),
            {
                "event.id": envelope.event_id,
                "retry.attempt": next_state.attempt,
                "retry.delay": delay,
            },
            _defer,
        )
        logger.info(
            "Scheduled retry %d/%d for %s in %.3fs",
            next_state.attempt,
            self._policy.max_retries,
            envelope.event_id,
            delay,
            extra={
                "event_id": envelope.event_id,
                "routing_key": envelope.routing_key,
                "attempt": next_state.attempt,
            },
        )
        return next_state

    async def postpone(self, envelope: Envelope, retry_state: RetryState) -> float:
        """Re-deliver *envelope* after the first backoff step, keeping its attempt.

        Used for duplicates that arrive while another worker still holds the
        event. Returns the delay in seconds.
        """
        delay = max(self._policy.delay_for(0), MIN_POSTPONE_DELAY)
        state = retry_state.model_copy(
            update={"next_eligible_at": self._clock() + timedelta(seconds=delay)}
        )
        headers = {
            **self._codec.encode_headers(envelope),
            **self._codec.encode_retry_state(state),
        }
        # first delay level: its queue holds delay_for(0) messages only
        await self._delay.defer(
            self._codec.encode(envelope),
            headers,
            message_id=envelope.event_id,
            attempt=1,
            delay=delay,
        )
        logger.debug(
            "Postponed in-progress duplicate %s by %.3fs",
            envelope.event_id,
            delay,
            extra={
                "event_id": envelope.event_id,
                "routing_key": envelope.routing_key,
                "attempt": retry_state.attempt,
            },
        )
        return delay

