"""MessagingMetrics: Prometheus counters and histograms for the runtime.

Emits:
  - ``agora_events_processed_total{routing_key}``
  - ``agora_events_failed_total{routing_key, disposition}``
  - ``agora_events_retried_total{routing_key}``
  - ``agora_events_dead_lettered_total{routing_key}``
  - ``agora_events_operation_duration_seconds{operation, outcome}``

Alert thresholds on these series live with the monitoring stack.
"""

from __future__ import annotations

import contextlib
import logging
import threading
import time
from typing import TYPE_CHECKING

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Histogram

if TYPE_CHECKING:
    from collections.abc import Iterator

_logger = logging.getLogger(__name__)


class MessagingMetrics:
    """Metric emission points shared by publisher, consumer and routers."""

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        registry = registry if registry is not None else REGISTRY
        self.processed = Counter(
            "agora_events_processed_total",
            "Events handled successfully",
            ["routing_key"],
            registry=registry,
        )
        self.failed = Counter(
            "agora_events_failed_total",
            "Handler or decode failures",
            ["routing_key", "disposition"],
            registry=registry,
        )
        self.retried = Counter(
            "agora_events_retried_total",
            "Retries scheduled",
            ["routing_key"],
            registry=registry,
        )
        self.dead_lettered = Counter(
            "agora_events_dead_lettered_total",
            "Messages routed to a dead-letter queue",
            ["routing_key"],
            registry=registry,
        )
        self.duration = Histogram(
            "agora_events_operation_duration_seconds",
            "Duration of publish, dispatch, retry and dead-letter operations",
            ["operation", "outcome"],
            registry=registry,
        )

    @contextlib.contextmanager
    def time(self, operation: str) -> Iterator[None]:
        """Observe the duration of the wrapped block under *operation*."""
        start = time.monotonic()
        outcome = "success"
        try:
            yield
        except BaseException:
            outcome = "error"
            raise
        finally:
            try:
                self.duration.labels(operation=operation, outcome=outcome).observe(
                    time.monotonic() - start
                )
            except Exception:  # noqa: BLE001
                _logger.debug("Failed to emit duration metric", exc_info=True)


_default: MessagingMetrics | None = None
_default_lock = threading.Lock()


def get_default_metrics() -> MessagingMetrics:
    """Process-wide metrics registered on the default Prometheus registry."""
    global _default
    with _default_lock:
        if _default is None:
            _default = MessagingMetrics()
        return _default
