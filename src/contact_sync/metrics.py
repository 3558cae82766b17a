"""
Metrics collection for cross-tab sync.

Provides hooks for counting bus deliveries and HTTP concurrency outcomes.
Supports pluggable backends: in-memory (tests, debugging) and Prometheus.

Usage:
    from contact_sync import CrossTabBus
    from contact_sync.metrics import InMemoryMetrics, SyncMetrics

    metrics = SyncMetrics(InMemoryMetrics())
    bus = CrossTabBus(transport, metrics=metrics)

    # Or with Prometheus (if prometheus_client installed)
    metrics = SyncMetrics(PrometheusMetrics())
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)


class MetricsBackend(ABC):
    """Abstract base class for metrics backends."""

    @abstractmethod
    def increment(self, name: str, value: int = 1, tags: dict[str, str] | None = None) -> None:
        """Increment a counter."""
        pass

    @abstractmethod
    def timing(self, name: str, value_ms: float, tags: dict[str, str] | None = None) -> None:
        """Record a timing in milliseconds."""
        pass


class NoopMetrics(MetricsBackend):
    """No-op metrics backend (default when metrics disabled)."""

    def increment(self, name: str, value: int = 1, tags: dict[str, str] | None = None) -> None:
        pass

    def timing(self, name: str, value_ms: float, tags: dict[str, str] | None = None) -> None:
        pass


def _key(name: str, tags: dict[str, str] | None) -> str:
    if not tags:
        return name
    tag_str = ",".join(f"{k}={v}" for k, v in sorted(tags.items()))
    return f"{name}{{{tag_str}}}"


@dataclass
class InMemoryMetrics(MetricsBackend):
    """
    In-memory metrics backend for testing and debugging.

    Stores all metrics in memory for later inspection.
    """

    counters: dict[str, int] = field(default_factory=dict)
    timings: dict[str, list[float]] = field(default_factory=dict)

    def increment(self, name: str, value: int = 1, tags: dict[str, str] | None = None) -> None:
        key = _key(name, tags)
        self.counters[key] = self.counters.get(key, 0) + value

    def timing(self, name: str, value_ms: float, tags: dict[str, str] | None = None) -> None:
        self.timings.setdefault(_key(name, tags), []).append(value_ms)

    def reset(self) -> None:
        """Clear all stored metrics."""
        self.counters.clear()
        self.timings.clear()

    def get_counter(self, name: str, tags: dict[str, str] | None = None) -> int:
        """Get counter value."""
        return self.counters.get(_key(name, tags), 0)

    def total(self, name: str) -> int:
        """Sum a counter across every tag combination."""
        return sum(
            value
            for key, value in self.counters.items()
            if key == name or key.startswith(name + "{")
        )


class SyncMetrics:
    """
    Named metrics for bus and entity-client operations.

    Wraps a backend; every metric name gets the configured prefix.
    """

    EVENTS_EMITTED = "events_emitted_total"
    EVENTS_RECEIVED = "events_received_total"
    EVENTS_SUPPRESSED = "events_suppressed_total"
    EVENTS_REPLAYED = "events_replayed_total"
    DELIVERY_FAILURES = "delivery_failures_total"
    HANDLER_EXECUTIONS = "handler_executions_total"
    HANDLER_ERRORS = "handler_errors_total"
    HANDLER_LATENCY = "handler_latency_ms"
    HTTP_REQUESTS = "http_requests_total"

    def __init__(self, backend: MetricsBackend | None = None, prefix: str = "contact_sync"):
        self.backend = backend or NoopMetrics()
        self.prefix = prefix

    def _name(self, metric: str) -> str:
        return f"{self.prefix}_{metric}" if self.prefix else metric

    def record_event_emitted(self, event_type: str) -> None:
        self.backend.increment(self._name(self.EVENTS_EMITTED), tags={"event_type": event_type})

    def record_event_received(self, event_type: str) -> None:
        self.backend.increment(self._name(self.EVENTS_RECEIVED), tags={"event_type": event_type})

    def record_event_suppressed(self, event_type: str) -> None:
        """An event carrying this tab's own origin id arrived on the receive path."""
        self.backend.increment(
            self._name(self.EVENTS_SUPPRESSED), tags={"event_type": event_type}
        )

    def record_replay(self, event_type: str) -> None:
        self.backend.increment(self._name(self.EVENTS_REPLAYED), tags={"event_type": event_type})

    def record_delivery_failure(self, stage: str, event_type: str) -> None:
        """Persist or broadcast step of emit() failed; stage is "persist" or "broadcast"."""
        self.backend.increment(
            self._name(self.DELIVERY_FAILURES),
            tags={"stage": stage, "event_type": event_type},
        )

    def record_handler_execution(
        self,
        event_type: str,
        handler_name: str,
        latency_seconds: float,
        success: bool = True,
    ) -> None:
        tags = {
            "event_type": event_type,
            "handler_name": handler_name,
            "status": "success" if success else "error",
        }
        self.backend.increment(self._name(self.HANDLER_EXECUTIONS), tags=tags)
        self.backend.timing(self._name(self.HANDLER_LATENCY), latency_seconds * 1000, tags=tags)
        if not success:
            self.backend.increment(self._name(self.HANDLER_ERRORS), tags=tags)

    def record_http(self, method: str, outcome: str) -> None:
        """Count an entity request by outcome ("ok", "conflict", "precondition_required", ...)."""
        self.backend.increment(
            self._name(self.HTTP_REQUESTS), tags={"method": method, "outcome": outcome}
        )

    def get_snapshot(self) -> dict[str, Any]:
        """
        Totals per metric.

        Only meaningful with the InMemoryMetrics backend.
        """
        if not isinstance(self.backend, InMemoryMetrics):
            return {"backend": type(self.backend).__name__}

        backend = self.backend
        return {
            "events_emitted": backend.total(self._name(self.EVENTS_EMITTED)),
            "events_received": backend.total(self._name(self.EVENTS_RECEIVED)),
            "events_suppressed": backend.total(self._name(self.EVENTS_SUPPRESSED)),
            "events_replayed": backend.total(self._name(self.EVENTS_REPLAYED)),
            "delivery_failures": backend.total(self._name(self.DELIVERY_FAILURES)),
            "handler_errors": backend.total(self._name(self.HANDLER_ERRORS)),
            "http_requests": backend.total(self._name(self.HTTP_REQUESTS)),
        }


# Optional Prometheus integration
try:
    from prometheus_client import Counter, Histogram

    class PrometheusMetrics(MetricsBackend):
        """
        Prometheus metrics backend.

        Requires prometheus_client to be installed.
        """

        def __init__(self, prefix: str = "", registry: Any = None):
            self.prefix = prefix
            self.registry = registry
            self._counters: dict[str, Counter] = {}
            self._histograms: dict[str, Histogram] = {}

        def _registry_kwargs(self) -> dict[str, Any]:
            return {"registry": self.registry} if self.registry is not None else {}

        def _get_counter(self, name: str, labels: list[str]) -> Counter:
            key = f"{self.prefix}_{name}" if self.prefix else name
            if key not in self._counters:
                self._counters[key] = Counter(
                    key, f"{name} counter", labels, **self._registry_kwargs()
                )
            return self._counters[key]

        def _get_histogram(self, name: str, labels: list[str]) -> Histogram:
            key = f"{self.prefix}_{name}" if self.prefix else name
            if key not in self._histograms:
                self._histograms[key] = Histogram(
                    key, f"{name} histogram", labels, **self._registry_kwargs()
                )
            return self._histograms[key]

        def increment(
            self, name: str, value: int = 1, tags: dict[str, str] | None = None
        ) -> None:
            labels = sorted(tags) if tags else []
            counter = self._get_counter(name, labels)
            if tags:
                counter.labels(**tags).inc(value)
            else:
                counter.inc(value)

        def timing(
            self, name: str, value_ms: float, tags: dict[str, str] | None = None
        ) -> None:
            labels = sorted(tags) if tags else []
            hist = self._get_histogram(name, labels)
            # Prometheus convention: seconds
            if tags:
                hist.labels(**tags).observe(value_ms / 1000)
            else:
                hist.observe(value_ms / 1000)

    PROMETHEUS_AVAILABLE = True
except ImportError:
    PROMETHEUS_AVAILABLE = False
    PrometheusMetrics = None  # type: ignore


def is_prometheus_available() -> bool:
    """Check if Prometheus client is available."""
    return PROMETHEUS_AVAILABLE
