"""
VectorX402 Metrics.

Provides Prometheus metrics for marketplace activity: listings, purchase
outcomes, signed payments, blocked replays and search latency.
"""

import time
import logging
import threading
from contextlib import contextmanager
from typing import Any, Dict, Optional

from prometheus_client import CollectorRegistry, Counter, Histogram, generate_latest

logger = logging.getLogger(__name__)


class MarketMetrics:
    """
    Metrics collector for marketplace operations.

    Keeps simple in-memory counters alongside Prometheus metrics registered on
    a private registry, so several collectors can coexist in one process.

    Example:
        >>> metrics = MarketMetrics()
        >>> metrics.record_purchase(success=True)
        >>> with metrics.search_timer():
        ...     results = await engine.search(query)
        >>> print(metrics.get_stats())
    """

    def __init__(
        self,
        namespace: str = "vectorx402",
        enable_prometheus: bool = True,
        registry: Optional[CollectorRegistry] = None,
    ):
        """
        Args:
            namespace: Prefix of every exported metric name.
            enable_prometheus: Register Prometheus collectors alongside the in-memory counters.
            registry: Optional Prometheus registry (a private one if None).
        """
        self._namespace = namespace
        self._lock = threading.Lock()

        self._counters: Dict[str, float] = {}
        self._histograms: Dict[str, list] = {}

        self._registry: Optional[CollectorRegistry] = None
        self._prom_metrics: Dict[str, Any] = {}
        if enable_prometheus:
            self._setup_prometheus_metrics(registry)

    def _setup_prometheus_metrics(self, registry: Optional[CollectorRegistry] = None):
        """Register the marketplace counters and the search histogram."""
        reg = registry or CollectorRegistry()
        self._registry = reg

        self._prom_metrics["listings_total"] = Counter(
            f"{self._namespace}_listings_total", "Total number of listings created", registry=reg
        )

        self._prom_metrics["purchases_total"] = Counter(
            f"{self._namespace}_purchases_total",
            "Purchase attempts by outcome",
            ["outcome"],
            registry=reg,
        )

        self._prom_metrics["payments_signed"] = Counter(
            f"{self._namespace}_payments_signed_total",
            "Total number of payment proofs signed",
            registry=reg,
        )

        self._prom_metrics["replays_blocked"] = Counter(
            f"{self._namespace}_replays_blocked_total", "Total nonce replays blocked", registry=reg
        )

        self._prom_metrics["search_duration"] = Histogram(
            f"{self._namespace}_search_duration_seconds",
            "Similarity search latency in seconds",
            buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0),
            registry=reg,
        )

    def _increment(self, key: str) -> None:
        with self._lock:
            self._counters[key] = self._counters.get(key, 0) + 1

    def record_listing(self) -> None:
        """Record a new listing."""
        self._increment("listings")

        if "listings_total" in self._prom_metrics:
            self._prom_metrics["listings_total"].inc()

    def record_purchase(self, success: bool, outcome: Optional[str] = None) -> None:
        """
        Record a purchase attempt.

        Args:
            success: Whether the purchase settled.
            outcome: Failure kind (e.g. "ListingUnavailable"); ignored on success.
        """
        label = "success" if success else (outcome or "failure")
        self._increment(f"purchases_{'success' if success else 'failure'}")

        if "purchases_total" in self._prom_metrics:
            self._prom_metrics["purchases_total"].labels(outcome=label).inc()

    def record_payment_signed(self) -> None:
        """Record a signed payment proof."""
        self._increment("payments_signed")

        if "payments_signed" in self._prom_metrics:
            self._prom_metrics["payments_signed"].inc()

    def record_replay_blocked(self) -> None:
        """Record a blocked nonce replay."""
        self._increment("replays_blocked")

        if "replays_blocked" in self._prom_metrics:
            self._prom_metrics["replays_blocked"].inc()

    def record_search_duration(self, duration_seconds: float) -> None:
        """Record search latency."""
        with self._lock:
            self._histograms.setdefault("search_durations", []).append(duration_seconds)

        if "search_duration" in self._prom_metrics:
            self._prom_metrics["search_duration"].observe(duration_seconds)

    @contextmanager
    def search_timer(self):
        """Context manager for timing searches."""
        start = time.perf_counter()
        try:
            yield
        finally:
            self.record_search_duration(time.perf_counter() - start)

    def get_stats(self) -> Dict[str, Any]:
        """Snapshot of the in-memory counters, averages and purchase success rate."""
        with self._lock:
            stats = dict(self._counters)

            for name, values in self._histograms.items():
                if values:
                    stats[f"{name}_avg"] = sum(values) / len(values)
                    stats[f"{name}_count"] = len(values)

            total = stats.get("purchases_success", 0) + stats.get("purchases_failure", 0)
            if total > 0:
                stats["purchase_success_rate"] = stats.get("purchases_success", 0) / total

            return stats

    def get_prometheus_metrics(self) -> Optional[bytes]:
        """Exposition text of this collector's registry, or None when Prometheus is off."""
        if self._registry is None:
            return None
        return generate_latest(self._registry)


# Shared collector for callers that do not inject one
_global_metrics: Optional[MarketMetrics] = None


def get_metrics() -> MarketMetrics:
    """Process-wide collector, created on first use."""
    global _global_metrics
    if _global_metrics is None:
        _global_metrics = MarketMetrics()
    return _global_metrics
