"""
Prometheus metrics for the client sync layer.
"""

from typing import Dict, Any, Optional

from prometheus_client import CollectorRegistry, Counter


class SyncMetrics:
    """Centralized metrics collector for the sync layer components."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()
        self._metrics: Dict[str, Counter] = {}
        self._counts: Dict[str, Dict[str, int]] = {}
        self._setup_metrics()

    def _setup_metrics(self):
        """Set up sync layer counters."""
        self._metrics["cache_lookups_total"] = Counter(
            "sync_cache_lookups_total",
            "Cache lookups by outcome",
            ["outcome"],
            registry=self.registry
        )

        self._metrics["fetch_results_total"] = Counter(
            "sync_fetch_results_total",
            "Settled fetches by result kind",
            ["kind"],
            registry=self.registry
        )

        self._metrics["invalidations_total"] = Counter(
            "sync_invalidations_total",
            "Published invalidations by scope kind and reason",
            ["scope", "reason"],
            registry=self.registry
        )

        self._metrics["realtime_connects_total"] = Counter(
            "sync_realtime_connects_total",
            "Realtime connection attempts by outcome",
            ["channel_class", "outcome"],
            registry=self.registry
        )

        self._metrics["realtime_disabled_total"] = Counter(
            "sync_realtime_disabled_total",
            "Channel classes disabled for the session",
            ["channel_class"],
            registry=self.registry
        )

    def _increment(self, metric_name: str, label: str, **labels):
        self._metrics[metric_name].labels(**labels).inc()
        bucket = self._counts.setdefault(metric_name, {})
        bucket[label] = bucket.get(label, 0) + 1

    def record_cache_lookup(self, outcome: str):
        """Record a cache lookup: fresh, miss, coalesced or persistent."""
        self._increment("cache_lookups_total", outcome, outcome=outcome)

    def record_fetch_result(self, kind: str):
        """Record a settled fetch: ok or an error kind."""
        self._increment("fetch_results_total", kind, kind=kind)

    def record_invalidation(self, scope: str, reason: str):
        """Record a published invalidation."""
        self._increment("invalidations_total", f"{scope}:{reason}", scope=scope, reason=reason)

    def record_realtime_connect(self, channel_class: str, outcome: str):
        """Record a realtime connection attempt."""
        self._increment(
            "realtime_connects_total",
            f"{channel_class}:{outcome}",
            channel_class=channel_class,
            outcome=outcome
        )

    def record_realtime_disabled(self, channel_class: str):
        """Record a channel class being disabled for the session."""
        self._increment("realtime_disabled_total", channel_class, channel_class=channel_class)

    def snapshot(self) -> Dict[str, Any]:
        """Plain counts per metric and label, for diagnostics."""
        return {name: dict(values) for name, values in self._counts.items()}

    def count(self, metric_name: str, label: str) -> int:
        """Count recorded for one metric label."""
        return self._counts.get(metric_name, {}).get(label, 0)
