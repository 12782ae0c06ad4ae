"""Prometheus collector exposing cache and admission state.

Metrics are generated from live objects on every scrape rather than kept in
global instruments, so the collector can be registered on a private registry
per application.
"""

from collections.abc import Iterator

from prometheus_client.core import CounterMetricFamily, GaugeMetricFamily
from prometheus_client.metrics_core import Metric
from prometheus_client.registry import Collector

from .cache import CacheStore
from .ratelimit import SlidingWindowRateLimiter
from .scheduler import RefreshScheduler


class CacheCollector(Collector):
    """Prometheus collector for the frame service.

    Reports per-query cache contents and refresh bookkeeping from the cache
    store and scheduler, plus admission outcomes from the rate limiter.
    """

    def __init__(
        self,
        store: CacheStore,
        scheduler: RefreshScheduler,
        limiter: SlidingWindowRateLimiter,
        metric_prefix: str = "nutstate",
    ):
        """Initialize the collector.

        Args:
            store: Cache store to report on.
            scheduler: Refresh scheduler to report on.
            limiter: Rate limiter to report on.
            metric_prefix: Prefix for every metric name.
        """
        self._store = store
        self._scheduler = scheduler
        self._limiter = limiter
        self._prefix = metric_prefix

    def collect(self) -> Iterator[Metric]:
        """Collect metrics for a Prometheus scrape.

        Yields:
            Prometheus Metric objects.
        """
        snapshot = self._store.snapshot

        rows = GaugeMetricFamily(
            f"{self._prefix}_cache_rows",
            "Number of cached rows per analytics query",
            labels=["query_id"],
        )
        last_updated = GaugeMetricFamily(
            f"{self._prefix}_cache_last_updated_seconds",
            "Unix time of the last successful fetch per analytics query, 0 if never",
            labels=["query_id"],
        )
        for query_id in self._scheduler.query_ids:
            entry = snapshot.queries.get(query_id)
            rows.add_metric([query_id], len(entry.rows) if entry else 0)
            last_updated.add_metric([query_id], entry.last_updated / 1000 if entry else 0)
        yield rows
        yield last_updated

        updates_today = GaugeMetricFamily(
            f"{self._prefix}_cache_updates_today",
            "Refresh passes recorded for the current UTC day",
        )
        updates_today.add_metric([], snapshot.update_count_today)
        yield updates_today

        due = GaugeMetricFamily(
            f"{self._prefix}_refresh_due",
            "1 if a refresh pass would fetch at least one query now",
        )
        due.add_metric([], 1 if self._scheduler.is_due() else 0)
        yield due

        in_flight = GaugeMetricFamily(
            f"{self._prefix}_refresh_in_progress",
            "1 while a refresh pass is running",
        )
        in_flight.add_metric([], 1 if self._scheduler.is_refreshing else 0)
        yield in_flight

        passes = CounterMetricFamily(
            f"{self._prefix}_refresh_passes",
            "Refresh passes completed since start",
        )
        passes.add_metric([], self._scheduler.pass_count)
        yield passes

        fetch_errors = CounterMetricFamily(
            f"{self._prefix}_fetch_errors",
            "Query fetches that returned no rows",
        )
        fetch_errors.add_metric([], self._scheduler.failed_fetches)
        yield fetch_errors

        admissions = CounterMetricFamily(
            f"{self._prefix}_admissions",
            "Inbound requests by rate limiter outcome",
            labels=["outcome"],
        )
        admissions.add_metric(["admitted"], self._limiter.admitted)
        admissions.add_metric(["load_shedding"], self._limiter.shed)
        admissions.add_metric(["rejected"], self._limiter.rejected)
        yield admissions
