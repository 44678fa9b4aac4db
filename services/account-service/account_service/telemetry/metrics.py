"""Prometheus instrumentation shared by the RPC layer and the repository."""

from __future__ import annotations

from typing import Callable, Iterator, Mapping

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram
from prometheus_client.core import CounterMetricFamily, GaugeMetricFamily, Metric


class Metrics:
    """Request and query metrics registered on a caller-supplied registry.

    One instance is built at process start and handed to every component that
    records observations.
    """

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self.registry = registry if registry is not None else CollectorRegistry()
        self._rpc_requests = Counter(
            "account_rpc_requests_total",
            "Total RPC requests by method and code.",
            ["method", "code"],
            registry=self.registry,
        )
        self._rpc_duration = Histogram(
            "account_rpc_request_duration_seconds",
            "RPC request latency in seconds by method and code.",
            ["method", "code"],
            registry=self.registry,
        )
        self._rpc_in_flight = Gauge(
            "account_rpc_requests_in_flight",
            "Current number of in-flight RPC requests.",
            registry=self.registry,
        )
        self._db_queries = Counter(
            "account_db_queries_total",
            "Total DB method calls by method and status.",
            ["method", "status"],
            registry=self.registry,
        )
        self._db_duration = Histogram(
            "account_db_query_duration_seconds",
            "DB method duration in seconds by method and status.",
            ["method", "status"],
            registry=self.registry,
        )
        self._pool_stats: PoolStatsCollector | None = None

    def bind_pool_stats(self, stats: Callable[[], Mapping[str, int]]) -> None:
        """Expose pool statistics from ``stats``.

        The collector is registered once; later calls, such as a restarted
        lifespan with a new pool, only swap its source.
        """
        if self._pool_stats is None:
            self._pool_stats = PoolStatsCollector(stats)
            self.registry.register(self._pool_stats)
        else:
            self._pool_stats.bind(stats)

    def observe_rpc(self, method: str, code: str, seconds: float) -> None:
        self._rpc_requests.labels(method, code).inc()
        self._rpc_duration.labels(method, code).observe(seconds)

    def inc_in_flight(self) -> None:
        self._rpc_in_flight.inc()

    def dec_in_flight(self) -> None:
        self._rpc_in_flight.dec()

    def observe_db(self, method: str, status: str, seconds: float) -> None:
        self._db_queries.labels(method, status).inc()
        self._db_duration.labels(method, status).observe(seconds)


class PoolStatsCollector:
    """Expose ``psycopg_pool`` statistics as Prometheus gauges and counters.

    ``stats`` is usually ``ConnectionPool.get_stats``. The pool omits counters
    that are still zero, so every key is read with a default.
    """

    def __init__(self, stats: Callable[[], Mapping[str, int]]) -> None:
        self._stats = stats

    def bind(self, stats: Callable[[], Mapping[str, int]]) -> None:
        """Read statistics from ``stats`` from the next scrape on."""
        self._stats = stats

    def describe(self) -> Iterator[Metric]:
        yield from self._families({})

    def collect(self) -> Iterator[Metric]:
        yield from self._families(self._stats())

    def _families(self, stats: Mapping[str, int]) -> Iterator[Metric]:
        size = stats.get("pool_size", 0)
        available = stats.get("pool_available", 0)
        yield GaugeMetricFamily(
            "account_db_pool_open_connections",
            "Open database connections.",
            value=size,
        )
        yield GaugeMetricFamily(
            "account_db_pool_in_use_connections",
            "In-use database connections.",
            value=max(size - available, 0),
        )
        yield GaugeMetricFamily(
            "account_db_pool_idle_connections",
            "Idle database connections.",
            value=available,
        )
        yield CounterMetricFamily(
            "account_db_pool_wait_count",
            "Total number of requests queued waiting for a free connection.",
            value=stats.get("requests_queued", 0),
        )
        yield CounterMetricFamily(
            "account_db_pool_wait_duration_seconds",
            "Total time spent waiting for a free connection in seconds.",
            value=stats.get("requests_wait_ms", 0) / 1000.0,
        )
        yield CounterMetricFamily(
            "account_db_pool_connections_lost",
            "Total connections closed after being found broken.",
            value=stats.get("connections_lost", 0),
        )
        yield CounterMetricFamily(
            "account_db_pool_returns_bad",
            "Total connections discarded when returned to the pool in a bad state.",
            value=stats.get("returns_bad", 0),
        )

