"""
GIB Metrics - Metrics port, Prometheus adapter and the sync gauge refresher

The pipeline never touches a metrics library directly. Every component takes
a MetricsPort; NullMetrics is the default and PrometheusMetrics publishes to
its own CollectorRegistry (so tests and multiple app instances never collide
on the global registry).

Metrics (PrometheusMetrics):
    gibuserlist_sync_total{status}                  Counter
    gibuserlist_sync_duration_seconds               Histogram
    gibuserlist_sync_users_processed_total{list_type}  Counter
    gibuserlist_sync_active                         Gauge
    gibuserlist_sync_changes_total{change_type}     Counter
    gibuserlist_sync_removal_skipped_total          Counter
    gibuserlist_mv_refresh_duration_seconds         Histogram
    gibuserlist_mv_refresh_errors_total             Counter
    gibuserlist_cache_hits_total / _misses_total    Counter
    gibuserlist_queries_total{type,document_type}   Counter
    gibuserlist_queries_errors_total{type,document_type}  Counter
    gibuserlist_queries_duration_ms{type,document_type}   Histogram
    gibuserlist_users_einvoice_count                Gauge
    gibuserlist_users_edespatch_count               Gauge
    gibuserlist_sync_last_duration_seconds          Gauge
    gibuserlist_sync_last_sync_at_unix              Gauge

The sync runs in a separate process from the API, so the last-run gauges are
read back from the sync_metadata row by SyncGaugeRefresher every 60 seconds.
"""

import logging
import threading
from datetime import datetime
from typing import Callable, Optional
from zoneinfo import ZoneInfo

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

from constants import REGISTRY_TIME_ZONE

logger = logging.getLogger(__name__)


# =============================================================================
# Port
# =============================================================================

class MetricsPort:
    """Metrics interface injected into the pipeline. Every method is a no-op here."""

    def record_sync(self, status: str, duration_seconds: float):
        pass

    def record_users_processed(self, list_type: str, count: int):
        pass

    def record_changes(self, change_type: str, count: int):
        pass

    def record_removal_skipped(self):
        pass

    def record_mv_refresh_duration(self, duration_seconds: float):
        pass

    def record_mv_refresh_error(self):
        pass

    def sync_active(self, delta: int):
        pass

    def record_cache_hit(self):
        pass

    def record_cache_miss(self):
        pass

    def record_query(self, query_type: str, document_type: str, duration_ms: float):
        pass

    def record_query_error(self, query_type: str, document_type: str):
        pass

    def set_sync_gauges(
        self,
        einvoice_count: int,
        edespatch_count: int,
        last_duration_seconds: float,
        last_sync_at_unix: float,
    ):
        pass


class NullMetrics(MetricsPort):
    """Discards everything."""
    pass


# =============================================================================
# Prometheus adapter
# =============================================================================

class PrometheusMetrics(MetricsPort):
    """
    MetricsPort backed by prometheus_client.

    Example:
        metrics = PrometheusMetrics()
        metrics.record_sync("success", 42.0)
        body = metrics.render()   # text exposition format
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None, namespace: str = "gibuserlist"):
        self.registry = registry or CollectorRegistry()
        ns = namespace

        self._sync_total = Counter(
            f"{ns}_sync_total", "Sync runs by outcome", ["status"], registry=self.registry)
        self._sync_duration = Histogram(
            f"{ns}_sync_duration_seconds", "Sync run duration",
            buckets=(30, 60, 120, 300, 600, 900, 1800, 3600), registry=self.registry)
        self._users_processed = Counter(
            f"{ns}_sync_users_processed_total", "Records staged per origin list",
            ["list_type"], registry=self.registry)
        self._sync_active = Gauge(
            f"{ns}_sync_active", "Sync runs in progress", registry=self.registry)
        self._changes = Counter(
            f"{ns}_sync_changes_total", "Detected changes", ["change_type"], registry=self.registry)
        self._removal_skipped = Counter(
            f"{ns}_sync_removal_skipped_total", "Deletions vetoed by the removal guard",
            registry=self.registry)
        self._mv_refresh_duration = Histogram(
            f"{ns}_mv_refresh_duration_seconds", "Derived view refresh duration", registry=self.registry)
        self._mv_refresh_errors = Counter(
            f"{ns}_mv_refresh_errors_total", "Failed derived view refresh attempts", registry=self.registry)
        self._cache_hits = Counter(
            f"{ns}_cache_hits_total", "Point lookup cache hits", registry=self.registry)
        self._cache_misses = Counter(
            f"{ns}_cache_misses_total", "Point lookup cache misses", registry=self.registry)
        self._queries = Counter(
            f"{ns}_queries_total", "Read queries", ["type", "document_type"], registry=self.registry)
        self._query_errors = Counter(
            f"{ns}_queries_errors_total", "Failed read queries", ["type", "document_type"],
            registry=self.registry)
        self._query_duration = Histogram(
            f"{ns}_queries_duration_ms", "Read query duration in milliseconds",
            ["type", "document_type"],
            buckets=(1, 5, 10, 25, 50, 100, 250, 500, 1000, 2500), registry=self.registry)
        self._einvoice_count = Gauge(
            f"{ns}_users_einvoice_count", "e-Invoice registered users", registry=self.registry)
        self._edespatch_count = Gauge(
            f"{ns}_users_edespatch_count", "e-Despatch registered users", registry=self.registry)
        self._last_duration = Gauge(
            f"{ns}_sync_last_duration_seconds", "Duration of the last sync", registry=self.registry)
        self._last_sync_at = Gauge(
            f"{ns}_sync_last_sync_at_unix", "Last successful sync time (unix seconds)",
            registry=self.registry)

    def record_sync(self, status: str, duration_seconds: float):
        self._sync_total.labels(status=status).inc()
        self._sync_duration.observe(duration_seconds)

    def record_users_processed(self, list_type: str, count: int):
        self._users_processed.labels(list_type=list_type).inc(count)

    def record_changes(self, change_type: str, count: int):
        self._changes.labels(change_type=change_type).inc(count)

    def record_removal_skipped(self):
        self._removal_skipped.inc()

    def record_mv_refresh_duration(self, duration_seconds: float):
        self._mv_refresh_duration.observe(duration_seconds)

    def record_mv_refresh_error(self):
        self._mv_refresh_errors.inc()

    def sync_active(self, delta: int):
        self._sync_active.inc(delta)

    def record_cache_hit(self):
        self._cache_hits.inc()

    def record_cache_miss(self):
        self._cache_misses.inc()

    def record_query(self, query_type: str, document_type: str, duration_ms: float):
        self._queries.labels(type=query_type, document_type=document_type).inc()
        self._query_duration.labels(type=query_type, document_type=document_type).observe(duration_ms)

    def record_query_error(self, query_type: str, document_type: str):
        self._query_errors.labels(type=query_type, document_type=document_type).inc()

    def set_sync_gauges(
        self,
        einvoice_count: int,
        edespatch_count: int,
        last_duration_seconds: float,
        last_sync_at_unix: float,
    ):
        self._einvoice_count.set(einvoice_count)
        self._edespatch_count.set(edespatch_count)
        self._last_duration.set(last_duration_seconds)
        self._last_sync_at.set(last_sync_at_unix)

    def render(self) -> bytes:
        """Prometheus text exposition of this registry."""
        return generate_latest(self.registry)


# =============================================================================
# Gauge refresher
# =============================================================================

def to_unix_seconds(value: Optional[datetime]) -> float:
    """Naive registry-local timestamp -> unix seconds (0 when unknown)."""
    if value is None:
        return 0.0
    return value.replace(tzinfo=ZoneInfo(REGISTRY_TIME_ZONE)).timestamp()


class SyncGaugeRefresher:
    """
    Periodically pushes the sync_metadata row into the gauges.

    fetch_metadata returns the row as a mapping (or None before the first
    sync). A failing tick is logged and the loop keeps going.

    Example:
        refresher = SyncGaugeRefresher(metrics, SyncMetadataStore(factory).fetch)
        refresher.start()
        ...
        refresher.stop()
    """

    DEFAULT_INTERVAL_SECONDS = 60.0

    def __init__(
        self,
        metrics: MetricsPort,
        fetch_metadata: Callable[[], Optional[dict]],
        interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
    ):
        self.metrics = metrics
        self.fetch_metadata = fetch_metadata
        self.interval_seconds = interval_seconds
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def refresh_once(self) -> bool:
        """One tick. Returns True when gauges were updated."""
        try:
            row = self.fetch_metadata()
        except Exception as e:
            logger.warning(f"Sync gauge refresh failed: {e}")
            return False

        if row is None:
            return False

        self.metrics.set_sync_gauges(
            einvoice_count=row.get('e_invoice_user_count') or 0,
            edespatch_count=row.get('e_despatch_user_count') or 0,
            last_duration_seconds=float(row.get('last_sync_duration_seconds') or 0),
            last_sync_at_unix=to_unix_seconds(row.get('last_sync_at')),
        )
        return True

    def run(self):
        """Blocking loop until stop() is called."""
        logger.info(f"Sync gauge refresher started (every {self.interval_seconds:.0f}s)")
        while not self._stop_event.is_set():
            self.refresh_once()
            self._stop_event.wait(self.interval_seconds)
        logger.info("Sync gauge refresher stopped")

    def start(self) -> threading.Thread:
        self._stop_event.clear()
        self._thread = threading.Thread(target=self.run, name='gib-gauge-refresher', daemon=True)
        self._thread.start()
        return self._thread

    def stop(self, timeout: Optional[float] = 5.0):
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
