"""
Prometheus metrics for monitoring marketplace data fetching.

Metrics exported:
- sellercloud_upstream_requests_total: Gateway fetches by outcome
- sellercloud_upstream_request_duration_seconds: Gateway fetch duration histogram
- sellercloud_upstream_retries_total: Retries of transient upstream errors
- sellercloud_dropped_records_total: Upstream records skipped as malformed
- sellercloud_truncated_fetches_total: fetch_all runs stopped by the page cap
- sellercloud_snapshot_refreshes_total: Data store refreshes by outcome
"""

from typing import Optional

from prometheus_client import (
    Counter,
    Histogram,
    CollectorRegistry,
    REGISTRY,
    generate_latest,
)

from sellercloud.utils.logger import get_logger


logger = get_logger(__name__)


class PrometheusMetrics:
    """
    Prometheus metrics collector for SellerCloud.

    Tracks:
    - Upstream fetch metrics (outcome, duration, retries)
    - Normalization drops
    - Snapshot refresh outcomes
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        """
        Initialize Prometheus metrics.

        Args:
            registry: Prometheus registry (uses the default registry if not provided)
        """
        self.registry = registry if registry is not None else REGISTRY

        self.requests_total = Counter(
            "sellercloud_upstream_requests_total",
            "Total marketplace fetches",
            ["marketplace", "data_type", "outcome"],
            registry=self.registry,
        )

        self.request_duration = Histogram(
            "sellercloud_upstream_request_duration_seconds",
            "Marketplace fetch duration in seconds",
            ["marketplace", "data_type"],
            buckets=[0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0],
            registry=self.registry,
        )

        self.retries_total = Counter(
            "sellercloud_upstream_retries_total",
            "Retries of transient upstream errors",
            ["marketplace", "data_type"],
            registry=self.registry,
        )

        self.dropped_records_total = Counter(
            "sellercloud_dropped_records_total",
            "Upstream records skipped during normalization",
            ["marketplace", "data_type"],
            registry=self.registry,
        )

        self.truncated_fetches_total = Counter(
            "sellercloud_truncated_fetches_total",
            "Paginated fetches stopped by the page cap",
            ["marketplace", "data_type"],
            registry=self.registry,
        )

        self.refreshes_total = Counter(
            "sellercloud_snapshot_refreshes_total",
            "Data store refreshes",
            ["marketplace", "data_type", "outcome"],
            registry=self.registry,
        )

        logger.debug("Prometheus metrics initialized")

    def track_request(self, marketplace: str, data_type: str, outcome: str, duration: float):
        """
        Track one gateway fetch.

        Args:
            marketplace: Marketplace name
            data_type: products or orders
            outcome: success, partial or the error class name
            duration: Fetch duration in seconds
        """
        self.requests_total.labels(
            marketplace=marketplace,
            data_type=data_type,
            outcome=outcome,
        ).inc()

        self.request_duration.labels(
            marketplace=marketplace,
            data_type=data_type,
        ).observe(duration)

    def track_retry(self, marketplace: str, data_type: str):
        """Track a retry of a transient upstream error."""
        self.retries_total.labels(marketplace=marketplace, data_type=data_type).inc()

    def track_dropped_record(self, marketplace: str, data_type: str):
        """Track a malformed record skipped by an adapter."""
        self.dropped_records_total.labels(marketplace=marketplace, data_type=data_type).inc()

    def track_truncated(self, marketplace: str, data_type: str):
        """Track a fetch_all run that hit the page cap."""
        self.truncated_fetches_total.labels(marketplace=marketplace, data_type=data_type).inc()

    def track_refresh(self, marketplace: str, data_type: str, outcome: str):
        """
        Track a data store refresh.

        Args:
            outcome: committed, failed or discarded
        """
        self.refreshes_total.labels(
            marketplace=marketplace,
            data_type=data_type,
            outcome=outcome,
        ).inc()

    def export(self) -> bytes:
        """Metrics in Prometheus text exposition format."""
        return generate_latest(self.registry)


# Global metrics instance
_metrics: Optional[PrometheusMetrics] = None


def get_metrics() -> PrometheusMetrics:
    """
    Get global metrics instance.

    Returns:
        PrometheusMetrics instance
    """
    global _metrics
    if _metrics is None:
        _metrics = PrometheusMetrics()
    return _metrics
