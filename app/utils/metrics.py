"""
Prometheus-based metrics for production monitoring.
Provides /metrics endpoint for scraping.
"""
from prometheus_client import Counter, Histogram, Gauge, generate_latest, CONTENT_TYPE_LATEST
from fastapi import APIRouter, Response


# Counters
reconcile_items_total = Counter(
    "reconcile_items_total",
    "Games visited by the stock/price reconciler",
    ["outcome"],  # unchanged, stock_changed, error
)

reconcile_price_updates_total = Counter(
    "reconcile_price_updates_total",
    "Price changes written by the reconciler",
)

catalog_sync_runs_total = Counter(
    "catalog_sync_runs_total",
    "Full catalog sync runs",
    ["status"],  # ok, failed, skipped
)

catalog_sync_products_total = Counter(
    "catalog_sync_products_total",
    "Products written by the catalog sync",
    ["action"],  # added, updated, removed
)

marketplace_requests_total = Counter(
    "marketplace_requests_total",
    "Upstream marketplace API requests",
    ["endpoint", "status"],
)

order_transitions_total = Counter(
    "order_transitions_total",
    "Order status transitions",
    ["from_status", "to_status"],
)

order_cancellations_total = Counter(
    "order_cancellations_total",
    "Order cancellations by refund path",
    ["refund_path"],  # gateway, gateway_failed, balance, already_refunded, none
)

refunds_total = Counter(
    "refunds_total",
    "Gateway refund attempts",
    ["method", "status"],
)

cache_invalidation_failures_total = Counter(
    "cache_invalidation_failures_total",
    "Cache invalidation calls that failed",
)

circuit_breaker_state = Gauge(
    "circuit_breaker_state",
    "Circuit breaker state (0=closed, 1=open)",
    ["name"],
)

# Histograms
marketplace_request_duration_seconds = Histogram(
    "marketplace_request_duration_seconds",
    "Upstream marketplace request duration",
    ["endpoint"],
    buckets=[0.1, 0.5, 1, 2, 5, 10, 30],
)

reconcile_duration_seconds = Histogram(
    "reconcile_duration_seconds",
    "Stock/price reconciliation run duration",
    buckets=[10, 30, 60, 120, 300, 600, 900],
)

catalog_sync_duration_seconds = Histogram(
    "catalog_sync_duration_seconds",
    "Full catalog sync duration",
    buckets=[60, 300, 600, 1200, 1800, 3600],
)

# Gauges
catalog_sync_in_progress = Gauge(
    "catalog_sync_in_progress",
    "1 while a full catalog sync is running",
)


# Metrics endpoint router
router = APIRouter()


@router.get("/metrics")
def metrics_endpoint() -> Response:
    """Prometheus metrics endpoint for scraping."""
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST,
    )
