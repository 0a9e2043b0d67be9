"""Prometheus metrics for API service.

Exposes key metrics for monitoring:
- Request counts by endpoint and status
- Request duration histograms
- Batch sizes and approval actions

Pipeline and validation metrics are declared next to the code that records
them and land in the same default registry.

Based on Prometheus best practices:
https://prometheus.io/docs/practices/naming/
"""

from prometheus_client import Counter, Histogram, generate_latest
from prometheus_client.openmetrics.exposition import CONTENT_TYPE_LATEST

# Request metrics
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# Batch metrics
batch_size_invoices = Histogram(
    "invoice_batch_size",
    "Number of invoices per batch request",
    buckets=(1, 5, 10, 20, 30, 40, 50),
)

# Approval workflow metrics
approval_actions_total = Counter(
    "invoice_approval_actions_total",
    "Manual approval workflow actions",
    ["action", "status"],  # approve/reject, success/failed
)


def get_metrics() -> tuple[bytes, str]:
    """Generate Prometheus metrics in text format.

    Returns:
        Tuple of (metrics bytes, content type)
    """
    return generate_latest(), CONTENT_TYPE_LATEST
