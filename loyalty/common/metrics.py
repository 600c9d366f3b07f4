"""Prometheus metric definitions for the loyalty service."""

from prometheus_client import Counter, Histogram, generate_latest
from starlette.responses import Response


http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["service", "route", "method", "status_code"],
)
http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration seconds",
    ["service", "route", "method"],
)
webhook_deliveries_total = Counter(
    "webhook_deliveries_total",
    "Webhook deliveries by topic and outcome",
    ["service", "topic", "outcome"],
)
points_awarded_total = Counter(
    "points_awarded_total",
    "Points credited by new ledger entries",
    ["service", "channel"],
)
duplicate_deliveries_skipped_total = Counter(
    "duplicate_deliveries_skipped_total",
    "Ledger appends short-circuited by an existing idempotency key",
    ["service", "channel"],
)
retries_total = Counter("retries_total", "Retry count", ["service", "dependency"])
webhook_processing_seconds = Histogram(
    "webhook_processing_seconds",
    "Webhook processing duration seconds from signature check to response",
    ["service", "topic"],
)


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
