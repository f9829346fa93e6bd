"""Prometheus metric definitions for the checkout service."""

from prometheus_client import Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response


order_requests_total = Counter("order_requests_total", "Total order placement requests", ["service"])
order_outcomes_total = Counter(
    "order_outcomes_total",
    "Order placement outcomes by terminal saga result",
    ["service", "outcome"],
)
order_placement_seconds = Histogram(
    "order_placement_seconds",
    "Order placement end-to-end duration seconds",
    ["service"],
)
external_call_seconds = Histogram(
    "external_call_seconds",
    "Latency of calls to payment, shipping and content store collaborators",
    ["service", "dependency", "operation"],
)
reconciliation_required_total = Counter(
    "reconciliation_required_total",
    "Placements left in a state that needs out-of-band reconciliation",
    ["service", "reason"],
)
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
outbox_pending_total = Gauge(
    "outbox_pending_total",
    "Current count of outbox events not yet sent",
    ["service"],
)
outbox_oldest_pending_age_seconds = Gauge(
    "outbox_oldest_pending_age_seconds",
    "Age in seconds of the oldest pending outbox event",
    ["service"],
)
retries_total = Counter("retries_total", "Retry count", ["service", "dependency"])
duplicate_orders_replayed_total = Counter(
    "duplicate_orders_replayed_total",
    "Order submissions answered from a previous placement",
    ["service"],
)


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
