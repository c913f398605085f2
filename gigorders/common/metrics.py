"""Prometheus metric definitions shared across services."""

from prometheus_client import Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response


orders_created_total = Counter("orders_created_total", "Total orders created", ["service"])
order_transitions_total = Counter(
    "order_transitions_total",
    "Committed order status transitions",
    ["service", "from_status", "to_status"],
)
order_rejections_total = Counter(
    "order_rejections_total",
    "Order operations rejected before any write",
    ["service", "error_type"],
)
order_conflicts_total = Counter(
    "order_conflicts_total",
    "Transactions that lost a concurrent race on the order row",
    ["service", "operation"],
)
order_number_collisions_total = Counter(
    "order_number_collisions_total",
    "Generated order numbers that were already taken",
    ["service"],
)
order_operation_seconds = Histogram(
    "order_operation_seconds",
    "Coordinator operation latency seconds",
    ["service", "operation"],
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
notification_failures_total = Counter(
    "notification_failures_total",
    "Best-effort notification phases that failed and were swallowed",
    ["service", "phase"],
)
delivery_attempts_total = Counter(
    "delivery_attempts_total",
    "Deferred notification delivery attempts",
    ["service", "result"],
)
active_orders_drift = Gauge(
    "active_orders_drift",
    "Providers whose stored active-order counter disagrees with live order status",
    ["service"],
)


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
