"""Prometheus metric definitions shared across the RCM components."""

from prometheus_client import Counter, Gauge, Histogram, generate_latest
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
payment_requests_total = Counter("payment_requests_total", "Total payment intent requests", ["service"])
payment_terminal_total = Counter(
    "payment_terminal_total",
    "Payment intents reaching a terminal or refund state",
    ["service", "state"],
)
payment_e2e_seconds = Histogram(
    "payment_e2e_seconds",
    "Payment duration seconds from created to terminal",
    ["service", "terminal_state"],
)
gateway_calls_total = Counter(
    "gateway_calls_total",
    "Gateway adapter calls by outcome",
    ["gateway", "operation", "outcome"],
)
gateway_idempotent_replays_total = Counter(
    "gateway_idempotent_replays_total",
    "Gateway calls answered from a recorded idempotent result",
    ["gateway", "operation"],
)
retries_total = Counter("retries_total", "Retry count", ["service", "dependency"])
reconciliations_total = Counter(
    "reconciliations_total",
    "Pending-verification reconciliation attempts",
    ["service", "outcome"],
)
cache_requests_total = Counter("cache_requests_total", "Cache lookups by result", ["scope", "result"])
cache_failures_total = Counter("cache_failures_total", "Cache backend failures (fail-open)", ["operation"])
cache_invalidations_total = Counter("cache_invalidations_total", "Cache epoch bumps", ["scope"])
cache_swept_total = Counter("cache_swept_total", "Expired cache entries reclaimed by sweep")
auth_failures_total = Counter("auth_failures_total", "Rejected requests by auth error kind", ["kind"])
analytics_compute_seconds = Histogram(
    "analytics_compute_seconds",
    "Dashboard aggregation duration seconds",
    ["service"],
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


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
