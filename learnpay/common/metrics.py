"""Prometheus metric definitions for the reconciliation service."""

from prometheus_client import Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response


payment_intents_created_total = Counter(
    "payment_intents_created_total",
    "Gateway payment intents persisted after remote order creation",
    ["service", "kind"],
)
payments_applied_total = Counter(
    "payments_applied_total",
    "Ledger entries appended to obligations",
    ["service", "channel"],
)
payment_amount_applied_minor_total = Counter(
    "payment_amount_applied_minor_total",
    "Sum of applied payment amounts in minor currency units",
    ["service", "currency"],
)
payment_confirmations_total = Counter(
    "payment_confirmations_total",
    "Online payment confirmations by outcome",
    ["service", "outcome"],
)
duplicate_confirmations_total = Counter(
    "duplicate_confirmations_total",
    "Confirmations short-circuited because the intent was already paid",
    ["service", "source"],
)
obligation_update_conflicts_total = Counter(
    "obligation_update_conflicts_total",
    "Optimistic concurrency conflicts on obligation updates",
    ["service"],
)
enrollment_sync_total = Counter(
    "enrollment_sync_total",
    "Enrollment synchronizer results",
    ["service", "result"],
)
gateway_request_seconds = Histogram(
    "gateway_request_seconds",
    "Latency of remote order creation calls to the payment gateway",
    ["service", "outcome"],
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


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
