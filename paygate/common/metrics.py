"""Prometheus metric definitions for the gateway."""

from prometheus_client import Counter, Histogram, generate_latest
from starlette.responses import Response


webhook_events_total = Counter(
    "webhook_events_total",
    "Webhook deliveries by rail, event type and outcome",
    ["service", "rail", "event_type", "outcome"],
)
chain_transfers_total = Counter(
    "chain_transfers_total",
    "Observed token transfers touching monitored wallets",
    ["service", "token", "direction"],
)
subscription_transitions_total = Counter(
    "subscription_transitions_total",
    "Effective subscription active-flag transitions",
    ["service", "to_state", "reason"],
)
validator_notifications_total = Counter(
    "validator_notifications_total",
    "Status notifications sent to the validator API",
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
funding_evaluation_seconds = Histogram(
    "funding_evaluation_seconds",
    "Funding evaluation duration seconds including the balance lookup",
    ["service"],
)
sweep_runs_total = Counter("sweep_runs_total", "Reconciliation sweep runs", ["service", "sweep"])
retries_total = Counter("retries_total", "Retry count", ["service", "dependency"])
duplicate_events_skipped_total = Counter(
    "duplicate_events_skipped_total",
    "Duplicate webhook deliveries or chain logs skipped",
    ["service", "source"],
)


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
