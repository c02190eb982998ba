"""Prometheus metric definitions shared across services."""

from prometheus_client import Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response


submissions_total = Counter(
    "notification_submissions_total",
    "Notification submissions by outcome",
    ["service", "outcome"],
)
submission_latency_seconds = Histogram(
    "notification_submission_latency_seconds",
    "Time spent admitting and persisting one submission",
    ["service"],
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
delivery_attempts_total = Counter(
    "delivery_attempts_total",
    "Channel delivery attempts by outcome",
    ["service", "channel", "status"],
)
provider_latency_seconds = Histogram(
    "provider_latency_seconds",
    "Wall-clock latency of channel provider calls",
    ["service", "channel"],
)
retries_published_total = Counter(
    "retries_published_total",
    "Messages republished to a retry tier",
    ["service", "topic"],
)
event_queue_delay_seconds = Histogram(
    "event_queue_delay_seconds",
    "Event queue delay seconds between message timestamp and consume time",
    ["service", "topic"],
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
outbox_publish_failures_total = Counter(
    "outbox_publish_failures_total",
    "Outbox publish attempts rejected by the transport",
    ["service"],
)
dlq_entries_total = Counter(
    "dlq_entries_total",
    "Failed notifications written to the dead letter store",
    ["service", "error_code", "unrecoverable"],
)
dlq_retries_total = Counter(
    "dlq_retries_total",
    "Manual dead letter retries by outcome",
    ["service", "outcome"],
)
duplicate_events_skipped_total = Counter(
    "duplicate_events_skipped_total",
    "Duplicate tier messages skipped",
    ["service", "topic"],
)


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
