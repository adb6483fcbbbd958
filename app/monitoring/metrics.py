"""
Prometheus Metrics

Metrics collection for monitoring the API and its idempotency guard.
"""

from prometheus_client import Counter, Histogram, Info

# Application info
app_info = Info("carbontrack_app", "CarbonTrack API application information")

# Idempotency metrics
idempotency_replays_counter = Counter(
    "idempotency_replays_total",
    "Responses replayed from a stored idempotency record (duplicates prevented)",
)

idempotency_rejections_counter = Counter(
    "idempotency_rejections_total",
    "Sensitive requests rejected for a missing or malformed idempotency key",
    ["reason"],  # missing_key, invalid_key
)

idempotency_records_stored_counter = Counter(
    "idempotency_records_stored_total",
    "Idempotency records persisted after a first execution",
)

idempotency_store_errors_counter = Counter(
    "idempotency_store_errors_total",
    "Idempotency store failures swallowed by the guard",
    ["operation"],  # lookup, save, duplicate
)

idempotency_records_purged_counter = Counter(
    "idempotency_records_purged_total",
    "Expired idempotency records deleted by the reaper",
)

# API metrics
api_requests_total = Counter(
    "api_requests_total",
    "Total API requests",
    ["method", "endpoint", "status_code"],
)

api_request_duration = Histogram(
    "api_request_duration_seconds",
    "API request duration in seconds",
    ["method", "endpoint"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)


def initialize_metrics(app_name: str, version: str) -> None:
    """Initialize application metrics."""
    app_info.info({
        "app_name": app_name,
        "version": version,
    })
