"""
Prometheus metrics for the chat relay.

This module provides:
- HTTP request counter and latency histogram (health/metrics routes)
- Relay event outcome counter (event, result)
- Persisted message counter and online user gauge
- Backup push/restore counters

Metrics are stored in-memory using prometheus-client.
"""

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest


# =============================================================================
# Metric Definitions
# =============================================================================

# HTTP request counter with labels for method, path, and status code
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "path", "status"]
)

# Request latency histogram in seconds
request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)

# Relay outcomes per inbound event
# result: delivered, offline, stored, invalid_payload, store_error, unknown_event, ...
relay_events_total = Counter(
    "relay_events_total",
    "Total relay event outcomes",
    labelnames=["event", "result"]
)

messages_persisted_total = Counter(
    "messages_persisted_total",
    "Messages written to the durable store"
)

online_users = Gauge(
    "online_users",
    "Users with a live registered connection"
)

# result: success, empty, failed
backup_push_total = Counter(
    "backup_push_total",
    "Backup push ticks by outcome",
    labelnames=["result"]
)

backup_rows_pushed_total = Counter(
    "backup_rows_pushed_total",
    "Rows confirmed by the remote backup store"
)

# result: restored, skipped, failed
backup_restore_rows_total = Counter(
    "backup_restore_rows_total",
    "Rows processed by restore, by outcome",
    labelnames=["result"]
)


# =============================================================================
# Helper Functions
# =============================================================================

def record_http_request(method: str, path: str, status: int, latency_seconds: float) -> None:
    """
    Record an HTTP request in metrics.

    Args:
        method: HTTP method (GET, POST, etc.)
        path: Request path
        status: HTTP status code
        latency_seconds: Request processing time in seconds
    """
    # Normalize path to avoid high-cardinality labels
    normalized_path = path.split("?")[0]

    http_requests_total.labels(
        method=method,
        path=normalized_path,
        status=str(status)
    ).inc()

    request_latency_seconds.labels(
        method=method,
        path=normalized_path
    ).observe(latency_seconds)


def record_relay_event(event: str, result: str) -> None:
    """
    Record the outcome of handling one inbound event.

    Args:
        event: Known event name, or "unknown" for anything else
        result: Outcome label
    """
    relay_events_total.labels(event=event, result=result).inc()


def record_message_persisted() -> None:
    messages_persisted_total.inc()


def set_online_users(count: int) -> None:
    online_users.set(count)


def record_backup_push(result: str, rows: int = 0) -> None:
    """
    Record a push tick.

    Args:
        result: "success", "empty" or "failed"
        rows: Rows confirmed by the remote store during the tick
    """
    backup_push_total.labels(result=result).inc()
    if rows:
        backup_rows_pushed_total.inc(rows)


def record_restore_row(result: str) -> None:
    backup_restore_rows_total.labels(result=result).inc()


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    """Get the content type for Prometheus metrics."""
    return CONTENT_TYPE_LATEST
