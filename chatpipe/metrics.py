"""
Prometheus metrics for the delivery pipeline.

This module provides:
- HTTP request counter (method, path, status)
- Request latency histogram (method, path)
- Send outcome counter (result)
- Chunk group reassembly counter (outcome)
- Edit outcome counter (result)
- Offline queue event counter (event)

Metrics are stored in-memory using prometheus-client.
"""

from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST


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

# result: stored, chunked, rejected, error
messages_sent_total = Counter(
    "messages_sent_total",
    "Outcomes of server-side send attempts",
    labelnames=["result"]
)

# outcome: reassembled, partial, malformed
chunk_groups_total = Counter(
    "chunk_groups_total",
    "Chunk groups seen on the read path",
    labelnames=["outcome"]
)

# result: accepted, rejected
edits_total = Counter(
    "edits_total",
    "Message edit outcomes",
    labelnames=["result"]
)

# event: enqueued, sent, retry, dropped
queue_events_total = Counter(
    "queue_events_total",
    "Offline send queue events",
    labelnames=["event"]
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


def record_send_outcome(result: str) -> None:
    messages_sent_total.labels(result=result).inc()


def record_chunk_group(outcome: str) -> None:
    chunk_groups_total.labels(outcome=outcome).inc()


def record_edit_outcome(result: str) -> None:
    edits_total.labels(result=result).inc()


def record_queue_event(event: str) -> None:
    queue_events_total.labels(event=event).inc()


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    """
    Get the content type for Prometheus metrics.

    Returns:
        Content type string for Prometheus exposition format
    """
    return CONTENT_TYPE_LATEST
