"""
Prometheus metrics for the bot backend.

This module provides:
- HTTP request counter (method, path, status) and latency histogram
- Webhook outcome counter (result)
- Inbound message outcome counter and bot response latency histogram
- Outbound delivery counter

Metrics are stored in-memory using prometheus-client.
"""

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest


# =============================================================================
# Metric Definitions
# =============================================================================

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "path", "status"]
)

# result: processed, verified, verification_failed, invalid_signature, validation_error
webhook_requests_total = Counter(
    "webhook_requests_total",
    "Total webhook processing outcomes",
    labelnames=["result"]
)

request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)

# outcome: responded, duplicate, failed
messages_processed_total = Counter(
    "messages_processed_total",
    "Inbound messages by processing outcome",
    labelnames=["outcome"]
)

message_response_time_ms = Histogram(
    "message_response_time_ms",
    "Time from message receipt to resolved bot response in milliseconds",
    buckets=(1, 5, 10, 25, 50, 100, 250, 500, 1000, 2500, 5000)
)

# outcome: sent, failed
outbound_messages_total = Counter(
    "outbound_messages_total",
    "Outbound bot messages by delivery outcome",
    labelnames=["outcome"]
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


def record_webhook_outcome(result: str) -> None:
    webhook_requests_total.labels(result=result).inc()


def record_message_outcome(outcome: str, response_time_ms: int = None) -> None:
    """
    Record how the pipeline finished one inbound message.

    Args:
        outcome: "responded", "duplicate" or "failed"
        response_time_ms: latency, observed only for responded messages
    """
    messages_processed_total.labels(outcome=outcome).inc()
    if response_time_ms is not None:
        message_response_time_ms.observe(response_time_ms)


def record_outbound_message(outcome: str) -> None:
    outbound_messages_total.labels(outcome=outcome).inc()


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
