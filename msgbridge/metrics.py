"""
Prometheus metrics for the delivery gateway.

This module provides:
- HTTP request counter (method, path, status) and latency histogram
- Webhook outcome counter (result)
- Outbound provider call counter (outcome)
- Queue processor counters (message outcome, per-subscriber deliveries)

Metrics are stored in-memory using prometheus-client.
"""

from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST


# =============================================================================
# Metric Definitions
# =============================================================================

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "path", "status"]
)

# result: incoming, delivery_report, unclassified, not_found,
# invalid_signature, verified, verify_rejected, error
webhook_requests_total = Counter(
    "webhook_requests_total",
    "Total webhook processing outcomes",
    labelnames=["result"]
)

# outcome: success, rejected (non-2xx), error (transport)
gateway_requests_total = Counter(
    "gateway_requests_total",
    "Outbound provider requests",
    labelnames=["outcome"]
)

# outcome: processed, requeued, failed
queue_messages_total = Counter(
    "queue_messages_total",
    "Queued messages handled by the processor",
    labelnames=["outcome"]
)

queue_deliveries_total = Counter(
    "queue_deliveries_total",
    "Per-subscriber delivery attempts",
    labelnames=["channel", "success"]
)

# Using default buckets: .005, .01, .025, .05, .075, .1, .25, .5, .75, 1.0, 2.5, 5.0, 7.5, 10.0
request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)


# =============================================================================
# Helper Functions
# =============================================================================

def record_http_request(method: str, path: str, status: int, latency_seconds: float) -> None:
    """
    Record an HTTP request in metrics.

    Webhook paths carry per-route tokens, so they are collapsed to
    /webhooks to keep label cardinality bounded.
    """
    normalized_path = path.split("?")[0]
    if normalized_path.startswith("/webhooks/"):
        normalized_path = "/webhooks"

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


def record_gateway_outcome(outcome: str) -> None:
    gateway_requests_total.labels(outcome=outcome).inc()


def record_queue_outcome(outcome: str) -> None:
    queue_messages_total.labels(outcome=outcome).inc()


def record_delivery(channel: str, success: bool) -> None:
    queue_deliveries_total.labels(channel=channel, success=str(success).lower()).inc()


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
    """
    return CONTENT_TYPE_LATEST
