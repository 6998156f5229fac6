"""
Prometheus metrics, kept in the default in-process registry.

HTTP traffic is labelled by route template so path parameters such as
campaign ids do not create new series. SMS outcomes are counted where
they are decided, gateway latency around each carrier call.
"""

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest

http_requests_total = Counter(
    "http_requests_total",
    "HTTP requests by method, route and status",
    labelnames=["method", "path", "status"],
)

request_latency_seconds = Histogram(
    "request_latency_seconds",
    "HTTP request latency in seconds",
    labelnames=["method", "path"],
)

# provider: twilio, textbee
# operation: send, fetch_status, send_batch
gateway_latency_seconds = Histogram(
    "sms_gateway_latency_seconds",
    "Carrier API call latency in seconds",
    labelnames=["provider", "operation"],
)

# kind: single, batch
# result: sent, failed, blocked, skipped
sms_send_total = Counter(
    "sms_send_total",
    "Outbound SMS send attempts by outcome",
    labelnames=["kind", "result"],
)

# result: updated, unchanged, error
sms_status_checks_total = Counter(
    "sms_status_checks_total",
    "Gateway status lookups by outcome",
    labelnames=["result"],
)

# result: sent, failed
campaign_dispatch_total = Counter(
    "campaign_dispatch_total",
    "Campaign dispatch attempts by outcome",
    labelnames=["result"],
)


def record_http_request(method: str, path: str, status: int, latency_seconds: float) -> None:
    """
    Args:
        method: HTTP method
        path: Route template, e.g. /campaigns/{campaign_id}
        status: Response status code
        latency_seconds: Time spent handling the request
    """
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    request_latency_seconds.labels(method=method, path=path).observe(latency_seconds)


def time_gateway_call(provider: str, operation: str):
    """Context manager observing the duration of one carrier API call."""
    return gateway_latency_seconds.labels(provider=provider, operation=operation).time()


def record_send_outcome(kind: str, result: str) -> None:
    sms_send_total.labels(kind=kind, result=result).inc()


def record_status_check(result: str) -> None:
    sms_status_checks_total.labels(result=result).inc()


def record_campaign_dispatch(result: str) -> None:
    campaign_dispatch_total.labels(result=result).inc()


def get_metrics() -> bytes:
    """Current registry in Prometheus text exposition format."""
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
