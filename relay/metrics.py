"""
Prometheus metrics for the relay.

This module provides:
- HTTP request counter (method, path, status) and latency histogram
- WebSocket frame counter (direction, type)
- Protocol error counter (reason)
- Presence transition counter and present-sessions gauge
- History append outcome counter (result)

Metrics are stored in-memory using prometheus-client.
"""

from prometheus_client import Counter, Gauge, Histogram, generate_latest, CONTENT_TYPE_LATEST


# =============================================================================
# Metric Definitions
# =============================================================================

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "path", "status"]
)

request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)

# direction: in, out
relay_frames_total = Counter(
    "relay_frames_total",
    "WebSocket frames handled by the relay",
    labelnames=["direction", "type"]
)

# reason: malformed, unknown_type, invalid, unexpected
relay_protocol_errors_total = Counter(
    "relay_protocol_errors_total",
    "Inbound frames dropped as protocol errors",
    labelnames=["reason"]
)

# transition: joined, adopted, rejected, away, back, left
presence_transitions_total = Counter(
    "presence_transitions_total",
    "Session presence transitions",
    labelnames=["transition"]
)

present_sessions = Gauge(
    "present_sessions",
    "Sessions currently present (online, away or within the grace window)"
)

# result: created, duplicate, degraded
history_appends_total = Counter(
    "history_appends_total",
    "History log append outcomes",
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


def record_frame(direction: str, frame_type: str) -> None:
    relay_frames_total.labels(direction=direction, type=frame_type).inc()


def record_protocol_error(reason: str) -> None:
    relay_protocol_errors_total.labels(reason=reason).inc()


def record_presence(transition: str, present: int) -> None:
    """
    Record a presence transition and the resulting present-session count.

    Args:
        transition: joined, adopted, rejected, away, back or left
        present: number of sessions in the registry after the transition
    """
    presence_transitions_total.labels(transition=transition).inc()
    present_sessions.set(present)


def record_history_append(result: str) -> None:
    history_appends_total.labels(result=result).inc()


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
