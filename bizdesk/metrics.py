"""
Prometheus metrics for bizdesk.

Tracks BFF HTTP requests, calls to the backend API, retries of transient
backend failures and real-time chat events.
"""

from fastapi import Response
from prometheus_client import (CONTENT_TYPE_LATEST, Counter, Gauge, Histogram,
                               generate_latest)

# Request metrics
http_requests_total = Counter(
    "bizdesk_http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status"],
)

http_request_duration_seconds = Histogram(
    "bizdesk_http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=(0.01, 0.025, 0.05, 0.075, 0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0),
)

# Backend API metrics
api_requests_total = Counter(
    "bizdesk_api_requests_total",
    "Total requests sent to the backend API",
    ["method", "outcome"],
)

api_request_duration_seconds = Histogram(
    "bizdesk_api_request_duration_seconds",
    "Backend API request duration in seconds",
    ["method"],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

api_retries_total = Counter(
    "bizdesk_api_retries_total",
    "Retries of transient backend database failures",
    ["kind"],
)

# Real-time metrics
realtime_events_total = Counter(
    "bizdesk_realtime_events_total",
    "Real-time events received",
    ["event"],
)

realtime_connected = Gauge(
    "bizdesk_realtime_connected",
    "1 while the real-time transport is connected",
)


def track_request_metrics(
    method: str, endpoint: str, status_code: int, duration: float
):
    """Track HTTP request metrics."""
    http_requests_total.labels(
        method=method, endpoint=endpoint, status=status_code
    ).inc()
    http_request_duration_seconds.labels(method=method, endpoint=endpoint).observe(
        duration
    )


def track_api_request(method: str, outcome: str, duration: float):
    """Track a backend API call."""
    api_requests_total.labels(method=method, outcome=outcome).inc()
    api_request_duration_seconds.labels(method=method).observe(duration)


def track_api_retry(kind: str):
    """Track a retried backend call."""
    api_retries_total.labels(kind=kind).inc()


def track_realtime_event(event: str):
    """Track a received real-time event."""
    realtime_events_total.labels(event=event).inc()


def update_realtime_connected(connected: bool):
    """Update the real-time connection gauge."""
    realtime_connected.set(1 if connected else 0)


async def metrics_endpoint():
    """
    Prometheus metrics endpoint.

    Returns:
        Response with Prometheus metrics in text format
    """
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
