"""Prometheus metrics for filedeps.

Metrics are disabled by default. Set ENABLE_METRICS=1 to enable.
"""

import os
import time

_metrics_enabled = os.getenv("ENABLE_METRICS", "").lower() in ("1", "true", "yes")

_metrics_initialized = False

REQUESTS_TOTAL = None
REQUEST_DURATION = None
EXTRACTIONS_TOTAL = None
EXTRACTION_DURATION = None
EDGES_EXTRACTED = None
CLOSURE_REQUESTS_TOTAL = None
CLOSURE_EDGES_RETURNED = None
GRAPH_NODES = None
HEALTH_CHECKS_TOTAL = None


class NoOpMetric:
    """No-op metric that does nothing when called."""

    def __init__(self, *args, **kwargs):
        pass

    def labels(self, **kwargs):
        return self

    def inc(self, amount=1):
        pass

    def dec(self, amount=1):
        pass

    def set(self, value):
        pass

    def observe(self, amount):
        pass


def _initialize_metrics():
    """Initialize Prometheus metrics if enabled."""
    global _metrics_initialized
    global REQUESTS_TOTAL, REQUEST_DURATION, EXTRACTIONS_TOTAL, EXTRACTION_DURATION
    global EDGES_EXTRACTED, CLOSURE_REQUESTS_TOTAL, CLOSURE_EDGES_RETURNED
    global GRAPH_NODES, HEALTH_CHECKS_TOTAL

    if _metrics_initialized:
        return

    _metrics_initialized = True

    if not _metrics_enabled:
        REQUESTS_TOTAL = NoOpMetric()
        REQUEST_DURATION = NoOpMetric()
        EXTRACTIONS_TOTAL = NoOpMetric()
        EXTRACTION_DURATION = NoOpMetric()
        EDGES_EXTRACTED = NoOpMetric()
        CLOSURE_REQUESTS_TOTAL = NoOpMetric()
        CLOSURE_EDGES_RETURNED = NoOpMetric()
        GRAPH_NODES = NoOpMetric()
        HEALTH_CHECKS_TOTAL = NoOpMetric()
        return

    # Imported lazily so that disabled metrics never touch the default registry
    from prometheus_client import Counter, Histogram

    REQUESTS_TOTAL = Counter(
        "filedeps_requests_total",
        "Total requests",
        ["endpoint", "method", "status"]
    )

    REQUEST_DURATION = Histogram(
        "filedeps_request_duration_seconds",
        "Request duration in seconds",
        ["endpoint", "method"]
    )

    EXTRACTIONS_TOTAL = Counter(
        "filedeps_extractions_total",
        "Total edge extraction runs",
        ["status"]
    )

    EXTRACTION_DURATION = Histogram(
        "filedeps_extraction_duration_seconds",
        "Edge extraction duration in seconds"
    )

    EDGES_EXTRACTED = Histogram(
        "filedeps_edges_extracted",
        "Number of edges persisted per extraction run",
        buckets=(0, 10, 100, 1000, 10000, 100000)
    )

    CLOSURE_REQUESTS_TOTAL = Counter(
        "filedeps_closure_requests_total",
        "Total transitive closure requests"
    )

    CLOSURE_EDGES_RETURNED = Histogram(
        "filedeps_closure_edges_returned",
        "Number of closure paths returned",
        ["has_cycles"]
    )

    GRAPH_NODES = Histogram(
        "filedeps_graph_nodes_returned",
        "Number of nodes in assembled graph views",
        buckets=(0, 10, 100, 1000, 10000)
    )

    HEALTH_CHECKS_TOTAL = Counter(
        "filedeps_health_checks_total",
        "Total health checks",
        ["endpoint", "status"]
    )


_initialize_metrics()


def get_metrics_response():
    """Get Prometheus metrics response."""
    from fastapi.responses import Response

    if not _metrics_enabled:
        return Response(
            content="# Metrics disabled. Set ENABLE_METRICS=1 to enable.\n",
            media_type="text/plain"
        )

    from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


class MetricsMiddleware:
    """ASGI middleware to collect request metrics."""

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        start_time = time.time()
        path = scope["path"]
        method = scope["method"]
        status_code = [200]

        async def send_wrapper(message):
            if message["type"] == "http.response.start":
                status_code[0] = message["status"]
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        except Exception:
            status_code[0] = 500
            raise
        finally:
            REQUESTS_TOTAL.labels(endpoint=path, method=method, status=status_code[0]).inc()
            REQUEST_DURATION.labels(endpoint=path, method=method).observe(time.time() - start_time)
