"""HTTP metrics for the channel API.

Series are keyed by the matched route template (``/api/v1/wallets/{wallet_id}``),
never the raw path. Requests that match no route share the ``unmatched``
label. Scrapes of ``/metrics`` itself are not counted.
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING

from prometheus_client import Counter, Gauge, Histogram
from starlette.middleware.base import BaseHTTPMiddleware

if TYPE_CHECKING:
    from collections.abc import Callable

    from prometheus_client import CollectorRegistry
    from starlette.requests import Request
    from starlette.responses import Response

UNMATCHED_ROUTE = "unmatched"
_SKIPPED_PATHS = frozenset({"/metrics"})


def route_template(request: Request) -> str:
    """The path template of the route that handled *request*."""
    route = request.scope.get("route")
    return getattr(route, "path", UNMATCHED_ROUTE)


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Counts, times and tracks in-flight requests per route template."""

    def __init__(self, app: object, *, registry: CollectorRegistry) -> None:
        super().__init__(app)  # type: ignore[arg-type]
        self._requests = Counter(
            "tapchannel_http_requests",
            "HTTP requests handled",
            ("method", "route", "status_code"),
            registry=registry,
        )
        self._latency = Histogram(
            "tapchannel_http_request_duration_seconds",
            "HTTP request latency",
            ("method", "route"),
            registry=registry,
        )
        self._in_flight = Gauge(
            "tapchannel_http_requests_in_flight",
            "HTTP requests being handled",
            registry=registry,
        )

    async def dispatch(self, request: Request, call_next: Callable) -> Response:  # type: ignore[type-arg]
        if request.url.path in _SKIPPED_PATHS:
            return await call_next(request)

        self._in_flight.inc()
        start = time.monotonic()
        try:
            response: Response = await call_next(request)
        finally:
            self._in_flight.dec()
        elapsed = time.monotonic() - start

        # The router stores the matched route in the shared scope.
        template = route_template(request)
        self._requests.labels(request.method, template, str(response.status_code)).inc()
        self._latency.labels(request.method, template).observe(elapsed)
        return response
