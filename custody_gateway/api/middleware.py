"""Request tracing middleware and bearer-token parsing for the gateway API."""

from __future__ import annotations

import time
import uuid
from collections.abc import Callable

import structlog
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from custody_gateway.api.metrics import REQUEST_COUNT, REQUEST_LATENCY
from custody_gateway.errors import UnauthorizedError

log = structlog.get_logger()

_SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "no-referrer",
    "Cache-Control": "no-store",
}

# Probes and scrapes are neither counted nor logged.
_UNTRACKED_PATHS = frozenset({"/health", "/health/ready", "/metrics"})


def _endpoint_label(request: Request) -> str:
    """Route template (``/api/transaction/{tx_hash}``) so metrics stay low-cardinality."""
    route = request.scope.get("route")
    return getattr(route, "path", None) or "unmatched"


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Tag every request with an ID and record API traffic.

    The ID is the caller's ``X-Request-ID`` when present, otherwise a fresh
    uuid4 hex. It is bound to structlog contextvars for the whole request
    (so ``request_id`` lands on every log line, including upstream client
    logs) and echoed on the response next to the security headers.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        structlog.contextvars.clear_contextvars()
        request_id = request.headers.get("x-request-id") or uuid.uuid4().hex
        structlog.contextvars.bind_contextvars(request_id=request_id)
        started = time.perf_counter()
        try:
            response = await call_next(request)
            self._decorate(response, request_id)
            if request.url.path not in _UNTRACKED_PATHS:
                self._record(request, response.status_code, time.perf_counter() - started)
            return response
        finally:
            structlog.contextvars.clear_contextvars()

    @staticmethod
    def _decorate(response: Response, request_id: str) -> None:
        response.headers["X-Request-ID"] = request_id
        for header, value in _SECURITY_HEADERS.items():
            response.headers.setdefault(header, value)

    @staticmethod
    def _record(request: Request, status: int, elapsed_s: float) -> None:
        endpoint = _endpoint_label(request)
        REQUEST_COUNT.labels(method=request.method, endpoint=endpoint, status=status).inc()
        REQUEST_LATENCY.labels(endpoint=endpoint).observe(elapsed_s)
        log.info(
            "request",
            method=request.method,
            endpoint=endpoint,
            path=request.url.path,
            status=status,
            duration_ms=round(elapsed_s * 1000, 1),
            client=request.client.host if request.client else "unknown",
        )


def parse_bearer(header: str | None) -> str:
    """Extract the token from an ``Authorization: Bearer <token>`` header."""
    if not header:
        raise UnauthorizedError("Missing Authorization header")
    scheme, _, token = header.strip().partition(" ")
    token = token.strip()
    if scheme.lower() != "bearer" or not token:
        raise UnauthorizedError("Invalid Authorization header format. Use 'Bearer <token>'")
    return token
