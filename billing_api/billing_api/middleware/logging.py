"""Access logging for the billing API.

One ``billing_api.access`` record per request, tagged with a correlation
id, the calling principal and the billing identifiers found in the route
(``group_id``, ``order_id``, ``invoice_id``, ``gap_id``).  Webhook
signatures, cron secrets and cookies never reach the log.
"""

from __future__ import annotations

import logging
import time
import uuid
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger("billing_api.access")

CORRELATION_HEADER = "X-Correlation-ID"

_MASKED = "***"
_SECRET_HEADERS = frozenset({"authorization", "cookie", "x-razorpay-signature", "x-cron-secret"})
_ROUTE_IDS = ("group_id", "order_id", "invoice_id", "gap_id", "vendor_id")


def _headers(request: Request) -> dict[str, str]:
    return {name: _MASKED if name.lower() in _SECRET_HEADERS else value for name, value in request.headers.items()}


def _level_for(status_code: int) -> int:
    if status_code >= 500:
        return logging.ERROR
    if status_code >= 400:
        return logging.WARNING
    return logging.INFO


def access_entry(
    request: Request, *, status_code: int, elapsed_ms: float, correlation_id: str
) -> dict[str, Any]:
    """Build the ``request`` mapping attached to an access-log record."""
    entry: dict[str, Any] = {
        "method": request.method,
        "path": request.url.path,
        "status_code": status_code,
        "duration_ms": elapsed_ms,
        "correlation_id": correlation_id,
        "principal_id": request.headers.get("x-principal-id") or "anonymous",
        "idempotency_key": request.headers.get("idempotency-key"),
        "headers": _headers(request),
    }
    if request.url.query:
        entry["query"] = request.url.query
    # Router fills path_params on the shared scope once a route matched.
    params = request.scope.get("path_params") or {}
    entry.update({key: params[key] for key in _ROUTE_IDS if key in params})
    return entry


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log each request once it completes and echo its correlation id."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        correlation_id = request.headers.get(CORRELATION_HEADER) or uuid.uuid4().hex
        request.state.correlation_id = correlation_id
        started = time.perf_counter()

        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            response.headers[CORRELATION_HEADER] = correlation_id
            return response
        finally:
            entry = access_entry(
                request,
                status_code=status_code,
                elapsed_ms=round((time.perf_counter() - started) * 1000, 2),
                correlation_id=correlation_id,
            )
            logger.log(
                _level_for(status_code),
                "%s %s -> %d",
                request.method,
                request.url.path,
                status_code,
                extra={"request": entry},
            )
