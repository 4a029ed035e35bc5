from __future__ import annotations

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.core.context import get_request_context
from app.metrics import observe_http_request, resolve_http_path_label


logger = logging.getLogger("app.request")


def _hub_of(request: Request) -> str | None:
    context = get_request_context(request)
    return context.hub_id if context else None


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Access log line and HTTP metrics for every request, labelled by route template."""

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        method = request.method
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            duration = time.perf_counter() - started
            path = resolve_http_path_label(request)
            observe_http_request(method=method, path=path, status=500, duration=duration)
            logger.error(
                "http.error",
                exc_info=True,
                extra={
                    "method": method,
                    "path": path,
                    "status_code": 500,
                    "duration_ms": round(duration * 1000, 2),
                    "hub_id": _hub_of(request),
                },
            )
            raise

        duration = time.perf_counter() - started
        # The route is only resolved once the app has handled the request.
        path = resolve_http_path_label(request)
        observe_http_request(method=method, path=path, status=response.status_code, duration=duration)
        logger.info(
            "http.request",
            extra={
                "method": method,
                "path": path,
                "status_code": response.status_code,
                "duration_ms": round(duration * 1000, 2),
                "hub_id": _hub_of(request),
            },
        )
        return response
