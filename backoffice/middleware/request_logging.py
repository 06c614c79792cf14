from __future__ import annotations

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from backoffice.metrics import observe_http_request, resolve_http_path_label


logger = logging.getLogger("backoffice.request")


def level_for_status(status_code: int) -> int:
    if status_code >= 500:
        return logging.ERROR
    if status_code in (401, 403, 409):
        return logging.WARNING
    return logging.INFO


def _finish(request: Request, started: float, status_code: int) -> dict[str, object]:
    duration = time.perf_counter() - started
    path = resolve_http_path_label(request)
    observe_http_request(method=request.method, path=path, status=status_code, duration=duration)
    return {
        "method": request.method,
        "path": path,
        "status_code": status_code,
        "duration_ms": round(duration * 1000, 2),
    }


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """One structured line per request, labelled with the route template rather than the raw path."""

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            logger.error("http.error", exc_info=True, extra=_finish(request, started, 500))
            raise

        fields = _finish(request, started, response.status_code)
        logger.log(level_for_status(response.status_code), "http.request", extra=fields)
        return response
