from __future__ import annotations

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from sales_os.core.context import get_request_context
from sales_os.metrics import observe_http_request, resolve_http_path_label


logger = logging.getLogger("sales_os.request")


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 2)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """One ``http.request`` line and one metrics observation per request, keyed by route template."""

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            self._record(request, 500, _elapsed_ms(started), failed=True)
            raise
        self._record(request, response.status_code, _elapsed_ms(started))
        return response

    def _record(self, request: Request, status_code: int, duration_ms: float, *, failed: bool = False) -> None:
        # the route, and with it the templated path, is only known after routing
        path = resolve_http_path_label(request)
        observe_http_request(method=request.method, path=path, status=status_code, duration=duration_ms / 1000)

        context = get_request_context(request)
        extra = {
            "method": request.method,
            "path": path,
            "status_code": status_code,
            "duration_ms": duration_ms,
            "actor_id": context.actor_id if context is not None else None,
            "role": context.actor_role if context is not None else None,
        }
        if failed:
            logger.error("http.error", exc_info=True, extra=extra)
        else:
            logger.info("http.request", extra=extra)
