"""Per-caller token buckets for mutating ``/api`` requests.

Each (caller, collection) pair gets ``capacity`` writes per window, refilled
continuously. Reads are never limited. State is process-local.
"""

from __future__ import annotations

import math
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from sales_os.core.auth import token_subject
from sales_os.core.config import get_settings
from sales_os.core.context import collection_from_path
from sales_os.pipeline.api import error_response


MUTATING_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})
WINDOW_SECONDS = 60


@dataclass
class _Bucket:
    tokens: float
    refilled_at: float


class MutationRateLimiter:
    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._buckets: dict[tuple[str, str], _Bucket] = {}

    def acquire(self, caller: str, collection: str, capacity: int, window_seconds: int = WINDOW_SECONDS) -> int:
        """Take one token; returns 0 when allowed, otherwise seconds until one is available."""
        if capacity <= 0:
            return window_seconds

        rate = capacity / window_seconds
        now = self._clock()
        with self._lock:
            bucket = self._buckets.setdefault((caller, collection), _Bucket(tokens=float(capacity), refilled_at=now))
            bucket.tokens = min(float(capacity), bucket.tokens + (now - bucket.refilled_at) * rate)
            bucket.refilled_at = now
            if bucket.tokens >= 1.0:
                bucket.tokens -= 1.0
                return 0
            return max(1, math.ceil((1.0 - bucket.tokens) / rate))

    def clear(self) -> None:
        with self._lock:
            self._buckets.clear()


_limiter = MutationRateLimiter()


def reset_rate_limiter() -> None:
    _limiter.clear()


def _caller_key(request: Request) -> str:
    subject = token_subject(request)
    if subject:
        return f"user:{subject}"
    return f"addr:{request.client.host}" if request.client else "anonymous"


class MutationRateLimitMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        settings = get_settings()
        collection = collection_from_path(request.url.path)
        if settings.rate_limit_disabled or collection is None or request.method.upper() not in MUTATING_METHODS:
            return await call_next(request)

        retry_after = _limiter.acquire(_caller_key(request), collection, settings.rate_limit_mutations_per_minute)
        if not retry_after:
            return await call_next(request)

        response = error_response(
            request,
            status_code=429,
            code="rate_limited",
            message="Too many requests",
            details={"collection": collection, "retry_after_seconds": retry_after},
        )
        response.headers["Retry-After"] = str(retry_after)
        return response
