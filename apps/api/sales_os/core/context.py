from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request


_correlation_id: ContextVar[str | None] = ContextVar("sales_os_correlation_id", default=None)


def get_correlation_id() -> str | None:
    return _correlation_id.get()


@contextmanager
def correlation_scope(correlation_id: str | None) -> Iterator[None]:
    """Make ``correlation_id`` visible to logs and events raised inside the block."""
    token = _correlation_id.set(correlation_id)
    try:
        yield
    finally:
        _correlation_id.reset(token)


@dataclass
class RequestContext:
    """Who is calling and under which correlation id, filled in as the request is resolved."""

    correlation_id: str
    actor_id: str | None = None
    actor_role: str | None = None

    def bind_actor(self, actor_id: str, role: str) -> None:
        self.actor_id = actor_id
        self.actor_role = role


def get_request_context(request: Request) -> RequestContext | None:
    return getattr(request.state, "context", None)


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        request.state.context = RequestContext(correlation_id=getattr(request.state, "correlation_id", None) or "")
        return await call_next(request)


def collection_from_path(path: str) -> str | None:
    """``/api/leads/rec1`` -> ``leads``; ``None`` outside ``/api``."""
    parts = [part for part in path.split("/") if part]
    if len(parts) >= 2 and parts[0] == "api":
        return parts[1]
    return None
