from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from sales_os.api.routes import router as api_router
from sales_os.core.config import get_settings
from sales_os.core.context import RequestContextMiddleware
from sales_os.core.events import DomainEvent, event_bus
from sales_os.errors import SalesOSError
from sales_os.logging import configure_logging
from sales_os.middleware.correlation_id import CorrelationIdMiddleware
from sales_os.middleware.rate_limit import MutationRateLimitMiddleware
from sales_os.middleware.request_logging import RequestLoggingMiddleware
from sales_os.otel import configure_tracing, server_request_hook
from sales_os.pipeline.api import error_response, sales_error_response


configure_logging()
logger = logging.getLogger("sales_os.lifecycle")
_subscriptions_registered = False


def _on_system_started(event: DomainEvent) -> None:
    logger.info("system_event", extra={"event_name": event.name})


def _on_sales_domain_event(event: DomainEvent) -> None:
    payload = event.payload.get("payload") or {}
    logger.info(
        "domain_event",
        extra={
            "event_name": event.name,
            "actor_id": event.payload.get("actor_user_id"),
            "opportunity_id": payload.get("opportunity_id"),
            "from_stage": payload.get("from_stage"),
            "to_stage": payload.get("to_stage"),
        },
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _subscriptions_registered
    if not _subscriptions_registered:
        event_bus.subscribe("system.started", _on_system_started)
        event_bus.subscribe("sales.*", _on_sales_domain_event)
        _subscriptions_registered = True
    event_bus.publish("system.started", {"service": "api"})
    yield


app = FastAPI(title="Sales OS API", version="0.1.0", lifespan=lifespan)
app.add_middleware(MutationRateLimitMiddleware)
app.add_middleware(RequestContextMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)


@app.exception_handler(SalesOSError)
async def handle_sales_error(request: Request, exc: SalesOSError) -> JSONResponse:
    return sales_error_response(request, exc)


@app.exception_handler(RequestValidationError)
async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    return error_response(
        request,
        status_code=422,
        code="validation_failed",
        message="Request validation failed",
        details=jsonable_encoder(exc.errors(), custom_encoder={ValueError: str}),
    )


@app.exception_handler(Exception)
async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled_error", extra={"path": request.url.path, "error": type(exc).__name__})
    return error_response(request, status_code=500, code="internal_error", message="Internal server error")


configure_tracing(get_settings())

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=server_request_hook)
