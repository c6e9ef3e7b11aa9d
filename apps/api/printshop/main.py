from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from sqlalchemy.exc import SQLAlchemyError

from printshop.api.routes import router as api_router
from printshop.context import get_correlation_id
from printshop.core.config import get_settings
from printshop.core.context import RequestContextMiddleware
from printshop.core.errors import BillingError
from printshop.core.events import InternalEvent, event_bus
from printshop.logging import configure_logging
from printshop.middleware.correlation_id import CorrelationIdMiddleware
from printshop.middleware.rate_limit import CodeRedemptionRateLimitMiddleware
from printshop.middleware.request_logging import RequestLoggingMiddleware
from printshop.otel import get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("printshop.lifecycle")
_subscriptions_registered = False


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event_name": event.name})


def _on_grace_period_expired(event: InternalEvent) -> None:
    # Asset storage subscribes to the same event and performs the purge.
    logger.info(
        "grace.assets_eligible_for_cleanup",
        extra={
            "event_name": event.name,
            "user_id": event.payload.get("user_id"),
            "previous_tier": event.payload.get("previous_tier"),
            "tier": event.payload.get("tier"),
        },
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _subscriptions_registered
    if not _subscriptions_registered:
        event_bus.subscribe("system.started", _on_system_started)
        event_bus.subscribe("subscription.grace_period_expired", _on_grace_period_expired)
        _subscriptions_registered = True
    event_bus.publish("system.started", {"service": "api"})
    yield


app = FastAPI(title="Printshop API", version="0.1.0", lifespan=lifespan)
app.add_middleware(CodeRedemptionRateLimitMiddleware)
app.add_middleware(RequestContextMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)


@app.exception_handler(BillingError)
async def billing_error_handler(request: Request, exc: BillingError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.warning("request.billing_error", extra={"path": request.url.path, "error": exc.code})
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "error": exc.code,
            "message": exc.message,
            "details": exc.details or None,
            "correlation_id": get_correlation_id(),
        },
    )


@app.exception_handler(SQLAlchemyError)
async def database_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    logger.error("request.database_error", extra={"path": request.url.path, "error": exc.__class__.__name__}, exc_info=exc)
    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": "internal_error",
            "details": None,
            "correlation_id": get_correlation_id(),
        },
    )


settings = get_settings()
if settings.otel_enabled:
    setup_otel("api", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
