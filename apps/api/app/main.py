from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from app.api.routes import router as api_router
from app.core.config import get_settings
from app.core.context import RequestContextMiddleware
from app.core.events import InternalEvent, event_bus
from app.crm.api import crm_error_response, error_response
from app.crm.errors import CRMError, InputValidationError
from app.logging import configure_logging
from app.metrics import observe_domain_event
from app.middleware.correlation_id import CorrelationIdMiddleware
from app.middleware.request_logging import RequestLoggingMiddleware
from app.otel import get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("app.lifecycle")
_subscriptions_registered = False

CRM_EVENTS = "crm.*"


def _on_system_started(event: InternalEvent) -> None:
    settings = get_settings()
    logger.info(
        "system_event",
        extra={
            "event_name": event.name,
            "channel": ",".join(
                [
                    settings.channel_outbound_email,
                    settings.channel_replies,
                    settings.channel_clients,
                    settings.channel_tasks,
                ]
            ),
        },
    )


def _on_crm_domain_event(event: InternalEvent) -> None:
    observe_domain_event(event.name)
    payload = event.payload if isinstance(event.payload, dict) else {}
    logger.debug("domain_event", extra={"event_name": event.name, "hub_id": payload.get("hub_id")})


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _subscriptions_registered
    if not _subscriptions_registered:
        event_bus.subscribe("system.started", _on_system_started)
        event_bus.subscribe(CRM_EVENTS, _on_crm_domain_event)
        _subscriptions_registered = True
    event_bus.publish("system.started", {"service": "api"})
    yield


settings = get_settings()

app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)
app.add_middleware(RequestContextMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)


@app.exception_handler(CRMError)
async def handle_crm_error(request: Request, exc: CRMError):  # type: ignore[no-untyped-def]
    return crm_error_response(request, exc)


@app.exception_handler(RequestValidationError)
async def handle_request_validation_error(request: Request, exc: RequestValidationError):  # type: ignore[no-untyped-def]
    return error_response(
        request,
        status_code=InputValidationError.status_code,
        code=InputValidationError.code,
        message="request validation failed",
        details=jsonable_encoder(exc.errors()),
    )


if settings.otel_enabled:
    setup_otel("api", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
