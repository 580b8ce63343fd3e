from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from app.api.routes import router as api_router
from app.core.config import get_settings
from app.core.context import RequestContextMiddleware
from app.core.events import InternalEvent, event_bus
from app.logging import configure_logging
from app.middleware.correlation_id import CorrelationIdMiddleware
from app.middleware.request_logging import RequestLoggingMiddleware
from app.otel import get_fastapi_server_request_hook, setup_otel
from app.settings.api import settings_error_handler
from app.settings.dispatcher import shutdown_executor
from app.settings.errors import SettingsError


configure_logging()
logger = logging.getLogger("app.lifecycle")
_subscriptions_registered = False

_settings_event_types = [
    "settings.override.created",
    "settings.override.updated",
    "settings.override.deleted",
    "settings.company.provisioned",
]


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event_name": event.name, "event_payload": event.payload})


def _on_settings_event(event: InternalEvent) -> None:
    if not isinstance(event.payload, dict):
        return
    payload = event.payload.get("payload") or {}
    affected = payload.get("affected_user_ids") or []
    logger.info(
        "settings_event",
        extra={
            "event_name": event.name,
            "company_id": event.payload.get("company_id"),
            "record_id": payload.get("record_id"),
            "affected_count": len(affected),
        },
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _subscriptions_registered
    if not _subscriptions_registered:
        event_bus.subscribe("system.started", _on_system_started)
        for event_name in _settings_event_types:
            event_bus.subscribe(event_name, _on_settings_event)
        _subscriptions_registered = True
    event_bus.publish("system.started", {"service": "api"})
    yield
    shutdown_executor(wait=True)


app = FastAPI(title="Settings Overrides API", version="0.1.0", lifespan=lifespan)
app.add_middleware(RequestContextMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.add_exception_handler(SettingsError, settings_error_handler)
app.include_router(api_router)

settings = get_settings()
if settings.otel_enabled:
    setup_otel("api", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
