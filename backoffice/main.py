from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from backoffice import __version__
from backoffice.api.routes import router as api_router
from backoffice.core.config import get_settings
from backoffice.core.context import RequestContextMiddleware
from backoffice.core.events import InternalEvent, event_bus
from backoffice.crm.api import ActingUserError, acting_user_error_handler
from backoffice.logging import configure_logging
from backoffice.middleware.correlation_id import CorrelationIdMiddleware
from backoffice.middleware.request_logging import RequestLoggingMiddleware
from backoffice.otel import correlation_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("backoffice.lifecycle")


def log_pipeline_outcome(event: InternalEvent) -> None:
    _, entity_type, outcome = event.name.split(".", 2)
    payload = event.payload.get("payload") or {}
    logger.info(
        "pipeline_outcome",
        extra={
            "entity_type": entity_type,
            "entity_id": payload.get(f"{entity_type}_id"),
            "action": outcome,
        },
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    for pattern in ("crm.*.won", "crm.*.lost"):
        event_bus.subscribe(pattern, log_pipeline_outcome)
    logger.info("service_started", extra={"action": "startup"})
    yield
    for pattern in ("crm.*.won", "crm.*.lost"):
        event_bus.unsubscribe(pattern, log_pipeline_outcome)


def create_app() -> FastAPI:
    settings = get_settings()
    application = FastAPI(title=settings.app_name, version=__version__, lifespan=lifespan)
    # Starlette runs the last-added middleware first.
    application.add_middleware(RequestContextMiddleware)
    application.add_middleware(RequestLoggingMiddleware)
    application.add_middleware(CorrelationIdMiddleware)
    application.include_router(api_router)
    application.add_exception_handler(ActingUserError, acting_user_error_handler)  # type: ignore[arg-type]

    setup_otel(settings)
    FastAPIInstrumentor.instrument_app(application, server_request_hook=correlation_request_hook)
    return application


app = create_app()
