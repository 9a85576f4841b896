from __future__ import annotations

import uuid

from opentelemetry import trace
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from backoffice.context import correlation_scope

HEADER = "x-correlation-id"
MAX_LENGTH = 128


def incoming_correlation_id(request: Request) -> str:
    value = (request.headers.get(HEADER) or "").strip()
    if not value or len(value) > MAX_LENGTH:
        return str(uuid.uuid4())
    return value


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = incoming_correlation_id(request)
        request.state.correlation_id = correlation_id
        span = trace.get_current_span()
        if span.is_recording():
            span.set_attribute("correlation_id", correlation_id)

        with correlation_scope(correlation_id):
            response = await call_next(request)
        response.headers[HEADER] = correlation_id
        return response
