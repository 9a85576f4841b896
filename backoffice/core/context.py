from __future__ import annotations

from dataclasses import dataclass

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

ACTING_USER_HEADER = "x-acting-user-id"


@dataclass(frozen=True)
class RequestContext:
    correlation_id: str | None
    acting_user_id: str | None


def request_context(request: Request) -> RequestContext:
    context = getattr(request.state, "context", None)
    if isinstance(context, RequestContext):
        return context
    return RequestContext(correlation_id=getattr(request.state, "correlation_id", None), acting_user_id=None)


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Captures the requested acting user; whether it is honoured is decided by the actor dependency."""

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        context = RequestContext(
            correlation_id=getattr(request.state, "correlation_id", None),
            acting_user_id=(request.headers.get(ACTING_USER_HEADER) or "").strip() or None,
        )
        request.state.context = context
        response = await call_next(request)
        if context.correlation_id:
            response.headers["x-request-id"] = context.correlation_id
        return response
