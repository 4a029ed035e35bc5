import uuid
from dataclasses import dataclass

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

REQUEST_ID_HEADER = "x-request-id"


@dataclass
class RequestContext:
    """Per-request identity; the auth dependency fills in the user and hub once the token is read."""

    request_id: str
    correlation_id: str
    user_id: str | None = None
    hub_id: str | None = None


def get_request_context(request: Request) -> RequestContext | None:
    return getattr(request.state, "context", None)


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = getattr(request.state, "correlation_id", None) or ""
        request.state.context = RequestContext(
            request_id=str(uuid.uuid4()),
            correlation_id=correlation_id,
        )
        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request.state.context.request_id
        return response
