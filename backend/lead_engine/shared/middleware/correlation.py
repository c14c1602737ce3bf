"""
Request Middleware

Assigns a correlation ID to each HTTP request (webhooks, triggers, admin calls)
so its log lines can be traced end to end.
"""
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from lead_engine.shared.core.logging import set_correlation_id


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """
    - Reuses an incoming X-Request-ID header (distributed tracing) or generates req-xxxxxxxx
    - Echoes the ID back in the X-Request-ID response header
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))

        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id

        return response
