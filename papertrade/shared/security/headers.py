"""
Secure HTTP headers middleware.

Adds security-related headers to every response. Market data changes
every tick, so responses are also marked as not cacheable.

No business logic. Pure cross-cutting concern.
"""

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

SECURE_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Content-Security-Policy": "default-src 'self'; connect-src 'self' ws: wss:",
    "Cache-Control": "no-store",
}


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Middleware that adds secure HTTP headers to every HTTP response.

    WebSocket handshakes bypass BaseHTTPMiddleware and are unaffected.
    """

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        response = await call_next(request)
        for header_name, header_value in SECURE_HEADERS.items():
            response.headers.setdefault(header_name, header_value)
        return response
