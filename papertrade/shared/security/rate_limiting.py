"""
Rate limiting configuration and setup.

Uses slowapi to enforce per-endpoint rate limits, keyed by the caller's
session id so that clients behind one address do not share a bucket.
"""

from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from starlette.requests import Request
from starlette.responses import JSONResponse

from papertrade.core.config import settings

SESSION_HEADER = "X-Session-Id"


def caller_key(request: Request) -> str:
    """Identify the caller: session header first, client address otherwise."""
    session_id = request.headers.get(SESSION_HEADER, "").strip()
    if session_id:
        return f"session:{session_id}"
    return get_remote_address(request)


limiter = Limiter(key_func=caller_key, default_limits=[settings.rate_limit_default])


async def rate_limit_exceeded_handler(
    _request: Request, exc: RateLimitExceeded
) -> JSONResponse:
    """Handle rate limit exceeded errors with a clean JSON response.

    Args:
        _request: The incoming HTTP request.
        exc: The rate limit exceeded exception.

    Returns:
        A 429 JSON response with a clear error message.
    """
    return JSONResponse(
        status_code=429,
        content={"error": "Rate limit exceeded", "detail": str(exc.detail)},
    )
