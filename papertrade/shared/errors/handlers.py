"""
Centralized error handlers for FastAPI.

Maps market domain errors to HTTP responses.
No stack traces or internal details are exposed to clients.
All error responses use the ErrorResponse shape: {"error", "detail"}.
"""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from papertrade.domain.market.errors import (
    InvalidBudgetError,
    InvalidParameterError,
    MarketDomainError,
    OptimizationSupersededError,
    OptimizationTimeoutError,
    OptimizerInfeasibleError,
    ServiceUnavailableError,
    UnknownSymbolError,
    UnknownTimeframeError,
)

logger = logging.getLogger(__name__)

HTTP_404 = 404
HTTP_409 = 409
HTTP_422 = 422
HTTP_500 = 500
HTTP_503 = 503
HTTP_504 = 504


def _error_response(status_code: int, error: str, detail: str | None = None) -> JSONResponse:
    """Build a consistent JSON error response."""
    body: dict[str, str | None] = {"error": error}
    if detail:
        body["detail"] = detail
    return JSONResponse(status_code=status_code, content=body)


def register_error_handlers(app: FastAPI) -> None:
    """Register all market error handlers on the FastAPI application.

    Args:
        app: The FastAPI application instance.
    """

    @app.exception_handler(UnknownSymbolError)
    async def handle_unknown_symbol(
        _request: Request, exc: UnknownSymbolError
    ) -> JSONResponse:
        logger.warning("Unknown symbol: %s", exc.symbol)
        return _error_response(HTTP_404, "Symbol not found", exc.symbol)

    @app.exception_handler(UnknownTimeframeError)
    async def handle_unknown_timeframe(
        _request: Request, exc: UnknownTimeframeError
    ) -> JSONResponse:
        logger.warning("Unknown timeframe: %s", exc.timeframe)
        return _error_response(
            HTTP_422, "Unknown timeframe", f"Supported: {', '.join(exc.supported)}"
        )

    @app.exception_handler(InvalidBudgetError)
    async def handle_invalid_budget(
        _request: Request, exc: InvalidBudgetError
    ) -> JSONResponse:
        logger.warning("Invalid budget: %s", exc.budget)
        return _error_response(HTTP_422, "Invalid budget", "Budget must be a finite value >= 0")

    @app.exception_handler(InvalidParameterError)
    async def handle_invalid_parameter(
        _request: Request, exc: InvalidParameterError
    ) -> JSONResponse:
        logger.warning("Invalid parameter %s: %s", exc.field, exc.reason)
        return _error_response(HTTP_422, "Invalid parameter", f"{exc.field}: {exc.reason}")

    @app.exception_handler(OptimizerInfeasibleError)
    async def handle_optimizer_infeasible(
        _request: Request, exc: OptimizerInfeasibleError
    ) -> JSONResponse:
        logger.warning("Optimizer infeasible: %s", exc.reason)
        return _error_response(HTTP_422, "Allocation infeasible", exc.reason)

    @app.exception_handler(OptimizationSupersededError)
    async def handle_superseded(
        _request: Request, exc: OptimizationSupersededError
    ) -> JSONResponse:
        logger.info("Allocation superseded for caller %s", exc.caller_id)
        return _error_response(
            HTTP_409, "Allocation superseded", "A newer request from this session replaced it"
        )

    @app.exception_handler(OptimizationTimeoutError)
    async def handle_timeout(
        _request: Request, exc: OptimizationTimeoutError
    ) -> JSONResponse:
        logger.warning("Allocation timed out after %.2fs", exc.timeout_seconds)
        return _error_response(HTTP_504, "Allocation timed out")

    @app.exception_handler(ServiceUnavailableError)
    async def handle_service_unavailable(
        _request: Request, exc: ServiceUnavailableError
    ) -> JSONResponse:
        logger.error("Collaborator unavailable: %s (%s)", exc.collaborator, exc.reason)
        return _error_response(HTTP_503, "Service unavailable", exc.collaborator)

    @app.exception_handler(MarketDomainError)
    async def handle_market_domain(
        _request: Request, exc: MarketDomainError
    ) -> JSONResponse:
        """Catch-all for unhandled market domain errors."""
        logger.error("Unhandled market domain error: %s", exc.message)
        return _error_response(HTTP_500, "Internal server error")

    @app.exception_handler(Exception)
    async def handle_unexpected(
        _request: Request, exc: Exception
    ) -> JSONResponse:
        """Catch-all for unexpected errors. Never exposes internals."""
        logger.exception("Unexpected error: %s", type(exc).__name__)
        return _error_response(HTTP_500, "Internal server error")
