"""
Application entry point.

Creates the FastAPI application and wires together:
- Routers (market, realtime, health)
- Error handlers (centralized domain-to-HTTP mapping)
- Security middleware (headers, rate limiting)
- Logging configuration
- Market components (simulation service, optimizer worker, stream,
  scheduler), started and stopped by the lifespan

No business logic belongs here.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from slowapi.errors import RateLimitExceeded

from papertrade.core.config import Settings, settings as default_settings
from papertrade.interfaces.health import router as health_router
from papertrade.interfaces.market.dependencies import (
    MarketComponents,
    build_market_components,
)
from papertrade.interfaces.market.router import router as market_router
from papertrade.interfaces.realtime import router as realtime_router
from papertrade.shared.errors.handlers import register_error_handlers
from papertrade.shared.logging import configure_logging
from papertrade.shared.security.headers import SecurityHeadersMiddleware
from papertrade.shared.security.rate_limiting import limiter, rate_limit_exceeded_handler

logger = logging.getLogger(__name__)


def _lifespan(settings: Settings, components: Optional[MarketComponents]):
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Build the market, resume persisted state, start the clock."""
        market = components or build_market_components(settings)
        market.stream.bind_loop(asyncio.get_running_loop())
        await asyncio.to_thread(market.market.initialize)
        app.state.market = market

        if settings.scheduler_enabled:
            market.scheduler.start()
        else:
            logger.info("Scheduler disabled; ticks only run on demand.")

        yield

        market.shutdown()
        logger.info("Market components stopped.")

    return lifespan


def create_app(
    settings: Optional[Settings] = None,
    components: Optional[MarketComponents] = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Registers routers, error handlers, and security middleware.
    This is the composition root of the application.

    Args:
        settings: Application settings. Defaults to the environment.
        components: Pre-built market components (tests inject their own).

    Returns:
        A fully configured FastAPI application instance.
    """
    settings = settings or default_settings
    configure_logging(level=settings.log_level)

    app = FastAPI(
        title=settings.project_name,
        version=settings.version,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=_lifespan(settings, components),
    )

    # --- Rate Limiting ---
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)

    # --- Security Middleware ---
    app.add_middleware(SecurityHeadersMiddleware)

    # --- Error Handlers ---
    register_error_handlers(app)

    # --- Routers ---
    app.include_router(health_router, prefix="/api/v1")
    app.include_router(market_router, prefix="/api/v1")
    app.include_router(realtime_router, prefix="/api/v1")

    return app


app = create_app()
