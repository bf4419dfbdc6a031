"""
Health check router.

Liveness/readiness check. Reports the application version, the latest
tick cycle, and whether the market runs degraded (a persistence or
broadcast collaborator failed after its retry).
"""

from fastapi import APIRouter

from papertrade.interfaces.market.dependencies import Components
from papertrade.interfaces.market.schemas import HealthResponse

router = APIRouter(tags=["health"])


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Returns application health status, version and market cycle.",
)
def health_check(components: Components) -> HealthResponse:
    status = components.market.status()
    return HealthResponse(
        status="degraded" if status["degraded"] else "ok",
        version=components.settings.version,
        cycle=status["cycle"],
        degraded=status["degraded"],
        failures=status["failures"],
    )
