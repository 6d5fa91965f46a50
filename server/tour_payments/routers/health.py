"""Health check router."""

import logging
from datetime import datetime, timezone

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from ..core.dependencies import Gateways
from ..gateways.registry import GatewayRegistry
from ..schemas.health import HealthResponse, HealthStatus

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/health", tags=["health"])


@router.post("/ping", response_model=HealthResponse)
async def health_ping(gateways: GatewayRegistry = Gateways) -> JSONResponse:
    """
    Health check endpoint.

    Reports degraded when no payment method can take payments. Always 200:
    the process itself is alive.
    """
    available = gateways.availability()
    response_data = HealthResponse(
        status=HealthStatus.HEALTHY if any(available.values()) else HealthStatus.DEGRADED,
        timestamp=datetime.now(timezone.utc),
        payment_methods=available,
    )

    if response_data.status == HealthStatus.DEGRADED:
        logger.warning("No payment method is configured", extra={"payment_methods": available})

    return JSONResponse(
        status_code=200,
        content=response_data.model_dump(mode="json")
    )
