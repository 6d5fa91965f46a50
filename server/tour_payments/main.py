"""FastAPI application initialization and configuration."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .core.config import settings
from .core.database import close_db, get_db, init_db
from .core.dependencies import Gateways
from .core.exceptions import (
    ProblemDetailsException,
    generic_exception_handler,
    problem_details_handler,
    validation_exception_handler,
)
from .core.middleware import setup_middleware
from .core.observability import (
    SERVICE_NAME,
    instrument_fastapi,
    instrument_sqlalchemy,
    setup_metrics,
    setup_structured_logging,
    setup_tracing,
)
from .gateways.registry import GatewayRegistry
from .routers import admin, callbacks, health, metrics, payments
from .workers.manager import worker_manager

# Configure structured logging
setup_structured_logging()

# Stdlib loggers (services, routers, workers) share the level
logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)

logger = logging.getLogger(__name__)

VERSION = "1.0.0"


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Set up telemetry, tables and workers; tear them down on shutdown."""
    logger.info(
        "Starting payments API",
        extra={
            "environment": settings.environment,
            "debug": settings.debug,
            "sweep_enabled": settings.sweep_enabled,
        }
    )

    setup_tracing(SERVICE_NAME)
    setup_metrics(SERVICE_NAME)
    instrument_sqlalchemy()
    await init_db()
    await worker_manager.start_all()

    logger.info("Application startup complete")

    yield

    logger.info("Shutting down payments API")
    try:
        await worker_manager.stop_all()
    finally:
        await close_db()
    logger.info("Application shutdown complete")


def create_app() -> FastAPI:
    """
    Create and configure the FastAPI application.

    Returns:
        FastAPI: Configured FastAPI application instance
    """
    app = FastAPI(
        title="Tour Payments API",
        description="Payment initiation and gateway reconciliation for tour bookings "
                    "(card, M-Pesa, PesaPal and bank transfer)",
        version=VERSION,
        debug=settings.debug,
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
    )

    # Gateway callbacks come from provider servers, so CORS only matters for our client
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "Idempotency-Key", "X-Request-ID"],
        expose_headers=["X-Request-ID", "Idempotent-Replayed"],
    )

    setup_middleware(app, enable_logging=True)
    instrument_fastapi(app)

    app.add_exception_handler(ProblemDetailsException, problem_details_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)

    @app.get("/health", tags=["Health"], summary="Liveness", response_model=dict)
    async def health_check():
        return {
            "status": "healthy",
            "service": SERVICE_NAME,
            "version": VERSION,
            "environment": settings.environment,
            "debug": settings.debug,
        }

    @app.get("/ready", tags=["Health"], summary="Readiness", response_model=dict)
    async def readiness_check(
        db: AsyncSession = Depends(get_db),
        gateways: GatewayRegistry = Gateways,
    ):
        """
        Ready when the database answers.

        Gateway availability is reported but does not fail readiness; bank
        transfer bookings still work without any gateway.
        """
        try:
            await db.execute(text("SELECT 1"))
            database = "ok"
        except SQLAlchemyError as e:
            logger.warning("Readiness check failed", extra={"error": str(e)})
            database = "unavailable"

        ready = database == "ok"
        return JSONResponse(
            status_code=status.HTTP_200_OK if ready else status.HTTP_503_SERVICE_UNAVAILABLE,
            content={
                "status": "ready" if ready else "not_ready",
                "service": SERVICE_NAME,
                "checks": {"database": database},
                "payment_methods": gateways.availability(),
            },
        )

    @app.get("/info", tags=["Info"], summary="Service Information", response_model=dict)
    async def service_info():
        return {
            "service": SERVICE_NAME,
            "version": VERSION,
            "description": "Payment initiation and reconciliation for tour bookings",
            "environment": settings.environment,
            "features": {
                "authentication": True,
                "idempotency": True,
                "problem_details": True,
                "pending_payment_sweep": settings.sweep_enabled,
                "strict_rate_class": settings.strict_rate_class,
            },
            "currencies": {
                "local": settings.local_currency,
                "settlement": settings.settlement_currency,
            },
            "workers": worker_manager.status(),
        }

    app.include_router(health.router)
    app.include_router(payments.router)
    app.include_router(callbacks.router)
    app.include_router(admin.router)
    app.include_router(metrics.router)

    return app


# Create the application instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "tour_payments.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
        access_log=True,
    )
