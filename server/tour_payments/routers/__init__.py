"""FastAPI routers package."""

from .admin import router as admin_router
from .callbacks import router as callbacks_router
from .health import router as health_router
from .metrics import router as metrics_router
from .payments import router as payments_router

__all__ = [
    "admin_router",
    "callbacks_router",
    "health_router",
    "metrics_router",
    "payments_router",
]
