"""FastAPI routers package."""

from .booking import router as booking_router
from .health import router as health_router
from .jobs import router as jobs_router
from .metrics import router as metrics_router
from .payment import router as payment_router
from .waitlist import router as waitlist_router

__all__ = [
    "booking_router",
    "health_router",
    "jobs_router",
    "metrics_router",
    "payment_router",
    "waitlist_router",
]
