# API Routes
from .availability_routes import router as availability_router
from .booking_routes import router as booking_router
from .escalation_routes import router as escalation_router

__all__ = [
    "availability_router",
    "booking_router",
    "escalation_router",
]
