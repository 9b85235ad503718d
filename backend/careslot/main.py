"""
FastAPI Main Application Entry Point for Careslot.

Scheduling and booking engine for clinicians and sample-collection agents:
- Recurring availability and slot listing
- Atomic, overlap-free reservations with reschedule and cancellation cutoffs
- Deadline tracking and escalation of breached operational tasks
- Background escalation scan
"""
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .core.config import settings
from .core.exceptions import CareslotException
from .api.routes import availability_router, booking_router, escalation_router
from .services.scheduler import get_scheduler


# Configure logging
logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler.

    Starts the escalation scan scheduler on the one worker configured to
    run it and stops it on shutdown.
    """
    logger.info(f"Starting {settings.app_name} v{settings.app_version}")
    logger.info(f"Clinic timezone: {settings.clinic_timezone}")
    logger.info(f"Scheduler enabled: {settings.enable_scheduler}")
    logger.info(f"Run scheduler (this instance): {settings.run_scheduler}")

    app.state.scheduler = None

    # Set RUN_SCHEDULER=true on only ONE worker/container in production
    if settings.enable_scheduler and settings.run_scheduler:
        app.state.scheduler = get_scheduler()
        app.state.scheduler.start()

    yield

    if app.state.scheduler and app.state.scheduler.is_running:
        app.state.scheduler.stop()

    logger.info("Shutting down...")


# Create FastAPI application
app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="""
    # Careslot - Scheduling & Booking Engine

    ## Features
    - **Availability**: providers publish weekly rules; slots are computed per request
    - **Bookings**: one active reservation per provider window, even under concurrent requests
    - **Cutoffs**: changes inside the minimum-notice window need an admin override
    - **Escalations**: AT_RISK / BREACHED operational tasks, most overdue first

    Conflicts and cutoff violations return 409 with a "try a different time" message.
    """,
    lifespan=lifespan,
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
)


# Configure CORS for frontend communication
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Global exception handler for CareslotExceptions
@app.exception_handler(CareslotException)
async def careslot_exception_handler(request, exc: CareslotException):
    """Handle all CareslotException subclasses."""
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_dict(),
    )


# Include API routers
app.include_router(availability_router)
app.include_router(booking_router)
app.include_router(escalation_router)


# Health check endpoint
@app.get("/health", tags=["System"])
async def health_check():
    """
    Health check endpoint for monitoring.

    Returns service status and scheduler health.
    """
    scheduler = getattr(app.state, "scheduler", None) or get_scheduler()
    scheduler_status = scheduler.get_health_status()

    return {
        "status": scheduler_status["status"],
        "service": settings.app_name,
        "version": settings.app_version,
        "debug": settings.debug,
        "scheduler": scheduler_status,
        "timestamp": datetime.now(timezone.utc).isoformat()
    }


# Root endpoint
@app.get("/", tags=["System"])
async def root():
    """Root endpoint with API information."""
    return {
        "message": f"Welcome to {settings.app_name}",
        "version": settings.app_version,
        "docs": "/docs" if settings.debug else "Docs disabled in production",
        "health": "/health",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "careslot.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
    )
