"""
Studio Booking API — FastAPI backend
Events, recurring groups, subscriptions and the studio shop
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import settings
from db.database import engine
from routers import bookings, enrollments, groups, orders, payments, users
from services.errors import StudioError
from services.gateway import TinkoffGateway
from services.notifier import Notifier

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    # Startup
    app.state.notifier = Notifier.from_settings(settings)
    app.state.gateway = TinkoffGateway.from_settings(settings)
    logger.info(
        "Studio API starting (e-mail test mode: %s, online payments: %s)",
        app.state.notifier.test_mode, app.state.gateway.configured,
    )
    yield
    # Shutdown
    await engine.dispose()
    logger.info("Studio API shut down.")


app = FastAPI(
    title="Studio Booking API",
    description="Bookings, recurring groups, subscriptions and shop orders",
    version="1.0.0",
    lifespan=lifespan,
)

# ── CORS ───────────────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Restrict in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── Errors ─────────────────────────────────────────────────
@app.exception_handler(StudioError)
async def studio_error_handler(request: Request, exc: StudioError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    else:
        logger.info("%s %s rejected (%s): %s", request.method, request.url.path, exc.code, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# ── Routers ────────────────────────────────────────────────
app.include_router(bookings.router, prefix="/api/bookings", tags=["Bookings"])
app.include_router(groups.router, prefix="/api/groups", tags=["Groups"])
app.include_router(groups.sessions_router, prefix="/api/sessions", tags=["Sessions"])
app.include_router(enrollments.router, prefix="/api/enrollments", tags=["Enrollments"])
app.include_router(orders.router, prefix="/api/orders", tags=["Orders"])
app.include_router(payments.router, prefix="/api/payments", tags=["Payments"])
app.include_router(users.router, prefix="/api/users", tags=["Users"])


@app.get("/health")
async def health_check():
    return {"status": "healthy", "service": "Studio Booking API"}
