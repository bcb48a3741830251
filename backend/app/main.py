"""LessonPass subscription service — FastAPI application entry point."""

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.api.v1.subscription import public_router as free_access_router
from app.api.v1.subscription import router as subscription_router
from app.api.v1.webhooks import router as webhooks_router
from app.billing.errors import BillingError
from app.billing.sweeper import StaleSweeper
from app.config import settings

# Configure root logger so all app.* loggers output to stderr (captured by Docker).
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan handler for startup and shutdown events."""
    from app.database import async_session_factory, engine

    # Startup: background sweep of abandoned checkouts
    sweeper_task: asyncio.Task | None = None
    if settings.sweep_interval_seconds > 0:
        sweeper = StaleSweeper(settings)
        sweeper_task = asyncio.create_task(
            sweeper.run_periodic(async_session_factory, settings.sweep_interval_seconds)
        )

    yield

    # Shutdown: stop the sweeper, then dispose engine connections
    if sweeper_task is not None:
        sweeper_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await sweeper_task
    await engine.dispose()


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Subscription and payment service for LessonPass: trials, Razorpay checkout and webhooks.",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(BillingError)
async def billing_error_handler(request: Request, exc: BillingError) -> JSONResponse:
    """Render domain errors with their mapped status and a safe reason."""
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc.context)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# Routers
app.include_router(subscription_router)
app.include_router(free_access_router)
app.include_router(webhooks_router)


@app.get("/health", tags=["health"])
async def health_check() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "healthy", "service": settings.app_name}


@app.get("/", tags=["root"])
async def root() -> dict[str, str]:
    """Root endpoint."""
    return {
        "service": settings.app_name,
        "version": settings.app_version,
        "docs": "/docs",
    }
