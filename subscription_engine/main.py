"""Subscription Engine: FastAPI application entry point."""

import signal
import uuid
from contextlib import asynccontextmanager

# CRITICAL ORDER: configure_structlog MUST be called before all other package imports
# to avoid the structlog cache pitfall (structlog caches the processor chain on first use).
from subscription_engine.core.logging import configure_structlog
from subscription_engine.core.config import get_settings as _get_settings_early

_early_settings = _get_settings_early()
configure_structlog(
    log_level="DEBUG" if _early_settings.debug else "INFO",
    json_logs=not _early_settings.debug,
)

import structlog

from fastapi import FastAPI, Request, HTTPException
from fastapi.responses import JSONResponse

from subscription_engine.api.routes import api_router
from subscription_engine.core.config import get_settings
from subscription_engine.core.exceptions import QuotaExceeded, RateLimitExceeded
from subscription_engine.db import init_db, close_db, init_redis, close_redis
from subscription_engine.middleware.correlation import (
    setup_correlation_middleware,
    get_correlation_id,
)

logger = structlog.get_logger(__name__)


def validate_billing_config() -> None:
    """Fail fast if secrets or processor plan ids are missing at startup."""
    settings = get_settings()
    if settings.debug:
        return  # Skip in dev/test mode
    required = {
        "razorpay_key_secret": settings.razorpay_key_secret,
        "razorpay_webhook_secret": settings.razorpay_webhook_secret,
        "razorpay_plan_pro_monthly": settings.razorpay_plan_pro_monthly,
        "razorpay_plan_pro_yearly": settings.razorpay_plan_pro_yearly,
        "cron_secret": settings.cron_secret,
        "internal_api_token": settings.internal_api_token,
    }
    missing = [k for k, v in required.items() if not v]
    if missing:
        raise RuntimeError(f"Missing billing configuration at startup: {missing}")
    if settings.price_pro_yearly <= 0 or settings.price_pro_monthly <= 0:
        raise RuntimeError("Plan prices must be positive minor-unit amounts")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown events."""
    # SIGTERM flips this so the health check returns 503 while draining
    app.state.shutting_down = False

    def handle_sigterm(signum, frame):
        app.state.shutting_down = True
        logger.info("sigterm_received", action="health_check_503_draining_connections")

    signal.signal(signal.SIGTERM, handle_sigterm)

    settings = get_settings()
    logger.info("startup_begin", app_name=settings.app_name, debug=settings.debug)

    validate_billing_config()
    logger.info("billing_config_validated")

    await init_db()
    logger.info("db_initialized")

    await init_redis()
    logger.info("redis_initialized")

    yield

    logger.info("shutdown_begin")
    await close_redis()
    await close_db()
    logger.info("shutdown_complete")


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Global exception handler for HTTPException with debug_id tracking.

    Logs errors server-side with full context, returns sanitized response to client.
    """
    debug_id = str(uuid.uuid4())

    logger.error(
        "http_exception",
        status_code=exc.status_code,
        debug_id=debug_id,
        correlation_id=get_correlation_id(),
        path=request.url.path,
        method=request.method,
        detail=exc.detail,
    )

    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "debug_id": debug_id},
    )


async def quota_exceeded_handler(request: Request, exc: QuotaExceeded) -> JSONResponse:
    """Monthly quota exhausted: 429 with the counter so the UI can show an upgrade prompt."""
    logger.info("quota_exceeded", path=request.url.path, quota_type=exc.quota_type, used=exc.used, limit=exc.limit)
    return JSONResponse(
        status_code=429,
        content={
            "detail": str(exc),
            "quota_type": exc.quota_type,
            "used": exc.used,
            "limit": exc.limit,
        },
    )


async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    logger.info("rate_limit_exceeded", path=request.url.path, limit=exc.limit, reset_at=exc.reset_at)
    return JSONResponse(
        status_code=429,
        content={"detail": str(exc), "limit": exc.limit, "reset_at": exc.reset_at},
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Global exception handler for unhandled errors with debug_id tracking.

    Logs full exception with traceback, returns generic 500 to client.
    """
    debug_id = str(uuid.uuid4())

    logger.error(
        "unhandled_exception",
        debug_id=debug_id,
        correlation_id=get_correlation_id(),
        path=request.url.path,
        method=request.method,
        error=str(exc),
        error_type=type(exc).__name__,
        exc_info=True,
    )

    # Return generic 500 (no internal details leaked)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error", "debug_id": debug_id},
    )


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        description="Subscription lifecycle, entitlements and usage quotas",
        version="0.1.0",
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    # Correlation ID middleware (runs first on incoming requests)
    setup_correlation_middleware(app)

    # Exception handlers
    app.exception_handler(HTTPException)(http_exception_handler)
    app.exception_handler(QuotaExceeded)(quota_exceeded_handler)
    app.exception_handler(RateLimitExceeded)(rate_limit_exceeded_handler)
    app.exception_handler(Exception)(generic_exception_handler)

    app.include_router(api_router, prefix="/api")

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "subscription_engine.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
    )
