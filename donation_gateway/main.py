import time
from contextlib import asynccontextmanager

import structlog
import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from donation_gateway.api.payments import router as payments_router
from donation_gateway.core.config import get_settings
from donation_gateway.core.exceptions import (
    DonationGatewayError,
    DonationValidationError,
    PaymentInitiationError,
    ProcessorUnavailableError,
    UnverifiableDonationError,
)
from donation_gateway.core.logging import configure_logging
from donation_gateway.core.rate_limiter import RateLimiter
from donation_gateway.database.database import close_db, engine, init_db
from donation_gateway.middleware.logging import logging_middleware
from donation_gateway.middleware.metrics import MetricsMiddleware, metrics_endpoint
from donation_gateway.middleware.tracing import init_tracing
from donation_gateway.services.notification import NotificationClient
from donation_gateway.services.payment_client import PaymentGatewayClient
from donation_gateway.services.token_cache import TokenCache

settings = get_settings()
configure_logging(settings)
logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize collaborators on startup and release them on shutdown"""
    logger.info("Starting Donation Payment Service", service_name=settings.service_name)

    try:
        await init_db()
        logger.info("Database initialized")

        payment_client = PaymentGatewayClient(settings)
        app.state.payment_client = payment_client
        app.state.token_cache = TokenCache(
            payment_client.request_token,
            refresh_margin=settings.token_refresh_margin_seconds,
            default_ttl=settings.token_default_ttl_seconds,
        )
        app.state.notifier = NotificationClient(settings)
        app.state.rate_limiter = RateLimiter(
            redis_url=settings.redis_url,
            enabled=settings.rate_limit_enabled
        )

        logger.info("Application startup completed successfully")
    except Exception as e:
        logger.error("Failed to initialize application", error=str(e))
        raise

    yield

    logger.info("Shutting down Donation Payment Service")
    try:
        await app.state.rate_limiter.close()
        await close_db()
        logger.info("Application shutdown completed successfully")
    except Exception as e:
        logger.error("Error during application shutdown", error=str(e))


app = FastAPI(
    title=settings.app_name,
    description="Donation intake and payment gateway API",
    version="1.0.0",
    debug=settings.debug,
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

init_tracing(app, settings, engine)

app.add_middleware(MetricsMiddleware)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Logging middleware with trace correlation"""
    return await logging_middleware(request, call_next)


@app.exception_handler(DonationGatewayError)
async def donation_error_handler(request: Request, exc: DonationGatewayError):
    """Translate domain errors into the public error bodies"""
    content = {"success": False, "error": exc.public_message}

    if isinstance(exc, DonationValidationError):
        content = {"success": False, "errors": exc.errors}
    elif isinstance(exc, PaymentInitiationError):
        content["donationRef"] = exc.donation_ref
    elif isinstance(exc, UnverifiableDonationError):
        content["donationRef"] = exc.donation_ref
        content["status"] = exc.current_status
    elif isinstance(exc, ProcessorUnavailableError) and exc.status_code == 503:
        content["error"] = "Payment service not configured"

    log = logger.warning if exc.status_code < 500 else logger.error
    log(
        "Request failed",
        error_type=type(exc).__name__,
        error=str(exc),
        status_code=exc.status_code,
        path=request.url.path
    )

    return JSONResponse(status_code=exc.status_code, content=content)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler"""
    logger.error(
        "Unhandled exception",
        error=str(exc),
        method=request.method,
        path=request.url.path
    )

    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": "Internal server error"
        }
    )


@app.get("/health")
async def health_check():
    """Basic health check"""
    return {
        "status": "healthy",
        "service": settings.service_name,
        "timestamp": time.time()
    }


@app.get("/metrics")
async def metrics(request: Request):
    """Prometheus metrics endpoint"""
    return await metrics_endpoint(request)


@app.get("/health/ready")
async def readiness_check():
    """Readiness check with database connectivity"""
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))

        return {
            "status": "ready",
            "service": settings.service_name,
            "database": "connected",
            "timestamp": time.time()
        }
    except Exception as e:
        logger.error("Readiness check failed", error=str(e))
        return JSONResponse(
            status_code=503,
            content={
                "status": "not ready",
                "service": settings.service_name,
                "database": "disconnected",
                "timestamp": time.time()
            }
        )


app.include_router(payments_router)


if __name__ == "__main__":
    uvicorn.run(
        "donation_gateway.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
        log_level="info" if not settings.debug else "debug"
    )
