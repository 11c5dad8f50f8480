import logging
import time
from contextlib import asynccontextmanager

import sentry_sdk
from fastapi import FastAPI, Request
from fastapi.exception_handlers import http_exception_handler
from fastapi.middleware.cors import CORSMiddleware
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from starlette.exceptions import HTTPException as StarletteHTTPException

from billsync.api.routes import health
from billsync.api.routes import sync as sync_routes
from billsync.clients.paypal import PayPalError
from billsync.config import settings
from billsync.core.database import dispose_database, init_database
from billsync.services.subscriptions.errors import SubscriptionSyncError
from billsync.services.subscriptions.sync import shutdown_sync_service

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    logger.info(f"Starting {settings.app_name} v{settings.app_version}")

    if settings.sentry_dsn:
        sentry_sdk.init(
            dsn=settings.sentry_dsn,
            integrations=[
                FastApiIntegration(),
                LoggingIntegration(level=logging.INFO),
            ],
            traces_sample_rate=0.1,
            environment=settings.environment,
        )
        logger.info("Sentry initialized")

    await init_database()

    missing = settings.missing_sync_settings()
    if missing:
        logger.warning("subscription.sync.unconfigured", extra={"missing": missing})

    logger.info("Application startup complete")

    yield

    logger.info("Shutting down application")
    await shutdown_sync_service()
    await dispose_database()


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="PayPal subscription lifecycle synchronization service",
    lifespan=lifespan,
    debug=settings.debug,
)

if settings.cors_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


@app.middleware("http")
async def log_requests(request: Request, call_next):
    started = time.perf_counter()
    response = await call_next(request)
    logger.info(
        "http.request",
        extra={
            "method": request.method,
            "path": request.url.path,
            "status_code": response.status_code,
            "duration_ms": round((time.perf_counter() - started) * 1000, 2),
        },
    )
    return response


@app.exception_handler(SubscriptionSyncError)
async def handle_sync_error(request: Request, exc: SubscriptionSyncError):
    logger.error("subscription.sync.unhandled", extra={"code": exc.code, "path": request.url.path})
    return sync_routes.sync_error_response(exc)


@app.exception_handler(PayPalError)
async def handle_paypal_error(request: Request, exc: PayPalError):
    logger.error("paypal.unhandled", extra={"code": exc.code, "path": request.url.path})
    return sync_routes.sync_error_response(exc)


@app.exception_handler(StarletteHTTPException)
async def handle_http_error(request: Request, exc: StarletteHTTPException):
    if exc.status_code == 405 and request.url.path == sync_routes.SYNC_PATH:
        return sync_routes.method_not_allowed_response()
    return await http_exception_handler(request, exc)


app.include_router(health.router, prefix="/health", tags=["health"])
app.include_router(sync_routes.router, tags=["billing"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "message": f"Welcome to {settings.app_name}",
        "version": settings.app_version,
        "environment": settings.environment,
    }
