"""Sharpline FastAPI application.

Wallet reliability scoring and market advice for binary prediction markets.
"""

import logging
import uuid
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from app.api.routes import admin, cron, db, health, markets, wallets
from app.config import get_settings
from app.models import Database
from app.services.cron_guard import AuthorizationError

settings = get_settings()

logging.basicConfig(format="%(message)s", level=settings.log_level.upper())

# Configure structured logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer(),
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler: owns the storage handle."""
    logger.info("starting_sharpline", version="0.1.0")
    app.state.database = Database.from_settings(settings)
    yield
    await app.state.database.dispose()
    logger.info("shutting_down_sharpline")


# Create FastAPI application
app = FastAPI(
    title="Sharpline",
    description="Wallet reliability scoring and market advice for binary prediction markets",
    version="0.1.0",
    lifespan=lifespan,
)

# Include API routers
app.include_router(health.router)
app.include_router(cron.router)
app.include_router(admin.router)
app.include_router(db.router)
app.include_router(markets.router)
app.include_router(wallets.router)


# Error handlers
@app.exception_handler(AuthorizationError)
async def unauthorized_handler(request: Request, exc: AuthorizationError):
    """Missing or wrong bearer token."""
    request_id = str(uuid.uuid4())
    logger.warning("unauthorized", path=request.url.path, request_id=request_id)
    return JSONResponse(
        status_code=401,
        content={"ok": False, "requestId": request_id, "error": str(exc)},
    )


@app.exception_handler(500)
async def server_error_handler(request: Request, exc):
    """Custom 500 handler."""
    logger.error("server_error", path=request.url.path, error=str(exc))
    return JSONResponse(
        status_code=500,
        content={"ok": False, "error": "Internal server error"},
    )
