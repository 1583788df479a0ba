"""
Operations Portal API
Global Bitrix24 order sync with status, health and order endpoints
"""
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.exceptions import RequestValidationError
from sqlalchemy.exc import SQLAlchemyError
from opsportal.core import config
from opsportal.core.config import APP_TITLE, APP_VERSION
from opsportal.core.middleware import request_logging_middleware
from opsportal.core.exceptions import BaseAPIException
from opsportal.core.error_handlers import (
    base_api_exception_handler,
    request_validation_exception_handler,
    http_exception_handler,
    sqlalchemy_exception_handler,
    general_exception_handler
)
from opsportal.bitrix.client import BitrixClient
from opsportal.database import AsyncSessionLocal, init_db
from opsportal.resilience.circuit_breaker import CircuitBreaker
from opsportal.resilience.rate_limiter import RateLimiter
from opsportal.sync.events import SyncEventBus
from opsportal.sync.fetcher import GlobalOrderFetcher
from opsportal.utils.logging import get_logger
import os
import json

logger = get_logger(__name__)

# Create FastAPI app
app = FastAPI(
    title=APP_TITLE,
    version=APP_VERSION,
    description="Global Bitrix24 order sync for the operations portal",
    docs_url="/docs",
    redoc_url="/redoc"
)

# Add request logging middleware
app.middleware("http")(request_logging_middleware)

# CORS configuration from environment variables
cors_origins = os.getenv("CORS_ORIGINS", '["*"]')
cors_allow_credentials = os.getenv("CORS_ALLOW_CREDENTIALS", "true").lower() == "true"
cors_allow_methods = os.getenv("CORS_ALLOW_METHODS", '["*"]')
cors_allow_headers = os.getenv("CORS_ALLOW_HEADERS", '["*"]')

# Parse JSON strings from environment variables
try:
    cors_origins = json.loads(cors_origins)
    cors_allow_methods = json.loads(cors_allow_methods)
    cors_allow_headers = json.loads(cors_allow_headers)
except json.JSONDecodeError:
    cors_origins = ["*"]
    cors_allow_methods = ["*"]
    cors_allow_headers = ["*"]

logger.info(f"CORS Configuration - Origins: {cors_origins}, Credentials: {cors_allow_credentials}")

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=cors_allow_credentials,
    allow_methods=cors_allow_methods,
    allow_headers=cors_allow_headers,
    max_age=3600,
)

# Register global exception handlers
app.add_exception_handler(RequestValidationError, request_validation_exception_handler)
app.add_exception_handler(BaseAPIException, base_api_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(SQLAlchemyError, sqlalchemy_exception_handler)
app.add_exception_handler(Exception, general_exception_handler)

# Import and register all routers
from opsportal.sync.router import router as global_sync_router
from opsportal.orders.router import router as orders_router

app.include_router(global_sync_router)
app.include_router(orders_router)


# Root endpoints
@app.get("/", tags=["Root"])
async def root():
    """Root endpoint with API information"""
    return {
        "message": f"{APP_TITLE} v{APP_VERSION}",
        "version": APP_VERSION,
        "docs": "/docs",
        "endpoints": {
            "global_sync": "/global-sync/status, /global-sync/health, /global-sync/sync, /global-sync/quick",
            "orders": "/orders, /orders/stats",
            "bitrix24": "/bitrix24/health"
        }
    }


@app.get('/health', tags=["System"])
async def health_check():
    """Health check endpoint"""
    return {"status": "healthy", "version": APP_VERSION}


def create_global_order_fetcher() -> GlobalOrderFetcher:
    """Wire the fetcher with its collaborators from configuration"""
    return GlobalOrderFetcher(
        source=BitrixClient(),
        session_factory=AsyncSessionLocal,
        rate_limiter=RateLimiter(),
        circuit_breaker=CircuitBreaker(name="bitrix24"),
        event_bus=SyncEventBus(),
        interval_seconds=config.SYNC_INTERVAL_SECONDS,
        fetch_timeout_seconds=config.SYNC_FETCH_TIMEOUT_SECONDS,
        page_size=config.SYNC_PAGE_SIZE,
        max_deals=config.SYNC_MAX_DEALS
    )


@app.on_event("startup")
async def startup_event():
    """Initialize application on startup"""
    logger.info(f"Starting {APP_TITLE} v{APP_VERSION}")

    await init_db()

    fetcher = create_global_order_fetcher()
    app.state.fetcher = fetcher

    if not fetcher.source.is_configured():
        logger.warning("[GLOBAL_SYNC] Bitrix24 webhook is not configured, global sync will not autostart")
    elif config.SYNC_AUTOSTART:
        # start() only schedules the ticker, the first cycle runs in the background
        fetcher.start()
        logger.info("[GLOBAL_SYNC] Global order fetcher started in background")
    else:
        logger.info("[GLOBAL_SYNC] Autostart disabled (SYNC_AUTOSTART=false)")

    logger.info("Application startup complete")


@app.on_event("shutdown")
async def shutdown_event():
    fetcher = getattr(app.state, "fetcher", None)
    if fetcher is None:
        return

    await fetcher.shutdown()
    if fetcher.event_bus is not None:
        await fetcher.event_bus.close()
    logger.info("Application shutdown complete")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
