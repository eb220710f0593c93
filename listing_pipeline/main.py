"""
Listing Enhancement Pipeline - Main Application

FastAPI trigger and status surface for the preparation pipeline with:
- API versioning (/api/v1/)
- Structured logging with structlog
- Prometheus metrics
- Global exception handling
- Signed static serving of the local image store
"""

import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
import redis.asyncio as redis
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from listing_pipeline.core.config import settings
from listing_pipeline.core.database import create_db_and_tables, engine
from listing_pipeline.core.logging import setup_logging, get_logger
from listing_pipeline.core.exceptions import register_exception_handlers
from listing_pipeline.core.metrics import set_app_info, http_requests_total, http_request_duration_seconds
from listing_pipeline.core.storage import StorageFactory
from listing_pipeline.api.v1 import api_v1_router


# =============================================================================
# Initialize Logging
# =============================================================================
setup_logging(
    log_level=settings.LOG_LEVEL,
    json_format=settings.LOG_FORMAT_JSON,
    service="api",
    version=settings.APP_VERSION
)
logger = get_logger(__name__)


# =============================================================================
# Lifespan Handler
# =============================================================================
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler - startup and shutdown."""
    startup_start = time.time()

    logger.info(
        "application_starting",
        app_name=settings.APP_NAME,
        version=settings.APP_VERSION,
        environment=settings.ENVIRONMENT
    )

    # Initialize database
    await create_db_and_tables()
    logger.info("database_initialized")

    # Initialize Redis connection (checkpoints and cancellation flags)
    app.state.redis = redis.from_url(
        settings.REDIS_URL,
        encoding="utf-8",
        decode_responses=True
    )
    logger.info("redis_connected", url=settings.REDIS_URL)

    if settings.ENVIRONMENT != "development" and settings.STORAGE_SIGNING_SECRET == "local-dev-signing-secret":
        logger.warning("storage_signing_secret_default", environment=settings.ENVIRONMENT)

    set_app_info(
        version=settings.APP_VERSION,
        environment=settings.ENVIRONMENT
    )

    startup_time = time.time() - startup_start
    logger.info("application_ready", startup_time_seconds=startup_time)

    yield

    # Shutdown
    logger.info("application_shutting_down")
    await app.state.redis.aclose()
    await engine.dispose()
    logger.info("application_shutdown_complete")


# =============================================================================
# Create FastAPI Application
# =============================================================================
app = FastAPI(
    title=settings.APP_NAME,
    description="""
    Listing preparation pipeline:

    - **Analysis**: vision model classifies every photo
    - **Strategy**: per-photo enhancement plan, hero and twilight selection
    - **Enhancement**: routed tool calls with retries and checkpoints
    - **Finalization**: prepared or needs_review from the failure ratio

    All endpoints are versioned under `/api/v1/`
    """,
    version=settings.APP_VERSION,
    lifespan=lifespan,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json"
)


# =============================================================================
# Middleware
# =============================================================================

# CORS
cors_origins = settings.CORS_ORIGINS.split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Request timing middleware
@app.middleware("http")
async def add_request_timing(request: Request, call_next):
    """Track request timing for metrics."""
    start_time = time.time()
    response = await call_next(request)
    duration = time.time() - start_time

    # Matched route template keeps label cardinality bounded
    route = request.scope.get("route")
    endpoint = getattr(route, "path", request.url.path)

    http_request_duration_seconds.labels(
        method=request.method,
        endpoint=endpoint
    ).observe(duration)

    http_requests_total.labels(
        method=request.method,
        endpoint=endpoint,
        status=response.status_code
    ).inc()

    response.headers["X-Process-Time"] = str(duration)

    return response


# =============================================================================
# Register Exception Handlers
# =============================================================================
register_exception_handlers(app)


# =============================================================================
# Include API Routers
# =============================================================================
app.include_router(api_v1_router)


# =============================================================================
# Image Store
# =============================================================================

# Local image store, addressed by the signed URLs LocalStorage hands out
@app.get("/static/storage/{storage_key:path}", include_in_schema=False)
async def serve_stored_image(storage_key: str, expires: int = 0, sig: str = ""):
    """Serve an image store object while its signed URL is valid."""
    storage = StorageFactory.get_storage()
    try:
        path = storage.resolve_signed(storage_key, expires, sig)
    except PermissionError as e:
        logger.warning("storage_url_rejected", storage_key=storage_key, reason=str(e))
        return JSONResponse(status_code=403, content={"detail": "Invalid or expired URL"})
    except (FileNotFoundError, ValueError):
        return JSONResponse(status_code=404, content={"detail": "Not found"})
    return FileResponse(path)


# =============================================================================
# Root Endpoints
# =============================================================================

@app.get("/", tags=["root"])
async def root():
    """Root endpoint with API information."""
    return {
        "name": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "environment": settings.ENVIRONMENT,
        "docs": "/api/docs",
        "api_v1": "/api/v1",
        "metrics": "/api/v1/metrics"
    }


@app.get("/health", tags=["health"])
async def health():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "version": settings.APP_VERSION
    }


@app.get("/ready", tags=["health"])
async def ready(request: Request):
    """Readiness check - verifies dependencies are available."""
    checks = {
        "redis": False,
        "database": False
    }

    try:
        await request.app.state.redis.ping()
        checks["redis"] = True
    except (RedisError, OSError) as e:
        logger.warning("readiness_redis_failed", error=str(e))

    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        checks["database"] = True
    except (SQLAlchemyError, OSError) as e:
        logger.warning("readiness_database_failed", error=str(e))

    all_ready = all(checks.values())

    return JSONResponse(
        status_code=200 if all_ready else 503,
        content={
            "ready": all_ready,
            "checks": checks
        }
    )


# =============================================================================
# Development Server
# =============================================================================
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "listing_pipeline.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level="info"
    )
