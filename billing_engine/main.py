from contextlib import asynccontextmanager
import logging
import traceback

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware

from billing_engine.config import settings
from billing_engine.api.v1.router import api_router
from billing_engine.core.exceptions import BillingEngineError, PreflightValidationError
from billing_engine.database import init_db, async_session_factory
from billing_engine.jobs.scheduler import start_scheduler, shutdown_scheduler

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler.

    Startup:
    - Create tables
    - Start background scheduler (ingestion pipeline, weekly invoices)
    """
    # Startup
    print(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")
    await init_db()

    if settings.SCHEDULER_ENABLED:
        start_scheduler()
        print("Background scheduler started")

    yield

    # Shutdown
    shutdown_scheduler()
    print("Shutting down...")


OPENAPI_TAGS = [
    {"name": "Invoices", "description": "Invoice assembly, approval, regeneration and audit"},
    {"name": "Pipeline", "description": "Provider ingestion, tenant attribution and cost normalization"},
    {"name": "Markup Rules", "description": "Per-category markup configuration"},
]

API_DESCRIPTION = """
## Billing Engine API

Turns provider billing transactions into per-client invoices.

| Stage | Description |
|-------|-------------|
| **Ingestion** | Idempotent upsert of provider transactions and settlement invoices |
| **Attribution** | Resolves the owning client of every transaction |
| **Normalization** | Pre-tax costs and shipping base/surcharge decomposition |
| **Assembly** | Versioned invoices with markup; each transaction billed at most once |

### Error Codes
| Code | Description |
|------|-------------|
| 404 | Client, invoice or transaction not found |
| 409 | Operation not allowed in the invoice's current status |
| 422 | Nothing to invoice, or validation failed |
| 502 | Provider API error |
"""

# Create FastAPI application
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description=API_DESCRIPTION,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_tags=OPENAPI_TAGS,
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include API router
app.include_router(api_router)


@app.exception_handler(BillingEngineError)
async def billing_exception_handler(request: Request, exc: BillingEngineError):
    """Domain errors carry their own HTTP status."""
    content = {
        "error": str(exc),
        "type": type(exc).__name__,
        "path": str(request.url.path),
    }
    if isinstance(exc, PreflightValidationError):
        content["issues"] = exc.issues
    return JSONResponse(status_code=exc.status_code, content=content)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}")

    error_detail = {
        "error": str(exc),
        "type": type(exc).__name__,
        "path": str(request.url.path),
        "method": request.method,
    }
    if settings.DEBUG:
        error_detail["traceback"] = traceback.format_exc()

    return JSONResponse(status_code=500, content=error_detail)


# Health check endpoint
@app.get("/health", tags=["Health"])
async def health_check():
    """Health check endpoint with database validation."""
    from sqlalchemy import text
    from datetime import datetime, timezone

    health_status = {
        "status": "healthy",
        "app": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "checks": {
            "database": "unknown"
        }
    }

    try:
        async with async_session_factory() as session:
            result = await session.execute(text("SELECT 1"))
            result.scalar()
            health_status["checks"]["database"] = "connected"
    except Exception as e:
        health_status["status"] = "unhealthy"
        health_status["checks"]["database"] = f"error: {str(e)}"

    if health_status["status"] == "unhealthy":
        return JSONResponse(status_code=503, content=health_status)

    return health_status


@app.get("/", tags=["Root"])
async def root():
    """Root endpoint."""
    return {
        "message": f"Welcome to {settings.APP_NAME}",
        "version": settings.APP_VERSION,
        "docs": "/docs",
        "redoc": "/redoc",
    }
