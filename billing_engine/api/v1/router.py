from fastapi import APIRouter

from billing_engine.api.v1.endpoints import (
    # Invoice assembly and lifecycle
    invoices,
    # Ingestion, attribution and cost normalization
    pipeline,
    # Markup configuration
    markup_rules,
)


# Create main API router
api_router = APIRouter(prefix="/api/v1")

# ==================== Invoices ====================
api_router.include_router(
    invoices.router,
    prefix="/invoices",
    tags=["Invoices"]
)

# ==================== Pipeline ====================
api_router.include_router(
    pipeline.router,
    prefix="/pipeline",
    tags=["Pipeline"]
)

# ==================== Markup Rules ====================
api_router.include_router(
    markup_rules.router,
    prefix="/markup-rules",
    tags=["Markup Rules"]
)
