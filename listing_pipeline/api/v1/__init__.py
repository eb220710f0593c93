"""
API v1 Router Module - Listing Preparation

All v1 endpoints are prefixed with /api/v1/

- /api/v1/listings/{id}/prepare - Start preparation
- /api/v1/listings/{id}/status - Preparation status
- /api/v1/jobs/{id} - Job status, checkpoint audit, cancellation
- /api/v1/metrics - Prometheus exposition
"""

from fastapi import APIRouter

from listing_pipeline.api.v1.listings import router as listings_router
from listing_pipeline.api.v1.jobs import router as jobs_router
from listing_pipeline.api.v1.metrics import router as metrics_router

# Main v1 router
api_v1_router = APIRouter(prefix="/api/v1")

api_v1_router.include_router(listings_router, prefix="/listings", tags=["listings"])
api_v1_router.include_router(jobs_router, prefix="/jobs", tags=["jobs"])
api_v1_router.include_router(metrics_router, tags=["metrics"])
