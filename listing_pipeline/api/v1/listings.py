"""
Listings Endpoint - Preparation Trigger and Status

POST /api/v1/listings/{listing_id}/prepare - Create a preparation job and enqueue it
GET  /api/v1/listings/{listing_id}/status  - Listing preparation status
"""

from typing import Dict, Optional

from fastapi import APIRouter, Body, Depends
from pydantic import BaseModel

from listing_pipeline.api.dependencies import get_job_queue, get_metadata_store
from listing_pipeline.core.exceptions import InfrastructureError
from listing_pipeline.core.logging import get_logger
from listing_pipeline.modules.listings.models import JobStatus, PreparationStatus
from listing_pipeline.pipeline.queue import JobQueue
from listing_pipeline.pipeline.repository import MetadataStore
from listing_pipeline.pipeline.schemas import JobMessage, JobPriority

logger = get_logger(__name__)
router = APIRouter()


# =============================================================================
# Request/Response Schemas
# =============================================================================

class PrepareRequest(BaseModel):
    priority: JobPriority = JobPriority.STANDARD


class PrepareResponse(BaseModel):
    job_id: str
    listing_id: str
    status: str
    priority: str
    message: str


class ListingStatusResponse(BaseModel):
    listing_id: str
    preparation_status: str
    hero_photo_id: Optional[str] = None
    confidence_score: Optional[float] = None
    prepared_at: Optional[str] = None
    active_job_id: Optional[str] = None
    photo_counts: Dict[str, int]


# =============================================================================
# Endpoints
# =============================================================================

@router.post("/{listing_id}/prepare", response_model=PrepareResponse, status_code=202)
async def prepare_listing(
    listing_id: str,
    request: Optional[PrepareRequest] = Body(default=None),
    store: MetadataStore = Depends(get_metadata_store),
    queue: JobQueue = Depends(get_job_queue)
):
    """
    Start preparing a listing.

    Returns 409 when the listing already has a queued or processing job.
    """
    priority = (request or PrepareRequest()).priority
    listing = await store.get_listing(listing_id)
    job = await store.create_job(listing_id, listing.owner_id, priority=priority.value)

    message = JobMessage(
        job_id=job.id,
        listing_id=listing_id,
        owner_id=listing.owner_id,
        priority=priority
    )
    try:
        queue.enqueue(message)
    except InfrastructureError as e:
        await store.transition_job(
            job.id,
            JobStatus.FAILED.value,
            error_message=e.message,
            error_kind="infrastructure",
            error_stage="queue"
        )
        await store.set_listing_status(listing_id, PreparationStatus.FAILED.value)
        raise

    logger.info("preparation_requested", listing_id=listing_id, job_id=job.id, priority=priority.value)

    return PrepareResponse(
        job_id=job.id,
        listing_id=listing_id,
        status=job.status,
        priority=priority.value,
        message="Preparation queued"
    )


@router.get("/{listing_id}/status", response_model=ListingStatusResponse)
async def get_listing_status(
    listing_id: str,
    store: MetadataStore = Depends(get_metadata_store)
):
    """Preparation status, hero, confidence and per-status photo counts."""
    listing = await store.get_listing(listing_id)
    active_job = await store.find_active_job(listing_id)
    counts = await store.count_photos_by_status(listing_id)

    return ListingStatusResponse(
        listing_id=listing.id,
        preparation_status=listing.preparation_status,
        hero_photo_id=listing.hero_photo_id,
        confidence_score=listing.confidence_score,
        prepared_at=listing.prepared_at.isoformat() if listing.prepared_at else None,
        active_job_id=active_job.id if active_job else None,
        photo_counts=counts
    )
