"""
Jobs Endpoint - Job Status, Audit and Cancellation

GET    /api/v1/jobs/{job_id}            - Job status with per-photo status
GET    /api/v1/jobs/{job_id}/checkpoint - Checkpoint audit (admin key)
DELETE /api/v1/jobs/{job_id}            - Request cancellation
"""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from listing_pipeline.api.dependencies import (
    get_checkpoint_store,
    get_metadata_store,
    verify_admin_key,
)
from listing_pipeline.core.exceptions import InvalidTransitionError
from listing_pipeline.core.logging import get_logger
from listing_pipeline.modules.listings.models import JobStatus, PreparationStatus
from listing_pipeline.pipeline.checkpoints import CheckpointStore
from listing_pipeline.pipeline.repository import MetadataStore

logger = get_logger(__name__)
router = APIRouter()


class PhotoStatusResponse(BaseModel):
    id: str
    status: str
    upload_order: int
    assigned_tools: Optional[List[str]] = None
    enhanced_storage_key: Optional[str] = None
    quality_score: Optional[float] = None
    needs_review: bool = False
    error: Optional[str] = None


class JobStatusResponse(BaseModel):
    id: str
    listing_id: str
    status: str
    attempts: int
    error: Optional[Dict[str, Any]] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    completed_at: Optional[str] = None
    photos: List[PhotoStatusResponse]


class CheckpointResponse(BaseModel):
    job_id: str
    stage: Optional[str] = None
    timestamp: Optional[str] = None
    completed_photo_ids: List[str] = []
    analysis_failed_photo_ids: List[str] = []
    strategy: Optional[Dict[str, Any]] = None


class CancelResponse(BaseModel):
    job_id: str
    status: str
    cancellation_requested: bool


@router.get("/{job_id}", response_model=JobStatusResponse)
async def get_job_status(
    job_id: str,
    store: MetadataStore = Depends(get_metadata_store)
):
    job = await store.get_job(job_id)
    photos = await store.list_photos(job.listing_id)
    return JobStatusResponse(
        **{k: v for k, v in job.to_response_dict().items() if k != "owner_id"},
        photos=[PhotoStatusResponse(**photo.to_response_dict()) for photo in photos]
    )


@router.get(
    "/{job_id}/checkpoint",
    response_model=CheckpointResponse,
    dependencies=[Depends(verify_admin_key)]
)
async def get_job_checkpoint(
    job_id: str,
    store: MetadataStore = Depends(get_metadata_store),
    checkpoints: CheckpointStore = Depends(get_checkpoint_store)
):
    """Latest checkpoint of a job, for auditing resumption."""
    await store.get_job(job_id)
    checkpoint = await checkpoints.load(job_id)
    if checkpoint is None:
        return CheckpointResponse(job_id=job_id)

    data = checkpoint.model_dump(mode="json")
    return CheckpointResponse(
        job_id=job_id,
        stage=data["stage"],
        timestamp=data["timestamp"],
        completed_photo_ids=data.get("completed_photo_ids", []),
        analysis_failed_photo_ids=data.get("analysis_failed_photo_ids", []),
        strategy=data.get("strategy")
    )


@router.delete("/{job_id}", response_model=CancelResponse, status_code=202)
async def cancel_job(
    job_id: str,
    store: MetadataStore = Depends(get_metadata_store),
    checkpoints: CheckpointStore = Depends(get_checkpoint_store)
):
    """
    Request cancellation.

    A queued job fails immediately; a processing job stops before its next
    tool call. Terminal jobs cannot be cancelled (409).
    """
    job = await store.get_job(job_id)
    if job.is_terminal:
        raise InvalidTransitionError(job_id, job.status, JobStatus.FAILED.value)

    await checkpoints.request_cancel(job_id)

    if job.status == JobStatus.QUEUED.value:
        job = await store.transition_job(
            job_id,
            JobStatus.FAILED.value,
            error_message=f"Job {job_id} was cancelled",
            error_kind="cancelled",
            error_stage="queued"
        )
        await store.set_listing_status(job.listing_id, PreparationStatus.FAILED.value)

    logger.info("job_cancellation_requested", job_id=job_id, status=job.status)
    return CancelResponse(job_id=job_id, status=job.status, cancellation_requested=True)
