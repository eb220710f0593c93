"""
Listing, Job and Photo Models with Preparation Status Tracking

Tracks the preparation lifecycle with:
- Listing-level preparation status, hero photo and confidence
- Forward-only job status
- Per-photo status, analysis and assigned tool list
- Per-tool cost log
"""

import uuid
from enum import Enum
from sqlalchemy import Index, text
from sqlmodel import SQLModel, Field, Column, JSON
from typing import Optional, Dict, Any, List
from datetime import datetime


class PreparationStatus(str, Enum):
    """Listing preparation states visible to users."""
    UNPREPARED = "unprepared"
    PREPARING = "preparing"
    PREPARED = "prepared"
    NEEDS_REVIEW = "needs_review"
    FAILED = "failed"


class JobStatus(str, Enum):
    """Preparation job states. Terminal: completed, failed."""
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class PhotoStatus(str, Enum):
    """Per-photo processing state."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_JOB_STATUSES = frozenset({JobStatus.COMPLETED.value, JobStatus.FAILED.value})
ACTIVE_JOB_STATUSES = frozenset({JobStatus.QUEUED.value, JobStatus.PROCESSING.value})

# Job status only moves forward
ALLOWED_JOB_TRANSITIONS: Dict[str, frozenset] = {
    JobStatus.QUEUED.value: frozenset({JobStatus.PROCESSING.value, JobStatus.FAILED.value}),
    JobStatus.PROCESSING.value: frozenset({JobStatus.COMPLETED.value, JobStatus.FAILED.value}),
    JobStatus.COMPLETED.value: frozenset(),
    JobStatus.FAILED.value: frozenset(),
}


def can_transition(current: str, target: str) -> bool:
    """True when moving a job from current to target keeps it moving forward."""
    if current == target:
        return True
    return target in ALLOWED_JOB_TRANSITIONS.get(current, frozenset())


class Listing(SQLModel, table=True):
    """A property listing whose photos are prepared together."""
    __tablename__ = "listings"

    id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        primary_key=True
    )
    owner_id: str = Field(index=True)
    title: Optional[str] = None

    preparation_status: str = Field(default=PreparationStatus.UNPREPARED.value)
    hero_photo_id: Optional[str] = None
    confidence_score: Optional[float] = None
    prepared_at: Optional[datetime] = None

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    def to_response_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "preparation_status": self.preparation_status,
            "hero_photo_id": self.hero_photo_id,
            "confidence_score": self.confidence_score,
            "prepared_at": self.prepared_at.isoformat() if self.prepared_at else None,
        }


class Job(SQLModel, table=True):
    """
    One preparation attempt for one listing.

    The unit of at-least-once delivery and of checkpointing. Never deleted.
    """
    __tablename__ = "jobs"
    __table_args__ = (
        # At most one non-terminal job per listing
        Index(
            "uq_jobs_active_listing",
            "listing_id",
            unique=True,
            sqlite_where=text("status IN ('queued', 'processing')"),
            postgresql_where=text("status IN ('queued', 'processing')"),
        ),
    )

    id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        primary_key=True
    )
    listing_id: str = Field(foreign_key="listings.id", index=True)
    owner_id: str = Field(index=True)
    priority: str = Field(default="standard")

    status: str = Field(default=JobStatus.QUEUED.value)
    attempts: int = Field(default=0)

    # Error Tracking
    error_message: Optional[str] = None
    error_kind: Optional[str] = None
    error_stage: Optional[str] = None

    # Celery Task ID
    celery_task_id: Optional[str] = None

    # Timestamps
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES

    def to_response_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "listing_id": self.listing_id,
            "owner_id": self.owner_id,
            "status": self.status,
            "attempts": self.attempts,
            "error": {
                "message": self.error_message,
                "kind": self.error_kind,
                "stage": self.error_stage,
            } if self.error_message else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


class Photo(SQLModel, table=True):
    """An uploaded listing photo. Created at upload time, never deleted by the pipeline."""
    __tablename__ = "photos"

    id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        primary_key=True
    )
    listing_id: str = Field(foreign_key="listings.id", index=True)
    upload_order: int = Field(default=0)

    # Storage Keys (raw key may also be an external http(s) URL)
    raw_storage_key: str
    enhanced_storage_key: Optional[str] = None

    status: str = Field(default=PhotoStatus.PENDING.value)
    error_message: Optional[str] = None

    # Latest analysis (overwritten by each job run) and assigned tools
    analysis: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    assigned_tools: Optional[List[str]] = Field(default=None, sa_column=Column(JSON))

    # Vision review of the final output; None when not reviewed
    quality_score: Optional[float] = None
    needs_review: bool = Field(default=False)

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    def to_response_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status,
            "upload_order": self.upload_order,
            "raw_storage_key": self.raw_storage_key,
            "enhanced_storage_key": self.enhanced_storage_key,
            "assigned_tools": self.assigned_tools,
            "quality_score": self.quality_score,
            "needs_review": self.needs_review,
            "error": self.error_message,
        }


class EnhancementLog(SQLModel, table=True):
    """
    Cost log: one row per executed (photo, tool) pair.

    EnhancementResults are otherwise ephemeral; this is their durable aggregate.
    """
    __tablename__ = "enhancement_logs"

    id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        primary_key=True
    )
    job_id: str = Field(foreign_key="jobs.id", index=True)
    photo_id: str = Field(foreign_key="photos.id", index=True)
    tool_id: str
    model: Optional[str] = None
    success: bool = Field(default=False)
    storage_key: Optional[str] = None
    cost_tier: str = Field(default="free")
    duration_ms: int = Field(default=0)
    attempts: int = Field(default=1)
    failure_kind: Optional[str] = None
    error: Optional[str] = None

    created_at: datetime = Field(default_factory=datetime.utcnow, index=True)
