"""
FastAPI Dependencies

Provides dependency injection for:
- Metadata store (per-request, over the shared async session factory)
- Checkpoint store (Redis client from app state)
- Job queue (process-wide singleton)
- Admin key check for audit endpoints
"""

from typing import Optional

from fastapi import Header, HTTPException, Request

from listing_pipeline.core.config import settings
from listing_pipeline.core.database import async_session_maker
from listing_pipeline.pipeline.checkpoints import CheckpointStore, RedisCheckpointStore
from listing_pipeline.pipeline.queue import CeleryJobQueue, JobQueue
from listing_pipeline.pipeline.repository import MetadataStore, SqlMetadataStore

_job_queue: JobQueue = CeleryJobQueue()


def get_metadata_store() -> MetadataStore:
    """Returns the SQL metadata store."""
    return SqlMetadataStore(async_session_maker)


def get_checkpoint_store(request: Request) -> CheckpointStore:
    """Returns checkpoint store with Redis client from app state."""
    return RedisCheckpointStore(request.app.state.redis, ttl=settings.CHECKPOINT_TTL_SECONDS)


def get_job_queue() -> JobQueue:
    """Returns singleton job queue."""
    return _job_queue


def verify_admin_key(x_admin_key: Optional[str] = Header(default=None)):
    """Reject audit requests without the configured admin key. Open when no key is set."""
    if settings.WORKER_ADMIN_KEY and x_admin_key != settings.WORKER_ADMIN_KEY:
        raise HTTPException(status_code=401, detail="Invalid admin key")
