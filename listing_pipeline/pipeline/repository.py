"""
Metadata Store Repository

Async repository over the listings, jobs, photos and enhancement_logs
tables. Every operation runs in its own session; no caller relies on a
transaction spanning several operations. Database failures surface as
InfrastructureError so the orchestrator can escalate them uniformly.
"""

from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from listing_pipeline.core.exceptions import (
    ActiveJobExistsError,
    InfrastructureError,
    InvalidTransitionError,
    NotFoundError,
)
from listing_pipeline.core.logging import get_logger
from listing_pipeline.modules.listings.models import (
    ACTIVE_JOB_STATUSES,
    EnhancementLog,
    Job,
    JobStatus,
    Listing,
    Photo,
    PreparationStatus,
    can_transition,
)
from listing_pipeline.pipeline.schemas import EnhancementResult, JobPriority

logger = get_logger(__name__)


class MetadataStore(ABC):
    """Durable store for Listing, Job and Photo records."""

    @abstractmethod
    async def get_listing(self, listing_id: str) -> Listing:
        """Raises NotFoundError when absent."""

    @abstractmethod
    async def get_job(self, job_id: str) -> Job:
        """Raises NotFoundError when absent."""

    @abstractmethod
    async def list_photos(self, listing_id: str) -> List[Photo]:
        """Photos of a listing in upload order."""

    @abstractmethod
    async def find_active_job(self, listing_id: str) -> Optional[Job]:
        pass

    @abstractmethod
    async def create_job(
        self,
        listing_id: str,
        owner_id: str,
        priority: str = JobPriority.STANDARD.value
    ) -> Job:
        """
        Create a queued job and mark the listing as preparing.

        Raises:
            ActiveJobExistsError: a non-terminal job already exists for the listing
        """

    @abstractmethod
    async def transition_job(
        self,
        job_id: str,
        status: str,
        error_message: Optional[str] = None,
        error_kind: Optional[str] = None,
        error_stage: Optional[str] = None
    ) -> Job:
        """
        Move a job forward. Same-status transitions are no-ops.

        Raises:
            InvalidTransitionError: target would move the job backwards
        """

    @abstractmethod
    async def record_attempt(self, job_id: str, celery_task_id: Optional[str] = None) -> Job:
        pass

    @abstractmethod
    async def update_photo(self, photo_id: str, **fields: Any) -> Photo:
        pass

    @abstractmethod
    async def record_enhancement(self, job_id: str, result: EnhancementResult) -> None:
        """Append one row to the tool cost log."""

    @abstractmethod
    async def set_listing_status(self, listing_id: str, status: str) -> Listing:
        pass

    @abstractmethod
    async def finalize_listing(
        self,
        listing_id: str,
        status: str,
        hero_photo_id: Optional[str],
        confidence_score: Optional[float]
    ) -> Listing:
        pass

    @abstractmethod
    async def count_photos_by_status(self, listing_id: str) -> Dict[str, int]:
        pass


class SqlMetadataStore(MetadataStore):
    """SQLModel/SQLAlchemy implementation backed by an async session factory."""

    def __init__(self, session_maker):
        self.session_maker = session_maker

    @asynccontextmanager
    async def _session(self, operation: str):
        try:
            async with self.session_maker() as session:
                yield session
        except IntegrityError:
            raise
        except SQLAlchemyError as e:
            logger.error("metadata_store_error", operation=operation, error=str(e))
            raise InfrastructureError(
                f"Metadata store {operation} failed: {e}",
                component="metadata_store"
            )

    @staticmethod
    async def _get(session: AsyncSession, model, entity: str, entity_id: str):
        record = await session.get(model, entity_id)
        if record is None:
            raise NotFoundError(entity, entity_id)
        return record

    async def get_listing(self, listing_id: str) -> Listing:
        async with self._session("get_listing") as session:
            return await self._get(session, Listing, "Listing", listing_id)

    async def get_job(self, job_id: str) -> Job:
        async with self._session("get_job") as session:
            return await self._get(session, Job, "Job", job_id)

    async def list_photos(self, listing_id: str) -> List[Photo]:
        async with self._session("list_photos") as session:
            result = await session.execute(
                select(Photo)
                .where(Photo.listing_id == listing_id)
                .order_by(Photo.upload_order, Photo.created_at)
            )
            return list(result.scalars().all())

    async def find_active_job(self, listing_id: str) -> Optional[Job]:
        async with self._session("find_active_job") as session:
            result = await session.execute(
                select(Job)
                .where(Job.listing_id == listing_id)
                .where(Job.status.in_(list(ACTIVE_JOB_STATUSES)))
            )
            return result.scalars().first()

    async def create_job(
        self,
        listing_id: str,
        owner_id: str,
        priority: str = JobPriority.STANDARD.value
    ) -> Job:
        try:
            async with self._session("create_job") as session:
                listing = await self._get(session, Listing, "Listing", listing_id)
                job = Job(listing_id=listing_id, owner_id=owner_id, priority=priority)
                listing.preparation_status = PreparationStatus.PREPARING.value
                listing.updated_at = datetime.utcnow()
                session.add(job)
                session.add(listing)
                await session.commit()
                await session.refresh(job)
        except IntegrityError:
            active = await self.find_active_job(listing_id)
            logger.warning(
                "active_job_exists",
                listing_id=listing_id,
                active_job_id=active.id if active else None
            )
            raise ActiveJobExistsError(listing_id, active_job_id=active.id if active else None)

        logger.info("job_created", job_id=job.id, listing_id=listing_id, priority=priority)
        return job

    async def transition_job(
        self,
        job_id: str,
        status: str,
        error_message: Optional[str] = None,
        error_kind: Optional[str] = None,
        error_stage: Optional[str] = None
    ) -> Job:
        async with self._session("transition_job") as session:
            job = await self._get(session, Job, "Job", job_id)
            if job.status == status:
                return job
            if not can_transition(job.status, status):
                raise InvalidTransitionError(job_id, job.status, status)

            now = datetime.utcnow()
            job.status = status
            job.updated_at = now
            if status == JobStatus.PROCESSING.value:
                job.started_at = now
            if status in (JobStatus.COMPLETED.value, JobStatus.FAILED.value):
                job.completed_at = now
            if error_message:
                job.error_message = error_message[:2000]
                job.error_kind = error_kind
                job.error_stage = error_stage

            session.add(job)
            await session.commit()
            await session.refresh(job)
            return job

    async def record_attempt(self, job_id: str, celery_task_id: Optional[str] = None) -> Job:
        async with self._session("record_attempt") as session:
            job = await self._get(session, Job, "Job", job_id)
            job.attempts += 1
            if celery_task_id:
                job.celery_task_id = celery_task_id
            job.updated_at = datetime.utcnow()
            session.add(job)
            await session.commit()
            await session.refresh(job)
            return job

    async def update_photo(self, photo_id: str, **fields: Any) -> Photo:
        async with self._session("update_photo") as session:
            photo = await self._get(session, Photo, "Photo", photo_id)
            for name, value in fields.items():
                setattr(photo, name, value)
            photo.updated_at = datetime.utcnow()
            session.add(photo)
            await session.commit()
            await session.refresh(photo)
            return photo

    async def record_enhancement(self, job_id: str, result: EnhancementResult) -> None:
        async with self._session("record_enhancement") as session:
            session.add(EnhancementLog(
                job_id=job_id,
                photo_id=result.photo_id,
                tool_id=result.tool_id,
                model=result.model,
                success=result.success,
                storage_key=result.storage_key,
                cost_tier=result.cost_tier.value,
                duration_ms=result.duration_ms,
                attempts=result.attempts,
                failure_kind=result.failure_kind,
                error=result.error[:2000] if result.error else None,
            ))
            await session.commit()

    async def set_listing_status(self, listing_id: str, status: str) -> Listing:
        async with self._session("set_listing_status") as session:
            listing = await self._get(session, Listing, "Listing", listing_id)
            listing.preparation_status = status
            listing.updated_at = datetime.utcnow()
            session.add(listing)
            await session.commit()
            await session.refresh(listing)
            return listing

    async def finalize_listing(
        self,
        listing_id: str,
        status: str,
        hero_photo_id: Optional[str],
        confidence_score: Optional[float]
    ) -> Listing:
        async with self._session("finalize_listing") as session:
            listing = await self._get(session, Listing, "Listing", listing_id)
            now = datetime.utcnow()
            listing.preparation_status = status
            listing.hero_photo_id = hero_photo_id
            listing.confidence_score = confidence_score
            listing.prepared_at = now
            listing.updated_at = now
            session.add(listing)
            await session.commit()
            await session.refresh(listing)
            return listing

    async def count_photos_by_status(self, listing_id: str) -> Dict[str, int]:
        async with self._session("count_photos_by_status") as session:
            result = await session.execute(
                select(Photo.status, func.count(Photo.id))
                .where(Photo.listing_id == listing_id)
                .group_by(Photo.status)
            )
            return {status: count for status, count in result.all()}
