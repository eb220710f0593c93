"""
Checkpoint Store

Durable per-job progress record kept in Redis under checkpoint:{job_id}.
Each save overwrites the previous snapshot and refreshes its TTL. The store
also carries the per-job cancellation flag checked between tool calls.
"""

from abc import ABC, abstractmethod
from typing import Optional

from pydantic import ValidationError
from redis.exceptions import RedisError

from listing_pipeline.core.exceptions import InfrastructureError
from listing_pipeline.core.logging import get_logger
from listing_pipeline.pipeline.schemas import Checkpoint, checkpoint_adapter

logger = get_logger(__name__)


class CheckpointStore(ABC):
    """Interface for checkpoint persistence."""

    @abstractmethod
    async def load(self, job_id: str) -> Optional[Checkpoint]:
        pass

    @abstractmethod
    async def save(self, checkpoint: Checkpoint) -> None:
        pass

    @abstractmethod
    async def delete(self, job_id: str) -> None:
        pass

    @abstractmethod
    async def request_cancel(self, job_id: str) -> None:
        pass

    @abstractmethod
    async def is_cancelled(self, job_id: str) -> bool:
        pass


class RedisCheckpointStore(CheckpointStore):
    """Repository for job checkpoints in Redis."""

    def __init__(self, redis_client, ttl: int = 86400):
        self.redis = redis_client
        self.ttl = ttl
        self.prefix = "checkpoint"
        self.cancel_prefix = "cancel"

    def _key(self, job_id: str) -> str:
        return f"{self.prefix}:{job_id}"

    def _cancel_key(self, job_id: str) -> str:
        return f"{self.cancel_prefix}:{job_id}"

    async def load(self, job_id: str) -> Optional[Checkpoint]:
        """Read the latest checkpoint, or None when the job has none."""
        try:
            raw = await self.redis.get(self._key(job_id))
        except RedisError as e:
            raise InfrastructureError(
                f"Failed to load checkpoint for {job_id}: {e}",
                component="checkpoint_store"
            )
        if not raw:
            return None

        try:
            return checkpoint_adapter.validate_json(raw)
        except ValidationError as e:
            # An unreadable snapshot means starting over from analysis
            logger.warning("checkpoint_corrupt", job_id=job_id, error=str(e))
            return None

    async def save(self, checkpoint: Checkpoint) -> None:
        """Overwrite the job's checkpoint and refresh its TTL."""
        try:
            await self.redis.setex(
                self._key(checkpoint.job_id),
                self.ttl,
                checkpoint.model_dump_json()
            )
        except RedisError as e:
            raise InfrastructureError(
                f"Failed to save checkpoint for {checkpoint.job_id}: {e}",
                component="checkpoint_store"
            )
        logger.debug("checkpoint_saved", job_id=checkpoint.job_id, checkpoint_stage=checkpoint.stage)

    async def delete(self, job_id: str) -> None:
        try:
            await self.redis.delete(self._key(job_id), self._cancel_key(job_id))
        except RedisError as e:
            raise InfrastructureError(
                f"Failed to delete checkpoint for {job_id}: {e}",
                component="checkpoint_store"
            )

    async def request_cancel(self, job_id: str) -> None:
        try:
            await self.redis.setex(self._cancel_key(job_id), self.ttl, "1")
        except RedisError as e:
            raise InfrastructureError(
                f"Failed to request cancellation for {job_id}: {e}",
                component="checkpoint_store"
            )

    async def is_cancelled(self, job_id: str) -> bool:
        try:
            return bool(await self.redis.exists(self._cancel_key(job_id)))
        except RedisError as e:
            raise InfrastructureError(
                f"Failed to read cancellation flag for {job_id}: {e}",
                component="checkpoint_store"
            )
