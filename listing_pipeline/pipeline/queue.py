"""
Job Queue

At-least-once delivery of job-start messages. Rush jobs are published at a
higher priority than standard ones.
"""

from abc import ABC, abstractmethod

from kombu.exceptions import OperationalError

from listing_pipeline.core.exceptions import InfrastructureError
from listing_pipeline.core.logging import get_logger
from listing_pipeline.pipeline.schemas import JobMessage, JobPriority

logger = get_logger(__name__)

# Redis transport: 0 is delivered first
PRIORITY_LEVELS = {
    JobPriority.RUSH: 0,
    JobPriority.STANDARD: 5,
}


class JobQueue(ABC):
    @abstractmethod
    def enqueue(self, message: JobMessage) -> str:
        """Publish a job-start message. Returns the broker task id."""


class CeleryJobQueue(JobQueue):
    """Publishes prepare_listing tasks on the prepare queue."""

    def enqueue(self, message: JobMessage) -> str:
        from listing_pipeline.pipeline.tasks import prepare_listing

        try:
            result = prepare_listing.apply_async(
                args=[message.model_dump(mode="json")],
                queue="prepare",
                priority=PRIORITY_LEVELS[message.priority]
            )
        except OperationalError as e:
            logger.error("job_enqueue_failed", job_id=message.job_id, error=str(e))
            raise InfrastructureError(f"Failed to enqueue job {message.job_id}: {e}", component="job_queue")

        logger.info(
            "job_enqueued",
            job_id=message.job_id,
            listing_id=message.listing_id,
            priority=message.priority.value,
            task_id=result.id
        )
        return result.id
