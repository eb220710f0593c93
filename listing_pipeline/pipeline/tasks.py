"""
Celery Tasks for Listing Preparation

The queue consumer: one task run is one delivery of a job-start message.
Terminal outcomes acknowledge the message; orchestration-level failures
are retried with a fixed delay until the redelivery budget is spent, and
the final attempt marks the job failed.
"""

import asyncio
import traceback
from typing import Any, Dict, Optional

import redis.asyncio as redis

from listing_pipeline.core.celery_app import celery_app
from listing_pipeline.core.config import settings
from listing_pipeline.core.database import engine
from listing_pipeline.core.logging import clear_job_context, get_logger, set_job_context
from listing_pipeline.pipeline.orchestrator import is_retryable
from listing_pipeline.pipeline.runtime import build_orchestrator
from listing_pipeline.pipeline.schemas import JobMessage

logger = get_logger(__name__)


async def run_prepare(
    message: JobMessage,
    final_attempt: bool,
    task_id: Optional[str] = None
) -> Dict[str, Any]:
    """Run the orchestrator once inside a fresh event loop."""
    redis_client = redis.from_url(settings.REDIS_URL, encoding="utf-8", decode_responses=True)
    try:
        orchestrator = build_orchestrator(redis_client)
        job = await orchestrator.run(message, final_attempt=final_attempt, task_id=task_id)
        return job.to_response_dict()
    finally:
        await redis_client.aclose()
        # Pooled connections are bound to this loop, which is about to close
        await engine.dispose()


@celery_app.task(
    bind=True,
    name="listing_pipeline.pipeline.tasks.prepare_listing",
    max_retries=settings.JOB_MAX_REDELIVERIES,
    default_retry_delay=settings.JOB_RETRY_DELAY_SECONDS,
    acks_late=True,
    reject_on_worker_lost=True
)
def prepare_listing(self, message: Dict[str, Any]) -> Dict[str, Any]:
    """
    Celery task driving one preparation job.

    Args:
        message: Serialized JobMessage {job_id, listing_id, owner_id, priority}

    Returns:
        The job's response dict once it is terminal
    """
    job_message = JobMessage.model_validate(message)
    final_attempt = self.request.retries >= self.max_retries
    set_job_context(job_message.job_id, "queue")

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    try:
        logger.info(
            "task_prepare_listing_started",
            listing_id=job_message.listing_id,
            retry=self.request.retries,
            final_attempt=final_attempt
        )
        result = loop.run_until_complete(
            run_prepare(job_message, final_attempt=final_attempt, task_id=self.request.id)
        )
        logger.info("task_prepare_listing_completed", status=result["status"])
        return result

    except Exception as e:
        if not is_retryable(e) or final_attempt:
            logger.error(
                "task_prepare_listing_failed",
                error=str(e),
                error_type=type(e).__name__,
                traceback=traceback.format_exc()
            )
            raise

        logger.warning(
            "task_prepare_listing_retrying",
            error=str(e),
            retry=self.request.retries,
            countdown=settings.JOB_RETRY_DELAY_SECONDS
        )
        raise self.retry(exc=e, countdown=settings.JOB_RETRY_DELAY_SECONDS)

    finally:
        loop.close()
        clear_job_context()
