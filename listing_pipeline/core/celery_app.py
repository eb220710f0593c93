"""
Celery Application Configuration

Configures Celery as the job queue with:
- A dedicated queue for preparation jobs
- Priority support (rush jobs ahead of standard ones)
- Late acknowledgment so a crashed worker's job is redelivered
- Worker logs routed through the structlog JSON pipeline
"""

from celery import Celery
from celery.signals import setup_logging as celery_setup_logging
from kombu import Queue

from listing_pipeline.core.config import settings
from listing_pipeline.core.logging import setup_logging

# Create Celery app
celery_app = Celery(
    "listing_pipeline",
    broker=settings.CELERY_BROKER_URL or settings.REDIS_URL,
    backend=settings.CELERY_RESULT_BACKEND or settings.REDIS_URL,
    include=[
        "listing_pipeline.pipeline.tasks",
    ]
)

# Celery configuration
celery_app.conf.update(
    # Task settings
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,

    # Task tracking
    task_track_started=True,
    task_time_limit=3600,  # 1 hour hard limit, twilight runs are long
    task_soft_time_limit=3300,

    # Result expiration
    result_expires=86400,  # 24 hours

    # Worker settings
    worker_prefetch_multiplier=1,  # One job at a time per worker process

    # Queue definitions
    task_queues=(
        Queue("default", routing_key="default"),
        Queue("prepare", routing_key="prepare.#", queue_arguments={"x-max-priority": 10}),
    ),

    # Task routing
    task_routes={
        "listing_pipeline.pipeline.tasks.prepare_listing": {"queue": "prepare"},
    },

    # Redis priority emulation: 0 is highest
    broker_transport_options={
        "priority_steps": list(range(10)),
        "sep": ":",
        "queue_order_strategy": "priority",
    },

    # Redelivery settings
    task_default_retry_delay=settings.JOB_RETRY_DELAY_SECONDS,
    task_max_retries=settings.JOB_MAX_REDELIVERIES,

    # Late acknowledgment for reliability
    task_acks_late=True,
    task_reject_on_worker_lost=True,
)


@celery_setup_logging.connect
def configure_worker_logging(**kwargs):
    """Replace Celery's logging setup with the structlog pipeline."""
    setup_logging(
        log_level=settings.LOG_LEVEL,
        json_format=settings.LOG_FORMAT_JSON,
        service="worker",
        version=settings.APP_VERSION
    )
