"""
Production wiring for the orchestrator's collaborators.

Clients are constructed per job run and handed to the orchestrator
explicitly; tests build the orchestrator with fakes instead.
"""

from listing_pipeline.core.config import settings
from listing_pipeline.core.database import async_session_maker
from listing_pipeline.core.storage import StorageFactory
from listing_pipeline.pipeline.checkpoints import RedisCheckpointStore
from listing_pipeline.pipeline.executor import EnhancementExecutor
from listing_pipeline.pipeline.orchestrator import PipelineConfig, PipelineOrchestrator
from listing_pipeline.pipeline.providers import ReplicateProvider
from listing_pipeline.pipeline.quality import OpenAIQualityValidator
from listing_pipeline.pipeline.repository import SqlMetadataStore
from listing_pipeline.pipeline.retry import RetryConfig
from listing_pipeline.pipeline.vision import OpenAIVisionProvider


def build_orchestrator(redis_client) -> PipelineOrchestrator:
    storage = StorageFactory.get_storage()
    executor = EnhancementExecutor(
        storage=storage,
        provider=ReplicateProvider(),
        retry_config=RetryConfig(
            attempts=settings.TOOL_RETRY_ATTEMPTS,
            backoff_seconds=settings.RETRY_BACKOFF_SECONDS
        ),
        timeout_factor=settings.PROVIDER_TIMEOUT_FACTOR,
        timeout_margin_seconds=settings.PROVIDER_TIMEOUT_MARGIN_SECONDS
    )
    return PipelineOrchestrator(
        store=SqlMetadataStore(async_session_maker),
        checkpoints=RedisCheckpointStore(redis_client, ttl=settings.CHECKPOINT_TTL_SECONDS),
        storage=storage,
        vision=OpenAIVisionProvider(),
        executor=executor,
        config=PipelineConfig.from_settings(),
        validator=OpenAIQualityValidator() if settings.QUALITY_VALIDATION_ENABLED else None
    )
