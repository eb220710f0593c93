"""
Enhancement Executor

Runs one routed (photo, tool) invocation, persists the output in the image
store and reports a typed EnhancementResult. Provider and storage failures
are demoted to a PermanentToolFailure for that (photo, tool) and reported
as a failed result, as is any unexpected error from a provider or local op.
The executor itself only raises for an unknown tool, which is a
configuration error for the whole job.
"""

import time
from typing import Callable, Optional

import httpx

from listing_pipeline.core.exceptions import (
    InfrastructureError,
    PermanentToolFailure,
    PipelineBaseException,
    ProviderRejectedError,
    TransientProviderError,
)
from listing_pipeline.core.logging import get_logger
from listing_pipeline.core.metrics import record_tool_run
from listing_pipeline.core.storage import IStorage
from listing_pipeline.pipeline.local_ops import run_local
from listing_pipeline.pipeline.provider_http import call_provider
from listing_pipeline.pipeline.providers import EnhancementProvider
from listing_pipeline.pipeline.retry import RetryConfig, retry_transient
from listing_pipeline.pipeline.router import route, timeout_for
from listing_pipeline.pipeline.schemas import (
    EnhancementResult,
    InvocationDescriptor,
    PhotoContext,
)

logger = get_logger(__name__)


def enhanced_key(photo_id: str, tool_id: str, timestamp_ms: int) -> str:
    """Unique per attempt, so retries and reruns never overwrite earlier output."""
    return f"enhanced/{photo_id}/{tool_id}-{timestamp_ms}.jpg"


def is_external_url(storage_key: str) -> bool:
    return storage_key.startswith(("http://", "https://"))


class EnhancementExecutor:
    """Executes routed invocations against local Pillow ops or the remote provider."""

    def __init__(
        self,
        storage: IStorage,
        provider: EnhancementProvider,
        retry_config: Optional[RetryConfig] = None,
        timeout_factor: float = 3.0,
        timeout_margin_seconds: float = 30.0,
        clock: Callable[[], float] = time.time
    ):
        self.storage = storage
        self.provider = provider
        self.retry_config = retry_config or RetryConfig()
        self.timeout_factor = timeout_factor
        self.timeout_margin_seconds = timeout_margin_seconds
        self.clock = clock

    async def _load_source(self, source_key: str) -> bytes:
        if not is_external_url(source_key):
            return await self.storage.read(source_key)

        async def fetch() -> httpx.Response:
            async with httpx.AsyncClient(timeout=60.0, follow_redirects=True) as client:
                return await client.get(source_key)

        response = await call_provider("image_fetch", fetch)
        return response.content

    async def _produce(self, descriptor: InvocationDescriptor, context: PhotoContext, source_key: str) -> bytes:
        if descriptor.is_local:
            source_bytes = await self._load_source(source_key)
            output_bytes, _ = run_local(descriptor.tool_id, source_bytes)
            return output_bytes

        timeout = timeout_for(descriptor, self.timeout_factor, self.timeout_margin_seconds)
        return await self.provider.run(descriptor, timeout)

    async def execute(
        self,
        photo_id: str,
        tool_id: str,
        context: PhotoContext,
        source_key: str
    ) -> EnhancementResult:
        """
        Run one tool on one photo.

        Args:
            photo_id: Photo being enhanced
            tool_id: Tool from the photo's assignment
            context: Photo context; image_url points at source_key
            source_key: Storage key (or external URL) of the current input

        Raises:
            UnknownTool: tool_id is outside the closed tool set
        """
        descriptor = route(tool_id, context)
        start = self.clock()
        attempts = 0

        logger.info(
            "tool_started",
            photo_id=photo_id,
            tool_id=tool_id,
            model=descriptor.model,
            cost_tier=descriptor.cost_tier.value
        )

        failure: Optional[PermanentToolFailure] = None
        storage_key: Optional[str] = None

        try:
            output_bytes, attempts = await retry_transient(
                lambda: self._produce(descriptor, context, source_key),
                retry_config=self.retry_config,
                operation=f"tool:{tool_id}"
            )
            storage_key = await self.storage.put(
                enhanced_key(photo_id, tool_id, int(self.clock() * 1000)),
                output_bytes,
                content_type="image/jpeg"
            )
        except TransientProviderError as e:
            # Retry budget spent
            attempts = e.details.get("attempts", self.retry_config.attempts)
            failure = PermanentToolFailure(e.message, photo_id, tool_id, e.failure_kind)
        except ProviderRejectedError as e:
            attempts = attempts or 1
            failure = PermanentToolFailure(e.message, photo_id, tool_id, "rejected")
        except (InfrastructureError, FileNotFoundError) as e:
            attempts = attempts or 1
            failure = PermanentToolFailure(str(e), photo_id, tool_id, "storage_error")
        except PipelineBaseException as e:
            attempts = attempts or 1
            failure = PermanentToolFailure(e.message, photo_id, tool_id, "provider_error")
        except Exception as e:
            # Anything else stays scoped to this (photo, tool) pair
            attempts = attempts or 1
            logger.exception("tool_unexpected_error", photo_id=photo_id, tool_id=tool_id)
            failure = PermanentToolFailure(
                f"{type(e).__name__}: {e}", photo_id, tool_id, "provider_error"
            )

        duration_ms = int((self.clock() - start) * 1000)
        record_tool_run(tool_id, descriptor.cost_tier.value, failure is None, duration_ms)

        if failure is None:
            logger.info(
                "tool_completed",
                photo_id=photo_id,
                tool_id=tool_id,
                storage_key=storage_key,
                duration_ms=duration_ms,
                attempts=attempts
            )
        else:
            logger.warning(
                "tool_failed",
                photo_id=photo_id,
                tool_id=tool_id,
                failure_kind=failure.failure_kind,
                error=failure.message,
                attempts=attempts
            )

        return EnhancementResult(
            photo_id=photo_id,
            tool_id=tool_id,
            success=failure is None,
            storage_key=storage_key if failure is None else None,
            model=descriptor.model,
            duration_ms=duration_ms,
            cost_tier=descriptor.cost_tier,
            attempts=max(1, attempts),
            failure_kind=failure.failure_kind if failure else None,
            error=failure.message if failure else None
        )
