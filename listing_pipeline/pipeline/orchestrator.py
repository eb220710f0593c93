"""
Pipeline Orchestrator

Per-job state machine driving a listing from uploaded to prepared:

    Start -> Analyzing -> StrategyBuilt -> Processing -> Finalizing -> {Completed, Failed}

Progress is checkpointed after the strategy is built and after every photo,
so a redelivered job resumes where the previous attempt stopped. Photo
results are always written before the checkpoint that lists them as done.
Photos changed by a generative tool get a vision quality review when a
validator is configured.
"""

import asyncio
from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import BaseModel

from listing_pipeline.core.config import settings
from listing_pipeline.core.exceptions import (
    InfrastructureError,
    InvalidTransitionError,
    JobCancelledError,
    NoAnalyzablePhotos,
    NotFoundError,
    PipelineBaseException,
    ProviderRejectedError,
    TransientProviderError,
    UnknownTool,
)
from listing_pipeline.core.logging import LogContext, get_logger
from listing_pipeline.core.metrics import (
    record_analysis,
    record_job_completion,
    record_quality_review,
    track_active_job,
    track_stage_latency,
)
from listing_pipeline.core.storage import IStorage
from listing_pipeline.modules.listings.models import (
    Job,
    JobStatus,
    Photo,
    PhotoStatus,
    PreparationStatus,
)
from listing_pipeline.pipeline.checkpoints import CheckpointStore
from listing_pipeline.pipeline.executor import EnhancementExecutor, is_external_url
from listing_pipeline.pipeline.quality import QualityValidator
from listing_pipeline.pipeline.repository import MetadataStore
from listing_pipeline.pipeline.retry import RetryConfig, retry_transient
from listing_pipeline.pipeline.schemas import (
    AnalyzingCheckpoint,
    CostTier,
    FinalizingCheckpoint,
    JobMessage,
    PhotoAnalysis,
    PhotoContext,
    ProcessingCheckpoint,
)
from listing_pipeline.pipeline.strategy import build_strategy
from listing_pipeline.pipeline.vision import VisionAnalysisProvider

logger = get_logger(__name__)

# Job-level failures that no redelivery can fix
NON_RETRYABLE_ERRORS = (NoAnalyzablePhotos, UnknownTool, InvalidTransitionError, NotFoundError)


class PipelineConfig(BaseModel):
    """Tunables for one orchestrator instance."""
    analysis_max_concurrency: int = 20
    analysis_retry_attempts: int = 3
    tool_retry_attempts: int = 3
    retry_backoff_seconds: float = 1.0
    tool_call_delay_ms: int = 500
    failure_ratio_threshold: float = 0.5
    hero_score_threshold: float = 0.7
    twilight_score_threshold: float = 0.75
    signed_url_ttl_seconds: int = 3600

    @classmethod
    def from_settings(cls) -> "PipelineConfig":
        return cls(
            analysis_max_concurrency=settings.ANALYSIS_MAX_CONCURRENCY,
            analysis_retry_attempts=settings.ANALYSIS_RETRY_ATTEMPTS,
            tool_retry_attempts=settings.TOOL_RETRY_ATTEMPTS,
            retry_backoff_seconds=settings.RETRY_BACKOFF_SECONDS,
            tool_call_delay_ms=settings.TOOL_CALL_DELAY_MS,
            failure_ratio_threshold=settings.FAILURE_RATIO_THRESHOLD,
            hero_score_threshold=settings.HERO_SCORE_THRESHOLD,
            twilight_score_threshold=settings.TWILIGHT_SCORE_THRESHOLD,
            signed_url_ttl_seconds=settings.SIGNED_URL_TTL_SECONDS,
        )


def is_retryable(error: Exception) -> bool:
    """Whether the queue should redeliver a job that failed with this error."""
    return not isinstance(error, NON_RETRYABLE_ERRORS)


def error_kind(error: Exception) -> str:
    if isinstance(error, NoAnalyzablePhotos):
        return "no_analyzable_photos"
    if isinstance(error, UnknownTool):
        return "unknown_tool"
    if isinstance(error, JobCancelledError):
        return "cancelled"
    if isinstance(error, InfrastructureError):
        return "infrastructure"
    if isinstance(error, InvalidTransitionError):
        return "invalid_transition"
    return "unexpected"


RunState = Union[ProcessingCheckpoint, FinalizingCheckpoint]


class PipelineOrchestrator:
    """Runs one preparation job end to end with injected collaborators."""

    def __init__(
        self,
        store: MetadataStore,
        checkpoints: CheckpointStore,
        storage: IStorage,
        vision: VisionAnalysisProvider,
        executor: EnhancementExecutor,
        config: Optional[PipelineConfig] = None,
        validator: Optional[QualityValidator] = None
    ):
        self.store = store
        self.checkpoints = checkpoints
        self.storage = storage
        self.vision = vision
        self.executor = executor
        self.config = config or PipelineConfig()
        self.validator = validator

    async def run(
        self,
        message: JobMessage,
        final_attempt: bool = False,
        task_id: Optional[str] = None
    ) -> Job:
        """
        Drive one delivery of a job message.

        Returns the job once it is terminal (completed, or failed by
        cancellation). Raises the job-level error otherwise; the job and
        listing are marked failed first when the error is not retryable or
        this is the final delivery attempt.
        """
        with LogContext(job_id=message.job_id, stage="start") as ctx, track_active_job():
            job = await self.store.get_job(message.job_id)
            if job.is_terminal:
                logger.info("job_already_terminal", status=job.status)
                await self.checkpoints.delete(job.id)
                return job

            job = await self.store.record_attempt(job.id, celery_task_id=task_id)
            logger.info(
                "job_started",
                listing_id=job.listing_id,
                attempt=job.attempts,
                priority=message.priority.value
            )

            try:
                return await self._drive(job, ctx)
            except JobCancelledError as e:
                logger.warning("job_cancelled", stage=ctx.stage)
                return await self._fail(job, e, ctx.stage)
            except Exception as e:
                retryable = is_retryable(e)
                logger.error(
                    "job_stage_failed",
                    stage=ctx.stage,
                    error=str(e),
                    error_type=type(e).__name__,
                    retryable=retryable,
                    final_attempt=final_attempt
                )
                if not retryable or final_attempt:
                    await self._fail(job, e, ctx.stage)
                raise

    # -------------------------------------------------------------------------
    # State machine
    # -------------------------------------------------------------------------

    async def _drive(self, job: Job, ctx: LogContext) -> Job:
        checkpoint = await self.checkpoints.load(job.id)

        if isinstance(checkpoint, (ProcessingCheckpoint, FinalizingCheckpoint)):
            logger.info(
                "job_resumed",
                checkpoint_stage=checkpoint.stage,
                completed_photos=len(checkpoint.completed_photo_ids)
            )
            await self.store.transition_job(job.id, JobStatus.PROCESSING.value)
            state: RunState = checkpoint
        else:
            await self.store.transition_job(job.id, JobStatus.PROCESSING.value)
            ctx.set_stage("analyzing")
            await self.checkpoints.save(AnalyzingCheckpoint(job_id=job.id))
            with track_stage_latency("analyzing"):
                state = await self._analyze_and_plan(job)

        if isinstance(state, ProcessingCheckpoint):
            ctx.set_stage("processing")
            with track_stage_latency("processing"):
                state = await self._process(job, state)
            state = FinalizingCheckpoint(
                job_id=job.id,
                strategy=state.strategy,
                completed_photo_ids=state.completed_photo_ids,
                analysis_failed_photo_ids=state.analysis_failed_photo_ids
            )
            await self.checkpoints.save(state)

        ctx.set_stage("finalizing")
        with track_stage_latency("finalizing"):
            return await self._finalize(job, state)

    async def _photo_url(self, storage_key: str) -> str:
        if is_external_url(storage_key):
            return storage_key
        return await self.storage.get_url(storage_key, self.config.signed_url_ttl_seconds)

    async def _review(self, photo_id: str, output_key: str) -> Dict[str, Any]:
        """Vision review of a generative output; an unavailable review leaves the photo unflagged."""
        try:
            url = await self._photo_url(output_key)
        except FileNotFoundError as e:
            logger.warning("quality_review_source_missing", photo_id=photo_id, error=str(e))
            verdict = None
        else:
            verdict = await self.validator.validate(photo_id, url)

        if verdict is None:
            record_quality_review("unavailable")
            return {"quality_score": None, "needs_review": False}

        record_quality_review("approved" if verdict.acceptable else "flagged")
        if not verdict.acceptable:
            logger.warning(
                "photo_flagged_for_review",
                photo_id=photo_id,
                quality=verdict.quality,
                issues=verdict.issues
            )
        return {"quality_score": verdict.quality, "needs_review": not verdict.acceptable}

    async def _analyze_photo(
        self,
        photo: Photo,
        semaphore: asyncio.Semaphore
    ) -> Tuple[str, Optional[PhotoAnalysis], Optional[str]]:
        retry_config = RetryConfig(
            attempts=self.config.analysis_retry_attempts,
            backoff_seconds=self.config.retry_backoff_seconds
        )
        async with semaphore:
            try:
                url = await self._photo_url(photo.raw_storage_key)
                analysis, _ = await retry_transient(
                    lambda: self.vision.analyze(photo.id, url),
                    retry_config=retry_config,
                    operation="analysis"
                )
            except (TransientProviderError, ProviderRejectedError) as e:
                record_analysis("failed")
                logger.warning("analysis_failed", photo_id=photo.id, error=e.message)
                return photo.id, None, e.message
            except FileNotFoundError as e:
                record_analysis("failed")
                logger.warning("analysis_source_missing", photo_id=photo.id, error=str(e))
                return photo.id, None, str(e)

        record_analysis("success")
        return photo.id, analysis, None

    async def _analyze_and_plan(self, job: Job) -> ProcessingCheckpoint:
        photos = await self.store.list_photos(job.listing_id)
        logger.info("analysis_started", photo_count=len(photos))

        semaphore = asyncio.Semaphore(max(1, self.config.analysis_max_concurrency))
        tasks = [asyncio.ensure_future(self._analyze_photo(photo, semaphore)) for photo in photos]
        try:
            outcomes = await asyncio.gather(*tasks)
        except BaseException:
            # Stop spending provider calls on a run that is already failing
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        analyses: List[PhotoAnalysis] = []
        failed_ids: List[str] = []
        for photo_id, analysis, error in outcomes:
            if analysis is None:
                failed_ids.append(photo_id)
                await self.store.update_photo(
                    photo_id,
                    status=PhotoStatus.FAILED.value,
                    analysis=None,
                    assigned_tools=None,
                    enhanced_storage_key=None,
                    error_message=f"analysis failed: {error}",
                    quality_score=None,
                    needs_review=False
                )
            else:
                analyses.append(analysis)
                await self.store.update_photo(
                    photo_id,
                    status=PhotoStatus.PENDING.value,
                    analysis=analysis.model_dump(),
                    error_message=None
                )

        logger.info("analysis_completed", analyzed=len(analyses), failed=len(failed_ids))
        if not analyses:
            raise NoAnalyzablePhotos(job.listing_id, len(photos), job_id=job.id)

        upload_order: Dict[str, int] = {photo.id: photo.upload_order for photo in photos}
        strategy = build_strategy(
            job.listing_id,
            analyses,
            upload_order=upload_order,
            hero_threshold=self.config.hero_score_threshold,
            twilight_threshold=self.config.twilight_score_threshold
        )
        logger.info(
            "strategy_built",
            hero_photo_id=strategy.hero_photo_id,
            twilight_photo_id=strategy.twilight_photo_id,
            confidence=strategy.confidence,
            presets=strategy.presets,
            tool_count=sum(len(tools) for tools in strategy.assignments.values())
        )

        checkpoint = ProcessingCheckpoint(
            job_id=job.id,
            strategy=strategy,
            completed_photo_ids=[],
            analysis_failed_photo_ids=failed_ids
        )
        await self.checkpoints.save(checkpoint)
        return checkpoint

    async def _process(self, job: Job, state: ProcessingCheckpoint) -> ProcessingCheckpoint:
        strategy = state.strategy
        completed = list(state.completed_photo_ids)
        photos = await self.store.list_photos(job.listing_id)
        pending = [
            photo for photo in photos
            if photo.id in strategy.assignments and photo.id not in completed
        ]
        logger.info("processing_started", pending_photos=len(pending), completed_photos=len(completed))

        for photo in pending:
            tools = strategy.tools_for(photo.id)
            await self.store.update_photo(
                photo.id,
                status=PhotoStatus.PROCESSING.value,
                assigned_tools=tools
            )
            analysis = PhotoAnalysis.model_validate(photo.analysis) if photo.analysis else None

            current_key = photo.raw_storage_key
            last_output: Optional[str] = None
            errors: List[str] = []
            generative = False

            for index, tool_id in enumerate(tools):
                if await self.checkpoints.is_cancelled(job.id):
                    raise JobCancelledError(job.id)
                if index > 0 and self.config.tool_call_delay_ms > 0:
                    await asyncio.sleep(self.config.tool_call_delay_ms / 1000.0)

                try:
                    image_url = await self._photo_url(current_key)
                except FileNotFoundError as e:
                    errors.append(f"{tool_id}: source missing ({e})")
                    logger.warning("tool_source_missing", photo_id=photo.id, tool_id=tool_id)
                    continue

                context = PhotoContext(
                    photo_id=photo.id,
                    image_url=image_url,
                    analysis=analysis,
                    options=dict(strategy.presets)
                )
                result = await self.executor.execute(photo.id, tool_id, context, current_key)
                await self.store.record_enhancement(job.id, result)

                if result.success:
                    current_key = result.storage_key
                    last_output = result.storage_key
                    generative = generative or result.cost_tier != CostTier.FREE
                else:
                    errors.append(f"{tool_id}: {result.failure_kind}: {result.error}")

            status = PhotoStatus.FAILED if errors else PhotoStatus.COMPLETED
            review = {"quality_score": None, "needs_review": False}
            if self.validator is not None and status == PhotoStatus.COMPLETED and generative:
                review = await self._review(photo.id, last_output)
            await self.store.update_photo(
                photo.id,
                status=status.value,
                enhanced_storage_key=last_output,
                error_message="; ".join(errors)[:2000] if errors else None,
                **review
            )

            completed.append(photo.id)
            state = ProcessingCheckpoint(
                job_id=job.id,
                strategy=strategy,
                completed_photo_ids=list(completed),
                analysis_failed_photo_ids=state.analysis_failed_photo_ids
            )
            await self.checkpoints.save(state)
            logger.info(
                "photo_processed",
                photo_id=photo.id,
                status=status.value,
                tools=tools,
                failed_tools=len(errors)
            )

        return state

    async def _finalize(self, job: Job, state: FinalizingCheckpoint) -> Job:
        photos = await self.store.list_photos(job.listing_id)
        total = len(photos)
        failed = sum(1 for photo in photos if photo.status == PhotoStatus.FAILED.value)
        failure_ratio = failed / total if total else 1.0

        if failure_ratio > self.config.failure_ratio_threshold:
            listing_status = PreparationStatus.NEEDS_REVIEW
        else:
            listing_status = PreparationStatus.PREPARED

        await self.store.finalize_listing(
            job.listing_id,
            listing_status.value,
            hero_photo_id=state.strategy.hero_photo_id,
            confidence_score=state.strategy.confidence
        )
        job = await self.store.transition_job(job.id, JobStatus.COMPLETED.value)
        await self.checkpoints.delete(job.id)
        record_job_completion("completed")

        logger.info(
            "job_completed",
            listing_status=listing_status.value,
            failed_photos=failed,
            total_photos=total,
            failure_ratio=round(failure_ratio, 4)
        )
        return job

    async def _fail(self, job: Job, error: Exception, stage: Optional[str]) -> Job:
        current = await self.store.get_job(job.id)
        if current.is_terminal:
            return current

        message = error.message if isinstance(error, PipelineBaseException) else str(error)
        job = await self.store.transition_job(
            job.id,
            JobStatus.FAILED.value,
            error_message=message or type(error).__name__,
            error_kind=error_kind(error),
            error_stage=stage
        )
        await self.store.set_listing_status(job.listing_id, PreparationStatus.FAILED.value)
        await self.checkpoints.delete(job.id)
        record_job_completion("failed", failure_stage=stage or "none")
        logger.error("job_failed", error_kind=error_kind(error), error=message)
        return job
