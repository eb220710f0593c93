"""
Global Exception Handling

Error taxonomy for the preparation pipeline, a circuit breaker for the
external providers, and FastAPI handlers that turn exceptions into
structured JSON responses.
"""

import traceback
from typing import Optional, Dict, Any
from datetime import datetime
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from listing_pipeline.core.logging import get_logger, job_id_var

logger = get_logger(__name__)


# =============================================================================
# Custom Exceptions
# =============================================================================

class PipelineBaseException(Exception):
    """Base exception for the listing pipeline."""

    def __init__(
        self,
        message: str,
        code: int = 500,
        job_id: Optional[str] = None,
        stage: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.job_id = job_id or job_id_var.get()
        self.stage = stage
        self.details = details or {}
        super().__init__(self.message)


class TransientProviderError(PipelineBaseException):
    """Timeout, rate limit or 5xx from an external provider. Retryable."""

    def __init__(
        self,
        message: str,
        service: str,
        http_status: Optional[int] = None,
        failure_kind: str = "provider_unavailable",
        **kwargs
    ):
        super().__init__(message, code=503, **kwargs)
        self.service = service
        self.http_status = http_status
        self.failure_kind = failure_kind
        self.details["service"] = service
        self.details["http_status"] = http_status


class ProviderRejectedError(PipelineBaseException):
    """Provider refused the request (4xx other than 429). Not retried."""

    def __init__(self, message: str, service: str, http_status: Optional[int] = None, **kwargs):
        super().__init__(message, code=502, **kwargs)
        self.service = service
        self.http_status = http_status
        self.details["service"] = service
        self.details["http_status"] = http_status


class PermanentToolFailure(PipelineBaseException):
    """A (photo, tool) pair that will not succeed in this run."""

    def __init__(self, message: str, photo_id: str, tool_id: str, failure_kind: str, **kwargs):
        super().__init__(message, code=502, **kwargs)
        self.photo_id = photo_id
        self.tool_id = tool_id
        self.failure_kind = failure_kind
        self.details.update({"photo_id": photo_id, "tool_id": tool_id, "failure_kind": failure_kind})


class NoAnalyzablePhotos(PipelineBaseException):
    """Every photo of the listing failed analysis."""

    def __init__(self, listing_id: str, photo_count: int, **kwargs):
        super().__init__(
            f"No analyzable photos for listing {listing_id} ({photo_count} attempted)",
            code=422,
            stage="analyzing",
            **kwargs
        )
        self.details["listing_id"] = listing_id
        self.details["photo_count"] = photo_count


class InfrastructureError(PipelineBaseException):
    """Metadata store, image store, checkpoint store or queue unavailable."""

    def __init__(self, message: str, component: str, **kwargs):
        super().__init__(message, code=503, **kwargs)
        self.component = component
        self.details["component"] = component


class UnknownTool(PipelineBaseException):
    """Tool identifier outside the closed tool set. A configuration error."""

    def __init__(self, tool_id: str, **kwargs):
        super().__init__(f"Unknown tool: {tool_id}", code=500, **kwargs)
        self.tool_id = tool_id
        self.details["tool_id"] = tool_id


class NotFoundError(PipelineBaseException):
    """Requested record does not exist."""

    def __init__(self, entity: str, entity_id: str, **kwargs):
        super().__init__(f"{entity} not found: {entity_id}", code=404, **kwargs)
        self.details["entity"] = entity
        self.details["id"] = entity_id


class ActiveJobExistsError(PipelineBaseException):
    """A non-terminal job already owns the listing."""

    def __init__(self, listing_id: str, active_job_id: Optional[str] = None, **kwargs):
        super().__init__(
            f"Listing {listing_id} is already being prepared",
            code=409,
            **kwargs
        )
        self.details["listing_id"] = listing_id
        self.details["active_job_id"] = active_job_id


class InvalidTransitionError(PipelineBaseException):
    """Job status may only move forward."""

    def __init__(self, job_id: str, current: str, target: str, **kwargs):
        super().__init__(
            f"Job {job_id} cannot move from {current} to {target}",
            code=409,
            job_id=job_id,
            **kwargs
        )
        self.current = current
        self.target = target


class JobCancelledError(PipelineBaseException):
    """Cancellation was requested for the running job."""

    def __init__(self, job_id: str, **kwargs):
        super().__init__(f"Job {job_id} was cancelled", code=409, job_id=job_id, **kwargs)


# =============================================================================
# Circuit Breaker Implementation
# =============================================================================

class CircuitBreaker:
    """
    Circuit Breaker pattern for graceful failure handling.

    States:
    - CLOSED: Normal operation, requests pass through
    - OPEN: Too many failures, requests fail fast
    - HALF_OPEN: Testing if service is recovered
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: int = 60,
        half_open_max_calls: int = 3
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.half_open_max_calls = half_open_max_calls

        self._failure_count = 0
        self._last_failure_time: Optional[datetime] = None
        self._state = "CLOSED"
        self._half_open_calls = 0

    @property
    def state(self) -> str:
        """Get current circuit breaker state."""
        if self._state == "OPEN":
            if self._last_failure_time:
                elapsed = (datetime.utcnow() - self._last_failure_time).total_seconds()
                if elapsed >= self.recovery_timeout:
                    self._state = "HALF_OPEN"
                    self._half_open_calls = 0
        return self._state

    def can_execute(self) -> bool:
        """Check if request can proceed."""
        state = self.state

        if state == "CLOSED":
            return True
        elif state == "OPEN":
            return False
        elif state == "HALF_OPEN":
            return self._half_open_calls < self.half_open_max_calls

        return False

    def record_success(self):
        """Record a successful call."""
        if self._state == "HALF_OPEN":
            self._half_open_calls += 1
            if self._half_open_calls >= self.half_open_max_calls:
                self._state = "CLOSED"
                self._failure_count = 0
                logger.info("circuit_breaker_closed", circuit=self.name)
        elif self._state == "CLOSED":
            self._failure_count = 0

    def record_failure(self, error: Optional[Exception] = None):
        """Record a failed call."""
        self._failure_count += 1
        self._last_failure_time = datetime.utcnow()

        if self._state == "HALF_OPEN":
            self._state = "OPEN"
            logger.warning(
                "circuit_breaker_reopened",
                circuit=self.name,
                error=str(error) if error else None
            )
        elif self._failure_count >= self.failure_threshold:
            self._state = "OPEN"
            logger.warning(
                "circuit_breaker_opened",
                circuit=self.name,
                failure_count=self._failure_count,
                error=str(error) if error else None
            )

    def reset(self):
        """Reset the circuit breaker."""
        self._state = "CLOSED"
        self._failure_count = 0
        self._last_failure_time = None
        self._half_open_calls = 0


# One breaker per external provider, shared within a worker process
circuit_breakers: Dict[str, CircuitBreaker] = {
    "vision": CircuitBreaker("vision", failure_threshold=5, recovery_timeout=60),
    "replicate": CircuitBreaker("replicate", failure_threshold=5, recovery_timeout=120),
}


def get_circuit_breaker(name: str) -> CircuitBreaker:
    """Get or create a circuit breaker for a service."""
    if name not in circuit_breakers:
        circuit_breakers[name] = CircuitBreaker(name)
    return circuit_breakers[name]


# =============================================================================
# FastAPI Exception Handlers
# =============================================================================

def _error_body(exc: PipelineBaseException) -> Dict[str, Any]:
    return {
        "error": exc.message,
        "job_id": exc.job_id or job_id_var.get(),
        "code": exc.code,
        "stage": exc.stage,
        "details": exc.details,
        "timestamp": datetime.utcnow().isoformat() + "Z"
    }


def register_exception_handlers(app: FastAPI):
    """Register custom exception handlers with FastAPI app."""

    @app.exception_handler(PipelineBaseException)
    async def pipeline_exception_handler(request: Request, exc: PipelineBaseException):
        log = logger.warning if exc.code < 500 else logger.error
        log(
            "pipeline_exception",
            error=exc.message,
            code=exc.code,
            stage=exc.stage,
            details=exc.details,
            path=str(request.url.path)
        )
        return JSONResponse(status_code=exc.code, content=_error_body(exc))

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        logger.error(
            "unhandled_exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=str(request.url.path),
            traceback=traceback.format_exc()
        )

        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal server error",
                "job_id": job_id_var.get(),
                "code": 500,
                "timestamp": datetime.utcnow().isoformat() + "Z"
            }
        )
