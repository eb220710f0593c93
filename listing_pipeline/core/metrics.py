"""
Prometheus Metrics for Observability

Tracks pipeline stage latency, provider calls, tool outcomes and job results.
Exposes /api/v1/metrics for Prometheus scraping.
"""

import time
from contextlib import contextmanager

from prometheus_client import (
    Counter,
    Histogram,
    Gauge,
    Info,
    generate_latest,
    CONTENT_TYPE_LATEST,
    REGISTRY
)

# =============================================================================
# Metrics Definitions
# =============================================================================

# Pipeline Latency - Per Stage
pipeline_latency_seconds = Histogram(
    "pipeline_latency_seconds",
    "Time spent in each pipeline stage",
    labelnames=["stage", "status"],
    buckets=[0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0, 900.0]
)

# Jobs Counter
jobs_total = Counter(
    "listing_jobs_total",
    "Total number of preparation jobs finished",
    labelnames=["status", "failure_stage"]
)

# Active Jobs
active_jobs_gauge = Gauge(
    "listing_active_jobs",
    "Number of currently processing jobs"
)

# External provider calls
provider_calls_total = Counter(
    "provider_calls_total",
    "Total number of external provider calls",
    labelnames=["provider", "status", "http_status"]
)

# Tool executions
tool_runs_total = Counter(
    "enhancement_tool_runs_total",
    "Enhancement tool executions by outcome",
    labelnames=["tool", "cost_tier", "status"]
)

tool_latency_seconds = Histogram(
    "enhancement_tool_latency_seconds",
    "Time spent executing one enhancement tool",
    labelnames=["tool"],
    buckets=[0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0]
)

# Analysis outcomes
photo_analyses_total = Counter(
    "photo_analyses_total",
    "Vision analyses by outcome",
    labelnames=["status"]
)

quality_reviews_total = Counter(
    "quality_reviews_total",
    "Vision reviews of enhanced photos by verdict",
    labelnames=["verdict"]
)

# API Request Metrics
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "endpoint", "status"]
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration",
    labelnames=["method", "endpoint"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)

# Application Info
app_info = Info(
    "listing_pipeline",
    "Application information"
)


# =============================================================================
# Helper Functions
# =============================================================================

def set_app_info(version: str, environment: str):
    """Set application info metric."""
    app_info.info({
        "version": version,
        "environment": environment
    })


@contextmanager
def track_stage_latency(stage: str):
    """
    Context manager to track stage latency.

    Usage:
        with track_stage_latency("analyzing"):
            # do work
    """
    start = time.time()
    status = "success"
    try:
        yield
    except Exception:
        status = "error"
        raise
    finally:
        duration = time.time() - start
        pipeline_latency_seconds.labels(stage=stage, status=status).observe(duration)


def record_provider_call(provider: str, status: str, http_status: int = 200):
    """Record an external provider call."""
    provider_calls_total.labels(
        provider=provider,
        status=status,
        http_status=str(http_status)
    ).inc()


def record_tool_run(tool: str, cost_tier: str, success: bool, duration_ms: int):
    """Record one enhancement tool execution."""
    tool_runs_total.labels(
        tool=tool,
        cost_tier=cost_tier,
        status="success" if success else "failed"
    ).inc()
    tool_latency_seconds.labels(tool=tool).observe(duration_ms / 1000.0)


def record_analysis(status: str):
    """Record a vision analysis outcome (success / failed)."""
    photo_analyses_total.labels(status=status).inc()


def record_quality_review(verdict: str):
    """Record a quality review outcome (approved / flagged / unavailable)."""
    quality_reviews_total.labels(verdict=verdict).inc()


def track_active_job():
    """Context manager counting a job attempt as active while it runs."""
    return active_jobs_gauge.track_inprogress()


def record_job_completion(status: str, failure_stage: str = "none"):
    """Record a job reaching a terminal status."""
    jobs_total.labels(status=status, failure_stage=failure_stage).inc()


def get_metrics() -> bytes:
    """Generate Prometheus metrics output."""
    return generate_latest(REGISTRY)


def get_metrics_content_type() -> str:
    """Get the content type for Prometheus metrics."""
    return CONTENT_TYPE_LATEST
