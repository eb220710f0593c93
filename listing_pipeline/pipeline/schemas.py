"""
Pipeline Data Transfer Objects

Typed records passed between the orchestrator, the strategy builder, the
model router and the executor, plus the checkpoint union persisted between
job attempts.
"""

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class ToolId(str, Enum):
    """Closed set of enhancement operations."""
    AUTO_ENHANCE = "auto-enhance"
    TWILIGHT_CONVERSION = "twilight-conversion"
    SKY_REPLACEMENT = "sky-replacement"
    VIRTUAL_STAGING = "virtual-staging"
    DECLUTTER = "declutter"
    OBJECT_REMOVAL = "object-removal"
    LAWN_REPAIR = "lawn-repair"
    WINDOW_MASKING = "window-masking"
    HDR_MERGING = "hdr-merging"
    UPSCALING = "upscaling"


# Execution order within one photo's tool list
TOOL_ORDER: List[str] = [tool.value for tool in ToolId]


class CostTier(str, Enum):
    FREE = "free"
    LOW = "low"
    HIGH = "high"


class PhotoAnalysis(BaseModel):
    """Structured output of the vision analysis provider for one photo."""
    model_config = ConfigDict(frozen=True)

    photo_id: str
    room_type: str = "unknown"
    is_exterior: bool = False
    sky_condition: str = "none"  # clear, overcast, blown_out, stormy, none
    lighting_quality: str = "well_lit"  # well_lit, dark, overexposed, mixed
    clutter_level: str = "none"  # none, low, moderate, high

    # Defect flags
    sky_needs_replacement: bool = False
    lawn_needs_repair: bool = False
    window_exposure_issue: bool = False
    needs_hdr: bool = False
    vertical_alignment_issue: bool = False
    room_empty: bool = False

    hero_score: float = Field(default=0.0, ge=0.0, le=1.0)
    twilight_score: float = Field(default=0.0, ge=0.0, le=1.0)

    # Share of expected fields the provider actually returned
    completeness: float = Field(default=1.0, ge=0.0, le=1.0)


class Strategy(BaseModel):
    """Per-listing enhancement plan derived from the analyses."""
    listing_id: str
    assignments: Dict[str, List[str]] = Field(default_factory=dict)
    hero_photo_id: Optional[str] = None
    twilight_photo_id: Optional[str] = None
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)

    # Listing-wide look shared by every photo (sky_style, twilight_tone, staging_style)
    presets: Dict[str, str] = Field(default_factory=dict)

    def tools_for(self, photo_id: str) -> List[str]:
        return list(self.assignments.get(photo_id, []))


class PhotoContext(BaseModel):
    """What the model router needs to know about the photo being enhanced."""
    photo_id: str
    image_url: str
    analysis: Optional[PhotoAnalysis] = None
    options: Dict[str, Any] = Field(default_factory=dict)


class InvocationDescriptor(BaseModel):
    """A fully-routed tool call, ready for the executor."""
    model_config = ConfigDict(frozen=True)

    tool_id: str
    model: str
    input: Dict[str, Any] = Field(default_factory=dict)
    estimated_ms: int
    cost_tier: CostTier
    is_local: bool = False


class EnhancementResult(BaseModel):
    """Outcome of one (photo, tool) execution. Never an exception."""
    photo_id: str
    tool_id: str
    success: bool
    storage_key: Optional[str] = None
    model: Optional[str] = None
    duration_ms: int = 0
    cost_tier: CostTier = CostTier.FREE
    attempts: int = 1

    # Populated on failure only
    failure_kind: Optional[str] = None  # timeout, rate_limited, provider_unavailable, rejected, storage_error
    error: Optional[str] = None


class JobPriority(str, Enum):
    STANDARD = "standard"
    RUSH = "rush"


class JobMessage(BaseModel):
    """Job-start message carried by the queue."""
    job_id: str
    listing_id: str
    owner_id: str
    priority: JobPriority = JobPriority.STANDARD


# =============================================================================
# Checkpoints
# =============================================================================

class AnalyzingCheckpoint(BaseModel):
    stage: Literal["analyzing"] = "analyzing"
    job_id: str
    timestamp: datetime = Field(default_factory=datetime.utcnow)


class ProcessingCheckpoint(BaseModel):
    """Strategy snapshot plus the photos whose results are already durable."""
    stage: Literal["processing"] = "processing"
    job_id: str
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    strategy: Strategy
    completed_photo_ids: List[str] = Field(default_factory=list)
    analysis_failed_photo_ids: List[str] = Field(default_factory=list)


class FinalizingCheckpoint(BaseModel):
    stage: Literal["finalizing"] = "finalizing"
    job_id: str
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    strategy: Strategy
    completed_photo_ids: List[str] = Field(default_factory=list)
    analysis_failed_photo_ids: List[str] = Field(default_factory=list)


Checkpoint = Annotated[
    Union[AnalyzingCheckpoint, ProcessingCheckpoint, FinalizingCheckpoint],
    Field(discriminator="stage"),
]

checkpoint_adapter: TypeAdapter = TypeAdapter(Checkpoint)
