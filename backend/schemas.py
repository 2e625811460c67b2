"""
Pydantic schemas for request/response validation
"""

from pydantic import BaseModel, Field, field_validator, model_validator
from typing import Optional, List, Any, Literal
from datetime import datetime

from pipeline.composition_plan import validate_scene_specs
from pipeline.error_handler import InvalidSceneConfigError


class SceneSpecRequest(BaseModel):
    """One scene of a job request"""
    order: int = Field(..., ge=0, description="0-based position in the final video")
    prompt: str = Field(..., min_length=1, max_length=2000, description="Scene prompt")
    duration_seconds: float = Field(5.0, gt=0, le=60, description="Generated clip length in seconds")
    trim_start: float = Field(0.0, ge=0, description="Trim IN point in seconds")
    trim_end: Optional[float] = Field(None, gt=0, description="Trim OUT point in seconds (defaults to duration)")
    transition_type: Literal["none", "fade", "dissolve", "wipe"] = Field(
        "none",
        description="Transition into the next scene (ignored on the last scene)"
    )
    transition_duration: float = Field(0.0, ge=0, description="Transition length in seconds")

    @model_validator(mode="after")
    def validate_trim_points(self):
        """Fill the default OUT point and check trim_end > trim_start."""
        if self.trim_end is None:
            self.trim_end = self.duration_seconds
        if self.trim_end <= self.trim_start:
            raise ValueError("trim_end must be greater than trim_start")
        if self.trim_end > self.duration_seconds:
            raise ValueError("trim_end must not exceed duration_seconds")
        return self

    class Config:
        json_schema_extra = {
            "example": {
                "order": 0,
                "prompt": "A lighthouse on a cliff at dusk, waves crashing",
                "duration_seconds": 5,
                "trim_start": 0.5,
                "trim_end": 4.5,
                "transition_type": "dissolve",
                "transition_duration": 1.0
            }
        }


class JobCreateRequest(BaseModel):
    """Request model for creating a multi-scene job"""
    scenes: List[SceneSpecRequest] = Field(..., min_length=1, description="Ordered scene specs")
    aspect_ratio: str = Field("16:9", description="Aspect ratio shared by every scene")
    negative_prompt: Optional[str] = Field(None, max_length=2000)
    seed: Optional[int] = Field(None, ge=0, description="Shared seed (derived from the job id when omitted)")
    model: Optional[str] = Field(None, description="Override of the configured video model")

    @model_validator(mode="after")
    def validate_scene_sequence(self):
        """Check order values and transition lengths against neighbouring scenes."""
        try:
            validate_scene_specs(self.scenes)
        except InvalidSceneConfigError as e:
            raise ValueError(e.message) from e
        return self

    class Config:
        json_schema_extra = {
            "example": {
                "scenes": [
                    {"order": 0, "prompt": "Sunrise over a quiet harbor", "duration_seconds": 5,
                     "trim_start": 0, "trim_end": 4.5, "transition_type": "fade", "transition_duration": 0.5},
                    {"order": 1, "prompt": "Fishing boats leaving the harbor", "duration_seconds": 5,
                     "trim_start": 0.5, "trim_end": 5}
                ],
                "aspect_ratio": "16:9"
            }
        }


class ProgressResponse(BaseModel):
    """Progress read model"""
    stage: str
    percent: int = Field(..., ge=0, le=100)
    message: Optional[str] = None
    eta: Optional[int] = Field(None, description="Estimated seconds remaining")


class SceneResponse(BaseModel):
    id: str
    order: int
    prompt: str
    duration_seconds: float
    trim_start: float
    trim_end: float
    transition_type: str
    transition_duration: float
    status: str
    prediction_id: Optional[str] = None
    output_url: Optional[str] = None
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class JobResponse(BaseModel):
    """Response model for job endpoints"""
    job_id: str = Field(..., description="Unique job identifier")
    status: str = Field(..., description="queued, running, upscaling, encoding, completed or failed")
    progress: ProgressResponse
    outputs: List[str] = Field(default_factory=list, description="Final artifact URL (one when completed)")
    scene_outputs: List[str] = Field(default_factory=list, description="Per-scene outputs in order")
    scenes: List[SceneResponse] = Field(default_factory=list)
    active_prediction_id: Optional[str] = None
    error: Optional[str] = Field(None, description="Error message if job failed")
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    class Config:
        json_schema_extra = {
            "example": {
                "job_id": "550e8400-e29b-41d4-a716-446655440000",
                "status": "running",
                "progress": {"stage": "running", "percent": 30, "message": "Generating scene 2 of 3", "eta": 240},
                "outputs": [],
                "scene_outputs": ["https://replicate.delivery/.../scene0.mp4"],
                "scenes": [],
                "error": None
            }
        }


class CancelRequest(BaseModel):
    """Request model for cancelling a job"""
    reason: Optional[str] = Field(None, max_length=500, description="Shown as the job's error message")


class WebhookPayload(BaseModel):
    """Replicate prediction webhook body"""
    id: str = Field(..., min_length=1)
    status: str
    output: Optional[Any] = None
    error: Optional[Any] = None

    model_config = {"extra": "allow"}

    @field_validator("status")
    @classmethod
    def validate_status(cls, v):
        """Replicate prediction states only."""
        allowed = {"starting", "processing", "succeeded", "failed", "canceled"}
        if v not in allowed:
            raise ValueError(f"status must be one of {sorted(allowed)}")
        return v

    @property
    def error_message(self) -> Optional[str]:
        if self.error is None:
            return None
        return self.error if isinstance(self.error, str) else str(self.error)


class WebhookAck(BaseModel):
    """Webhook acknowledgement"""
    received: bool = True
    outcome: str = Field(..., description="applied, ignored or pending")
    prediction_id: str


class ErrorResponse(BaseModel):
    """Standard error response"""
    error_code: str = Field(..., description="Error code")
    message: str = Field(..., description="Human-readable error message")
    details: Optional[Any] = Field(None, description="Additional error details")
    user_message: Optional[str] = None

    class Config:
        json_schema_extra = {
            "example": {
                "error_code": "INVALID_SCENE_CONFIG",
                "message": "trim_end (2.0) must be greater than trim_start (3.0)",
                "details": {"scene_order": 1, "field": "trim_end"},
                "user_message": "Scene settings are invalid. Check trim points and transitions."
            }
        }
