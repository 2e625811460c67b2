"""
SQLAlchemy database models
"""

from datetime import datetime, timezone
from sqlalchemy import Column, String, Integer, Float, DateTime, ForeignKey, Text, JSON, UniqueConstraint
from sqlalchemy.orm import relationship
from database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# Job status constants
class JobStatus:
    """Constants for job status values"""
    QUEUED = "queued"
    RUNNING = "running"
    UPSCALING = "upscaling"
    ENCODING = "encoding"
    COMPLETED = "completed"
    FAILED = "failed"

    TERMINAL = (COMPLETED, FAILED)

    @classmethod
    def all_statuses(cls):
        """Get list of all statuses in lifecycle order"""
        return [
            cls.QUEUED,
            cls.RUNNING,
            cls.UPSCALING,
            cls.ENCODING,
            cls.COMPLETED,
            cls.FAILED
        ]


# Scene status constants
class SceneStatus:
    """Constants for scene status values"""
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class TransitionType:
    """Constants for transitions applied at a scene boundary"""
    NONE = "none"
    FADE = "fade"
    DISSOLVE = "dissolve"
    WIPE = "wipe"

    @classmethod
    def all_types(cls):
        return [cls.NONE, cls.FADE, cls.DISSOLVE, cls.WIPE]


class Job(Base):
    """
    Job model for multi-scene video generation requests

    Tracks overall status, progress and the single live prediction of a job.
    Scene-level outputs live on the Scene rows; `outputs` only receives the
    final artifact.
    """
    __tablename__ = "jobs"

    # Primary key
    id = Column(String, primary_key=True, index=True)  # UUID

    # Job metadata
    status = Column(String, nullable=False, default=JobStatus.QUEUED, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    # Generation parameters shared by every scene
    model = Column(String, nullable=True)
    aspect_ratio = Column(String, nullable=False, default="16:9")
    negative_prompt = Column(Text, nullable=True)
    seed = Column(Integer, nullable=True)

    # Scene dispatch state
    active_prediction_id = Column(String, nullable=True, index=True)
    completed_scenes = Column(Integer, nullable=False, default=0)
    # Times the poller has resumed this job after it stalled
    recovery_attempts = Column(Integer, nullable=False, default=0)

    # Progress read model
    progress_stage = Column(String, nullable=False, default=JobStatus.QUEUED)
    progress_percent = Column(Integer, nullable=False, default=0)
    progress_message = Column(Text, nullable=True)
    progress_eta = Column(Integer, nullable=True)  # seconds

    # Output
    outputs = Column(JSON, nullable=False, default=list)  # Final artifact URL(s)
    final_output_s3_key = Column(String, nullable=True)  # S3 key, not URL

    # Error handling
    error_message = Column(Text, nullable=True)

    # Relationships
    scenes = relationship(
        "Scene",
        back_populates="job",
        cascade="all, delete-orphan",
        order_by="Scene.order"
    )

    def __repr__(self):
        return f"<Job(id={self.id}, status={self.status}, scenes={self.completed_scenes}/{len(self.scenes)})>"

    @property
    def is_terminal(self) -> bool:
        return self.status in JobStatus.TERMINAL

    @property
    def scene_outputs(self) -> list:
        """Per-scene output references in `order`, for scenes that have one."""
        return [scene.output_url for scene in self.scenes if scene.output_url]

    def progress_dict(self):
        """Progress read model consumed by any UI."""
        return {
            "stage": self.progress_stage,
            "percent": self.progress_percent,
            "message": self.progress_message,
            "eta": self.progress_eta,
        }

    def to_dict(self):
        """Convert job to dictionary"""
        return {
            "job_id": self.id,
            "status": self.status,
            "progress": self.progress_dict(),
            "outputs": list(self.outputs or []),
            "scene_outputs": self.scene_outputs,
            "scenes": [scene.to_dict() for scene in self.scenes],
            "active_prediction_id": self.active_prediction_id,
            "error": self.error_message,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


class Scene(Base):
    """
    Scene model: one independently generated unit of video.

    `order` is the sole ordering authority for compositing.
    """
    __tablename__ = "scenes"
    __table_args__ = (UniqueConstraint("job_id", "order", name="uq_scene_job_order"),)

    # Primary key
    id = Column(String, primary_key=True, index=True)  # UUID

    # Foreign key to Job
    job_id = Column(String, ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False, index=True)

    # Scene definition (immutable once created)
    order = Column(Integer, nullable=False)
    prompt = Column(Text, nullable=False)
    duration_seconds = Column(Float, nullable=False)
    trim_start = Column(Float, nullable=False, default=0.0)
    trim_end = Column(Float, nullable=False)
    transition_type = Column(String, nullable=False, default=TransitionType.NONE)
    transition_duration = Column(Float, nullable=False, default=0.0)

    # Generation state
    status = Column(String, nullable=False, default=SceneStatus.PENDING)
    prediction_id = Column(String, nullable=True, index=True)
    output_url = Column(String, nullable=True)
    error_message = Column(Text, nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    # Relationships
    job = relationship("Job", back_populates="scenes")

    def __repr__(self):
        return f"<Scene(id={self.id}, job_id={self.job_id}, order={self.order}, status={self.status})>"

    @property
    def trimmed_duration(self) -> float:
        return self.trim_end - self.trim_start

    def to_dict(self):
        """Convert scene to dictionary"""
        return {
            "id": self.id,
            "order": self.order,
            "prompt": self.prompt,
            "duration_seconds": self.duration_seconds,
            "trim_start": self.trim_start,
            "trim_end": self.trim_end,
            "transition_type": self.transition_type,
            "transition_duration": self.transition_duration,
            "status": self.status,
            "prediction_id": self.prediction_id,
            "output_url": self.output_url,
            "error": self.error_message,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }
