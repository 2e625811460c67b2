"""
Durable job and scene store.

Every state transition is a conditional UPDATE (compare-and-set) whose WHERE
clause carries the expected status, prediction handle and completed-scene
count. Exactly one caller sees rowcount == 1; every other caller gets False
and must treat the event as already handled.

Reads return detached Job objects with their scenes loaded, so callers can
inspect them after the session is closed.
"""

import hashlib
import uuid
from contextlib import contextmanager
from datetime import datetime
from types import SimpleNamespace
from typing import Iterable, List, Optional

import structlog
from sqlalchemy import and_, or_, update
from sqlalchemy.orm import selectinload, sessionmaker

from database import engine as default_engine
from models import Job, JobStatus, Scene, SceneStatus, TransitionType, as_utc, utcnow
from pipeline.composition_plan import validate_scene_specs
from pipeline.error_handler import JobNotFoundError

logger = structlog.get_logger()


def derive_seed(job_id: str) -> int:
    """Shared seed for every scene of a job, derived from its id."""
    digest = hashlib.sha256(job_id.encode("utf-8")).hexdigest()
    return int(digest, 16) % 2_147_483_647


class JobStore:
    """
    SQLAlchemy-backed store for jobs and scenes.

    Args:
        bind: Engine to use (defaults to the application engine)

    Example:
        >>> store = JobStore()
        >>> job = store.create_job([{"order": 0, "prompt": "...", "duration_seconds": 5, "trim_end": 5}])
        >>> store.claim_start(job.id)
        True
    """

    def __init__(self, bind=None):
        self.engine = bind or default_engine
        self._session_factory = sessionmaker(
            bind=self.engine,
            autocommit=False,
            autoflush=False,
            expire_on_commit=False,
        )

    @contextmanager
    def session(self):
        db = self._session_factory()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    # Reads

    def _load(self, db, job_id: str) -> Optional[Job]:
        return (
            db.query(Job)
            .options(selectinload(Job.scenes))
            .filter(Job.id == job_id)
            .one_or_none()
        )

    def get_job(self, job_id: str) -> Job:
        """
        Raises:
            JobNotFoundError: If no job has this id
        """
        with self.session() as db:
            job = self._load(db, job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def find_job_by_prediction(self, prediction_id: str) -> Optional[Job]:
        """Job whose live prediction is `prediction_id`, if any."""
        with self.session() as db:
            return (
                db.query(Job)
                .options(selectinload(Job.scenes))
                .filter(Job.active_prediction_id == prediction_id)
                .one_or_none()
            )

    def list_pollable_jobs(self, limit: int) -> List[Job]:
        """Running jobs with a live prediction, least recently touched first."""
        with self.session() as db:
            return (
                db.query(Job)
                .options(selectinload(Job.scenes))
                .filter(Job.status == JobStatus.RUNNING)
                .filter(Job.active_prediction_id.isnot(None))
                .order_by(Job.updated_at.asc())
                .limit(limit)
                .all()
            )

    def list_queued_jobs(self, limit: int) -> List[Job]:
        """Jobs never dispatched, oldest first."""
        with self.session() as db:
            return (
                db.query(Job)
                .filter(Job.status == JobStatus.QUEUED)
                .order_by(Job.created_at.asc())
                .limit(limit)
                .all()
            )

    def list_stalled_jobs(self, stale_before: datetime, limit: int) -> List[Job]:
        """
        Jobs with nothing in flight that have not moved since `stale_before`:
        encoding jobs whose compositing task is gone, and running jobs that
        lost their next dispatch.
        """
        with self.session() as db:
            return (
                db.query(Job)
                .options(selectinload(Job.scenes))
                .filter(or_(
                    Job.status == JobStatus.ENCODING,
                    and_(Job.status == JobStatus.RUNNING, Job.active_prediction_id.is_(None)),
                ))
                .filter(Job.updated_at < stale_before)
                .order_by(Job.updated_at.asc())
                .limit(limit)
                .all()
            )

    # Creation

    def create_job(
        self,
        scenes: Iterable,
        aspect_ratio: str = "16:9",
        negative_prompt: Optional[str] = None,
        seed: Optional[int] = None,
        model: Optional[str] = None,
        job_id: Optional[str] = None,
    ) -> Job:
        """
        Persist a queued job and its scene specs.

        `scenes` items may be dicts or objects with the SceneSpec fields.

        Raises:
            InvalidSceneConfigError: If trim/transition/order constraints fail
        """
        specs = [_as_spec(item) for item in scenes]
        validate_scene_specs([SimpleNamespace(**spec) for spec in specs])

        job_id = job_id or str(uuid.uuid4())
        job = Job(
            id=job_id,
            status=JobStatus.QUEUED,
            model=model,
            aspect_ratio=aspect_ratio or "16:9",
            negative_prompt=negative_prompt,
            seed=seed if seed is not None else derive_seed(job_id),
            completed_scenes=0,
            progress_stage=JobStatus.QUEUED,
            progress_percent=0,
            progress_message="Queued",
            outputs=[],
        )
        for spec in sorted(specs, key=lambda s: s["order"]):
            job.scenes.append(Scene(
                id=str(uuid.uuid4()),
                order=spec["order"],
                prompt=spec["prompt"],
                duration_seconds=spec["duration_seconds"],
                trim_start=spec["trim_start"],
                trim_end=spec["trim_end"],
                transition_type=spec["transition_type"],
                transition_duration=spec["transition_duration"],
                status=SceneStatus.PENDING,
            ))

        with self.session() as db:
            db.add(job)

        logger.info("job_created", job_id=job_id, num_scenes=len(specs))
        return self.get_job(job_id)

    # Transitions

    def _cas(self, db, job_id: str, conditions: list, values: dict) -> bool:
        stmt = (
            update(Job)
            .where(Job.id == job_id, *conditions)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return db.execute(stmt).rowcount == 1

    def claim_start(self, job_id: str) -> bool:
        """queued -> running. False if someone else already started (or ended) the job."""
        now = utcnow()
        with self.session() as db:
            return self._cas(
                db, job_id,
                [Job.status == JobStatus.QUEUED],
                {
                    "status": JobStatus.RUNNING,
                    "started_at": now,
                    "progress_stage": JobStatus.RUNNING,
                    "progress_percent": 0,
                },
            )

    def claim_recovery(self, job_id: str, status: str, recovery_attempts: int, stale_before: datetime) -> bool:
        """
        Take ownership of resuming a stalled job. Bumps `recovery_attempts`
        and `updated_at`, so a second poller (or the next tick) skips it.
        """
        conditions = [
            Job.status == status,
            Job.recovery_attempts == recovery_attempts,
            Job.updated_at < stale_before,
        ]
        if status == JobStatus.RUNNING:
            conditions.append(Job.active_prediction_id.is_(None))

        with self.session() as db:
            return self._cas(
                db, job_id, conditions,
                {"recovery_attempts": recovery_attempts + 1, "updated_at": utcnow()},
            )

    def attach_prediction(
        self,
        job_id: str,
        scene_order: int,
        prediction_id: str,
        total_scenes: int,
        eta: Optional[int] = None,
    ) -> bool:
        """
        Record the live prediction for scene `scene_order`.

        Succeeds only while the job is running with no live prediction and
        exactly `scene_order` scenes completed.
        """
        now = utcnow()
        with self.session() as db:
            won = self._cas(
                db, job_id,
                [
                    Job.status == JobStatus.RUNNING,
                    Job.active_prediction_id.is_(None),
                    Job.completed_scenes == scene_order,
                ],
                {
                    "active_prediction_id": prediction_id,
                    "progress_stage": JobStatus.RUNNING,
                    "progress_message": f"Generating scene {scene_order + 1} of {total_scenes}",
                    "progress_eta": eta,
                },
            )
            if won:
                db.execute(
                    update(Scene)
                    .where(Scene.job_id == job_id, Scene.order == scene_order)
                    .values(
                        status=SceneStatus.RUNNING,
                        prediction_id=prediction_id,
                        started_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
            return won

    def record_scene_success(
        self,
        job_id: str,
        prediction_id: str,
        expected_completed: int,
        output_url: str,
        total_scenes: int,
        eta: Optional[int] = None,
    ) -> Optional[str]:
        """
        The idempotency guard for scene success.

        Moves the completed-scene count from `expected_completed` to
        `expected_completed + 1` and clears the live handle, provided the job
        is still running on `prediction_id`. The resulting job status is:
        running (scenes remain), encoding (last of several) or completed
        (single scene; its output becomes the artifact).

        Returns:
            The new job status if this caller won, None otherwise
        """
        now = utcnow()
        completed = expected_completed + 1

        if completed < total_scenes:
            new_status = JobStatus.RUNNING
            values = {
                "progress_stage": JobStatus.RUNNING,
                "progress_percent": int(completed / total_scenes * 90),
                "progress_message": f"Generating scene {completed + 1} of {total_scenes}",
                "progress_eta": eta,
            }
        elif total_scenes > 1:
            new_status = JobStatus.ENCODING
            values = {
                "progress_stage": JobStatus.ENCODING,
                "progress_percent": 90,
                "progress_message": "Compositing scenes",
                "progress_eta": None,
            }
        else:
            new_status = JobStatus.COMPLETED
            values = {
                "outputs": [output_url],
                "completed_at": now,
                "progress_stage": JobStatus.COMPLETED,
                "progress_percent": 100,
                "progress_message": "Video ready",
                "progress_eta": None,
            }

        values.update({
            "status": new_status,
            "completed_scenes": completed,
            "active_prediction_id": None,
        })

        with self.session() as db:
            won = self._cas(
                db, job_id,
                [
                    Job.status == JobStatus.RUNNING,
                    Job.active_prediction_id == prediction_id,
                    Job.completed_scenes == expected_completed,
                ],
                values,
            )
            if not won:
                return None

            db.execute(
                update(Scene)
                .where(Scene.job_id == job_id, Scene.order == expected_completed)
                .values(
                    status=SceneStatus.SUCCEEDED,
                    output_url=output_url,
                    completed_at=now,
                )
                .execution_options(synchronize_session=False)
            )
        return new_status

    def complete_composition(self, job_id: str, artifact_url: str, s3_key: Optional[str]) -> bool:
        """encoding -> completed with exactly one final artifact."""
        with self.session() as db:
            return self._cas(
                db, job_id,
                [Job.status == JobStatus.ENCODING],
                {
                    "status": JobStatus.COMPLETED,
                    "outputs": [artifact_url],
                    "final_output_s3_key": s3_key,
                    "active_prediction_id": None,
                    "completed_at": utcnow(),
                    "progress_stage": JobStatus.COMPLETED,
                    "progress_percent": 100,
                    "progress_message": "Video ready",
                    "progress_eta": None,
                },
            )

    def mark_failed(
        self,
        job_id: str,
        error_message: str,
        prediction_id: Optional[str] = None,
        expected_status: Optional[str] = None,
    ) -> bool:
        """
        Any non-terminal status -> failed.

        With `prediction_id` the failure only applies while that prediction
        is still the live one; the matching scene row is marked failed.
        """
        conditions = [Job.status.notin_(JobStatus.TERMINAL)]
        if prediction_id is not None:
            conditions.append(Job.active_prediction_id == prediction_id)
        if expected_status is not None:
            conditions.append(Job.status == expected_status)

        now = utcnow()
        with self.session() as db:
            won = self._cas(
                db, job_id, conditions,
                {
                    "status": JobStatus.FAILED,
                    "error_message": error_message,
                    "active_prediction_id": None,
                    "completed_at": now,
                    "progress_stage": JobStatus.FAILED,
                    "progress_message": error_message,
                    "progress_eta": None,
                },
            )
            if won and prediction_id is not None:
                db.execute(
                    update(Scene)
                    .where(Scene.job_id == job_id, Scene.prediction_id == prediction_id)
                    .values(status=SceneStatus.FAILED, error_message=error_message, completed_at=now)
                    .execution_options(synchronize_session=False)
                )
            return won

    def update_progress(
        self,
        job_id: str,
        percent: int,
        message: Optional[str] = None,
        expected_status: Optional[str] = None,
        eta: Optional[int] = None,
    ) -> bool:
        """Write the progress read model; ignored once the job is terminal."""
        conditions = [Job.status.notin_(JobStatus.TERMINAL)]
        if expected_status is not None:
            conditions.append(Job.status == expected_status)

        values = {"progress_percent": max(0, min(100, int(percent))), "progress_eta": eta}
        if message is not None:
            values["progress_message"] = message

        with self.session() as db:
            return self._cas(db, job_id, conditions, values)


def _as_spec(item) -> dict:
    data = item if isinstance(item, dict) else item.model_dump()
    duration = float(data["duration_seconds"])
    trim_end = data.get("trim_end")
    return {
        "order": int(data["order"]),
        "prompt": data["prompt"],
        "duration_seconds": duration,
        "trim_start": float(data.get("trim_start") or 0.0),
        "trim_end": float(trim_end) if trim_end is not None else duration,
        "transition_type": data.get("transition_type") or TransitionType.NONE,
        "transition_duration": float(data.get("transition_duration") or 0.0),
    }


def scene_elapsed_seconds(scene: Scene, now: Optional[datetime] = None) -> Optional[float]:
    """Seconds between a scene's dispatch and completion (or now)."""
    if scene.started_at is None:
        return None
    end = as_utc(scene.completed_at) if scene.completed_at else (now or utcnow())
    return (end - as_utc(scene.started_at)).total_seconds()
