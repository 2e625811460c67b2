"""
Scene sequencer: the job state machine.

queued -> running -> (running ...) -> encoding -> completed
queued -> running -> completed                   (single-scene job)
any non-terminal  -> failed

Scenes are generated one at a time. Both completion paths (status poller and
webhook) enter through `apply_prediction_update`; the job store's
compare-and-set makes sure each scene success is applied exactly once, so a
second observer of the same event is a logged no-op.
"""

from statistics import mean
from typing import Any, Awaitable, Callable, Optional

import structlog

from models import Job, JobStatus
from pipeline.composition_plan import SceneInput
from pipeline.error_handler import (
    CompositingFailed,
    ErrorCode,
    ExternalServiceError,
    PipelineError,
    SceneGenerationFailed,
)
from pipeline.retry import RetryController
from pipeline.video_composer import Compositor
from redis_client import redis_client
from services.job_store import JobStore, scene_elapsed_seconds
from services.replicate_client import PredictionStatus, normalize_output, normalize_status

logger = structlog.get_logger()


class UpdateOutcome:
    """Result of applying a prediction update"""
    APPLIED = "applied"
    IGNORED = "ignored"
    PENDING = "pending"


class SceneSequencer:
    """
    Drives jobs from dispatch of the first scene to the final artifact.

    Args:
        store: JobStore
        gateway: Prediction gateway with async submit(prompt, params) / poll(handle)
        compositor: Compositor for multi-scene jobs
        retry_controller: RetryController wrapping each compositing attempt
        publisher: Object with publish_status / publish_progress (Redis)
        spawn: Callable scheduling a coroutine in the background. When None,
            compositing is awaited inline.
    """

    def __init__(
        self,
        store: JobStore,
        gateway,
        compositor: Optional[Compositor] = None,
        retry_controller: Optional[RetryController] = None,
        publisher=None,
        spawn: Optional[Callable[[Awaitable], Any]] = None,
    ):
        self.store = store
        self.gateway = gateway
        self.compositor = compositor or Compositor()
        self.retry_controller = retry_controller or RetryController()
        self.publisher = publisher or redis_client
        self.spawn = spawn
        self.logger = logger.bind(service="scene_sequencer")

    # ===== Entry points =====

    async def start_job(self, job_id: str) -> bool:
        """
        queued -> running, then dispatch scene 0.

        Returns:
            False if the job was already started (or is terminal)
        """
        if not self.store.claim_start(job_id):
            self.logger.info("start_skipped", job_id=job_id)
            return False

        self.logger.info("job_started", job_id=job_id)
        self.publisher.publish_status(job_id, JobStatus.RUNNING)
        await self._dispatch_scene(job_id, 0)
        return True

    async def apply_prediction_update(
        self,
        prediction_id: str,
        status: str,
        output: Any = None,
        error: Optional[str] = None,
    ) -> str:
        """
        Shared handler for poller and webhook observations.

        Args:
            prediction_id: Prediction handle
            status: Replicate or normalized status
            output: Raw prediction output
            error: Prediction error message

        Returns:
            UpdateOutcome value
        """
        normalized = normalize_status(status)
        if normalized == PredictionStatus.PENDING:
            return UpdateOutcome.PENDING

        job = self.store.find_job_by_prediction(prediction_id)
        if job is None:
            self.logger.info("prediction_update_ignored", prediction_id=prediction_id, status=status)
            return UpdateOutcome.IGNORED

        if normalized == PredictionStatus.SUCCEEDED:
            applied = await self.handle_scene_success(job.id, prediction_id, normalize_output(output))
        else:
            reason = error or ("Prediction was canceled" if status == "canceled" else "Prediction failed")
            applied = await self.handle_scene_failure(job.id, prediction_id, reason)

        return UpdateOutcome.APPLIED if applied else UpdateOutcome.IGNORED

    # ===== Transitions =====

    async def handle_scene_success(self, job_id: str, prediction_id: str, output_url: Optional[str]) -> bool:
        """
        Record a scene output and advance the job.

        running -> running   (more scenes: dispatch the next one)
        running -> encoding  (last of several: composite)
        running -> completed (single scene: its output is the artifact)

        Returns:
            True if this call applied the transition
        """
        job = self.store.get_job(job_id)
        if job.status != JobStatus.RUNNING or job.active_prediction_id != prediction_id:
            self.logger.info(
                "scene_success_ignored",
                job_id=job_id,
                prediction_id=prediction_id,
                status=job.status
            )
            return False

        if not output_url:
            return await self.handle_scene_failure(job_id, prediction_id, "Prediction succeeded without an output")

        total = len(job.scenes)
        order = job.completed_scenes
        new_status = self.store.record_scene_success(
            job_id,
            prediction_id=prediction_id,
            expected_completed=order,
            output_url=output_url,
            total_scenes=total,
        )
        if new_status is None:
            self.logger.info("finalize_skipped", job_id=job_id, prediction_id=prediction_id, scene_order=order)
            return False

        self.logger.info(
            "scene_succeeded",
            job_id=job_id,
            scene_order=order,
            completed=order + 1,
            total=total,
            next_status=new_status
        )

        if new_status == JobStatus.RUNNING:
            self.publisher.publish_progress(job_id, JobStatus.RUNNING, int((order + 1) / total * 90))
            await self._dispatch_scene(job_id, order + 1)
        elif new_status == JobStatus.ENCODING:
            self.publisher.publish_status(job_id, JobStatus.ENCODING)
            await self._run_in_background(self.finalize_composition(job_id))
        else:
            self.logger.info("job_completed", job_id=job_id, composited=False)
            self.publisher.publish_status(job_id, JobStatus.COMPLETED, outputs=[output_url])

        return True

    async def handle_scene_failure(self, job_id: str, prediction_id: str, reason: str) -> bool:
        """
        Any non-terminal state -> failed. Later scenes are never dispatched.

        Returns:
            True if this call failed the job
        """
        job = self.store.get_job(job_id)
        failure = SceneGenerationFailed(reason, scene_order=job.completed_scenes)

        if not self.store.mark_failed(job_id, failure.get_user_friendly_message(), prediction_id=prediction_id):
            self.logger.info("scene_failure_ignored", job_id=job_id, prediction_id=prediction_id)
            return False

        self.logger.warning(
            "scene_failed",
            job_id=job_id,
            prediction_id=prediction_id,
            scene_order=job.completed_scenes,
            reason=reason
        )
        self.publisher.publish_status(job_id, JobStatus.FAILED, error=failure.get_user_friendly_message())
        return True

    async def finalize_composition(self, job_id: str) -> bool:
        """
        encoding -> completed via the compositor under the retry controller.

        Progress is reset to 0 before every retry. Exhausted retries or a
        fatal error fail the job with CompositingFailed.
        """
        job = self.store.get_job(job_id)
        if job.status != JobStatus.ENCODING:
            self.logger.info("finalize_skipped", job_id=job_id, status=job.status)
            return False

        scenes = [
            SceneInput(
                order=scene.order,
                source=scene.output_url,
                trim_start=scene.trim_start,
                trim_end=scene.trim_end,
                transition_type=scene.transition_type,
                transition_duration=scene.transition_duration,
            )
            for scene in job.scenes
        ]
        max_attempts = self.retry_controller.options.max_retries + 1

        def report(percent: int, message: str) -> None:
            if self.store.update_progress(job_id, percent, message, expected_status=JobStatus.ENCODING):
                self.publisher.publish_progress(job_id, JobStatus.ENCODING, percent, message=message)

        def reset_progress(attempt_number: int, error: BaseException) -> None:
            self.logger.warning(
                "composition_retrying",
                job_id=job_id,
                attempt=attempt_number,
                max_attempts=max_attempts,
                error=str(error)
            )
            report(0, f"Retrying composition (attempt {attempt_number} of {max_attempts})")

        self.logger.info("composition_invoked", job_id=job_id, num_scenes=len(scenes))
        try:
            result = await self.retry_controller.run(
                lambda: self.compositor.compose(job_id, scenes, progress=report),
                on_retry=reset_progress,
            )
        except Exception as e:
            if isinstance(e, CompositingFailed):
                failure = e
            else:
                failure = CompositingFailed(e.message if isinstance(e, PipelineError) else str(e))
            failure.log_error()
            if self.store.mark_failed(job_id, failure.get_user_friendly_message(), expected_status=JobStatus.ENCODING):
                self.publisher.publish_status(job_id, JobStatus.FAILED, error=failure.get_user_friendly_message())
            self.logger.error("composition_failed", job_id=job_id, error=str(e))
            return False

        if not self.store.complete_composition(job_id, result.url, result.s3_key):
            self.logger.info("finalize_skipped", job_id=job_id, reason="job left encoding during composition")
            return False

        self.logger.info("job_completed", job_id=job_id, composited=True, s3_key=result.s3_key)
        self.publisher.publish_status(job_id, JobStatus.COMPLETED, outputs=[result.url])
        return True

    def cancel_job(self, job_id: str, reason: Optional[str] = None) -> Job:
        """
        Fail a job on user request. The live prediction is left to finish;
        its result is ignored.

        Raises:
            JobNotFoundError: If the job does not exist
            PipelineError: JOB_ALREADY_FINISHED if the job is terminal
        """
        job = self.store.get_job(job_id)
        message = reason or "Cancelled by user"

        if not self.store.mark_failed(job_id, message):
            raise PipelineError(
                ErrorCode.JOB_ALREADY_FINISHED,
                f"Job {job_id} is already {job.status}",
                {"job_id": job_id, "status": job.status}
            )

        self.logger.info("job_cancelled", job_id=job_id, reason=message)
        self.publisher.publish_status(job_id, JobStatus.FAILED, error=message)
        return self.store.get_job(job_id)

    async def resume_job(self, job_id: str) -> bool:
        """
        Continue a job that has nothing in flight: re-run compositing for an
        encoding job, or dispatch the pending scene of a running job whose
        previous dispatch was lost.

        Returns:
            True if compositing was restarted or a prediction was attached
        """
        job = self.store.get_job(job_id)

        if job.status == JobStatus.ENCODING:
            self.logger.warning("job_resumed", job_id=job_id, status=job.status)
            await self._run_in_background(self.finalize_composition(job_id))
            return True

        if (
            job.status == JobStatus.RUNNING
            and job.active_prediction_id is None
            and job.completed_scenes < len(job.scenes)
        ):
            self.logger.warning(
                "job_resumed",
                job_id=job_id,
                status=job.status,
                scene_order=job.completed_scenes
            )
            return await self._dispatch_scene(job_id, job.completed_scenes) is not None

        self.logger.info("resume_skipped", job_id=job_id, status=job.status)
        return False

    def fail_job(self, job_id: str, message: str, prediction_id: Optional[str] = None) -> bool:
        """Fail a job for a reason found outside a prediction update (timeouts, poll errors)."""
        if not self.store.mark_failed(job_id, message, prediction_id=prediction_id):
            return False
        self.logger.warning("job_failed", job_id=job_id, prediction_id=prediction_id, error=message)
        self.publisher.publish_status(job_id, JobStatus.FAILED, error=message)
        return True

    # ===== Internals =====

    async def _dispatch_scene(self, job_id: str, order: int) -> Optional[str]:
        job = self.store.get_job(job_id)
        if job.status != JobStatus.RUNNING:
            self.logger.info("dispatch_skipped", job_id=job_id, scene_order=order, status=job.status)
            return None

        scene = job.scenes[order]
        params = {
            "duration": scene.duration_seconds,
            "aspect_ratio": job.aspect_ratio,
            "negative_prompt": job.negative_prompt,
            "seed": job.seed,
            "model": job.model,
        }

        try:
            handle = await self.gateway.submit(scene.prompt, params)
        except ExternalServiceError as e:
            e.log_error()
            self.fail_job(job_id, e.get_user_friendly_message())
            return None

        total = len(job.scenes)
        if not self.store.attach_prediction(job_id, order, handle, total, eta=estimate_eta(job, order)):
            # Job was cancelled or failed while submitting; the prediction runs unobserved
            self.logger.warning("prediction_orphaned", job_id=job_id, scene_order=order, prediction_id=handle)
            return None

        self.logger.info("scene_dispatched", job_id=job_id, scene_order=order, prediction_id=handle)
        self.publisher.publish_progress(
            job_id,
            JobStatus.RUNNING,
            int(order / total * 90),
            message=f"Generating scene {order + 1} of {total}"
        )
        return handle

    async def _run_in_background(self, coro: Awaitable) -> None:
        if self.spawn is None:
            await coro
            return
        self.spawn(coro)


def estimate_eta(job: Job, next_order: int) -> Optional[int]:
    """
    Seconds left for scenes `next_order`..n-1, from the mean time of the
    scenes already produced. None until one scene has finished.
    """
    durations = [
        scene_elapsed_seconds(scene)
        for scene in job.scenes[:next_order]
        if scene.started_at is not None and scene.completed_at is not None
    ]
    if not durations:
        return None
    remaining = len(job.scenes) - next_order
    return int(mean(durations) * remaining)
