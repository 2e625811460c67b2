"""
Status poller: the periodic completion path.

One sweep per interval, not one task per job. Each tick queries the store for
running jobs with a live prediction, polls them concurrently and hands every
terminal result to the scene sequencer. Pending scenes older than the scene
timeout fail their job. Jobs left queued (e.g. after a restart between create
and dispatch) are started one per tick.

Jobs with nothing in flight (encoding after their compositing task died, or
running without a live prediction after a lost dispatch) are resumed once
they have not moved for the stall timeout, and failed once their recovery
budget is spent.
"""

import asyncio
from datetime import timedelta
from typing import Dict, List, Optional

import structlog

from config import settings
from models import Job, JobStatus, as_utc, utcnow
from pipeline.error_handler import CompositingFailed, ExternalServiceError, SceneGenerationFailed
from services.replicate_client import PredictionStatus

logger = structlog.get_logger()


class StatusPoller:
    """
    Periodic sweep driving the scene sequencer.

    Args:
        store: JobStore
        gateway: Prediction gateway (poll)
        sequencer: SceneSequencer
        interval: Seconds between ticks
        batch_size: Max jobs polled per tick
        concurrency: Max polls in flight
        scene_timeout: Seconds a prediction may stay pending
        stall_timeout: Seconds a job with nothing in flight may go untouched
        max_recoveries: Times a stalled job is resumed before it is failed

    Example:
        poller = StatusPoller(store, gateway, sequencer)
        task = asyncio.create_task(poller.run_forever())
        ...
        poller.stop()
        await task
    """

    def __init__(
        self,
        store,
        gateway,
        sequencer,
        interval: Optional[float] = None,
        batch_size: Optional[int] = None,
        concurrency: Optional[int] = None,
        scene_timeout: Optional[float] = None,
        stall_timeout: Optional[float] = None,
        max_recoveries: Optional[int] = None,
    ):
        self.store = store
        self.gateway = gateway
        self.sequencer = sequencer
        self.interval = interval if interval is not None else settings.POLL_INTERVAL_SECONDS
        self.batch_size = batch_size or settings.POLL_BATCH_SIZE
        self.concurrency = concurrency or settings.POLL_CONCURRENCY
        self.scene_timeout = scene_timeout if scene_timeout is not None else settings.SCENE_TIMEOUT_SECONDS
        self.stall_timeout = stall_timeout if stall_timeout is not None else settings.STALLED_JOB_TIMEOUT_SECONDS
        self.max_recoveries = max_recoveries if max_recoveries is not None else settings.MAX_JOB_RECOVERIES
        self._stopping = asyncio.Event()
        self.logger = logger.bind(service="status_poller")

    async def run_once(self) -> Dict[str, int]:
        """
        One sweep.

        Returns:
            Counts per outcome (applied, ignored, pending, timed_out, failed,
            error, resumed, stalled, started)
        """
        jobs = self.store.list_pollable_jobs(self.batch_size)
        semaphore = asyncio.Semaphore(self.concurrency)

        results = await asyncio.gather(
            *(self._poll_job(job, semaphore) for job in jobs),
            return_exceptions=True,
        )

        counts: Dict[str, int] = {}
        for job, result in zip(jobs, results):
            if isinstance(result, Exception):
                self.logger.error("job_poll_crashed", job_id=job.id, error=str(result), exc_info=result)
                result = "error"
            counts[result] = counts.get(result, 0) + 1

        for outcome in await self._recover_stalled():
            counts[outcome] = counts.get(outcome, 0) + 1

        if await self._start_queued():
            counts["started"] = 1

        if counts:
            self.logger.info("poll_tick_complete", jobs=len(jobs), **counts)
        return counts

    async def _poll_job(self, job: Job, semaphore: asyncio.Semaphore) -> str:
        handle = job.active_prediction_id

        async with semaphore:
            try:
                result = await self.gateway.poll(handle)
            except ExternalServiceError as e:
                self.sequencer.fail_job(job.id, e.get_user_friendly_message(), prediction_id=handle)
                return "failed"

        if result.status == PredictionStatus.PENDING:
            if self._timed_out(job):
                order = job.completed_scenes
                message = f"Scene {order + 1} timed out after {int(self.scene_timeout)} seconds"
                if self.sequencer.fail_job(job.id, message, prediction_id=handle):
                    return "timed_out"
            return "pending"

        return await self.sequencer.apply_prediction_update(
            handle,
            result.raw_status or result.status,
            output=result.output,
            error=result.error,
        )

    async def _recover_stalled(self) -> List[str]:
        stale_before = utcnow() - timedelta(seconds=self.stall_timeout)
        outcomes = []
        for job in self.store.list_stalled_jobs(stale_before, self.batch_size):
            try:
                outcomes.append(await self._recover(job, stale_before))
            except Exception as e:
                self.logger.error("job_recovery_crashed", job_id=job.id, error=str(e), exc_info=True)
                outcomes.append("error")
        return outcomes

    async def _recover(self, job: Job, stale_before) -> str:
        if job.recovery_attempts >= self.max_recoveries:
            stalled_for = int(self.stall_timeout)
            if job.status == JobStatus.ENCODING:
                failure = CompositingFailed(f"compositing stalled for over {stalled_for} seconds")
            else:
                failure = SceneGenerationFailed(
                    f"dispatch stalled for over {stalled_for} seconds",
                    scene_order=job.completed_scenes
                )
            if self.sequencer.fail_job(job.id, failure.get_user_friendly_message()):
                return "stalled"
            return "ignored"

        if not self.store.claim_recovery(job.id, job.status, job.recovery_attempts, stale_before):
            return "ignored"

        self.logger.warning(
            "stalled_job_recovering",
            job_id=job.id,
            status=job.status,
            attempt=job.recovery_attempts + 1,
            max_recoveries=self.max_recoveries
        )
        await self.sequencer.resume_job(job.id)
        return "resumed"

    def _timed_out(self, job: Job) -> bool:
        if job.completed_scenes >= len(job.scenes):
            return False
        scene = job.scenes[job.completed_scenes]
        if scene.started_at is None:
            return False
        elapsed = (utcnow() - as_utc(scene.started_at)).total_seconds()
        return elapsed > self.scene_timeout

    async def _start_queued(self) -> bool:
        queued = self.store.list_queued_jobs(1)
        if not queued:
            return False
        job = queued[0]
        self.logger.info("queued_job_picked_up", job_id=job.id)
        return await self.sequencer.start_job(job.id)

    async def run_forever(self) -> None:
        """Tick until stop() is called."""
        self.logger.info("status_poller_started", interval=self.interval, batch_size=self.batch_size)

        while not self._stopping.is_set():
            try:
                await self.run_once()
            except Exception as e:
                self.logger.error("poll_tick_failed", error=str(e), exc_info=True)

            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass

        self.logger.info("status_poller_stopped")

    def stop(self) -> None:
        self._stopping.set()
