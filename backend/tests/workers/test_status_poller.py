"""
Tests for the StatusPoller sweep
"""

import asyncio
from datetime import timedelta
from unittest.mock import patch

import pytest

from models import JobStatus, utcnow
from pipeline.error_handler import ExternalServiceError
from workers.status_poller import StatusPoller


@pytest.fixture
def poller(store, gateway, sequencer):
    return StatusPoller(
        store, gateway, sequencer,
        interval=0.01, batch_size=10, concurrency=2,
        scene_timeout=600, stall_timeout=1800, max_recoveries=1,
    )


async def started_job(store, sequencer, scene_specs, n=2):
    job = store.create_job(scene_specs(n))
    await sequencer.start_job(job.id)
    return job


class TestRunOnce:

    @pytest.mark.asyncio
    async def test_pending_predictions_left_alone(self, store, sequencer, poller, scene_specs):
        job = await started_job(store, sequencer, scene_specs)

        counts = await poller.run_once()

        assert counts == {"pending": 1}
        assert store.get_job(job.id).active_prediction_id == "pred-1"

    @pytest.mark.asyncio
    async def test_success_advances_job(self, store, sequencer, gateway, poller, scene_specs):
        job = await started_job(store, sequencer, scene_specs)
        gateway.succeed("pred-1", "https://replicate.delivery/0.mp4")

        counts = await poller.run_once()

        assert counts == {"applied": 1}
        job = store.get_job(job.id)
        assert job.completed_scenes == 1
        assert job.active_prediction_id == "pred-2"

    @pytest.mark.asyncio
    async def test_drives_job_to_completion(self, store, sequencer, gateway, compositor, poller, scene_specs):
        job = await started_job(store, sequencer, scene_specs, n=3)

        for order in range(3):
            gateway.succeed(gateway.last_handle, f"https://replicate.delivery/{order}.mp4")
            await poller.run_once()

        job = store.get_job(job.id)
        assert job.status == JobStatus.COMPLETED
        assert len(compositor.calls) == 1
        assert len(job.outputs) == 1

    @pytest.mark.asyncio
    async def test_failed_prediction_fails_job(self, store, sequencer, gateway, poller, scene_specs):
        job = await started_job(store, sequencer, scene_specs)
        gateway.fail("pred-1", "CUDA out of memory")

        await poller.run_once()

        job = store.get_job(job.id)
        assert job.status == JobStatus.FAILED
        assert job.error_message == "Scene 1 failed to generate: CUDA out of memory"

    @pytest.mark.asyncio
    async def test_poll_error_fails_job(self, store, sequencer, gateway, poller, scene_specs):
        job = await started_job(store, sequencer, scene_specs)
        gateway.poll_errors["pred-1"] = ExternalServiceError("Replicate poll failed: 404")

        counts = await poller.run_once()

        assert counts == {"failed": 1}
        assert store.get_job(job.id).status == JobStatus.FAILED

    @pytest.mark.asyncio
    async def test_stuck_scene_times_out(self, store, sequencer, poller, scene_specs):
        job = await started_job(store, sequencer, scene_specs)

        with patch("workers.status_poller.utcnow", return_value=utcnow() + timedelta(seconds=601)):
            counts = await poller.run_once()

        assert counts == {"timed_out": 1}
        job = store.get_job(job.id)
        assert job.status == JobStatus.FAILED
        assert job.error_message == "Scene 1 timed out after 600 seconds"

    @pytest.mark.asyncio
    async def test_one_crash_does_not_stop_the_sweep(self, store, sequencer, gateway, poller, scene_specs):
        broken = await started_job(store, sequencer, scene_specs)
        healthy = await started_job(store, sequencer, scene_specs)
        gateway.poll_errors["pred-1"] = RuntimeError("unexpected")
        gateway.succeed("pred-2", "https://replicate.delivery/ok.mp4")

        counts = await poller.run_once()

        assert counts == {"error": 1, "applied": 1}
        assert store.get_job(broken.id).status == JobStatus.RUNNING
        assert store.get_job(healthy.id).completed_scenes == 1

    @pytest.mark.asyncio
    async def test_queued_job_picked_up(self, store, gateway, poller, scene_specs):
        job = store.create_job(scene_specs(2))

        counts = await poller.run_once()

        assert counts == {"started": 1}
        assert store.get_job(job.id).active_prediction_id == "pred-1"
        assert len(gateway.submitted) == 1

    @pytest.mark.asyncio
    async def test_webhook_and_poller_race(self, store, sequencer, gateway, poller, scene_specs):
        job = await started_job(store, sequencer, scene_specs)
        gateway.succeed("pred-1", "https://replicate.delivery/0.mp4")

        await asyncio.gather(
            poller.run_once(),
            sequencer.apply_prediction_update("pred-1", "succeeded", output="https://replicate.delivery/0.mp4"),
        )

        job = store.get_job(job.id)
        assert job.completed_scenes == 1
        assert len(gateway.submitted) == 2


def encoding_job(store, scene_specs):
    """A job whose last scene was recorded but whose compositing never ran"""
    job = store.create_job(scene_specs(2))
    store.claim_start(job.id)
    for order in range(2):
        store.attach_prediction(job.id, order, f"pred-{order}", total_scenes=2)
        store.record_scene_success(job.id, f"pred-{order}", order, f"https://replicate.delivery/{order}.mp4", 2)
    return job


def an_hour_later():
    return patch("workers.status_poller.utcnow", return_value=utcnow() + timedelta(hours=1))


class TestStallRecovery:

    @pytest.mark.asyncio
    async def test_lost_dispatch_is_resubmitted(self, store, sequencer, gateway, poller, scene_specs):
        job = await started_job(store, sequencer, scene_specs)
        # Scene 0 recorded, but the process stopped before scene 1 was submitted
        store.record_scene_success(job.id, "pred-1", 0, "https://replicate.delivery/0.mp4", 2)

        with an_hour_later():
            counts = await poller.run_once()

        assert counts == {"resumed": 1}
        job = store.get_job(job.id)
        assert job.status == JobStatus.RUNNING
        assert job.active_prediction_id == "pred-2"
        assert job.recovery_attempts == 1
        assert gateway.submitted[-1]["prompt"] == "Scene 1 prompt"

    @pytest.mark.asyncio
    async def test_stranded_encoding_job_is_composited(self, store, compositor, poller, scene_specs):
        job = encoding_job(store, scene_specs)

        with an_hour_later():
            counts = await poller.run_once()

        assert counts == {"resumed": 1}
        assert len(compositor.calls) == 1
        job = store.get_job(job.id)
        assert job.status == JobStatus.COMPLETED
        assert len(job.outputs) == 1

    @pytest.mark.asyncio
    async def test_recent_jobs_are_left_alone(self, store, sequencer, gateway, compositor, poller, scene_specs):
        job = await started_job(store, sequencer, scene_specs)
        store.record_scene_success(job.id, "pred-1", 0, "https://replicate.delivery/0.mp4", 2)
        encoding_job(store, scene_specs)

        counts = await poller.run_once()

        assert counts == {}
        assert len(gateway.submitted) == 1
        assert compositor.calls == []

    @pytest.mark.asyncio
    async def test_encoding_job_fails_once_recoveries_are_spent(self, store, sequencer, gateway, scene_specs):
        poller = StatusPoller(store, gateway, sequencer, stall_timeout=1800, max_recoveries=0)
        job = encoding_job(store, scene_specs)

        with an_hour_later():
            counts = await poller.run_once()

        assert counts == {"stalled": 1}
        job = store.get_job(job.id)
        assert job.status == JobStatus.FAILED
        assert job.error_message == "Failed to compose the final video: compositing stalled for over 1800 seconds"

    @pytest.mark.asyncio
    async def test_lost_dispatch_fails_once_recoveries_are_spent(self, store, sequencer, gateway, scene_specs):
        poller = StatusPoller(store, gateway, sequencer, stall_timeout=1800, max_recoveries=0)
        job = await started_job(store, sequencer, scene_specs)
        store.record_scene_success(job.id, "pred-1", 0, "https://replicate.delivery/0.mp4", 2)

        with an_hour_later():
            counts = await poller.run_once()

        assert counts == {"stalled": 1}
        job = store.get_job(job.id)
        assert job.status == JobStatus.FAILED
        assert job.error_message == "Scene 2 failed to generate: dispatch stalled for over 1800 seconds"
        assert len(gateway.submitted) == 1


class TestRunForever:

    @pytest.mark.asyncio
    async def test_stops_on_request(self, poller):
        task = asyncio.create_task(poller.run_forever())
        await asyncio.sleep(0.05)

        poller.stop()
        await asyncio.wait_for(task, timeout=1)

        assert task.done()

    @pytest.mark.asyncio
    async def test_stop_before_start(self, poller):
        poller.stop()
        await asyncio.wait_for(poller.run_forever(), timeout=1)

    @pytest.mark.asyncio
    async def test_tick_errors_are_logged_not_raised(self, poller):
        calls = []

        async def failing_tick():
            calls.append(1)
            if len(calls) >= 2:
                poller.stop()
            raise RuntimeError("database unavailable")

        poller.run_once = failing_tick
        await asyncio.wait_for(poller.run_forever(), timeout=1)

        assert len(calls) == 2
