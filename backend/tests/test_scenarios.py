"""
End-to-end scenarios: the sequencer, poller and webhook receiver driving a
real Compositor (rendering and S3 stubbed) over the in-memory job store.
"""

import json
from pathlib import Path
from unittest.mock import Mock

import pytest

from models import JobStatus
from pipeline.error_handler import TransientInfraError
from pipeline.video_composer import Compositor
from workers.scene_sequencer import SceneSequencer, UpdateOutcome
from workers.status_poller import StatusPoller
from workers.webhook_receiver import WebhookReceiver, compute_signature


class FlakyBackend:
    """Fails the first `failures` renders with a transient error"""

    def __init__(self, failures=0):
        self.failures = failures
        self.plans = []

    def render(self, plan):
        self.plans.append(plan)
        if len(self.plans) <= self.failures:
            raise TransientInfraError("encoder resource temporarily unavailable")
        Path(plan.encode.output_path).write_bytes(b"\x00" * 4096)
        return plan.encode.output_path


@pytest.fixture
def scene_media(tmp_path):
    """Prediction outputs as local files so the compositor uses them in place"""
    def _path(order):
        path = tmp_path / "outputs" / f"scene-{order}.mp4"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(b"\x00" * 1024)
        return str(path)
    return _path


@pytest.fixture
def storage():
    storage = Mock()
    storage.upload_file_from_path.side_effect = lambda path, key, content_type=None: key
    storage.generate_presigned_url.side_effect = lambda key: f"https://test-bucket.s3.amazonaws.com/{key}?X-Amz-Expires=604800"
    return storage


def build(store, gateway, retry_controller, publisher, storage, tmp_path, failures=0):
    backend = FlakyBackend(failures)
    compositor = Compositor(storage=storage, backend=backend, workdir=str(tmp_path / "work"))
    sequencer = SceneSequencer(
        store, gateway, compositor=compositor, retry_controller=retry_controller, publisher=publisher
    )
    poller = StatusPoller(store, gateway, sequencer, batch_size=10, concurrency=4, scene_timeout=600)
    receiver = WebhookReceiver(sequencer, secret="test-webhook-secret")
    return backend, sequencer, poller, receiver


@pytest.mark.asyncio
async def test_three_scenes_composited_once_in_order(
    store, gateway, retry_controller, publisher, storage, tmp_path, scene_media, scene_specs
):
    backend, sequencer, poller, _ = build(store, gateway, retry_controller, publisher, storage, tmp_path)
    specs = scene_specs(3)
    specs[0].update(transition_type="dissolve", transition_duration=1.0)
    specs[1].update(trim_start=1.0)
    job = store.create_job(specs)
    await sequencer.start_job(job.id)

    for order in range(3):
        gateway.succeed(gateway.last_handle, scene_media(order))
        await poller.run_once()

    assert len(backend.plans) == 1
    plan = backend.plans[0]
    assert [t.order for t in plan.trims] == [0, 1, 2]
    assert [Path(t.source).name for t in plan.trims] == ["scene-0.mp4", "scene-1.mp4", "scene-2.mp4"]
    assert plan.concatenate.total_duration == 13.0

    job = store.get_job(job.id)
    assert job.status == JobStatus.COMPLETED
    assert job.outputs == [f"https://test-bucket.s3.amazonaws.com/jobs/{job.id}/final.mp4?X-Amz-Expires=604800"]
    assert job.final_output_s3_key == f"jobs/{job.id}/final.mp4"
    assert job.progress_percent == 100


@pytest.mark.asyncio
async def test_single_scene_output_is_the_artifact(
    store, gateway, retry_controller, publisher, storage, tmp_path, scene_media, scene_specs
):
    backend, sequencer, poller, _ = build(store, gateway, retry_controller, publisher, storage, tmp_path)
    job = store.create_job(scene_specs(1))
    await sequencer.start_job(job.id)

    gateway.succeed("pred-1", "https://replicate.delivery/only.mp4")
    await poller.run_once()

    job = store.get_job(job.id)
    assert job.status == JobStatus.COMPLETED
    assert job.outputs == ["https://replicate.delivery/only.mp4"]
    assert backend.plans == []
    storage.upload_file_from_path.assert_not_called()


@pytest.mark.asyncio
async def test_second_scene_failure_stops_job(
    store, gateway, retry_controller, publisher, storage, tmp_path, scene_media, scene_specs
):
    backend, sequencer, poller, _ = build(store, gateway, retry_controller, publisher, storage, tmp_path)
    job = store.create_job(scene_specs(3))
    await sequencer.start_job(job.id)

    gateway.succeed("pred-1", scene_media(0))
    await poller.run_once()
    gateway.fail("pred-2", "NSFW content detected")
    await poller.run_once()
    await poller.run_once()

    job = store.get_job(job.id)
    assert job.status == JobStatus.FAILED
    assert job.error_message == "Scene 2 failed to generate: NSFW content detected"
    assert [s["prompt"] for s in gateway.submitted] == ["Scene 0 prompt", "Scene 1 prompt"]
    assert backend.plans == []


@pytest.mark.asyncio
async def test_compositor_recovers_after_two_transient_failures(
    store, gateway, retry_controller, publisher, sleep, storage, tmp_path, scene_media, scene_specs
):
    backend, sequencer, poller, _ = build(
        store, gateway, retry_controller, publisher, storage, tmp_path, failures=2
    )
    job = store.create_job(scene_specs(2))
    await sequencer.start_job(job.id)

    for order in range(2):
        gateway.succeed(gateway.last_handle, scene_media(order))
        await poller.run_once()

    assert len(backend.plans) == 3
    assert [c.args[0] for c in sleep.await_args_list] == [1.0, 2.0]

    encoding_progress = [
        c.args[2] for c in publisher.publish_progress.call_args_list if c.args[1] == JobStatus.ENCODING
    ]
    # Each failed attempt climbs past 0 and is reset to 0 before the next
    resets = [i for i, p in enumerate(encoding_progress) if p == 0]
    assert len(resets) == 2
    assert all(encoding_progress[i - 1] > 0 for i in resets)
    assert encoding_progress[-1] == 100

    job = store.get_job(job.id)
    assert job.status == JobStatus.COMPLETED
    assert job.progress_percent == 100


@pytest.mark.asyncio
async def test_webhook_before_poller_finalizes_once(
    store, gateway, retry_controller, publisher, storage, tmp_path, scene_media, scene_specs
):
    backend, sequencer, poller, receiver = build(store, gateway, retry_controller, publisher, storage, tmp_path)
    job = store.create_job(scene_specs(2))
    await sequencer.start_job(job.id)

    gateway.succeed("pred-1", scene_media(0))
    await poller.run_once()

    # Final scene: the webhook arrives first, then the poller sees the same result
    final_output = scene_media(1)
    gateway.succeed("pred-2", final_output)
    body = json.dumps({"id": "pred-2", "status": "succeeded", "output": final_output}).encode()
    ack = await receiver.handle(body, compute_signature("test-webhook-secret", body))
    counts = await poller.run_once()

    assert ack.outcome == UpdateOutcome.APPLIED
    assert counts == {}
    assert len(backend.plans) == 1
    assert storage.upload_file_from_path.call_count == 1

    late = await sequencer.apply_prediction_update("pred-2", "succeeded", output=final_output)
    assert late == UpdateOutcome.IGNORED

    job = store.get_job(job.id)
    assert job.status == JobStatus.COMPLETED
    assert len(job.outputs) == 1
