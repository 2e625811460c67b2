"""
Shared fixtures: an in-memory job store, a scripted prediction gateway and a
compositor double, wired into a SceneSequencer that composites inline.
"""

import os

# Settings are read at import time
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["REDIS_ENABLED"] = "false"
os.environ["POLLER_ENABLED"] = "false"
os.environ["WEBHOOK_URL"] = ""
os.environ["REPLICATE_MODEL_VERSION"] = ""
os.environ["REPLICATE_WEBHOOK_SECRET"] = "test-webhook-secret"
os.environ["STORAGE_BUCKET"] = "test-bucket"

from unittest.mock import AsyncMock, Mock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from database import init_db
from pipeline.retry import RetryController, RetryOptions
from pipeline.video_composer import CompositionResult
from services.job_store import JobStore
from services.replicate_client import PredictionResult, PredictionStatus
from workers.scene_sequencer import SceneSequencer


class FakeGateway:
    """Prediction gateway whose predictions stay pending until a test settles them"""

    def __init__(self):
        self.submitted = []
        self.results = {}
        self.submit_error = None
        self.poll_errors = {}

    async def submit(self, prompt, params=None):
        if self.submit_error is not None:
            raise self.submit_error
        handle = f"pred-{len(self.submitted) + 1}"
        self.submitted.append({"handle": handle, "prompt": prompt, "params": dict(params or {})})
        self.results[handle] = PredictionResult(
            id=handle, status=PredictionStatus.PENDING, raw_status="starting"
        )
        return handle

    async def poll(self, handle):
        if handle in self.poll_errors:
            raise self.poll_errors[handle]
        return self.results[handle]

    @property
    def last_handle(self):
        return self.submitted[-1]["handle"] if self.submitted else None

    def succeed(self, handle, output):
        self.results[handle] = PredictionResult(
            id=handle, status=PredictionStatus.SUCCEEDED, output=output, raw_status="succeeded"
        )

    def fail(self, handle, error="model error", raw_status="failed"):
        self.results[handle] = PredictionResult(
            id=handle, status=PredictionStatus.FAILED, error=error, raw_status=raw_status
        )


class FakeCompositor:
    """Records compose calls; raises queued failures before succeeding"""

    def __init__(self):
        self.calls = []
        self.failures = []
        self.progress_reports = []

    async def compose(self, job_id, scenes, progress=None):
        self.calls.append({"job_id": job_id, "scenes": sorted(scenes, key=lambda s: s.order)})
        if progress is not None:
            progress(60, "Rendering video")
            self.progress_reports.append(60)
        if self.failures:
            raise self.failures.pop(0)
        return CompositionResult(
            url=f"https://test-bucket.s3.amazonaws.com/jobs/{job_id}/final.mp4?X-Amz-Signature=sig",
            s3_key=f"jobs/{job_id}/final.mp4",
            duration=8.0,
        )


def make_scene(order, **overrides):
    scene = {
        "order": order,
        "prompt": f"Scene {order} prompt",
        "duration_seconds": 5.0,
        "trim_start": 0.0,
        "trim_end": 5.0,
        "transition_type": "none",
        "transition_duration": 0.0,
    }
    scene.update(overrides)
    return scene


@pytest.fixture
def engine():
    """In-memory SQLite shared across threads"""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def store(engine):
    return JobStore(bind=engine)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def compositor():
    return FakeCompositor()


@pytest.fixture
def publisher():
    """Stand-in for the Redis client"""
    return Mock()


@pytest.fixture
def sleep():
    return AsyncMock()


@pytest.fixture
def retry_controller(sleep):
    return RetryController(RetryOptions(), sleep=sleep)


@pytest.fixture
def sequencer(store, gateway, compositor, retry_controller, publisher):
    return SceneSequencer(
        store,
        gateway,
        compositor=compositor,
        retry_controller=retry_controller,
        publisher=publisher,
    )


@pytest.fixture
def scene_specs():
    """Factory for n valid scene dicts"""
    def _build(n, **overrides):
        return [make_scene(i, **overrides) for i in range(n)]
    return _build
