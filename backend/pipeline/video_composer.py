"""
Compositor: turns ordered scene media into one published video.

Steps:
1. Download every scene's media into a per-job workspace
2. Build the composition plan (trim, transition, concatenate, encode)
3. Render the plan with MoviePy in a worker thread
4. Upload the encoded MP4 to S3 and issue a 7-day presigned URL
5. Remove the workspace

A single attempt either returns a CompositionResult or raises; retries are
the RetryController's job.
"""

import asyncio
import inspect
from dataclasses import dataclass, replace
from typing import Any, Callable, Optional, Sequence

import structlog

from config import settings
from pipeline.asset_manager import AssetManager
from pipeline.composition_plan import SceneInput, build_composition_plan
from pipeline.error_handler import TransientInfraError
from pipeline.moviepy_backend import MoviePyBackend
from services.s3_storage import generate_s3_key, get_s3_storage_service, validate_s3_key

logger = structlog.get_logger(__name__)

# progress(percent, message); may be sync or async
ProgressCallback = Callable[[int, str], Any]


@dataclass(frozen=True)
class CompositionResult:
    url: str
    s3_key: str
    duration: float


class Compositor:
    """
    Compose scene videos into the final artifact.

    Args:
        storage: S3StorageService (resolved lazily so tests never touch AWS)
        backend: Rendering backend with a blocking `render(plan) -> path`
        workdir: Base directory for per-job workspaces

    Example:
        >>> compositor = Compositor()
        >>> result = await compositor.compose(job_id, [
        ...     SceneInput(order=0, source="https://.../a.mp4", trim_start=0, trim_end=4),
        ...     SceneInput(order=1, source="https://.../b.mp4", trim_start=1, trim_end=5),
        ... ])
        >>> result.url
    """

    def __init__(self, storage=None, backend=None, workdir: Optional[str] = None):
        self._storage = storage
        self.backend = backend or MoviePyBackend()
        self.workdir = workdir or settings.COMPOSITOR_WORKDIR
        self.logger = structlog.get_logger().bind(service="compositor")

    @property
    def storage(self):
        if self._storage is None:
            self._storage = get_s3_storage_service()
        return self._storage

    async def compose(
        self,
        job_id: str,
        scenes: Sequence[SceneInput],
        progress: Optional[ProgressCallback] = None,
    ) -> CompositionResult:
        """
        Run one compositing attempt for a job.

        Args:
            job_id: Job the scenes belong to (names the workspace and S3 key)
            scenes: Scenes with `source` set to their media URL; any order
            progress: Optional progress reporter

        Returns:
            CompositionResult with the presigned URL and stored key

        Raises:
            InvalidSceneConfigError: If trims/transitions are invalid (fatal)
            TransientInfraError: On retryable infrastructure failures
            RenderError: If MoviePy cannot render the plan
        """
        ordered = sorted(scenes, key=lambda s: s.order)
        self.logger.info("composition_started", job_id=job_id, num_scenes=len(ordered))

        assets = AssetManager(job_id, base_path=self.workdir)
        try:
            await assets.create_job_directory()

            await _report(progress, 10, "Downloading scene videos")
            local_scenes = []
            for index, scene in enumerate(ordered, 1):
                path = await assets.download_scene(scene.order, scene.source, timeout=settings.DOWNLOAD_TIMEOUT)
                local_scenes.append(replace(scene, source=path))
                percent = 10 + int(30 * index / len(ordered))
                await _report(progress, percent, f"Downloaded scene {index} of {len(ordered)}")

            plan = build_composition_plan(
                local_scenes,
                output_path=assets.final_output_path(),
                fps=settings.OUTPUT_FPS,
                codec=settings.OUTPUT_CODEC,
                preset=settings.OUTPUT_PRESET,
            )
            await _report(progress, 45, "Composition plan ready")

            await _report(progress, 60, "Rendering video")
            output_path = await asyncio.to_thread(self.backend.render, plan)
            await _report(progress, 80, "Encoding complete")

            if not await assets.validate_file(output_path):
                raise TransientInfraError(
                    f"Encoded output missing or empty: {output_path}",
                    {"job_id": job_id}
                )

            await _report(progress, 85, "Uploading final video")
            s3_key = validate_s3_key(generate_s3_key(job_id, "final_video"), "artifact key")
            await asyncio.to_thread(self.storage.upload_file_from_path, output_path, s3_key, "video/mp4")
            await _report(progress, 95, "Generating download link")

            url = await asyncio.to_thread(self.storage.generate_presigned_url, s3_key)
            await _report(progress, 100, "Video ready")

            self.logger.info(
                "composition_complete",
                job_id=job_id,
                s3_key=s3_key,
                duration=plan.concatenate.total_duration
            )
            return CompositionResult(url=url, s3_key=s3_key, duration=plan.concatenate.total_duration)

        except Exception as e:
            self.logger.warning("composition_attempt_failed", job_id=job_id, error=str(e))
            raise

        finally:
            await assets.cleanup()


async def _report(progress: Optional[ProgressCallback], percent: int, message: str) -> None:
    if progress is None:
        return
    result = progress(percent, message)
    if inspect.isawaitable(result):
        await result
