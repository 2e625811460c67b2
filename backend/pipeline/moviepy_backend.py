"""
MoviePy rendering backend for composition plans.

Compiles a CompositionPlan into MoviePy clips and writes the encoded file.
All work here is blocking; callers run `render` via asyncio.to_thread.
"""

from typing import Callable, Dict, List

import numpy as np
import structlog
from moviepy import (
    CompositeVideoClip,
    VideoClip,
    VideoFileClip,
    concatenate_videoclips,
    vfx,
)

from models import TransitionType
from pipeline.composition_plan import CompositionPlan, TransitionStage
from pipeline.error_handler import RenderError

logger = structlog.get_logger(__name__)


# Container durations drift by about a frame from the requested length
DURATION_TOLERANCE = 0.05


def wipe_mask(width: int, height: int, window: float, duration: float) -> VideoClip:
    """
    Left-to-right reveal mask: column x becomes visible once t >= x / width * window.
    """
    columns = np.arange(width, dtype=np.float32) / max(width, 1)

    def make_frame(t):
        progress = 1.0 if window <= 0 else min(max(t / window, 0.0), 1.0)
        row = (columns < progress).astype(np.float32)
        return np.tile(row, (height, 1))

    return VideoClip(make_frame, is_mask=True, duration=duration)


class MoviePyBackend:
    """
    Renders a CompositionPlan with MoviePy.

    Clips without overlapping transitions are concatenated back to back;
    dissolve and wipe windows are laid out on a composite timeline using the
    plan's offsets.

    Args:
        loader: Callable opening a media file as a clip (VideoFileClip by default)
    """

    def __init__(self, loader: Callable = VideoFileClip):
        self.loader = loader
        self.logger = structlog.get_logger().bind(service="moviepy_backend")

    def render(self, plan: CompositionPlan) -> str:
        """
        Render the plan and write the encoded file.

        Returns:
            The plan's output path

        Raises:
            RenderError: If a source cannot be opened, is shorter than its trim
                OUT point, or the plan is empty
        """
        if not plan.trims:
            raise RenderError("Composition plan has no segments")

        sources = []
        try:
            segments = self._trim(plan, sources)
            segments = self._apply_transitions(plan, segments)
            final = self._concatenate(plan, segments)
            self._encode(plan, final)
            final.close()
        finally:
            for clip in sources:
                clip.close()

        return plan.encode.output_path

    def _trim(self, plan: CompositionPlan, sources: List) -> Dict[int, VideoClip]:
        segments = {}
        for stage in plan.trims:
            try:
                clip = self.loader(stage.source)
            except Exception as e:
                raise RenderError(
                    f"Failed to load scene {stage.order} from {stage.source}: {e}",
                    scene_order=stage.order
                ) from e
            sources.append(clip)

            end = stage.end
            if clip.duration:
                if clip.duration + DURATION_TOLERANCE < stage.end:
                    raise RenderError(
                        f"Scene {stage.order} is {clip.duration:.2f}s long, shorter than its trim end {stage.end:.2f}s",
                        scene_order=stage.order
                    )
                end = min(stage.end, clip.duration)
            segment = clip.subclipped(stage.start, end)
            if not plan.concatenate.include_audio:
                segment = segment.without_audio()

            self.logger.debug("segment_trimmed", order=stage.order, start=stage.start, end=end)
            segments[stage.order] = segment
        return segments

    def _apply_transitions(self, plan: CompositionPlan, segments: Dict[int, VideoClip]) -> Dict[int, VideoClip]:
        for stage in plan.transitions:
            left = segments[stage.left_order]
            right = segments[stage.right_order]

            if stage.kind == TransitionType.FADE:
                left = left.with_effects([vfx.FadeOut(stage.duration)])
                right = right.with_effects([vfx.FadeIn(stage.duration)])
            elif stage.kind == TransitionType.DISSOLVE:
                right = right.with_effects([vfx.CrossFadeIn(stage.duration)])
            elif stage.kind == TransitionType.WIPE:
                right = self._wipe_in(right, stage)

            segments[stage.left_order] = left
            segments[stage.right_order] = right

            self.logger.debug(
                "transition_applied",
                kind=stage.kind,
                left=stage.left_order,
                right=stage.right_order,
                duration=stage.duration
            )
        return segments

    def _wipe_in(self, clip: VideoClip, stage: TransitionStage) -> VideoClip:
        width, height = clip.size
        return clip.with_mask(wipe_mask(width, height, stage.duration, clip.duration))

    def _concatenate(self, plan: CompositionPlan, segments: Dict[int, VideoClip]) -> VideoClip:
        ordered = [segments[order] for order in plan.concatenate.orders]

        if not any(stage.overlaps for stage in plan.transitions):
            return concatenate_videoclips(ordered, method="compose")

        size = ordered[0].size
        placed = []
        for clip, offset in zip(ordered, plan.concatenate.offsets):
            if tuple(clip.size) != tuple(size):
                clip = clip.resized(new_size=size)
            placed.append(clip.with_start(offset))

        return CompositeVideoClip(placed, size=size).with_duration(plan.concatenate.total_duration)

    def _encode(self, plan: CompositionPlan, clip: VideoClip) -> None:
        encode = plan.encode
        self.logger.info(
            "encoding_video",
            output_path=encode.output_path,
            duration=clip.duration,
            codec=encode.codec
        )
        clip.write_videofile(
            encode.output_path,
            fps=encode.fps,
            codec=encode.codec,
            preset=encode.preset,
            audio=plan.concatenate.include_audio,
            logger=None  # Suppress moviepy verbose logging
        )
