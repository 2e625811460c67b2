"""
Composition plan: the trim → transition → concatenate → encode pipeline as data.

The plan is built by a pure function from scene inputs and compiled by a
rendering backend (see pipeline/moviepy_backend.py). Nothing here touches a
media library, so ordering, overlap and validation rules are testable on
their own.

Transition semantics at the boundary between clip i and clip i+1:
- fade: clip i fades out and clip i+1 fades in, back to back (no overlap)
- dissolve: clip i+1 starts `duration` before clip i ends and cross-blends in
- wipe: same overlap window as dissolve, clip i+1 is revealed left to right
"""

from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Tuple

from models import TransitionType
from pipeline.error_handler import InvalidSceneConfigError

# Transitions whose window overlaps the two clips on the timeline
OVERLAPPING_TRANSITIONS = (TransitionType.DISSOLVE, TransitionType.WIPE)


@dataclass(frozen=True)
class SceneInput:
    """One scene as the compositor sees it: an ordered, trimmed media source."""

    order: int
    source: str
    trim_start: float
    trim_end: float
    transition_type: str = TransitionType.NONE
    transition_duration: float = 0.0

    @property
    def trimmed_duration(self) -> float:
        return self.trim_end - self.trim_start


@dataclass(frozen=True)
class TrimStage:
    order: int
    source: str
    start: float
    end: float

    @property
    def duration(self) -> float:
        return self.end - self.start


@dataclass(frozen=True)
class TransitionStage:
    """Transition between clip `left_order` and the clip right after it."""

    left_order: int
    right_order: int
    kind: str
    duration: float

    @property
    def overlaps(self) -> bool:
        return self.kind in OVERLAPPING_TRANSITIONS


@dataclass(frozen=True)
class ConcatenateStage:
    """Segments in playback order with their start offsets on the output timeline."""

    orders: Tuple[int, ...]
    offsets: Tuple[float, ...]
    total_duration: float
    include_audio: bool = False


@dataclass(frozen=True)
class EncodeStage:
    output_path: str
    fps: int = 24
    codec: str = "libx264"
    preset: str = "fast"
    container: str = "mp4"


@dataclass(frozen=True)
class CompositionPlan:
    trims: Tuple[TrimStage, ...]
    transitions: Tuple[TransitionStage, ...]
    concatenate: ConcatenateStage
    encode: EncodeStage

    def transition_after(self, order: int) -> Optional[TransitionStage]:
        """Transition leaving clip `order`, if any."""
        for stage in self.transitions:
            if stage.left_order == order:
                return stage
        return None

    def transition_before(self, order: int) -> Optional[TransitionStage]:
        """Transition entering clip `order`, if any."""
        for stage in self.transitions:
            if stage.right_order == order:
                return stage
        return None


def validate_scene_specs(scenes: Sequence) -> None:
    """
    Check trim and transition constraints for an ordered scene list.

    Accepts anything with order, trim_start, trim_end, transition_type,
    transition_duration and (optionally) duration_seconds attributes.

    Raises:
        InvalidSceneConfigError: On the first violated constraint
    """
    if not scenes:
        raise InvalidSceneConfigError("At least one scene is required")

    ordered = sorted(scenes, key=lambda s: s.order)
    orders = [s.order for s in ordered]
    if orders != list(range(len(ordered))):
        raise InvalidSceneConfigError(
            f"Scene order values must be 0..{len(ordered) - 1} without gaps or duplicates, got {orders}",
            field="order"
        )

    for scene in ordered:
        if scene.trim_start < 0:
            raise InvalidSceneConfigError(
                "trim_start must be >= 0", scene_order=scene.order, field="trim_start"
            )
        if scene.trim_end <= scene.trim_start:
            raise InvalidSceneConfigError(
                f"trim_end ({scene.trim_end}) must be greater than trim_start ({scene.trim_start})",
                scene_order=scene.order,
                field="trim_end"
            )
        duration = getattr(scene, "duration_seconds", None)
        if duration is not None and scene.trim_end > duration:
            raise InvalidSceneConfigError(
                f"trim_end ({scene.trim_end}) exceeds scene duration ({duration})",
                scene_order=scene.order,
                field="trim_end"
            )
        if scene.transition_type not in TransitionType.all_types():
            raise InvalidSceneConfigError(
                f"Unknown transition type '{scene.transition_type}'",
                scene_order=scene.order,
                field="transition_type"
            )
        if scene.transition_duration < 0:
            raise InvalidSceneConfigError(
                "transition_duration must be >= 0",
                scene_order=scene.order,
                field="transition_duration"
            )

    # The last scene has no neighbour; its transition is ignored
    for left, right in zip(ordered, ordered[1:]):
        if left.transition_type == TransitionType.NONE:
            continue
        shorter = min(left.trim_end - left.trim_start, right.trim_end - right.trim_start)
        if left.transition_duration > shorter:
            raise InvalidSceneConfigError(
                f"transition_duration ({left.transition_duration}) exceeds the shorter "
                f"adjacent trimmed length ({shorter:.3f})",
                scene_order=left.order,
                field="transition_duration"
            )


def _effective_transitions(ordered: List[SceneInput]) -> List[TransitionStage]:
    stages = []
    for left, right in zip(ordered, ordered[1:]):
        if left.transition_type == TransitionType.NONE or left.transition_duration <= 0:
            continue
        stages.append(TransitionStage(
            left_order=left.order,
            right_order=right.order,
            kind=left.transition_type,
            duration=left.transition_duration,
        ))
    return stages


def _timeline(trims: List[TrimStage], transitions: Iterable[TransitionStage]) -> Tuple[Tuple[float, ...], float]:
    overlap_after = {t.left_order: t.duration for t in transitions if t.overlaps}
    offsets = []
    cursor = 0.0
    for trim in trims:
        offsets.append(round(cursor, 6))
        cursor += trim.duration - overlap_after.get(trim.order, 0.0)
    last = trims[-1]
    total = offsets[-1] + last.duration
    return tuple(offsets), round(total, 6)


def build_composition_plan(
    scenes: Sequence[SceneInput],
    output_path: str,
    fps: int = 24,
    codec: str = "libx264",
    preset: str = "fast",
) -> CompositionPlan:
    """
    Build the composition plan for scenes, always in `order`.

    Arrival order of `scenes` is irrelevant; the result depends only on each
    scene's `order`.

    Raises:
        InvalidSceneConfigError: If the scenes violate trim/transition constraints
    """
    validate_scene_specs(scenes)
    ordered = sorted(scenes, key=lambda s: s.order)

    trims = [
        TrimStage(order=s.order, source=s.source, start=s.trim_start, end=s.trim_end)
        for s in ordered
    ]
    transitions = _effective_transitions(ordered)
    offsets, total = _timeline(trims, transitions)

    return CompositionPlan(
        trims=tuple(trims),
        transitions=tuple(transitions),
        concatenate=ConcatenateStage(
            orders=tuple(s.order for s in ordered),
            offsets=offsets,
            total_duration=total,
        ),
        encode=EncodeStage(output_path=output_path, fps=fps, codec=codec, preset=preset),
    )
