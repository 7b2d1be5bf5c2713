"""Landmark-based liveness signals: blinks, head pose and natural motion.

Every extractor here is a pure function of its inputs. Blink detection needs
memory across frames, so it takes the previous :class:`LivenessState` and
returns a new one instead of mutating it.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, replace
from enum import Enum
from typing import Iterable, Optional

import numpy as np

from . import landmarks as lm
from .exceptions import ConfigurationError
from .landmarks import LandmarksLike

# Eye aspect ratio reported when it cannot be computed; reads as "open".
OPEN_EYE_EAR = 0.3

DEFAULT_EAR_THRESHOLD = 0.21
DEFAULT_EAR_CONSEC_FRAMES = 2
DEFAULT_HEAD_TURN_THRESHOLD = 0.45
DEFAULT_STRAIGHT_BAND = (0.75, 1.35)
DEFAULT_MOTION_MIN_SAMPLES = 5
DEFAULT_MOTION_FLOOR = 0.5
DEFAULT_MOTION_CEILING = 20.0


class TurnDirection(str, Enum):
    """Direction of a head turn as seen by the camera."""

    LEFT = "left"
    RIGHT = "right"


@dataclass(frozen=True)
class HeadPose:
    """Coarse head orientation derived from the nose/eye-corner geometry."""

    yaw: float
    pitch: float
    ratio: float


@dataclass(frozen=True)
class LivenessState:
    """Per-track liveness memory carried from one frame to the next."""

    blink_count: int = 0
    last_ear: float = OPEN_EYE_EAR
    eye_closed_frames: int = 0
    last_head_pose: Optional[HeadPose] = None
    motion_score: float = 0.0
    challenge_completed: bool = False


@dataclass(frozen=True)
class BlinkResult:
    is_blink: bool
    ear: float
    state: LivenessState


@dataclass(frozen=True)
class LivenessConfig:
    """Thresholds used by the extractors and by a track's liveness check."""

    ear_threshold: float = DEFAULT_EAR_THRESHOLD
    ear_consec_frames: int = DEFAULT_EAR_CONSEC_FRAMES
    head_turn_threshold: float = DEFAULT_HEAD_TURN_THRESHOLD
    straight_lower: float = DEFAULT_STRAIGHT_BAND[0]
    straight_upper: float = DEFAULT_STRAIGHT_BAND[1]
    motion_history_size: int = 10
    motion_min_samples: int = DEFAULT_MOTION_MIN_SAMPLES
    motion_floor: float = DEFAULT_MOTION_FLOOR
    motion_ceiling: float = DEFAULT_MOTION_CEILING
    required_blinks: int = 2

    def __post_init__(self) -> None:
        if self.motion_history_size < self.motion_min_samples:
            raise ConfigurationError(
                "Motion history capacity must hold at least "
                f"{self.motion_min_samples} samples, got {self.motion_history_size}."
            )
        if self.motion_floor > self.motion_ceiling:
            raise ConfigurationError("Motion floor must not exceed the motion ceiling.")
        if not self.straight_lower < self.straight_upper:
            raise ConfigurationError("Facing-straight band must have lower < upper.")


def initial_liveness_state() -> LivenessState:
    return LivenessState()


def _point_distance(a: np.ndarray, b: np.ndarray) -> float:
    return float(np.hypot(a[0] - b[0], a[1] - b[1]))


def eye_aspect_ratio(eye: LandmarksLike) -> float:
    """Return the eye aspect ratio ``(|p2-p6| + |p3-p5|) / (2 |p1-p4|)``.

    Fewer than six points, or a zero horizontal eye width, yields
    :data:`OPEN_EYE_EAR` so that degenerate geometry never counts as closed.
    """

    points = np.asarray(eye, dtype=np.float64)
    if points.ndim != 2 or points.shape[0] < 6:
        return OPEN_EYE_EAR

    horizontal = _point_distance(points[0], points[3])
    if horizontal == 0:
        return OPEN_EYE_EAR

    vertical_a = _point_distance(points[1], points[5])
    vertical_b = _point_distance(points[2], points[4])
    return (vertical_a + vertical_b) / (2.0 * horizontal)


def average_eye_aspect_ratio(landmarks: LandmarksLike) -> float:
    points = lm.as_points(landmarks)
    return (eye_aspect_ratio(lm.left_eye(points)) + eye_aspect_ratio(lm.right_eye(points))) / 2.0


def detect_blink(
    landmarks: LandmarksLike,
    state: LivenessState,
    *,
    threshold: float = DEFAULT_EAR_THRESHOLD,
    consec_frames: int = DEFAULT_EAR_CONSEC_FRAMES,
) -> BlinkResult:
    """Advance the blink detector by one frame.

    A blink is emitted exactly once, on the first open frame after at least
    ``consec_frames`` consecutive closed frames. Reopening always resets the
    closed-frame counter.
    """

    ear = average_eye_aspect_ratio(landmarks)

    if ear < threshold:
        next_state = replace(
            state, last_ear=ear, eye_closed_frames=state.eye_closed_frames + 1
        )
        return BlinkResult(is_blink=False, ear=ear, state=next_state)

    is_blink = state.eye_closed_frames >= consec_frames
    next_state = replace(
        state,
        last_ear=ear,
        eye_closed_frames=0,
        blink_count=state.blink_count + 1 if is_blink else state.blink_count,
    )
    return BlinkResult(is_blink=is_blink, ear=ear, state=next_state)


def head_turn_ratio(landmarks: LandmarksLike) -> float:
    """Return ``|nose.x - leftEyeOuter.x| / |nose.x - rightEyeOuter.x|``.

    A zero denominator reads as an extreme left turn (``inf``); a fully
    degenerate face (both distances zero) reads as straight.
    """

    points = lm.as_points(landmarks)
    nose_x = lm.nose_tip(points)[0]
    left_distance = abs(nose_x - lm.left_eye_outer(points)[0])
    right_distance = abs(nose_x - lm.right_eye_outer(points)[0])
    if right_distance == 0:
        return 1.0 if left_distance == 0 else math.inf
    return float(left_distance / right_distance)


def calculate_head_pose(landmarks: LandmarksLike) -> HeadPose:
    points = lm.as_points(landmarks)
    ratio = head_turn_ratio(points)
    nose = lm.nose_tip(points)
    eye_center_y = (lm.left_eye_outer(points)[1] + lm.right_eye_outer(points)[1]) / 2.0
    return HeadPose(
        yaw=(ratio - 1.0) * 30.0,
        pitch=float((nose[1] - eye_center_y) / 50.0),
        ratio=ratio,
    )


def detect_head_turn(
    landmarks: LandmarksLike,
    direction: TurnDirection | str,
    *,
    threshold: float = DEFAULT_HEAD_TURN_THRESHOLD,
) -> bool:
    """Return True when the head is turned in ``direction`` beyond ``threshold``."""

    ratio = head_turn_ratio(landmarks)
    if TurnDirection(direction) is TurnDirection.LEFT:
        return ratio > 1.0 + threshold
    return ratio < 1.0 - threshold


def is_facing_straight(
    landmarks: LandmarksLike,
    *,
    lower: float = DEFAULT_STRAIGHT_BAND[0],
    upper: float = DEFAULT_STRAIGHT_BAND[1],
) -> bool:
    ratio = head_turn_ratio(landmarks)
    return lower < ratio < upper


def detect_motion(current: LandmarksLike, previous: Optional[LandmarksLike]) -> float:
    """Return how far the nose tip moved since the previous frame, in pixels."""

    if previous is None:
        return 0.0
    return _point_distance(
        lm.nose_tip(lm.as_points(current)), lm.nose_tip(lm.as_points(previous))
    )


def has_natural_movement(
    history: Iterable[float],
    *,
    min_samples: int = DEFAULT_MOTION_MIN_SAMPLES,
    floor: float = DEFAULT_MOTION_FLOOR,
    ceiling: float = DEFAULT_MOTION_CEILING,
) -> bool:
    """Return True when the mean motion looks like a live person.

    A perfectly still face (a printed photo) stays below ``floor``; a face
    jumping around the frame (a swapped or waved picture) exceeds ``ceiling``.
    """

    samples = list(history)
    if len(samples) < min_samples:
        return False
    mean = sum(samples) / len(samples)
    return floor <= mean <= ceiling


__all__ = [
    "BlinkResult",
    "HeadPose",
    "LivenessConfig",
    "LivenessState",
    "OPEN_EYE_EAR",
    "TurnDirection",
    "average_eye_aspect_ratio",
    "calculate_head_pose",
    "detect_blink",
    "detect_head_turn",
    "detect_motion",
    "eye_aspect_ratio",
    "has_natural_movement",
    "head_turn_ratio",
    "initial_liveness_state",
    "is_facing_straight",
]
