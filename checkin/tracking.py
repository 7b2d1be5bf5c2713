"""Per-label face tracks: stability counters and accumulated liveness evidence."""

from __future__ import annotations

import logging
import math
from collections import deque
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Callable, Iterable, Iterator, Optional

import numpy as np

from .challenges import Challenge
from .landmarks import LandmarksLike, as_points
from .liveness import (
    LivenessConfig,
    LivenessState,
    calculate_head_pose,
    detect_blink,
    detect_motion,
    has_natural_movement,
)

logger = logging.getLogger(__name__)


class LivenessRequirement(str, Enum):
    """What a policy demands before it lets a track's stability counter advance."""

    NONE = "none"
    PASSIVE = "passive"
    CHALLENGE = "challenge"


class DecayMode(str, Enum):
    """How a track reacts to a tick in which its label was not seen."""

    HALVE = "halve"
    RESET = "reset"


@dataclass
class FaceTrack:
    """Mutable state for one tracked identity within a single session."""

    label: str
    motion_capacity: int = 10
    stable_count: int = 0
    last_distance: float = math.inf
    liveness: LivenessState = field(default_factory=LivenessState)
    blink_detected: bool = False
    last_landmarks: Optional[np.ndarray] = None
    challenge: Optional[Challenge] = None
    motion_history: deque[float] = field(init=False)

    def __post_init__(self) -> None:
        self.motion_history = deque(maxlen=max(1, int(self.motion_capacity)))

    @property
    def motion_history_full(self) -> bool:
        return len(self.motion_history) == self.motion_history.maxlen

    def observe(self, landmarks: LandmarksLike, config: LivenessConfig) -> bool:
        """Fold one frame of landmarks into the track; return True on a blink."""

        points = as_points(landmarks)

        blink = detect_blink(
            points,
            self.liveness,
            threshold=config.ear_threshold,
            consec_frames=config.ear_consec_frames,
        )
        if blink.is_blink:
            self.blink_detected = True

        self.motion_history.append(detect_motion(points, self.last_landmarks))
        motion_score = sum(self.motion_history) / len(self.motion_history)

        state = replace(
            blink.state,
            last_head_pose=calculate_head_pose(points),
            motion_score=motion_score,
        )
        if self.challenge is not None and not state.challenge_completed:
            state = replace(state, challenge_completed=self.challenge.update(points, state))

        self.liveness = state
        self.last_landmarks = points
        return blink.is_blink

    def passive_liveness_satisfied(self, config: LivenessConfig) -> bool:
        if self.blink_detected:
            return True
        return self.motion_history_full and has_natural_movement(
            self.motion_history,
            min_samples=config.motion_min_samples,
            floor=config.motion_floor,
            ceiling=config.motion_ceiling,
        )

    def liveness_satisfied(
        self, requirement: LivenessRequirement, config: LivenessConfig
    ) -> bool:
        if requirement is LivenessRequirement.NONE:
            return True
        if requirement is LivenessRequirement.CHALLENGE:
            return self.liveness.challenge_completed
        return self.passive_liveness_satisfied(config)

    @property
    def instruction(self) -> Optional[str]:
        if self.challenge is None or self.challenge.completed:
            return None
        return self.challenge.instruction


class TrackRegistry:
    """All face tracks owned by one session, keyed by label."""

    def __init__(
        self,
        *,
        motion_capacity: int = 10,
        challenge_factory: Optional[Callable[[], Challenge]] = None,
    ) -> None:
        self._tracks: dict[str, FaceTrack] = {}
        self._motion_capacity = motion_capacity
        self._challenge_factory = challenge_factory

    def __len__(self) -> int:
        return len(self._tracks)

    def __contains__(self, label: object) -> bool:
        return label in self._tracks

    def __iter__(self) -> Iterator[FaceTrack]:
        return iter(list(self._tracks.values()))

    @property
    def labels(self) -> list[str]:
        return list(self._tracks)

    def get(self, label: str) -> Optional[FaceTrack]:
        return self._tracks.get(label)

    def get_or_create(self, label: str) -> FaceTrack:
        track = self._tracks.get(label)
        if track is None:
            challenge = self._challenge_factory() if self._challenge_factory else None
            track = FaceTrack(
                label=label, motion_capacity=self._motion_capacity, challenge=challenge
            )
            self._tracks[label] = track
            logger.debug("Started track for %s", label)
        return track

    def decay_absent(
        self, present: Iterable[str], mode: DecayMode = DecayMode.HALVE
    ) -> list[str]:
        """Decay every track whose label is not in ``present``; return removed labels.

        ``HALVE`` floors the stable count to half and drops the track once it
        reaches zero, so a briefly occluded face keeps some of its progress.
        ``RESET`` drops absent tracks immediately.
        """

        seen = set(present)
        removed = []
        for label, track in list(self._tracks.items()):
            if label in seen:
                continue
            track.stable_count = track.stable_count // 2 if mode is DecayMode.HALVE else 0
            if track.stable_count <= 0:
                del self._tracks[label]
                removed.append(label)
        if removed:
            logger.debug("Dropped absent tracks: %s", ", ".join(removed))
        return removed

    def clear(self) -> None:
        self._tracks.clear()


__all__ = ["DecayMode", "FaceTrack", "LivenessRequirement", "TrackRegistry"]
