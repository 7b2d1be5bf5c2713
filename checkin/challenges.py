"""Active liveness challenges: blink on request, or turn the head and come back."""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

from .exceptions import ConfigurationError
from .landmarks import LandmarksLike
from .liveness import LivenessConfig, LivenessState, TurnDirection, head_turn_ratio

logger = logging.getLogger(__name__)


class ChallengeType(str, Enum):
    """Challenges a session can ask the person in front of the camera to perform."""

    BLINK = "blink"
    TURN_LEFT = "turn_left"
    TURN_RIGHT = "turn_right"


CHALLENGES: tuple[ChallengeType, ...] = (
    ChallengeType.BLINK,
    ChallengeType.TURN_LEFT,
    ChallengeType.TURN_RIGHT,
)

_INSTRUCTIONS = {
    ChallengeType.BLINK: "Please blink twice",
    ChallengeType.TURN_LEFT: "Please turn your head to the left",
    ChallengeType.TURN_RIGHT: "Please turn your head to the right",
}


def generate_random_challenge(rng: random.Random) -> ChallengeType:
    return rng.choice(CHALLENGES)


def generate_challenge_sequence(count: int, rng: random.Random) -> list[ChallengeType]:
    """Return ``count`` distinct challenges in random order."""

    if not 0 <= count <= len(CHALLENGES):
        raise ValueError(f"count must be between 0 and {len(CHALLENGES)}, got {count}.")
    pool = list(CHALLENGES)
    rng.shuffle(pool)
    return pool[:count]


def challenge_instruction(challenge: ChallengeType | str) -> str:
    return _INSTRUCTIONS[ChallengeType(challenge)]


class ChallengeStep(str, Enum):
    CENTER = "center"
    TURN = "turn"
    RETURN = "return"
    COMPLETED = "completed"


@dataclass(frozen=True)
class HeadTurnBands:
    """Ratio bands for each step of a head-turn challenge.

    ``ratio`` is the nose-to-eye-corner ratio from
    :func:`checkin.liveness.head_turn_ratio`; 1.0 is a frontal face.
    """

    start_lower: float = 0.75
    start_upper: float = 1.35
    left_above: float = 1.45
    right_below: float = 0.55
    finish_lower: float = 0.75
    finish_upper: float = 1.35

    @classmethod
    def from_config(cls, config: LivenessConfig) -> "HeadTurnBands":
        return cls(
            start_lower=config.straight_lower,
            start_upper=config.straight_upper,
            left_above=1.0 + config.head_turn_threshold,
            right_below=1.0 - config.head_turn_threshold,
            finish_lower=config.straight_lower,
            finish_upper=config.straight_upper,
        )


# Wider bands used while capturing an enrollment descriptor.
ENROLLMENT_BANDS = HeadTurnBands(
    start_lower=0.8,
    start_upper=1.5,
    left_above=2.0,
    right_below=0.5,
    finish_lower=0.7,
    finish_upper=1.4,
)


class HeadTurnChallenge:
    """Face the camera, turn to one side, then face the camera again.

    With ``direction=None`` either side is accepted. At most one step is taken
    per frame.
    """

    def __init__(
        self,
        direction: Optional[TurnDirection] = None,
        bands: HeadTurnBands = HeadTurnBands(),
    ) -> None:
        self.direction = TurnDirection(direction) if direction is not None else None
        self.bands = bands
        self.step = ChallengeStep.CENTER
        self.turned_to: Optional[TurnDirection] = None

    @property
    def completed(self) -> bool:
        return self.step is ChallengeStep.COMPLETED

    @property
    def instruction(self) -> str:
        if self.step is ChallengeStep.CENTER:
            return "Please look straight at the camera"
        if self.step is ChallengeStep.TURN:
            if self.direction is TurnDirection.LEFT:
                return challenge_instruction(ChallengeType.TURN_LEFT)
            if self.direction is TurnDirection.RIGHT:
                return challenge_instruction(ChallengeType.TURN_RIGHT)
            return "Please turn your head slowly to either side"
        if self.step is ChallengeStep.RETURN:
            return "Now look back at the camera"
        return "Challenge complete"

    def _turned(self, ratio: float) -> Optional[TurnDirection]:
        if ratio > self.bands.left_above:
            return TurnDirection.LEFT
        if ratio < self.bands.right_below:
            return TurnDirection.RIGHT
        return None

    def update(self, landmarks: LandmarksLike, state: Optional[LivenessState] = None) -> bool:
        """Advance the challenge with one frame; return True once completed."""

        if self.completed:
            return True

        ratio = head_turn_ratio(landmarks)
        if self.step is ChallengeStep.CENTER:
            if self.bands.start_lower < ratio < self.bands.start_upper:
                self.step = ChallengeStep.TURN
        elif self.step is ChallengeStep.TURN:
            turned = self._turned(ratio)
            if turned is not None and (self.direction is None or turned is self.direction):
                self.turned_to = turned
                self.step = ChallengeStep.RETURN
        elif self.step is ChallengeStep.RETURN:
            if self.bands.finish_lower < ratio < self.bands.finish_upper:
                self.step = ChallengeStep.COMPLETED
                logger.debug("Head-turn challenge completed (turned %s)", self.turned_to)
        return self.completed


class BlinkChallenge:
    """Completes once the track has blinked ``required_blinks`` times."""

    def __init__(self, required_blinks: int = 2) -> None:
        if required_blinks < 1:
            raise ConfigurationError("A blink challenge needs at least one blink.")
        self.required_blinks = required_blinks
        self._completed = False

    @property
    def completed(self) -> bool:
        return self._completed

    @property
    def instruction(self) -> str:
        return challenge_instruction(ChallengeType.BLINK)

    def update(self, landmarks: LandmarksLike, state: Optional[LivenessState] = None) -> bool:
        if state is not None and state.blink_count >= self.required_blinks:
            self._completed = True
        return self._completed


Challenge = Union[HeadTurnChallenge, BlinkChallenge]


def build_challenge(challenge_type: ChallengeType | str, config: LivenessConfig) -> Challenge:
    challenge_type = ChallengeType(challenge_type)
    if challenge_type is ChallengeType.BLINK:
        return BlinkChallenge(config.required_blinks)
    direction = (
        TurnDirection.LEFT if challenge_type is ChallengeType.TURN_LEFT else TurnDirection.RIGHT
    )
    return HeadTurnChallenge(direction, HeadTurnBands.from_config(config))


__all__ = [
    "BlinkChallenge",
    "CHALLENGES",
    "Challenge",
    "ChallengeStep",
    "ChallengeType",
    "ENROLLMENT_BANDS",
    "HeadTurnBands",
    "HeadTurnChallenge",
    "build_challenge",
    "challenge_instruction",
    "generate_challenge_sequence",
    "generate_random_challenge",
]
