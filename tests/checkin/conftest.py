"""Shared builders and fakes for the check-in engine tests."""

from __future__ import annotations

import asyncio
import random
from typing import Any, Optional, Sequence

import numpy as np
import pytest

from checkin import monitoring
from checkin.admission import AdmissionZone, MinimumFaceWidth
from checkin.liveness import LivenessConfig
from checkin.matcher import FaceMatcher
from checkin.policy import StabilityPolicy
from checkin.session import (
    AcceptEvent,
    ActionResult,
    DetectionSession,
    ScanTelemetry,
    SessionConfig,
)
from checkin.tracking import DecayMode, LivenessRequirement
from checkin.types import BoundingBox, DetectedFace, Frame, ReferenceIdentity

DIMENSION = 8
FRAME_WIDTH = 640
FRAME_HEIGHT = 480

CHECKIN_TIERS = [
    ["strict", 0.35, 3, "#00ff00"],
    ["normal", 0.48, 6, "#ffff00"],
    ["mask", 0.55, 12, "#ffa500"],
]

# Centred 200px box; its centre (320, 240) sits inside a 300x300 zone.
CENTERED_BOX = BoundingBox(220, 140, 200, 200)
# Centre (110, 110) lies outside the zone.
CORNER_BOX = BoundingBox(10, 10, 200, 200)
# Centred but narrower than the 180px minimum.
SMALL_BOX = BoundingBox(270, 190, 100, 100)

OPEN_EYE = 12.0
CLOSED_EYE = 4.0


def unit(index: int, dimension: int = DIMENSION) -> np.ndarray:
    vector = np.zeros(dimension)
    vector[index] = 1.0
    return vector


def near(base: np.ndarray, distance: float) -> np.ndarray:
    """Return a descriptor exactly ``distance`` away from ``base``."""

    return base + distance * unit(DIMENSION - 1, base.shape[0])


ALICE = unit(0)
BOB = unit(1)


def _eye(first_x: float, y: float, opening: float) -> list[tuple[float, float]]:
    """Six eye points, left to right along the top and back along the bottom."""

    half = opening / 2.0
    return [
        (first_x, y),
        (first_x + 13, y - half),
        (first_x + 27, y - half),
        (first_x + 40, y),
        (first_x + 27, y + half),
        (first_x + 13, y + half),
    ]


def make_landmarks(
    *,
    ratio: float = 1.0,
    eye_open: float = OPEN_EYE,
    dx: float = 0.0,
    dy: float = 0.0,
    cx: float = 320.0,
    cy: float = 240.0,
) -> np.ndarray:
    """Build 68 landmarks with a given head-turn ratio and eye opening.

    The eyes are 40px wide, so the eye aspect ratio is ``eye_open / 40``. The
    nose tip is placed so that ``head_turn_ratio`` returns ``ratio``.
    """

    points = np.tile([cx, cy], (68, 1)).astype(np.float64)
    eye_y = cy - 20
    # Outer corners land on indices 36 (cx - 60) and 45 (cx + 60).
    points[36:42] = _eye(cx - 60, eye_y, eye_open)
    points[42:48] = _eye(cx + 20, eye_y, eye_open)
    points[30] = (cx + 60 * (ratio - 1) / (ratio + 1), cy + 20)
    points[:, 0] += dx
    points[:, 1] += dy
    return points


def make_face(
    descriptor: np.ndarray,
    box: BoundingBox = CENTERED_BOX,
    **landmark_kwargs: Any,
) -> DetectedFace:
    return DetectedFace(box=box, landmarks=make_landmarks(**landmark_kwargs), descriptor=descriptor)


def run(coro):
    return asyncio.run(coro)


class ManualClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeCamera:
    """Frame source returning blank 640x480 frames, or ``None`` when not ready."""

    def __init__(self, ready: bool = True) -> None:
        self.ready = ready
        self.reads = 0
        self.released = False

    async def read(self) -> Optional[Frame]:
        self.reads += 1
        if not self.ready:
            return None
        return Frame(image=None, width=FRAME_WIDTH, height=FRAME_HEIGHT)

    def release(self) -> None:
        self.released = True


class ScriptedDetector:
    """Detector returning ``faces`` (or raising ``error``) on every call."""

    def __init__(self, faces: Sequence[DetectedFace] = ()) -> None:
        self.faces = list(faces)
        self.error: Optional[Exception] = None
        self.calls = 0

    async def __call__(self, frame: Frame) -> list[DetectedFace]:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return list(self.faces)


class RecordingAction:
    def __init__(self, result: Optional[ActionResult] = None) -> None:
        self.events: list[AcceptEvent] = []
        self.result = result if result is not None else ActionResult(ok=True, message="Done")
        self.error: Optional[Exception] = None

    async def __call__(self, event: AcceptEvent) -> ActionResult:
        self.events.append(event)
        if self.error is not None:
            raise self.error
        return self.result

    @property
    def labels(self) -> list[str]:
        return [event.label for event in self.events]


class RecordingTelemetry:
    def __init__(self) -> None:
        self.events: list[ScanTelemetry] = []

    async def __call__(self, event: ScanTelemetry) -> None:
        self.events.append(event)

    @property
    def reasons(self) -> list[str]:
        return [event.reason.value for event in self.events]


def build_session(
    *,
    gallery: Optional[Sequence[ReferenceIdentity]] = None,
    tiers=CHECKIN_TIERS,
    liveness: LivenessRequirement = LivenessRequirement.NONE,
    detector: Optional[ScriptedDetector] = None,
    camera: Optional[FakeCamera] = None,
    action: Optional[RecordingAction] = None,
    telemetry: Optional[RecordingTelemetry] = None,
    clock: Optional[ManualClock] = None,
    identify=None,
    challenge_factory=None,
    liveness_config: Optional[LivenessConfig] = None,
    seed: int = 7,
    **config_overrides: Any,
) -> DetectionSession:
    policy = StabilityPolicy.from_rows(tiers, liveness=liveness)
    if identify is None:
        if gallery is None:
            gallery = [ReferenceIdentity("Alice", ALICE), ReferenceIdentity("Bob", BOB)]
        identify = FaceMatcher(gallery, max_distance=policy.reject_boundary)
    config_values = {
        "flow": "checkin",
        "zone": AdmissionZone(300, 300),
        "min_face_width": MinimumFaceWidth(pixels=180),
        "decay": DecayMode.HALVE,
        "liveness": liveness_config or LivenessConfig(),
    }
    config_values.update(config_overrides)
    return DetectionSession(
        frame_source=camera or FakeCamera(),
        detector=detector or ScriptedDetector(),
        identify=identify,
        policy=policy,
        accept_action=action or RecordingAction(),
        config=SessionConfig(**config_values),
        telemetry=telemetry,
        clock=clock or ManualClock(),
        rng=random.Random(seed),
        challenge_factory=challenge_factory,
    )


@pytest.fixture(autouse=True)
def reset_monitoring():
    monitoring.reset_for_tests()
    yield
    monitoring.reset_for_tests()
