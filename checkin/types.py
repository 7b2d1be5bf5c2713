"""Records shared by the matcher, the liveness extractors and the detection session."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Sequence, Union

import numpy as np

from .landmarks import LandmarksLike, as_points

UNKNOWN_LABEL = "unknown"

DescriptorLike = Union[np.ndarray, Sequence[float]]


def as_descriptor(values: DescriptorLike) -> np.ndarray:
    """Return ``values`` as a flat float64 vector."""

    return np.asarray(values, dtype=np.float64).reshape(-1)


@dataclass(frozen=True)
class BoundingBox:
    """Axis-aligned face box in frame pixel coordinates."""

    x: float
    y: float
    width: float
    height: float

    @property
    def right(self) -> float:
        return self.x + self.width

    @property
    def bottom(self) -> float:
        return self.y + self.height

    @property
    def center(self) -> tuple[float, float]:
        return self.x + self.width / 2, self.y + self.height / 2

    @property
    def area(self) -> float:
        return self.width * self.height


@dataclass(frozen=True, eq=False)
class DetectedFace:
    """One face returned by the detector for a single frame."""

    box: BoundingBox
    landmarks: np.ndarray
    descriptor: np.ndarray

    def __post_init__(self) -> None:
        object.__setattr__(self, "landmarks", as_points(self.landmarks))
        object.__setattr__(self, "descriptor", as_descriptor(self.descriptor))

    @classmethod
    def build(
        cls,
        box: BoundingBox | dict[str, float],
        landmarks: LandmarksLike,
        descriptor: DescriptorLike,
    ) -> "DetectedFace":
        """Create a face from plain detector output (``box`` may be a mapping)."""

        if isinstance(box, dict):
            box = BoundingBox(
                x=float(box["x"]),
                y=float(box["y"]),
                width=float(box["width"]),
                height=float(box["height"]),
            )
        return cls(box=box, landmarks=landmarks, descriptor=descriptor)


@dataclass(frozen=True, eq=False)
class ReferenceIdentity:
    """A labelled reference descriptor from the gallery."""

    label: str
    descriptor: np.ndarray

    def __post_init__(self) -> None:
        object.__setattr__(self, "descriptor", as_descriptor(self.descriptor))


@dataclass(frozen=True)
class MatchResult:
    """Nearest gallery entry for a query descriptor."""

    label: str
    distance: float

    @property
    def is_known(self) -> bool:
        return self.label != UNKNOWN_LABEL


@dataclass(frozen=True)
class Frame:
    """Opaque frame handed to the detector along with its pixel size."""

    image: Any
    width: int
    height: int


__all__ = [
    "BoundingBox",
    "DescriptorLike",
    "DetectedFace",
    "Frame",
    "MatchResult",
    "ReferenceIdentity",
    "UNKNOWN_LABEL",
    "as_descriptor",
]
