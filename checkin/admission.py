"""Admission checks run on every detected face before it is matched.

A face has to sit inside a zone centred in the frame and be wide enough to be
close to the camera. Faces that fail are reported back to the user and never
reach the matcher or the tracks.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .exceptions import ConfigurationError
from .types import DetectedFace, Frame


class AdmissionStatus(str, Enum):
    ADMITTED = "admitted"
    OUT_OF_ZONE = "out_of_zone"
    TOO_FAR = "too_far"


class ZoneShape(str, Enum):
    RECT = "rect"
    ELLIPSE = "ellipse"


@dataclass(frozen=True)
class AdmissionZone:
    """A ``width`` x ``height`` region centred in the frame."""

    width: float
    height: float
    shape: ZoneShape = ZoneShape.RECT

    def __post_init__(self) -> None:
        if self.width <= 0 or self.height <= 0:
            raise ConfigurationError("Admission zone dimensions must be positive.")
        object.__setattr__(self, "shape", ZoneShape(self.shape))

    def bounds(self, frame_width: float, frame_height: float) -> tuple[float, float, float, float]:
        """Return ``(left, top, right, bottom)`` of the zone within the frame."""

        left = (frame_width - self.width) / 2
        top = (frame_height - self.height) / 2
        return left, top, left + self.width, top + self.height

    def contains(self, x: float, y: float, frame_width: float, frame_height: float) -> bool:
        left, top, right, bottom = self.bounds(frame_width, frame_height)
        if self.shape is ZoneShape.RECT:
            return left < x < right and top < y < bottom

        center_x = (left + right) / 2
        center_y = (top + bottom) / 2
        radius_x = self.width / 2
        radius_y = self.height / 2
        return ((x - center_x) / radius_x) ** 2 + ((y - center_y) / radius_y) ** 2 < 1.0


@dataclass(frozen=True)
class MinimumFaceWidth:
    """Distance proxy: a face narrower than the threshold is too far away.

    Either an absolute pixel width or a fraction of the frame width.
    """

    pixels: Optional[float] = None
    fraction: Optional[float] = None

    def __post_init__(self) -> None:
        if (self.pixels is None) == (self.fraction is None):
            raise ConfigurationError("Set exactly one of pixels or fraction for the face width.")

    def threshold(self, frame_width: float) -> float:
        if self.pixels is not None:
            return float(self.pixels)
        return float(self.fraction) * frame_width


def check_admission(
    face: DetectedFace,
    frame: Frame,
    zone: AdmissionZone,
    min_width: MinimumFaceWidth,
) -> AdmissionStatus:
    """Check the zone first, then the width."""

    center_x, center_y = face.box.center
    if not zone.contains(center_x, center_y, frame.width, frame.height):
        return AdmissionStatus.OUT_OF_ZONE
    if face.box.width < min_width.threshold(frame.width):
        return AdmissionStatus.TOO_FAR
    return AdmissionStatus.ADMITTED


__all__ = [
    "AdmissionStatus",
    "AdmissionZone",
    "MinimumFaceWidth",
    "ZoneShape",
    "check_admission",
]
