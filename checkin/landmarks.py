"""Index helpers for the 68-point facial landmark layout."""

from __future__ import annotations

from typing import Sequence, Union

import numpy as np

LANDMARK_COUNT = 68

JAW = tuple(range(0, 17))
RIGHT_EYEBROW = tuple(range(17, 22))
LEFT_EYEBROW = tuple(range(22, 27))
NOSE = tuple(range(27, 36))
LEFT_EYE = tuple(range(36, 42))
RIGHT_EYE = tuple(range(42, 48))
MOUTH = tuple(range(48, 68))

NOSE_TIP = NOSE[3]
LEFT_EYE_OUTER = LEFT_EYE[0]
RIGHT_EYE_OUTER = RIGHT_EYE[3]

LandmarksLike = Union[np.ndarray, Sequence[Sequence[float]]]


def as_points(landmarks: LandmarksLike) -> np.ndarray:
    """Return landmarks as a ``(68, 2)`` float array.

    Raises:
        ValueError: If the input does not contain exactly 68 ``(x, y)`` points.
    """

    points = np.asarray(landmarks, dtype=np.float64)
    if points.shape != (LANDMARK_COUNT, 2):
        raise ValueError(
            f"Expected {LANDMARK_COUNT} (x, y) landmark points, got shape {points.shape}."
        )
    return points


def left_eye(points: np.ndarray) -> np.ndarray:
    return points[list(LEFT_EYE)]


def right_eye(points: np.ndarray) -> np.ndarray:
    return points[list(RIGHT_EYE)]


def nose_tip(points: np.ndarray) -> np.ndarray:
    return points[NOSE_TIP]


def left_eye_outer(points: np.ndarray) -> np.ndarray:
    return points[LEFT_EYE_OUTER]


def right_eye_outer(points: np.ndarray) -> np.ndarray:
    return points[RIGHT_EYE_OUTER]


__all__ = [
    "LANDMARK_COUNT",
    "LEFT_EYE",
    "LEFT_EYE_OUTER",
    "NOSE",
    "NOSE_TIP",
    "RIGHT_EYE",
    "RIGHT_EYE_OUTER",
    "as_points",
    "left_eye",
    "left_eye_outer",
    "nose_tip",
    "right_eye",
    "right_eye_outer",
]
