"""Nearest-neighbour matching of face descriptors against a labelled gallery."""

from __future__ import annotations

import logging
from typing import Iterable, Sequence

import numpy as np

from .exceptions import DescriptorLengthError, DuplicateLabelError, EmptyGalleryError
from .types import UNKNOWN_LABEL, DescriptorLike, MatchResult, ReferenceIdentity, as_descriptor

logger = logging.getLogger(__name__)


def euclidean_distance(a: DescriptorLike, b: DescriptorLike) -> float:
    """Return the plain (un-normalised) Euclidean distance between two descriptors.

    Raises:
        DescriptorLengthError: If the descriptors differ in length.
    """

    first = as_descriptor(a)
    second = as_descriptor(b)
    if first.shape != second.shape:
        raise DescriptorLengthError(first.shape[0], second.shape[0])
    return float(np.linalg.norm(first - second))


class FaceMatcher:
    """Match query descriptors against a fixed gallery.

    The gallery descriptors are stacked into a single matrix once, so a session
    that matches several faces per tick pays for the conversion only at
    construction time.

    Ties resolve to the reference that appears first in gallery order.
    """

    def __init__(self, gallery: Iterable[ReferenceIdentity], max_distance: float) -> None:
        references = list(gallery)
        if not references:
            raise EmptyGalleryError("The face gallery is empty; register a face first.")

        labels = [reference.label for reference in references]
        seen: set[str] = set()
        for label in labels:
            if label in seen:
                raise DuplicateLabelError(f"Gallery label {label!r} appears more than once.")
            seen.add(label)

        dimension = references[0].descriptor.shape[0]
        for reference in references[1:]:
            if reference.descriptor.shape[0] != dimension:
                raise DescriptorLengthError(dimension, reference.descriptor.shape[0])

        self._labels: tuple[str, ...] = tuple(labels)
        self._matrix = np.vstack([reference.descriptor for reference in references])
        self.max_distance = float(max_distance)
        logger.debug(
            "Built face matcher with %d identities (dimension=%d, max_distance=%.3f)",
            len(self._labels),
            dimension,
            self.max_distance,
        )

    @property
    def labels(self) -> tuple[str, ...]:
        return self._labels

    @property
    def dimension(self) -> int:
        return int(self._matrix.shape[1])

    def __len__(self) -> int:
        return len(self._labels)

    def distances(self, query: DescriptorLike) -> np.ndarray:
        """Return the distance from ``query`` to every reference, in gallery order."""

        vector = as_descriptor(query)
        if vector.shape[0] != self.dimension:
            raise DescriptorLengthError(self.dimension, vector.shape[0])
        return np.linalg.norm(self._matrix - vector, axis=1)

    def find_best_match(self, query: DescriptorLike) -> MatchResult:
        """Return the nearest reference, or ``"unknown"`` when it is not close enough.

        The minimum distance is reported even when the label is ``"unknown"``.
        """

        distances = self.distances(query)
        index = int(np.argmin(distances))
        distance = float(distances[index])
        if distance < self.max_distance:
            return MatchResult(label=self._labels[index], distance=distance)
        return MatchResult(label=UNKNOWN_LABEL, distance=distance)


def find_best_match(
    query: DescriptorLike,
    gallery: Sequence[ReferenceIdentity],
    max_distance: float,
) -> MatchResult:
    """Match a single query without keeping a :class:`FaceMatcher` around."""

    return FaceMatcher(gallery, max_distance).find_best_match(query)


__all__ = ["FaceMatcher", "euclidean_distance", "find_best_match"]
