"""Tests for gallery matching."""

from __future__ import annotations

import numpy as np
import pytest

from checkin.exceptions import (
    ConfigurationError,
    DescriptorLengthError,
    DuplicateLabelError,
    EmptyGalleryError,
)
from checkin.matcher import FaceMatcher, euclidean_distance, find_best_match
from checkin.types import UNKNOWN_LABEL, ReferenceIdentity
from tests.checkin.conftest import ALICE, BOB, near, unit


def _gallery() -> list[ReferenceIdentity]:
    return [ReferenceIdentity("Alice", ALICE), ReferenceIdentity("Bob", BOB)]


def test_euclidean_distance_is_plain_norm() -> None:
    assert euclidean_distance([0.0, 3.0], [4.0, 0.0]) == pytest.approx(5.0)


@pytest.mark.parametrize(
    "a, b",
    [
        (ALICE, BOB),
        (ALICE, near(ALICE, 0.3)),
        ([0.25, -1.5, 3.0], [2.0, 0.5, -0.75]),
        (np.zeros(4), np.zeros(4)),
    ],
)
def test_euclidean_distance_is_symmetric(a, b) -> None:
    assert euclidean_distance(a, b) == euclidean_distance(b, a)


def test_euclidean_distance_rejects_mismatched_lengths() -> None:
    with pytest.raises(DescriptorLengthError) as excinfo:
        euclidean_distance([1.0, 2.0], [1.0, 2.0, 3.0])
    assert excinfo.value.expected == 2
    assert excinfo.value.actual == 3


def test_exact_match_has_zero_distance() -> None:
    result = FaceMatcher(_gallery(), max_distance=0.55).find_best_match(ALICE)

    assert result.label == "Alice"
    assert result.distance == 0.0
    assert result.is_known


def test_nearest_reference_wins() -> None:
    result = find_best_match(near(BOB, 0.2), _gallery(), max_distance=0.55)

    assert result.label == "Bob"
    assert result.distance == pytest.approx(0.2)


def test_distance_at_threshold_is_unknown_but_reported() -> None:
    result = find_best_match(near(ALICE, 0.6), [ReferenceIdentity("Alice", ALICE)], 0.6)

    assert result.label == UNKNOWN_LABEL
    assert not result.is_known
    assert result.distance == pytest.approx(0.6)


def test_ties_resolve_to_first_gallery_entry() -> None:
    twin = ALICE.copy()
    gallery = [ReferenceIdentity("First", twin), ReferenceIdentity("Second", ALICE.copy())]

    assert find_best_match(ALICE, gallery, 0.5).label == "First"


def test_empty_gallery_is_a_configuration_error() -> None:
    with pytest.raises(EmptyGalleryError):
        FaceMatcher([], max_distance=0.5)


def test_duplicate_labels_are_rejected() -> None:
    gallery = [ReferenceIdentity("Alice", ALICE), ReferenceIdentity("Alice", BOB)]

    with pytest.raises(DuplicateLabelError):
        FaceMatcher(gallery, max_distance=0.5)


def test_gallery_descriptor_lengths_must_agree() -> None:
    gallery = [ReferenceIdentity("Alice", ALICE), ReferenceIdentity("Short", np.ones(4))]

    with pytest.raises(ConfigurationError):
        FaceMatcher(gallery, max_distance=0.5)


def test_query_length_mismatch_is_not_an_unknown_match() -> None:
    matcher = FaceMatcher(_gallery(), max_distance=0.5)

    with pytest.raises(DescriptorLengthError):
        matcher.find_best_match(np.ones(4))


def test_matcher_exposes_gallery_shape() -> None:
    matcher = FaceMatcher(_gallery(), max_distance=0.5)

    assert matcher.labels == ("Alice", "Bob")
    assert matcher.dimension == ALICE.shape[0]
    assert len(matcher) == 2
    np.testing.assert_allclose(matcher.distances(unit(0)), [0.0, np.sqrt(2.0)])
