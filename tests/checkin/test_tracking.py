"""Tests for per-label tracks and the track registry."""

from __future__ import annotations

from checkin.challenges import HeadTurnChallenge
from checkin.liveness import LivenessConfig, TurnDirection
from checkin.tracking import DecayMode, FaceTrack, LivenessRequirement, TrackRegistry
from tests.checkin.conftest import CLOSED_EYE, make_landmarks

CONFIG = LivenessConfig()


def _observe_all(track: FaceTrack, frames) -> list[bool]:
    return [track.observe(frame, CONFIG) for frame in frames]


class TestFaceTrack:
    def test_new_track_is_empty(self) -> None:
        track = FaceTrack("Alice")

        assert track.stable_count == 0
        assert not track.blink_detected
        assert track.last_landmarks is None
        assert len(track.motion_history) == 0

    def test_blink_is_latched(self) -> None:
        track = FaceTrack("Alice")
        frames = [
            make_landmarks(eye_open=CLOSED_EYE),
            make_landmarks(eye_open=CLOSED_EYE),
            make_landmarks(),
            make_landmarks(),
        ]

        assert _observe_all(track, frames) == [False, False, True, False]
        assert track.blink_detected
        assert track.liveness.blink_count == 1
        assert track.liveness_satisfied(LivenessRequirement.PASSIVE, CONFIG)

    def test_motion_history_is_bounded(self) -> None:
        track = FaceTrack("Alice", motion_capacity=3)
        _observe_all(track, [make_landmarks(dx=step) for step in range(6)])

        assert list(track.motion_history) == [1.0, 1.0, 1.0]
        assert track.motion_history_full
        assert track.liveness.motion_score == 1.0

    def test_first_observation_records_zero_motion(self) -> None:
        track = FaceTrack("Alice")
        track.observe(make_landmarks(), CONFIG)

        assert list(track.motion_history) == [0.0]
        assert track.liveness.last_head_pose is not None

    def test_natural_motion_needs_a_full_history(self) -> None:
        track = FaceTrack("Alice", motion_capacity=10)
        _observe_all(track, [make_landmarks(dx=2 * step) for step in range(9)])

        assert not track.passive_liveness_satisfied(CONFIG)

        track.observe(make_landmarks(dx=18), CONFIG)
        assert track.motion_history_full
        assert track.passive_liveness_satisfied(CONFIG)

    def test_still_photo_never_satisfies_passive_liveness(self) -> None:
        track = FaceTrack("Alice")
        _observe_all(track, [make_landmarks()] * 15)

        assert not track.liveness_satisfied(LivenessRequirement.PASSIVE, CONFIG)
        assert track.liveness_satisfied(LivenessRequirement.NONE, CONFIG)

    def test_challenge_completion_is_recorded_in_state(self) -> None:
        track = FaceTrack("Alice", challenge=HeadTurnChallenge(TurnDirection.LEFT))

        assert track.instruction == "Please look straight at the camera"
        _observe_all(track, [make_landmarks(), make_landmarks(ratio=1.6)])
        assert not track.liveness_satisfied(LivenessRequirement.CHALLENGE, CONFIG)

        track.observe(make_landmarks(), CONFIG)
        assert track.liveness.challenge_completed
        assert track.liveness_satisfied(LivenessRequirement.CHALLENGE, CONFIG)
        assert track.instruction is None


class TestTrackRegistry:
    def test_get_or_create_reuses_tracks(self) -> None:
        registry = TrackRegistry()

        first = registry.get_or_create("Alice")
        assert registry.get_or_create("Alice") is first
        assert "Alice" in registry
        assert registry.labels == ["Alice"]
        assert registry.get("Bob") is None

    def test_challenge_factory_gives_each_track_its_own_challenge(self) -> None:
        registry = TrackRegistry(challenge_factory=lambda: HeadTurnChallenge(TurnDirection.LEFT))

        alice = registry.get_or_create("Alice")
        bob = registry.get_or_create("Bob")

        assert alice.challenge is not None
        assert alice.challenge is not bob.challenge

    def test_halve_floors_and_keeps_progress(self) -> None:
        registry = TrackRegistry()
        registry.get_or_create("Bob").stable_count = 5

        removed = registry.decay_absent(set(), DecayMode.HALVE)

        assert removed == []
        assert registry.get("Bob").stable_count == 2

    def test_halve_drops_tracks_reaching_zero(self) -> None:
        registry = TrackRegistry()
        registry.get_or_create("Alice").stable_count = 1
        registry.get_or_create("Bob").stable_count = 4

        removed = registry.decay_absent(["Bob"], DecayMode.HALVE)

        assert removed == ["Alice"]
        assert "Alice" not in registry
        assert registry.get("Bob").stable_count == 4

    def test_reset_drops_absent_tracks(self) -> None:
        registry = TrackRegistry()
        registry.get_or_create("Alice").stable_count = 6

        assert registry.decay_absent([], DecayMode.RESET) == ["Alice"]
        assert len(registry) == 0

    def test_clear(self) -> None:
        registry = TrackRegistry()
        registry.get_or_create("Alice")
        registry.get_or_create("Bob")

        registry.clear()

        assert len(registry) == 0
        assert list(registry) == []
