"""Tests for flow wiring: settings resolution and the database-backed sessions."""

from __future__ import annotations

import numpy as np
import pytest
from django.contrib.auth import get_user_model
from django.core.exceptions import ImproperlyConfigured
from django.test import override_settings

from checkin.admission import ZoneShape
from checkin.exceptions import EmptyGalleryError, InvalidCredentials
from checkin.flows import (
    Flow,
    build_checkin_session,
    build_enrollment_session,
    build_login_session,
    build_matcher,
    build_policy,
    build_session_config,
    flow_settings,
    liveness_config,
)
from checkin.models import CheckInLog, FaceProfile, ScanEvent
from checkin.services import save_descriptor
from checkin.tracking import DecayMode, LivenessRequirement
from checkin.types import ReferenceIdentity
from tests.checkin.conftest import (
    ALICE,
    CLOSED_EYE,
    FakeCamera,
    ManualClock,
    RecordingTelemetry,
    ScriptedDetector,
    make_face,
    near,
    run,
)


class TestFlowSettings:
    def test_checkin_defaults(self) -> None:
        resolved = flow_settings(Flow.CHECKIN)

        assert resolved.max_faces == 5
        assert resolved.zone.shape is ZoneShape.RECT
        assert resolved.min_face_width.pixels == 180
        assert resolved.decay is DecayMode.HALVE
        assert resolved.liveness is LivenessRequirement.NONE
        assert resolved.match_distance is None
        assert not resolved.complete_on_accept

    def test_login_defaults(self) -> None:
        resolved = flow_settings("login")

        assert resolved.max_faces == 1
        assert resolved.liveness is LivenessRequirement.PASSIVE
        assert resolved.match_distance == 0.7
        assert resolved.complete_on_accept

    def test_enrollment_defaults(self) -> None:
        resolved = flow_settings(Flow.ENROLLMENT)

        assert resolved.zone.shape is ZoneShape.ELLIPSE
        assert (resolved.zone.width, resolved.zone.height) == (220, 300)
        assert resolved.min_face_width.fraction == pytest.approx(0.22)
        assert resolved.decay is DecayMode.RESET
        assert resolved.liveness is LivenessRequirement.CHALLENGE
        assert resolved.interval == pytest.approx(0.25)

    @override_settings(
        RECOGNITION_CHECKIN_TIERS=[["only", 0.4, 2, "#00ff00"]],
        RECOGNITION_CHECKIN_LIVENESS="passive",
    )
    def test_policy_follows_settings(self) -> None:
        policy = build_policy(Flow.CHECKIN)

        assert [tier.name for tier in policy.tiers] == ["only"]
        assert policy.reject_boundary == 0.4
        assert policy.liveness is LivenessRequirement.PASSIVE

    @override_settings(RECOGNITION_MAX_FACES_PER_FRAME=2, RECOGNITION_ACCEPT_COOLDOWN_SECONDS=3)
    def test_session_config_follows_settings(self) -> None:
        config = build_session_config(Flow.CHECKIN)

        assert config.flow == "checkin"
        assert config.max_faces == 2
        assert config.cooldown == 3.0

    @override_settings(RECOGNITION_EAR_THRESHOLD=0.18, RECOGNITION_MOTION_HISTORY_SIZE=12)
    def test_liveness_config_follows_settings(self) -> None:
        config = liveness_config()

        assert config.ear_threshold == pytest.approx(0.18)
        assert config.motion_history_size == 12

    @pytest.mark.parametrize("suffix", ["TIERS", "LIVENESS"])
    def test_flow_tables_come_only_from_settings(self, settings, suffix) -> None:
        delattr(settings, f"RECOGNITION_LOGIN_{suffix}")

        with pytest.raises(ImproperlyConfigured, match=f"RECOGNITION_LOGIN_{suffix}"):
            flow_settings(Flow.LOGIN)

    def test_matcher_cut_off_defaults_to_reject_boundary(self) -> None:
        gallery = [ReferenceIdentity("Alice", ALICE)]

        checkin = build_matcher(Flow.CHECKIN, gallery, build_policy(Flow.CHECKIN))
        login = build_matcher(Flow.LOGIN, gallery, build_policy(Flow.LOGIN))

        assert checkin.max_distance == pytest.approx(0.55)
        assert login.max_distance == pytest.approx(0.7)


def _enrolled_user(username="ada", first_name="Ada", last_name="Lovelace", descriptor=ALICE):
    user = get_user_model().objects.create_user(
        username=username,
        email=f"{username}@example.com",
        password="s3cret-pass",
        first_name=first_name,
        last_name=last_name,
    )
    if descriptor is not None:
        save_descriptor(user, descriptor)
    return user


async def _ticks(session, count, clock=None, step=0.2):
    reports = []
    for _ in range(count):
        reports.append(await session.tick())
        await session.drain()
        if clock is not None:
            clock.advance(step)
    return reports


@pytest.mark.django_db(transaction=True)
class TestCheckinFlow:
    def test_accepted_face_is_checked_in_once(self) -> None:
        _enrolled_user()
        clock = ManualClock()

        async def scenario():
            session = await build_checkin_session(
                FakeCamera(),
                ScriptedDetector([make_face(ALICE)]),
                telemetry=RecordingTelemetry(),
                clock=clock,
            )
            session.start(poll=False)
            await _ticks(session, 3)
            first = session.last_action_result
            clock.advance(11)
            await _ticks(session, 1)
            second = session.last_action_result
            await session.dispose()
            return first, second

        first, second = run(scenario())

        assert first.message == "Checked in: Ada Lovelace"
        assert first.payload.recorded
        assert second.message == "Ada Lovelace has already checked in"
        assert CheckInLog.objects.for_person("Ada", "Lovelace").count() == 1

    def test_empty_gallery_is_refused(self) -> None:
        async def scenario():
            await build_checkin_session(FakeCamera(), ScriptedDetector())

        with pytest.raises(EmptyGalleryError):
            run(scenario())

    def test_failed_scans_are_persisted(self) -> None:
        _enrolled_user()

        async def scenario():
            session = await build_checkin_session(FakeCamera(), ScriptedDetector([]))
            session.start(poll=False)
            await _ticks(session, 3)
            await session.dispose()

        run(scenario())

        events = list(ScanEvent.objects.all())
        assert len(events) == 1
        assert events[0].reason == ScanEvent.Reason.NO_FACE
        assert events[0].source == "checkin"


@pytest.mark.django_db(transaction=True)
class TestLoginFlow:
    def test_face_login_returns_the_user(self) -> None:
        user = _enrolled_user()
        detector = ScriptedDetector()
        camera = FakeCamera()

        async def scenario():
            session = await build_login_session(
                camera,
                detector,
                email="ada@example.com",
                password="s3cret-pass",
                telemetry=RecordingTelemetry(),
            )
            session.start(poll=False)
            # Two closed frames and a reopening make a blink.
            for opening in [CLOSED_EYE, CLOSED_EYE, 12.0, 12.0]:
                detector.faces = [make_face(near(ALICE, 0.2), eye_open=opening)]
                await _ticks(session, 1)
            return session

        session = run(scenario())

        assert session.completed
        assert camera.released
        assert session.last_action_result.payload == user
        assert session.status == "Welcome, Ada Lovelace"

    def test_wrong_password_never_opens_a_session(self) -> None:
        _enrolled_user()

        async def scenario():
            await build_login_session(
                FakeCamera(), ScriptedDetector(), email="ada@example.com", password="nope"
            )

        with pytest.raises(InvalidCredentials):
            run(scenario())


@pytest.mark.django_db(transaction=True)
class TestEnrollmentFlow:
    def test_head_turn_then_capture_stores_descriptor(self) -> None:
        user = _enrolled_user(descriptor=None)
        detector = ScriptedDetector()
        captured = np.linspace(0.0, 1.0, 8)

        async def scenario():
            session = await build_enrollment_session(
                FakeCamera(), detector, user=user, telemetry=RecordingTelemetry()
            )
            session.start(poll=False)
            statuses = []
            for ratio in [1.0, 2.5, 1.0] + [1.0] * 5:
                detector.faces = [make_face(captured, ratio=ratio)]
                (report,) = await _ticks(session, 1)
                statuses.append(report.status)
            return session, statuses

        session, statuses = run(scenario())

        assert statuses[0] == "Please turn your head slowly to either side"
        assert statuses[1] == "Now look back at the camera"
        assert statuses[2] == "Verifying Ada Lovelace... 1/6"
        assert session.completed
        assert session.status == "Face registered"
        np.testing.assert_allclose(FaceProfile.objects.get(user=user).get_descriptor(), captured)
