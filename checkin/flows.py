"""Wire detection sessions for the check-in, login and enrollment flows.

Every tunable is read from Django settings (``RECOGNITION_*``) when a session is
built, so ``override_settings`` in tests and environment overrides in
deployments apply the same way.
"""

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Sequence

from django.conf import settings
from django.core.exceptions import ImproperlyConfigured

from asgiref.sync import sync_to_async

from .admission import AdmissionZone, MinimumFaceWidth, ZoneShape
from .challenges import ENROLLMENT_BANDS, HeadTurnChallenge
from .cooldown import Clock
from .liveness import LivenessConfig
from .matcher import FaceMatcher
from .models import CheckInLog
from .policy import StabilityPolicy
from .services import (
    gallery_for_checkin,
    gallery_for_login,
    record_check_in,
    record_scan_event,
    save_descriptor,
    split_label,
)
from .session import (
    AcceptAction,
    AcceptEvent,
    ActionResult,
    Detector,
    DetectionSession,
    FixedIdentity,
    FrameSource,
    ScanTelemetry,
    SessionConfig,
    TelemetrySink,
)
from .tracking import DecayMode, LivenessRequirement
from .types import ReferenceIdentity

logger = logging.getLogger(__name__)


class Flow(str, Enum):
    CHECKIN = "checkin"
    LOGIN = "login"
    ENROLLMENT = "enrollment"


@dataclass(frozen=True)
class FlowSettings:
    """Everything that differs between flows, resolved from Django settings."""

    flow: Flow
    tier_rows: tuple[tuple[Any, ...], ...]
    liveness: LivenessRequirement
    match_distance: Optional[float]
    interval: float
    zone: AdmissionZone
    min_face_width: MinimumFaceWidth
    max_faces: int
    cooldown: float
    telemetry_window: float
    decay: DecayMode
    complete_on_accept: bool


def _setting(name: str, default: Any) -> Any:
    value = getattr(settings, name, default)
    return default if value is None else value


def _required_setting(name: str) -> Any:
    value = getattr(settings, name, None)
    if value is None:
        raise ImproperlyConfigured(f"{name} must be defined in settings.")
    return value


def liveness_config() -> LivenessConfig:
    return LivenessConfig(
        ear_threshold=float(_setting("RECOGNITION_EAR_THRESHOLD", 0.21)),
        ear_consec_frames=int(_setting("RECOGNITION_EAR_CONSEC_FRAMES", 2)),
        head_turn_threshold=float(_setting("RECOGNITION_HEAD_TURN_THRESHOLD", 0.45)),
        motion_history_size=int(_setting("RECOGNITION_MOTION_HISTORY_SIZE", 10)),
        motion_floor=float(_setting("RECOGNITION_MOTION_FLOOR", 0.5)),
        motion_ceiling=float(_setting("RECOGNITION_MOTION_CEILING", 20.0)),
        required_blinks=int(_setting("RECOGNITION_REQUIRED_BLINKS", 2)),
    )


def flow_settings(flow: Flow | str) -> FlowSettings:
    flow = Flow(flow)
    prefix = f"RECOGNITION_{flow.name}"
    tier_rows = tuple(tuple(row) for row in _required_setting(f"{prefix}_TIERS"))
    liveness = LivenessRequirement(_required_setting(f"{prefix}_LIVENESS"))
    cooldown = float(_setting("RECOGNITION_ACCEPT_COOLDOWN_SECONDS", 10.0))
    telemetry_window = float(_setting("RECOGNITION_TELEMETRY_WINDOW_SECONDS", 10.0))

    if flow is Flow.ENROLLMENT:
        return FlowSettings(
            flow=flow,
            tier_rows=tier_rows,
            liveness=liveness,
            match_distance=None,
            interval=float(_setting("RECOGNITION_ENROLLMENT_TICK_INTERVAL_SECONDS", 0.25)),
            zone=AdmissionZone(
                float(_setting("RECOGNITION_ENROLLMENT_ZONE_WIDTH", 220)),
                float(_setting("RECOGNITION_ENROLLMENT_ZONE_HEIGHT", 300)),
                ZoneShape.ELLIPSE,
            ),
            min_face_width=MinimumFaceWidth(
                fraction=float(_setting("RECOGNITION_ENROLLMENT_MIN_FACE_FRACTION", 0.22))
            ),
            max_faces=1,
            cooldown=cooldown,
            telemetry_window=telemetry_window,
            decay=DecayMode.RESET,
            complete_on_accept=True,
        )

    zone_size = float(_setting("RECOGNITION_ZONE_SIZE", 300))
    return FlowSettings(
        flow=flow,
        tier_rows=tier_rows,
        liveness=liveness,
        match_distance=getattr(settings, f"{prefix}_MATCH_DISTANCE", None),
        interval=float(_setting("RECOGNITION_TICK_INTERVAL_SECONDS", 0.2)),
        zone=AdmissionZone(zone_size, zone_size),
        min_face_width=MinimumFaceWidth(pixels=float(_setting("RECOGNITION_MIN_FACE_WIDTH", 180))),
        max_faces=(
            int(_setting("RECOGNITION_MAX_FACES_PER_FRAME", 5)) if flow is Flow.CHECKIN else 1
        ),
        cooldown=cooldown,
        telemetry_window=telemetry_window,
        decay=DecayMode.HALVE,
        complete_on_accept=flow is Flow.LOGIN,
    )


def build_policy(flow: Flow | str) -> StabilityPolicy:
    resolved = flow_settings(flow)
    return StabilityPolicy.from_rows(resolved.tier_rows, liveness=resolved.liveness)


def build_session_config(flow: Flow | str) -> SessionConfig:
    resolved = flow_settings(flow)
    return SessionConfig(
        flow=resolved.flow.value,
        interval=resolved.interval,
        zone=resolved.zone,
        min_face_width=resolved.min_face_width,
        max_faces=resolved.max_faces,
        cooldown=resolved.cooldown,
        telemetry_window=resolved.telemetry_window,
        decay=resolved.decay,
        liveness=liveness_config(),
        complete_on_accept=resolved.complete_on_accept,
    )


def build_matcher(
    flow: Flow | str, gallery: Sequence[ReferenceIdentity], policy: StabilityPolicy
) -> FaceMatcher:
    """Build the flow's matcher; its cut-off defaults to the policy's reject boundary."""

    match_distance = flow_settings(flow).match_distance
    if match_distance is None:
        match_distance = policy.reject_boundary
    return FaceMatcher(gallery, max_distance=float(match_distance))


def build_rng() -> random.Random:
    return random.Random(getattr(settings, "RECOGNITION_CHALLENGE_SEED", None))


def database_telemetry() -> TelemetrySink:
    """Telemetry sink persisting :class:`~checkin.models.ScanEvent` rows."""

    async def sink(event: ScanTelemetry) -> None:
        await sync_to_async(record_scan_event)(
            event.reason.value,
            event.message,
            best_match=event.best_match,
            distance=event.distance,
            source=event.source,
            event_type=event.event_type,
        )

    return sink


def checkin_action(status: str = CheckInLog.Status.CHECK_IN) -> AcceptAction:
    """Accept action recording a check-in for the accepted label."""

    async def action(event: AcceptEvent) -> ActionResult:
        name, surname = split_label(event.label)
        receipt = await sync_to_async(record_check_in)(name, surname, status)
        if receipt.already_logged:
            return ActionResult(
                ok=True, message=f"{event.label} has already checked in", payload=receipt
            )
        return ActionResult(ok=True, message=f"Checked in: {event.label}", payload=receipt)

    return action


async def build_checkin_session(
    frame_source: FrameSource,
    detector: Detector,
    *,
    gallery: Optional[Sequence[ReferenceIdentity]] = None,
    accept_action: Optional[AcceptAction] = None,
    telemetry: Optional[TelemetrySink] = None,
    clock: Clock = time.monotonic,
    rng: Optional[random.Random] = None,
) -> DetectionSession:
    """Build a multi-face check-in session.

    The gallery is loaded from the database when not supplied. An empty gallery
    raises :class:`~checkin.exceptions.EmptyGalleryError`.
    """

    if gallery is None:
        gallery = await sync_to_async(gallery_for_checkin)()
    policy = build_policy(Flow.CHECKIN)
    return DetectionSession(
        frame_source=frame_source,
        detector=detector,
        identify=build_matcher(Flow.CHECKIN, gallery, policy),
        policy=policy,
        accept_action=accept_action or checkin_action(),
        config=build_session_config(Flow.CHECKIN),
        telemetry=telemetry or database_telemetry(),
        clock=clock,
        rng=rng or build_rng(),
    )


async def build_login_session(
    frame_source: FrameSource,
    detector: Detector,
    *,
    email: str,
    password: str,
    telemetry: Optional[TelemetrySink] = None,
    clock: Clock = time.monotonic,
    rng: Optional[random.Random] = None,
) -> DetectionSession:
    """Verify credentials, then build a single-identity face login session.

    The session stops itself once the face is accepted; the authenticated user
    is the ``payload`` of ``session.last_action_result``.
    """

    login = await sync_to_async(gallery_for_login)(email, password)
    policy = build_policy(Flow.LOGIN)
    user = login.user

    async def complete_login(event: AcceptEvent) -> ActionResult:
        logger.info("Face login accepted for user %s", user.pk)
        display_name = user.get_full_name() or user.email
        return ActionResult(ok=True, message=f"Welcome, {display_name}", payload=user)

    return DetectionSession(
        frame_source=frame_source,
        detector=detector,
        identify=build_matcher(Flow.LOGIN, login.gallery, policy),
        policy=policy,
        accept_action=complete_login,
        config=build_session_config(Flow.LOGIN),
        telemetry=telemetry or database_telemetry(),
        clock=clock,
        rng=rng or build_rng(),
    )


async def build_enrollment_session(
    frame_source: FrameSource,
    detector: Detector,
    *,
    user: Any,
    telemetry: Optional[TelemetrySink] = None,
    clock: Clock = time.monotonic,
    rng: Optional[random.Random] = None,
) -> DetectionSession:
    """Build a session capturing the enrollment descriptor for ``user``.

    There is no gallery: every admitted face is attributed to the user. The
    person has to face the camera, turn to either side and look back before the
    stable-frame count starts; the accepted frame's descriptor is stored.
    """

    policy = build_policy(Flow.ENROLLMENT)
    label = user.get_full_name() or user.get_username()

    async def store_descriptor(event: AcceptEvent) -> ActionResult:
        profile = await sync_to_async(save_descriptor)(user, event.descriptor)
        return ActionResult(ok=True, message="Face registered", payload=profile)

    return DetectionSession(
        frame_source=frame_source,
        detector=detector,
        identify=FixedIdentity(label),
        policy=policy,
        accept_action=store_descriptor,
        config=build_session_config(Flow.ENROLLMENT),
        telemetry=telemetry or database_telemetry(),
        clock=clock,
        rng=rng or build_rng(),
        challenge_factory=lambda: HeadTurnChallenge(None, ENROLLMENT_BANDS),
    )


__all__ = [
    "Flow",
    "FlowSettings",
    "build_checkin_session",
    "build_enrollment_session",
    "build_login_session",
    "build_matcher",
    "build_policy",
    "build_rng",
    "build_session_config",
    "checkin_action",
    "database_telemetry",
    "flow_settings",
    "liveness_config",
]
