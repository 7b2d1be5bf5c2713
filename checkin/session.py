"""Detection session: the polling loop that turns detector output into decisions.

A :class:`DetectionSession` owns everything one camera view needs: the face
tracks, the per-label accept cooldowns and the telemetry throttle. It polls the
frame source on a fixed interval, never runs two ticks at once, and applies
the whole per-face pipeline synchronously once the detector returns:

1. admission (zone and minimum face width),
2. identification against the gallery,
3. liveness evidence and the stability policy,
4. the accept action, at most once per label per cooldown window.

Collaborators are injected so the same session drives check-in, login and
enrollment, and so tests can run it with fakes and a manual clock.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Protocol, Sequence

import numpy as np

from . import monitoring
from .admission import (
    AdmissionStatus,
    AdmissionZone,
    MinimumFaceWidth,
    check_admission,
)
from .challenges import Challenge, build_challenge, generate_random_challenge
from .cooldown import Clock, CooldownRegistry, TelemetryThrottle
from .exceptions import ConfigurationError, SessionClosedError
from .liveness import LivenessConfig
from .policy import REJECT_COLOR, Decision, DecisionStatus, StabilityPolicy
from .tracking import DecayMode, FaceTrack, LivenessRequirement, TrackRegistry
from .types import BoundingBox, DescriptorLike, DetectedFace, Frame, MatchResult

logger = logging.getLogger(__name__)

REPOSITION_COLOR = "#ffa500"


class FailureReason(str, Enum):
    """Why a tick ended without any face making progress."""

    NO_FACE = "NO_FACE"
    OUT_OF_ZONE = "OUT_OF_ZONE"
    TOO_FAR = "TOO_FAR"
    UNKNOWN_FACE = "UNKNOWN_FACE"
    LOW_CONFIDENCE = "LOW_CONFIDENCE"


# Higher wins when several faces fail in the same tick.
_FAILURE_PRIORITY = {
    FailureReason.NO_FACE: 0,
    FailureReason.OUT_OF_ZONE: 1,
    FailureReason.TOO_FAR: 2,
    FailureReason.UNKNOWN_FACE: 3,
    FailureReason.LOW_CONFIDENCE: 4,
}

STATUS_MESSAGES = {
    FailureReason.NO_FACE: "No face detected, please step in front of the camera",
    FailureReason.OUT_OF_ZONE: "Please move your face inside the frame",
    FailureReason.TOO_FAR: "Please move closer to the camera",
    FailureReason.UNKNOWN_FACE: "Face not recognised",
    FailureReason.LOW_CONFIDENCE: "Face not clear enough, please hold still",
}


class FrameSource(Protocol):
    async def read(self) -> Optional[Frame]: ...

    def release(self) -> None: ...


Detector = Callable[[Frame], Awaitable[Sequence[DetectedFace]]]


class IdentityResolver(Protocol):
    def find_best_match(self, query: DescriptorLike) -> MatchResult: ...


class FixedIdentity:
    """Resolver that attributes every admitted face to a single label.

    Used while enrolling, when there is no gallery to match against yet.
    """

    def __init__(self, label: str) -> None:
        self.label = label

    def find_best_match(self, query: DescriptorLike) -> MatchResult:
        return MatchResult(label=self.label, distance=0.0)


@dataclass(frozen=True)
class SessionConfig:
    flow: str = "checkin"
    interval: float = 0.2
    zone: AdmissionZone = AdmissionZone(300, 300)
    min_face_width: MinimumFaceWidth = MinimumFaceWidth(pixels=180)
    max_faces: int = 5
    cooldown: float = 10.0
    telemetry_window: float = 10.0
    decay: DecayMode = DecayMode.HALVE
    liveness: LivenessConfig = field(default_factory=LivenessConfig)
    complete_on_accept: bool = False


@dataclass(frozen=True, eq=False)
class AcceptEvent:
    """Handed to the accept action when a track reaches its required frame count."""

    flow: str
    label: str
    distance: float
    tier: str
    descriptor: np.ndarray
    accepted_at: float


@dataclass(frozen=True)
class ActionResult:
    """What an accept action reports back to the session."""

    ok: bool = True
    message: str = ""
    payload: Any = None


@dataclass(frozen=True)
class ScanTelemetry:
    """Rate-limited telemetry for ticks that made no progress."""

    reason: FailureReason
    message: str
    source: str
    best_match: Optional[str] = None
    distance: Optional[float] = None
    event_type: str = "SCAN_FAIL"


@dataclass(frozen=True)
class FaceOutcome:
    """Overlay and decision for one detected face in one tick."""

    box: BoundingBox
    caption: str
    color: str
    admission: AdmissionStatus
    label: Optional[str] = None
    distance: Optional[float] = None
    decision: Optional[Decision] = None
    failure: Optional[FailureReason] = None
    instruction: Optional[str] = None


@dataclass(frozen=True)
class TickReport:
    outcomes: tuple[FaceOutcome, ...]
    status: str
    failure: Optional[FailureReason] = None
    fired: tuple[str, ...] = ()


AcceptAction = Callable[[AcceptEvent], Awaitable[Optional[ActionResult]]]
TelemetrySink = Callable[[ScanTelemetry], Awaitable[None]]


class DetectionSession:
    """Poll a camera, track faces and fire accept actions for one flow."""

    def __init__(
        self,
        *,
        frame_source: FrameSource,
        detector: Detector,
        identify: IdentityResolver,
        policy: StabilityPolicy,
        accept_action: AcceptAction,
        config: SessionConfig = SessionConfig(),
        telemetry: Optional[TelemetrySink] = None,
        clock: Clock = time.monotonic,
        rng: Optional[random.Random] = None,
        challenge_factory: Optional[Callable[[], Challenge]] = None,
    ) -> None:
        self.config = config
        self.policy = policy
        self._frame_source = frame_source
        self._detector = detector
        self._identify = identify
        self._accept_action = accept_action
        self._telemetry = telemetry
        self._clock = clock
        self._rng = rng if rng is not None else random.Random()

        if challenge_factory is None and policy.liveness is LivenessRequirement.CHALLENGE:
            challenge_factory = self._random_challenge

        self.tracks = TrackRegistry(
            motion_capacity=config.liveness.motion_history_size,
            challenge_factory=challenge_factory,
        )
        self.cooldowns = CooldownRegistry(config.cooldown, clock)
        self._throttle = TelemetryThrottle(config.telemetry_window, clock)

        self._active = False
        self._generation = 0
        self._busy = False
        self._disposed = False
        self._wake: Optional[asyncio.Event] = None
        self._loop_task: Optional[asyncio.Task] = None
        self._pending: set[asyncio.Task] = set()
        self._in_flight: set[str] = set()

        self.status = "Idle"
        self.completed = False
        self.last_report: Optional[TickReport] = None
        self.last_action_result: Optional[ActionResult] = None
        self.last_error: Optional[Exception] = None

    @property
    def active(self) -> bool:
        return self._active

    @property
    def flow(self) -> str:
        return self.config.flow

    def _random_challenge(self) -> Challenge:
        return build_challenge(generate_random_challenge(self._rng), self.config.liveness)

    # -- lifecycle ---------------------------------------------------------

    def start(self, *, poll: bool = True) -> None:
        """Activate the session.

        With ``poll=True`` the polling loop is scheduled on the running event
        loop. With ``poll=False`` the caller drives :meth:`tick` itself.
        """

        if self._disposed:
            raise SessionClosedError("This detection session has been disposed.")
        if self._active:
            return

        self._active = True
        self._generation += 1
        self.completed = False
        self.last_error = None
        self.status = "Looking for a face"
        monitoring.record_session_start(self.flow)

        # A loop from before the last stop exits on its own; keep it for drain().
        if self._loop_task is not None and not self._loop_task.done():
            self._pending.add(self._loop_task)
            self._loop_task.add_done_callback(self._pending.discard)
        self._loop_task = None
        if poll:
            self._wake = asyncio.Event()
            self._loop_task = asyncio.get_running_loop().create_task(
                self._run(self._generation, self._wake)
            )

    def _is_current(self, generation: int) -> bool:
        return self._active and self._generation == generation

    def stop(self) -> None:
        """Stop polling and release the camera.

        A detector call already in flight is allowed to finish; its result is
        discarded.
        """

        if not self._active:
            return
        self._active = False
        self._generation += 1
        if self._wake is not None:
            self._wake.set()
        try:
            self._frame_source.release()
        except Exception:
            logger.exception(
                "Failed to release frame source",
                extra={"event": "session_stop", "flow": self.flow, "status": "error"},
            )
        monitoring.record_session_stop(self.flow)
        if not self.completed:
            self.status = "Stopped"

    async def dispose(self) -> None:
        """Stop, wait for outstanding work and drop all per-session state."""

        self.stop()
        try:
            if self._loop_task is not None:
                await self._loop_task
        finally:
            self._loop_task = None
            await self.drain()
            self.tracks.clear()
            self.cooldowns.clear()
            self._throttle.clear()
            self._disposed = True

    async def drain(self) -> None:
        """Wait for accept actions and telemetry writes that are still running."""

        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def _run(self, generation: int, wake: asyncio.Event) -> None:
        loop = asyncio.get_running_loop()
        interval = self.config.interval
        next_due = loop.time()
        while self._is_current(generation):
            try:
                await self.tick()
            except ConfigurationError as exc:
                logger.exception(
                    "Detection loop stopped on a configuration error",
                    extra={"event": "tick", "flow": self.flow, "status": "error"},
                )
                monitoring.record_tick(self.flow, "error")
                self.last_error = exc
                self.stop()
                self.status = "Could not complete, please try again"
                break
            if not self._is_current(generation):
                break

            next_due += interval
            now = loop.time()
            if now > next_due:
                missed = int((now - next_due) // interval) + 1
                for _ in range(missed):
                    monitoring.record_tick(self.flow, "skipped")
                next_due += missed * interval

            try:
                await asyncio.wait_for(wake.wait(), timeout=max(0.0, next_due - now))
            except asyncio.TimeoutError:
                pass

    # -- per tick ----------------------------------------------------------

    async def tick(self) -> Optional[TickReport]:
        """Run one detection pass.

        Returns ``None`` when nothing was processed: the session is inactive or
        already busy, the frame was not ready, the detector failed, or the
        session stopped while the detector was running.
        """

        if not self._active:
            return None
        if self._busy:
            monitoring.record_tick(self.flow, "skipped")
            return None

        generation = self._generation
        self._busy = True
        started = time.perf_counter()
        try:
            frame = await self._frame_source.read()
            if frame is None:
                monitoring.record_tick(self.flow, "not_ready")
                return None
            if not self._is_current(generation):
                monitoring.record_tick(self.flow, "discarded")
                return None

            try:
                faces = list(await self._detector(frame))
            except Exception:
                logger.exception(
                    "Face detector failed",
                    extra={"event": "detector", "flow": self.flow, "status": "error"},
                )
                monitoring.record_tick(self.flow, "error")
                return None

            if not self._is_current(generation):
                logger.debug("Discarding detector result after stop")
                monitoring.record_tick(self.flow, "discarded")
                return None

            report = self._process(frame, faces)
        finally:
            self._busy = False

        monitoring.record_tick(self.flow, "processed", time.perf_counter() - started)
        return report

    def _select_faces(self, faces: list[DetectedFace]) -> list[DetectedFace]:
        ordered = sorted(faces, key=lambda face: face.box.area, reverse=True)
        return ordered[: max(1, self.config.max_faces)]

    def _process(self, frame: Frame, faces: list[DetectedFace]) -> TickReport:
        if not faces:
            self.tracks.clear()
            return self._finish(frame, (), FailureReason.NO_FACE)

        outcomes: list[FaceOutcome] = []
        failures: list[tuple[FailureReason, Optional[MatchResult]]] = []
        present: set[str] = set()
        fired: list[str] = []
        progressed = False

        for face in self._select_faces(faces):
            admission = check_admission(
                face, frame, self.config.zone, self.config.min_face_width
            )
            if admission is not AdmissionStatus.ADMITTED:
                reason = (
                    FailureReason.OUT_OF_ZONE
                    if admission is AdmissionStatus.OUT_OF_ZONE
                    else FailureReason.TOO_FAR
                )
                failures.append((reason, None))
                outcomes.append(
                    FaceOutcome(
                        box=face.box,
                        caption=STATUS_MESSAGES[reason],
                        color=REPOSITION_COLOR,
                        admission=admission,
                        failure=reason,
                    )
                )
                continue

            match = self._identify.find_best_match(face.descriptor)
            if not match.is_known:
                monitoring.record_decision(self.flow, DecisionStatus.REJECTED.value)
                failures.append((FailureReason.UNKNOWN_FACE, match))
                outcomes.append(
                    FaceOutcome(
                        box=face.box,
                        caption=f"Unknown ({match.distance:.2f})",
                        color=REJECT_COLOR,
                        admission=admission,
                        label=match.label,
                        distance=match.distance,
                        decision=Decision(DecisionStatus.REJECTED, stable_count=0),
                        failure=FailureReason.UNKNOWN_FACE,
                    )
                )
                continue

            if match.label in present:
                # Two faces resolved to the same identity; only the larger one counts.
                outcomes.append(
                    FaceOutcome(
                        box=face.box,
                        caption=match.label,
                        color=REJECT_COLOR,
                        admission=admission,
                        label=match.label,
                        distance=match.distance,
                    )
                )
                continue
            present.add(match.label)

            track = self.tracks.get_or_create(match.label)
            track.observe(face.landmarks, self.config.liveness)
            liveness_ok = track.liveness_satisfied(self.policy.liveness, self.config.liveness)
            decision = self.policy.decide(track, match.distance, liveness_ok=liveness_ok)
            monitoring.record_decision(self.flow, decision.status.value)

            failure = None
            if decision.status is DecisionStatus.REJECTED:
                failure = FailureReason.LOW_CONFIDENCE
                failures.append((failure, match))
            else:
                progressed = True

            if decision.status is DecisionStatus.ACCEPTED and self._fire_accept(
                match, decision, face
            ):
                fired.append(match.label)

            outcomes.append(
                FaceOutcome(
                    box=face.box,
                    caption=self._caption(match, decision, track),
                    color=decision.color,
                    admission=admission,
                    label=match.label,
                    distance=match.distance,
                    decision=decision,
                    failure=failure,
                    instruction=self._instruction(decision, track),
                )
            )

        self.tracks.decay_absent(present, self.config.decay)

        failure: Optional[FailureReason] = None
        best_match: Optional[MatchResult] = None
        if not progressed and failures:
            failure, best_match = max(failures, key=lambda item: _FAILURE_PRIORITY[item[0]])
        return self._finish(frame, tuple(outcomes), failure, tuple(fired), best_match)

    def _caption(self, match: MatchResult, decision: Decision, track: FaceTrack) -> str:
        if decision.status is DecisionStatus.REJECTED:
            return f"{match.label} ({match.distance:.2f})"
        if decision.status is DecisionStatus.PENDING_LIVENESS:
            return f"{match.label} - {self._instruction(decision, track)}"
        if decision.status is DecisionStatus.PENDING:
            return f"{match.label} {decision.progress_label}"
        return f"{match.label} (confirmed)"

    def _instruction(self, decision: Decision, track: FaceTrack) -> Optional[str]:
        if decision.status is not DecisionStatus.PENDING_LIVENESS:
            return None
        return track.instruction or "Please blink"

    def _status_for(self, outcomes: Sequence[FaceOutcome], fired: Sequence[str]) -> str:
        if fired:
            return f"Confirmed {fired[0]}, recording..."
        ranked = {
            DecisionStatus.ACCEPTED: 3,
            DecisionStatus.PENDING: 2,
            DecisionStatus.PENDING_LIVENESS: 1,
        }
        candidates = [
            outcome
            for outcome in outcomes
            if outcome.decision is not None and outcome.decision.status in ranked
        ]
        if not candidates:
            return self.status
        best = max(candidates, key=lambda outcome: ranked[outcome.decision.status])
        status = best.decision.status
        if status is DecisionStatus.ACCEPTED:
            if best.label in self._in_flight:
                return f"Confirmed {best.label}, recording..."
            return f"{best.label} was recorded recently"
        if status is DecisionStatus.PENDING_LIVENESS:
            return best.instruction or "Please blink"
        return f"Verifying {best.label}... {best.decision.progress_label}"

    def _finish(
        self,
        frame: Frame,
        outcomes: tuple[FaceOutcome, ...],
        failure: Optional[FailureReason],
        fired: tuple[str, ...] = (),
        best_match: Optional[MatchResult] = None,
    ) -> TickReport:
        status = STATUS_MESSAGES[failure] if failure else self._status_for(outcomes, fired)
        self.status = status
        monitoring.update_active_tracks(self.flow, len(self.tracks))

        if failure is not None:
            monitoring.record_failure(self.flow, failure.value)
            if self._telemetry is not None and self._throttle.should_emit(failure):
                self._spawn(
                    self._emit_telemetry(
                        ScanTelemetry(
                            reason=failure,
                            message=status,
                            source=self.flow,
                            best_match=(
                                f"{best_match.label} ({best_match.distance:.2f})"
                                if best_match
                                else None
                            ),
                            distance=best_match.distance if best_match else None,
                        )
                    )
                )

        report = TickReport(outcomes=outcomes, status=status, failure=failure, fired=fired)
        self.last_report = report
        return report

    # -- side effects ------------------------------------------------------

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def _fire_accept(self, match: MatchResult, decision: Decision, face: DetectedFace) -> bool:
        label = match.label
        if label in self._in_flight or self.cooldowns.is_active(label):
            return False

        self.cooldowns.activate(label)
        self._in_flight.add(label)
        event = AcceptEvent(
            flow=self.flow,
            label=label,
            distance=match.distance,
            tier=decision.tier.name if decision.tier else "",
            descriptor=face.descriptor.copy(),
            accepted_at=self._clock(),
        )
        logger.info(
            "Accepted %s in %s flow (distance=%.3f, tier=%s)",
            label,
            self.flow,
            match.distance,
            event.tier,
            extra={"event": "accept", "flow": self.flow, "status": "fired"},
        )
        self._spawn(self._run_accept(event))
        return True

    async def _run_accept(self, event: AcceptEvent) -> None:
        try:
            result = await self._accept_action(event)
        except Exception as exc:
            self._in_flight.discard(event.label)
            # Clear the cooldown so the person is not locked out by a failed write.
            self.cooldowns.release(event.label)
            logger.exception(
                "Accept action failed for %s",
                event.label,
                extra={"event": "accept", "flow": self.flow, "status": "error"},
            )
            monitoring.record_accept_action(self.flow, "error", error=str(exc))
            self.last_action_result = ActionResult(
                ok=False, message="Could not complete, please try again"
            )
            if self._active:
                self.status = self.last_action_result.message
            return

        self._in_flight.discard(event.label)
        if result is None:
            result = ActionResult()
        self.last_action_result = result
        monitoring.record_accept_action(self.flow, "success" if result.ok else "declined")
        if result.message:
            self.status = result.message
        if result.ok and self.config.complete_on_accept:
            self.completed = True
            self.stop()

    async def _emit_telemetry(self, event: ScanTelemetry) -> None:
        try:
            await self._telemetry(event)
        except Exception:
            logger.warning(
                "Failed to record scan telemetry (%s)",
                event.reason.value,
                exc_info=True,
                extra={"event": "telemetry", "flow": self.flow, "status": "error"},
            )


__all__ = [
    "AcceptAction",
    "AcceptEvent",
    "ActionResult",
    "DetectionSession",
    "FaceOutcome",
    "FailureReason",
    "FixedIdentity",
    "FrameSource",
    "STATUS_MESSAGES",
    "ScanTelemetry",
    "SessionConfig",
    "TelemetrySink",
    "TickReport",
]
