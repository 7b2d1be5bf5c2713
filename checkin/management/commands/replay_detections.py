"""Replay recorded detector output through a detection session."""

from __future__ import annotations

import asyncio
import json
import random
from pathlib import Path
from typing import Any, Iterator, Optional

from django.core.management.base import BaseCommand, CommandError

from checkin import monitoring
from checkin.exceptions import ConfigurationError
from checkin.flows import Flow, build_matcher, build_policy, build_session_config
from checkin.session import AcceptEvent, ActionResult, DetectionSession, ScanTelemetry
from checkin.types import DetectedFace, Frame, ReferenceIdentity


class SimulatedClock:
    """Monotonic clock advanced explicitly by the replay loop."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordedFrames:
    """Frame source yielding recorded frames; ``null`` entries are frames not ready."""

    def __init__(self, frames: list[Optional[dict[str, Any]]]) -> None:
        self._frames: Iterator[Optional[dict[str, Any]]] = iter(frames)
        self.released = False

    async def read(self) -> Optional[Frame]:
        raw = next(self._frames, None)
        if raw is None:
            return None
        return Frame(image=raw.get("faces", []), width=int(raw["width"]), height=int(raw["height"]))

    def release(self) -> None:
        self.released = True


async def recorded_detector(frame: Frame) -> list[DetectedFace]:
    return [
        DetectedFace.build(face["box"], face["landmarks"], face["descriptor"])
        for face in frame.image
    ]


def _load_json(path: str, what: str) -> Any:
    source = Path(path).expanduser()
    if not source.exists():
        raise CommandError(f"{what} file '{source}' does not exist.")
    try:
        return json.loads(source.read_text())
    except json.JSONDecodeError as exc:
        raise CommandError(f"{what} file '{source}' is not valid JSON: {exc}") from exc


class Command(BaseCommand):
    """Feed recorded detections to a session tick by tick and print each decision."""

    help = "Replay recorded face detections through the check-in decision engine."

    def add_arguments(self, parser) -> None:  # pragma: no cover - argparse wiring
        parser.add_argument(
            "--gallery",
            required=True,
            help="JSON list of {label, descriptor} reference identities.",
        )
        parser.add_argument(
            "--frames",
            required=True,
            help="JSON list of recorded frames: {width, height, faces: [{box, landmarks, descriptor}]}.",
        )
        parser.add_argument(
            "--flow",
            choices=[Flow.CHECKIN.value, Flow.LOGIN.value],
            default=Flow.CHECKIN.value,
            help="Which flow's policy, zone and liveness settings to apply.",
        )
        parser.add_argument(
            "--interval",
            type=float,
            default=None,
            help="Simulated seconds between ticks (defaults to the flow's tick interval).",
        )
        parser.add_argument(
            "--seed",
            type=int,
            default=None,
            help="Seed for challenge selection.",
        )
        parser.add_argument(
            "--metrics",
            action="store_true",
            help="Print the Prometheus metrics collected during the replay.",
        )

    def handle(self, *args, **options):
        gallery_rows = _load_json(options["gallery"], "Gallery")
        frame_rows = _load_json(options["frames"], "Frames")
        if not isinstance(gallery_rows, list) or not isinstance(frame_rows, list):
            raise CommandError("Gallery and frames files must both contain JSON lists.")

        try:
            gallery = [
                ReferenceIdentity(label=str(row["label"]), descriptor=row["descriptor"])
                for row in gallery_rows
            ]
        except (KeyError, TypeError) as exc:
            raise CommandError(f"Invalid gallery entry: {exc}") from exc

        flow = Flow(options["flow"])
        try:
            summary = asyncio.run(
                self._replay(flow, gallery, frame_rows, options["interval"], options["seed"])
            )
        except ConfigurationError as exc:
            raise CommandError(str(exc)) from exc
        except (KeyError, ValueError) as exc:
            raise CommandError(f"Invalid recorded frame: {exc}") from exc

        self.stdout.write(
            self.style.SUCCESS(
                f"Replayed {summary['ticks']} ticks; {summary['accepted']} accept action(s) fired."
            )
        )
        if options["metrics"]:
            self.stdout.write(monitoring.export_metrics().decode("utf-8"))

    async def _replay(
        self,
        flow: Flow,
        gallery: list[ReferenceIdentity],
        frame_rows: list[Optional[dict[str, Any]]],
        interval: Optional[float],
        seed: Optional[int],
    ) -> dict[str, int]:
        clock = SimulatedClock()
        policy = build_policy(flow)
        config = build_session_config(flow)
        step = interval if interval is not None else config.interval
        accepted = 0

        async def print_accept(event: AcceptEvent) -> ActionResult:
            nonlocal accepted
            accepted += 1
            self.stdout.write(
                f"    -> accept {event.label} (distance={event.distance:.3f}, tier={event.tier})"
            )
            return ActionResult(ok=True, message=f"Accepted {event.label}")

        async def print_telemetry(event: ScanTelemetry) -> None:
            self.stdout.write(f"    -> telemetry {event.reason.value}: {event.message}")

        session = DetectionSession(
            frame_source=RecordedFrames(frame_rows),
            detector=recorded_detector,
            identify=build_matcher(flow, gallery, policy),
            policy=policy,
            accept_action=print_accept,
            config=config,
            telemetry=print_telemetry,
            clock=clock,
            rng=random.Random(seed),
        )
        session.start(poll=False)

        ticks = 0
        for index in range(len(frame_rows)):
            if not session.active:
                break
            report = await session.tick()
            ticks += 1
            if report is None:
                self.stdout.write(f"[{index:03d}] (no frame)")
            else:
                self.stdout.write(f"[{index:03d}] {report.status}")
                for outcome in report.outcomes:
                    self.stdout.write(f"    {outcome.caption}")
            await session.drain()
            clock.advance(step)

        await session.dispose()
        return {"ticks": ticks, "accepted": accepted}
