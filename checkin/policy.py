"""Distance-tiered stability policy deciding when a tracked face is accepted."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional, Sequence

from .exceptions import ConfigurationError
from .tracking import FaceTrack, LivenessRequirement

REJECT_COLOR = "#ff0000"


@dataclass(frozen=True)
class ConfidenceTier:
    """Distances below ``max_distance`` need ``required_frames`` consecutive frames."""

    name: str
    max_distance: float
    required_frames: int
    color: str = "#00ff00"

    @classmethod
    def from_row(cls, row: Sequence[object]) -> "ConfidenceTier":
        """Build a tier from a ``[name, max_distance, required_frames, color]`` row."""

        try:
            name, max_distance, required_frames, color = row
            return cls(str(name), float(max_distance), int(required_frames), str(color))
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"Invalid confidence tier row: {row!r}") from exc


class DecisionStatus(str, Enum):
    REJECTED = "rejected"
    PENDING_LIVENESS = "pending_liveness"
    PENDING = "pending"
    ACCEPTED = "accepted"


@dataclass(frozen=True)
class Decision:
    """Outcome of feeding one frame's distance to the policy."""

    status: DecisionStatus
    stable_count: int
    tier: Optional[ConfidenceTier] = None

    @property
    def required_frames(self) -> Optional[int]:
        return self.tier.required_frames if self.tier else None

    @property
    def progress_label(self) -> str:
        if self.tier is None:
            return ""
        return f"{min(self.stable_count, self.tier.required_frames)}/{self.tier.required_frames}"

    @property
    def color(self) -> str:
        return self.tier.color if self.tier else REJECT_COLOR


class StabilityPolicy:
    """Map match distances to confidence tiers and advance track stability.

    Tighter matches need fewer consecutive frames. Tiers are ordered by their
    distance cut-off and the required frame count may never shrink as the
    cut-off grows. The largest cut-off is the reject boundary.
    """

    def __init__(
        self,
        tiers: Iterable[ConfidenceTier],
        *,
        liveness: LivenessRequirement | str = LivenessRequirement.NONE,
    ) -> None:
        ordered = sorted(tiers, key=lambda tier: tier.max_distance)
        if not ordered:
            raise ConfigurationError("A stability policy needs at least one confidence tier.")
        for tier in ordered:
            if tier.max_distance <= 0:
                raise ConfigurationError(f"Tier {tier.name!r} must have a positive distance.")
            if tier.required_frames < 1:
                raise ConfigurationError(f"Tier {tier.name!r} must require at least one frame.")
        for tighter, looser in zip(ordered, ordered[1:]):
            if tighter.max_distance == looser.max_distance:
                raise ConfigurationError(
                    f"Tiers {tighter.name!r} and {looser.name!r} share a distance cut-off."
                )
            if looser.required_frames < tighter.required_frames:
                raise ConfigurationError(
                    f"Tier {looser.name!r} requires fewer frames than the tighter "
                    f"tier {tighter.name!r}."
                )
        self.tiers: tuple[ConfidenceTier, ...] = tuple(ordered)
        self.liveness = LivenessRequirement(liveness)

    @classmethod
    def from_rows(
        cls,
        rows: Iterable[Sequence[object]],
        *,
        liveness: LivenessRequirement | str = LivenessRequirement.NONE,
    ) -> "StabilityPolicy":
        return cls([ConfidenceTier.from_row(row) for row in rows], liveness=liveness)

    @property
    def reject_boundary(self) -> float:
        return self.tiers[-1].max_distance

    @property
    def requires_liveness(self) -> bool:
        return self.liveness is not LivenessRequirement.NONE

    def tier_for(self, distance: float) -> Optional[ConfidenceTier]:
        for tier in self.tiers:
            if distance < tier.max_distance:
                return tier
        return None

    def required_frames_for(self, distance: float) -> Optional[int]:
        tier = self.tier_for(distance)
        return tier.required_frames if tier else None

    def decide(self, track: FaceTrack, distance: float, *, liveness_ok: bool = True) -> Decision:
        """Apply one frame's distance to ``track`` and report the decision.

        ``ACCEPTED`` is reported on every frame at or past the required count;
        callers latch it so the side effect happens once.
        """

        track.last_distance = distance
        tier = self.tier_for(distance)
        if tier is None:
            track.stable_count = 0
            return Decision(DecisionStatus.REJECTED, stable_count=0)

        if self.requires_liveness and not liveness_ok:
            return Decision(
                DecisionStatus.PENDING_LIVENESS, stable_count=track.stable_count, tier=tier
            )

        track.stable_count += 1
        if track.stable_count >= tier.required_frames:
            return Decision(DecisionStatus.ACCEPTED, stable_count=track.stable_count, tier=tier)
        return Decision(DecisionStatus.PENDING, stable_count=track.stable_count, tier=tier)


__all__ = [
    "ConfidenceTier",
    "Decision",
    "DecisionStatus",
    "REJECT_COLOR",
    "StabilityPolicy",
]
