"""Clock-driven cooldowns for accept actions and failure telemetry.

Both registries keep a map of key to expiry time and prune it lazily whenever
they are consulted, so no timers are scheduled.
"""

from __future__ import annotations

import time
from typing import Callable, Hashable

Clock = Callable[[], float]


class CooldownRegistry:
    """Suppress repeated accept actions for a label within ``window`` seconds."""

    def __init__(self, window: float, clock: Clock = time.monotonic) -> None:
        self.window = float(window)
        self._clock = clock
        self._expiry: dict[str, float] = {}

    def _prune(self, now: float) -> None:
        for label, expires_at in list(self._expiry.items()):
            if expires_at <= now:
                del self._expiry[label]

    def is_active(self, label: str) -> bool:
        self._prune(self._clock())
        return label in self._expiry

    def activate(self, label: str) -> None:
        now = self._clock()
        self._prune(now)
        self._expiry[label] = now + self.window

    def release(self, label: str) -> None:
        self._expiry.pop(label, None)

    def clear(self) -> None:
        self._expiry.clear()


class TelemetryThrottle:
    """Allow one emission per distinct reason per ``window`` seconds."""

    def __init__(self, window: float, clock: Clock = time.monotonic) -> None:
        self.window = float(window)
        self._clock = clock
        self._expiry: dict[Hashable, float] = {}

    def should_emit(self, reason: Hashable) -> bool:
        now = self._clock()
        expires_at = self._expiry.get(reason)
        if expires_at is not None and expires_at > now:
            return False
        self._expiry = {key: value for key, value in self._expiry.items() if value > now}
        self._expiry[reason] = now + self.window
        return True

    def clear(self) -> None:
        self._expiry.clear()


__all__ = ["Clock", "CooldownRegistry", "TelemetryThrottle"]
