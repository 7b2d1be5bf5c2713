"""Exception hierarchy for the check-in engine.

Only configuration mistakes and service-level failures are exceptions. Transient
detection misses, low confidence and unsatisfied liveness are reported as
statuses by the session and never raised.
"""

from __future__ import annotations


class CheckinError(Exception):
    """Base class for all check-in errors."""


class ConfigurationError(CheckinError):
    """Raised when the engine is wired with data it cannot work with."""


class DescriptorLengthError(ConfigurationError):
    """Raised when two descriptors that must be compared differ in length."""

    def __init__(self, expected: int, actual: int) -> None:
        super().__init__(
            f"Descriptor length mismatch: expected {expected} values, got {actual}."
        )
        self.expected = expected
        self.actual = actual


class EmptyGalleryError(ConfigurationError):
    """Raised when a matcher is built without any reference identities."""


class DuplicateLabelError(ConfigurationError):
    """Raised when a gallery contains the same label more than once."""


class SessionClosedError(CheckinError):
    """Raised when a disposed detection session is started again."""


class InvalidCredentials(CheckinError):
    """Raised when a login attempt supplies an unknown email or a wrong password."""


class FaceNotRegistered(CheckinError):
    """Raised when an account has no stored face descriptor."""


__all__ = [
    "CheckinError",
    "ConfigurationError",
    "DescriptorLengthError",
    "DuplicateLabelError",
    "EmptyGalleryError",
    "FaceNotRegistered",
    "InvalidCredentials",
    "SessionClosedError",
]
