"""Database-backed collaborators of the detection session.

These are the synchronous ORM entry points: gallery loading, check-in and
telemetry sinks, enrollment storage and server-side re-verification.
:mod:`checkin.flows` wraps them with ``sync_to_async`` for the session.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Optional

from django.conf import settings
from django.contrib.auth import get_user_model
from django.db import transaction
from django.utils import timezone

import numpy as np

from .crypto import InvalidToken
from .exceptions import FaceNotRegistered, InvalidCredentials
from .matcher import euclidean_distance
from .models import CheckInLog, FaceProfile, ScanEvent
from .types import DescriptorLike, ReferenceIdentity, as_descriptor

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LoginGallery:
    user: Any
    gallery: list[ReferenceIdentity] = field(default_factory=list)


@dataclass(frozen=True)
class CheckInReceipt:
    recorded: bool
    already_logged: bool
    entry: Optional[CheckInLog] = None


@dataclass(frozen=True)
class VerificationResult:
    success: bool
    distance: float
    confidence: str


def split_label(label: str) -> tuple[str, str]:
    """Split a gallery label into ``(name, surname)``.

    The first whitespace-separated token is the name; everything after it is the
    surname, which may itself contain spaces or be empty.
    """

    parts = label.split()
    if not parts:
        raise ValueError("Cannot split an empty label into name and surname.")
    return parts[0], " ".join(parts[1:])


def _profiles_with_descriptors():
    return FaceProfile.objects.select_related("user").filter(encrypted_descriptor__isnull=False)


def gallery_for_checkin() -> list[ReferenceIdentity]:
    """Return every enrolled face labelled with the account's display name.

    Profiles whose descriptor cannot be decrypted are skipped. When two accounts
    share a display name only the first is kept, because check-in records are
    keyed by name.
    """

    gallery: list[ReferenceIdentity] = []
    seen: set[str] = set()
    for profile in _profiles_with_descriptors():
        try:
            descriptor = profile.get_descriptor()
        except InvalidToken:
            logger.warning("Skipping face profile %s: descriptor cannot be decrypted", profile.pk)
            continue
        if descriptor is None or descriptor.size == 0:
            continue
        label = profile.display_name
        if label in seen:
            logger.warning("Skipping duplicate gallery label %r (profile %s)", label, profile.pk)
            continue
        seen.add(label)
        gallery.append(ReferenceIdentity(label=label, descriptor=descriptor))
    logger.debug("Loaded check-in gallery with %d identities", len(gallery))
    return gallery


def gallery_for_login(email: str, password: str) -> LoginGallery:
    """Verify credentials and return a single-identity gallery for face login.

    Raises:
        InvalidCredentials: Unknown email, inactive account or wrong password.
        FaceNotRegistered: The account has no stored face descriptor.
    """

    user_model = get_user_model()
    user = user_model.objects.filter(email__iexact=email.strip()).first()
    if user is None or not user.is_active or not user.check_password(password):
        raise InvalidCredentials("Invalid email or password.")

    profile = FaceProfile.objects.filter(user=user).first()
    descriptor = profile.get_descriptor() if profile is not None else None
    if descriptor is None or descriptor.size == 0:
        raise FaceNotRegistered(f"No face registered for {user.email}.")

    return LoginGallery(user=user, gallery=[ReferenceIdentity(user.email, descriptor)])


def record_check_in(
    name: str,
    surname: str = "",
    status: str = CheckInLog.Status.CHECK_IN,
    *,
    now: Optional[datetime] = None,
) -> CheckInReceipt:
    """Persist a check-in unless the same person checked in recently.

    The duplicate window (``RECOGNITION_CHECKIN_DUPLICATE_WINDOW_SECONDS``) is
    enforced here independently of the session's own cooldown.
    """

    window = timedelta(
        seconds=int(getattr(settings, "RECOGNITION_CHECKIN_DUPLICATE_WINDOW_SECONDS", 1800))
    )
    now = now or timezone.now()

    with transaction.atomic():
        latest = CheckInLog.objects.filter(status=status).latest_for(name, surname)
        if latest is not None and now - latest.created_at < window:
            logger.info(
                "Check-in for %s %s already logged at %s",
                name,
                surname,
                latest.created_at.isoformat(),
            )
            return CheckInReceipt(recorded=False, already_logged=True, entry=latest)

        entry = CheckInLog.objects.create(name=name, surname=surname, status=status)

    logger.info("Recorded %s for %s %s", status, name, surname)
    return CheckInReceipt(recorded=True, already_logged=False, entry=entry)


def record_scan_event(
    reason: str,
    message: str = "",
    *,
    best_match: Optional[str] = None,
    distance: Optional[float] = None,
    source: str = "checkin",
    event_type: str = "SCAN_FAIL",
) -> ScanEvent:
    return ScanEvent.objects.create(
        event_type=event_type,
        reason=reason,
        message=message[:255],
        best_match=best_match,
        distance=distance,
        source=source,
    )


def save_descriptor(user: Any, descriptor: DescriptorLike) -> FaceProfile:
    """Store (or replace) the enrolled descriptor for ``user``."""

    vector = as_descriptor(descriptor)
    if vector.size == 0:
        raise ValueError("Cannot enroll an empty descriptor.")

    profile, _ = FaceProfile.objects.get_or_create(user=user)
    profile.set_descriptor(vector)
    profile.enrolled_at = timezone.now()
    profile.save(update_fields=["encrypted_descriptor", "enrolled_at", "updated_at"])
    logger.info("Stored face descriptor for user %s", user.pk)
    return profile


def verify_descriptor(user: Any, descriptor: DescriptorLike) -> VerificationResult:
    """Re-check a submitted descriptor against the user's enrolled one.

    Confidence is ``high`` below ``RECOGNITION_VERIFY_STRICT_DISTANCE``,
    ``medium`` below ``RECOGNITION_VERIFY_NORMAL_DISTANCE`` and ``low``
    otherwise; only high and medium verify successfully.

    Raises:
        FaceNotRegistered: The user has no stored descriptor.
        DescriptorLengthError: The submitted descriptor has the wrong length.
    """

    profile = FaceProfile.objects.filter(user=user).first()
    stored = profile.get_descriptor() if profile is not None else None
    if stored is None:
        raise FaceNotRegistered(f"No face registered for user {user.pk}.")

    distance = euclidean_distance(stored, np.asarray(descriptor, dtype=np.float64))
    strict = float(getattr(settings, "RECOGNITION_VERIFY_STRICT_DISTANCE", 0.42))
    normal = float(getattr(settings, "RECOGNITION_VERIFY_NORMAL_DISTANCE", 0.48))

    if distance < strict:
        confidence = "high"
    elif distance < normal:
        confidence = "medium"
    else:
        confidence = "low"

    return VerificationResult(
        success=distance < normal, distance=round(distance, 4), confidence=confidence
    )


__all__ = [
    "CheckInReceipt",
    "LoginGallery",
    "VerificationResult",
    "gallery_for_checkin",
    "gallery_for_login",
    "record_check_in",
    "record_scan_event",
    "save_descriptor",
    "split_label",
    "verify_descriptor",
]
