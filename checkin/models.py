"""Database models for the check-in app."""

from __future__ import annotations

import logging
from typing import Optional

from django.conf import settings
from django.db import models

import numpy as np

from .crypto import DescriptorEncryption

logger = logging.getLogger(__name__)


class FaceProfile(models.Model):
    """The enrolled face descriptor of one account, encrypted at rest."""

    user = models.OneToOneField(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="face_profile",
    )
    encrypted_descriptor = models.BinaryField(
        null=True,
        blank=True,
        help_text="Fernet-encrypted float64 face descriptor",
    )
    enrolled_at = models.DateTimeField(null=True, blank=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["user_id"]
        verbose_name = "Face Profile"
        verbose_name_plural = "Face Profiles"

    def __str__(self) -> str:
        return self.display_name

    @property
    def display_name(self) -> str:
        """Gallery label used by check-in: ``"<first name> <last name>"``."""

        full_name = f"{self.user.first_name} {self.user.last_name}".strip()
        return full_name or self.user.get_username()

    @property
    def has_descriptor(self) -> bool:
        return bool(self.encrypted_descriptor)

    def get_descriptor(self) -> Optional[np.ndarray]:
        if not self.encrypted_descriptor:
            return None
        return DescriptorEncryption().decrypt_descriptor(self.encrypted_descriptor)

    def set_descriptor(self, descriptor: np.ndarray) -> None:
        self.encrypted_descriptor = DescriptorEncryption().encrypt_descriptor(
            np.asarray(descriptor, dtype=np.float64)
        )


class CheckInLogQuerySet(models.QuerySet):
    def for_person(self, name: str, surname: str) -> "CheckInLogQuerySet":
        return self.filter(name=name, surname=surname)

    def latest_for(self, name: str, surname: str) -> Optional["CheckInLog"]:
        return self.for_person(name, surname).order_by("-created_at").first()


class CheckInLog(models.Model):
    """One recorded check-in."""

    class Status(models.TextChoices):
        CHECK_IN = "CHECK_IN", "Check-in"
        CHECK_OUT = "CHECK_OUT", "Check-out"

    name = models.CharField(max_length=150)
    surname = models.CharField(max_length=150, blank=True)
    status = models.CharField(max_length=16, choices=Status.choices, default=Status.CHECK_IN)
    created_at = models.DateTimeField(auto_now_add=True, db_index=True)

    objects = CheckInLogQuerySet.as_manager()

    class Meta:
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["name", "surname", "created_at"], name="checkin_log_person_idx")
        ]

    def __str__(self) -> str:
        return f"{self.name} {self.surname} {self.status} @ {self.created_at:%Y-%m-%d %H:%M}"


class ScanEvent(models.Model):
    """Telemetry for scans that ended without progress."""

    class Reason(models.TextChoices):
        NO_FACE = "NO_FACE", "No face"
        OUT_OF_ZONE = "OUT_OF_ZONE", "Out of zone"
        TOO_FAR = "TOO_FAR", "Too far"
        UNKNOWN_FACE = "UNKNOWN_FACE", "Unknown face"
        LOW_CONFIDENCE = "LOW_CONFIDENCE", "Low confidence"

    event_type = models.CharField(max_length=32, default="SCAN_FAIL")
    reason = models.CharField(max_length=32, choices=Reason.choices)
    message = models.CharField(max_length=255, blank=True)
    best_match = models.CharField(max_length=255, blank=True, null=True)
    distance = models.FloatField(null=True, blank=True)
    source = models.CharField(max_length=32, default="checkin")
    created_at = models.DateTimeField(auto_now_add=True, db_index=True)

    class Meta:
        ordering = ["-created_at"]

    def __str__(self) -> str:
        return f"{self.event_type}:{self.reason} from {self.source}"
