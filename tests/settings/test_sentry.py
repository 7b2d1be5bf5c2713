"""Tests for the Sentry initialisation helpers."""

from __future__ import annotations

from unittest.mock import patch

import pytest
from django.core.exceptions import ImproperlyConfigured

from face_checkin.settings import sentry


def test_sentry_is_skipped_without_dsn(monkeypatch):
    monkeypatch.delenv("SENTRY_DSN", raising=False)

    with patch("face_checkin.settings.sentry.sentry_sdk.init") as init:
        sentry.initialize_sentry()

    init.assert_not_called()


def test_identity_extras_are_scrubbed(monkeypatch):
    monkeypatch.setenv("SENTRY_DSN", "https://public@example.invalid/1")
    monkeypatch.delenv("SENTRY_SEND_DEFAULT_PII", raising=False)

    with patch("face_checkin.settings.sentry.sentry_sdk.init") as init:
        sentry.initialize_sentry()

    before_send = init.call_args.kwargs["before_send"]
    event = {
        "extra": {"label": "Ada Lovelace", "best_match": "Ada (0.31)", "flow": "checkin"},
        "user": {"email": "ada@example.com"},
    }
    scrubbed = before_send(event, None)

    assert scrubbed["extra"] == {
        "label": "[Filtered]",
        "best_match": "[Filtered]",
        "flow": "checkin",
    }
    assert "user" not in scrubbed


def test_sample_rate_must_be_a_fraction(monkeypatch):
    monkeypatch.setenv("SENTRY_DSN", "https://public@example.invalid/1")
    monkeypatch.setenv("SENTRY_TRACES_SAMPLE_RATE", "1.5")

    with patch("face_checkin.settings.sentry.sentry_sdk.init"):
        with pytest.raises(ImproperlyConfigured):
            sentry.initialize_sentry()


def _before_send(monkeypatch, send_pii=None):
    monkeypatch.setenv("SENTRY_DSN", "https://public@example.invalid/1")
    if send_pii is None:
        monkeypatch.delenv("SENTRY_SEND_DEFAULT_PII", raising=False)
    else:
        monkeypatch.setenv("SENTRY_SEND_DEFAULT_PII", send_pii)

    with patch("face_checkin.settings.sentry.sentry_sdk.init") as init:
        sentry.initialize_sentry()

    return init.call_args.kwargs["before_send"]


def test_log_message_arguments_are_scrubbed(monkeypatch):
    before_send = _before_send(monkeypatch)
    event = {
        "logentry": {
            "message": "Accept action failed for %s",
            "params": ["Ada Lovelace"],
            "formatted": "Accept action failed for Ada Lovelace",
        },
        "message": "Accept action failed for Ada Lovelace",
    }

    scrubbed = before_send(event, None)

    assert scrubbed["logentry"] == {
        "message": "Accept action failed for %s",
        "params": ["[Filtered]"],
    }
    assert scrubbed["message"] == "Accept action failed for %s"
    assert "Ada" not in repr(scrubbed)


def test_log_message_without_arguments_is_untouched(monkeypatch):
    before_send = _before_send(monkeypatch)
    event = {"logentry": {"message": "Face detector failed", "params": []}}

    assert before_send(event, None) == {
        "logentry": {"message": "Face detector failed", "params": []}
    }


def test_opting_into_pii_keeps_log_arguments(monkeypatch):
    before_send = _before_send(monkeypatch, send_pii="true")
    event = {
        "logentry": {
            "message": "Accept action failed for %s",
            "params": ["Ada Lovelace"],
            "formatted": "Accept action failed for Ada Lovelace",
        },
    }

    scrubbed = before_send(event, None)

    assert scrubbed["logentry"]["params"] == ["Ada Lovelace"]
    assert scrubbed["logentry"]["formatted"] == "Accept action failed for Ada Lovelace"
