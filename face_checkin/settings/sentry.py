"""Sentry configuration helpers used by production deployments."""

from __future__ import annotations

import logging
import os
from typing import Any

from django.core.exceptions import ImproperlyConfigured

import sentry_sdk
from sentry_sdk.integrations.django import DjangoIntegration
from sentry_sdk.integrations.logging import LoggingIntegration

from . import base as base_settings

__all__ = ["initialize_sentry"]

# Event extras that could identify the person in front of the camera.
_SENSITIVE_EXTRAS = {"label", "best_match", "descriptor", "email"}


def _get_sample_rate(var_name: str, default: float) -> float:
    """Return a tracing sample rate constrained between 0.0 and 1.0 inclusive."""

    raw_value = os.environ.get(var_name)
    if raw_value is None:
        return default
    try:
        value = float(raw_value)
    except ValueError as exc:  # pragma: no cover
        raise ImproperlyConfigured(
            f"{var_name} must be a floating point number between 0.0 and 1.0."
        ) from exc
    if not 0.0 <= value <= 1.0:
        raise ImproperlyConfigured(f"{var_name} must be between 0.0 and 1.0 when provided.")
    return value


def _scrub_extras(extra: dict[str, Any]) -> None:
    """Replace identity-bearing log extras in-place."""

    for key in _SENSITIVE_EXTRAS:
        if key in extra:
            extra[key] = "[Filtered]"


def _scrub_logentry(event: dict[str, Any]) -> None:
    """Drop log message arguments, which carry labels and emails.

    Only the unformatted template is kept.
    """

    logentry = event.get("logentry")
    if not isinstance(logentry, dict):
        return
    params = logentry.get("params")
    if params:
        logentry["params"] = ["[Filtered]"] * len(params)
        logentry.pop("formatted", None)
        if isinstance(event.get("message"), str):
            event["message"] = logentry.get("message", "")


def initialize_sentry() -> None:
    """Initialise Sentry SDK when a DSN is supplied via the environment."""

    dsn = os.environ.get("SENTRY_DSN")
    if not dsn:
        return

    send_default_pii = base_settings._get_bool_env("SENTRY_SEND_DEFAULT_PII", default=False)

    def _before_send(event: dict[str, Any], _hint: object | None) -> dict[str, Any] | None:
        extra = event.get("extra")
        if isinstance(extra, dict) and not send_default_pii:
            _scrub_extras(extra)
        if not send_default_pii:
            _scrub_logentry(event)
            event.pop("user", None)
        return event

    sentry_sdk.init(
        dsn=dsn,
        environment=os.environ.get("SENTRY_ENVIRONMENT", "production"),
        release=os.environ.get("SENTRY_RELEASE"),
        integrations=[
            DjangoIntegration(transaction_style="url"),
            LoggingIntegration(level=None, event_level=logging.ERROR),
        ],
        traces_sample_rate=_get_sample_rate("SENTRY_TRACES_SAMPLE_RATE", default=0.0),
        send_default_pii=send_default_pii,
        before_send=_before_send,
    )
