"""Smoke tests for the production settings module."""

from __future__ import annotations

import importlib
import sys


def _reload_production_settings():
    """Force a reload of the production settings module for isolation."""

    for module in [
        "face_checkin.settings.production",
        "face_checkin.settings.sentry",
        "face_checkin.settings.base",
        "face_checkin.settings",
    ]:
        sys.modules.pop(module, None)
    return importlib.import_module("face_checkin.settings.production")


def _configure_env(monkeypatch, tmp_path):
    monkeypatch.setenv("DEV_ENCRYPTION_KEY_FILE", str(tmp_path / "dev_keys.json"))
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("SENTRY_DSN", raising=False)
    monkeypatch.setenv("DB_NAME", "ci_db")
    monkeypatch.setenv("DB_USER", "ci_user")
    monkeypatch.setenv("DB_PASSWORD", "ci_password")
    monkeypatch.setenv("DB_HOST", "postgres")
    monkeypatch.setenv("DB_PORT", "6543")
    monkeypatch.setenv("DB_CONN_MAX_AGE", "120")


def test_production_database_configuration(monkeypatch, tmp_path):
    _configure_env(monkeypatch, tmp_path)

    settings = _reload_production_settings()

    database = settings.DATABASES["default"]
    assert settings.DEBUG is False
    assert database["ENGINE"] == "django.db.backends.postgresql"
    assert database["NAME"] == "ci_db"
    assert database["USER"] == "ci_user"
    assert database["PASSWORD"] == "ci_password"
    assert database["HOST"] == "postgres"
    assert database["PORT"] == "6543"
    assert database["CONN_MAX_AGE"] == 120
    assert database["OPTIONS"]["sslmode"] == "require"


def test_ssl_can_be_disabled(monkeypatch, tmp_path):
    _configure_env(monkeypatch, tmp_path)
    monkeypatch.setenv("DATABASE_SSL_REQUIRE", "false")

    settings = _reload_production_settings()

    assert "sslmode" not in settings.DATABASES["default"].get("OPTIONS", {})
