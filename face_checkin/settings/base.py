"""
Django settings for the face check-in service.

This file contains the configuration for the Django project, including database settings,
installed applications, logging, and the tunables of the check-in decision engine.
It is configured to read sensitive values from environment variables for security.
"""

import json
import os
import sys
import warnings
from collections.abc import Sequence
from pathlib import Path
from typing import Any

from django.core.exceptions import ImproperlyConfigured

import dj_database_url
from cryptography.fernet import Fernet

# Define the project's base directory.
# `BASE_DIR` points to the root of the Django project.
BASE_DIR = Path(__file__).resolve().parent.parent.parent
DEV_KEY_CACHE_PATH = Path(
    os.environ.get("DEV_ENCRYPTION_KEY_FILE", BASE_DIR / ".dev_encryption_keys.json")
)


# --- Environment helpers ---


def _get_bool_env(var_name: str, default: bool = False) -> bool:
    """Return a boolean from an environment variable."""

    raw_value = os.environ.get(var_name)
    if raw_value is None:
        return default
    return raw_value.lower() in {"1", "true", "yes", "on"}


def _parse_int_env(var_name: str, default: int, *, minimum: int | None = None) -> int:
    """Return an integer from the environment, enforcing an optional minimum."""

    raw_value = os.environ.get(var_name)
    if raw_value is None:
        return default

    try:
        value = int(raw_value)
    except ValueError as exc:  # pragma: no cover
        raise ImproperlyConfigured(f"{var_name} must be an integer if provided.") from exc

    if minimum is not None and value < minimum:
        raise ImproperlyConfigured(f"{var_name} must be >= {minimum} if provided.")

    return value


def _get_float_env(
    var_name: str,
    default: float | None,
    *,
    minimum: float | None = None,
) -> float | None:
    """Return a float from the environment with optional lower bound enforcement."""

    raw_value = os.environ.get(var_name)
    if raw_value is None or raw_value == "":
        return default

    try:
        value = float(raw_value)
    except ValueError as exc:  # pragma: no cover
        raise ImproperlyConfigured(f"{var_name} must be a float if provided.") from exc

    if minimum is not None and value < minimum:
        raise ImproperlyConfigured(f"{var_name} must be >= {minimum} if provided.")

    return value


def _get_choice_env(var_name: str, default: str, choices: Sequence[str]) -> str:
    """Return a lower-cased string constrained to ``choices``."""

    raw_value = os.environ.get(var_name)
    if raw_value is None:
        return default
    value = raw_value.strip().lower()
    if value not in choices:
        raise ImproperlyConfigured(f"{var_name} must be one of: {', '.join(choices)}.")
    return value


def _get_tiers_env(var_name: str, default: list[list[Any]]) -> list[list[Any]]:
    """Return a confidence tier table from a JSON environment variable.

    The expected shape is a list of ``[name, max_distance, required_frames, color]``
    rows. Structural validation (ordering, monotonic frame counts) happens when the
    policy is built so that overrides made through ``override_settings`` are
    checked the same way.
    """

    raw_value = os.environ.get(var_name)
    if raw_value is None:
        return default

    try:
        rows = json.loads(raw_value)
    except json.JSONDecodeError as exc:
        raise ImproperlyConfigured(f"{var_name} must be a JSON list of tier rows.") from exc

    if not isinstance(rows, list) or not rows:
        raise ImproperlyConfigured(f"{var_name} must contain at least one tier row.")
    for row in rows:
        if not isinstance(row, list) or len(row) != 4:
            raise ImproperlyConfigured(
                f"{var_name} rows must be [name, max_distance, required_frames, color]."
            )
    return rows


# Detect if we're running tests
TESTING = "test" in sys.argv or (len(sys.argv) > 0 and "pytest" in sys.argv[0])

DEFAULT_SECRET_KEY = "a-secure-default-key-for-development-only"

# DEBUG: A boolean that turns on/off debug mode.
# Debug is on for local development and off under the test runner.
DEBUG = _get_bool_env("DJANGO_DEBUG", default=not TESTING)

SECRET_KEY = os.environ.get("DJANGO_SECRET_KEY", DEFAULT_SECRET_KEY)
if SECRET_KEY == DEFAULT_SECRET_KEY and not (DEBUG or TESTING):
    raise ImproperlyConfigured(
        "DJANGO_SECRET_KEY must be set to a secure value when DJANGO_DEBUG is not enabled."
    )

ALLOWED_HOSTS = [
    host.strip()
    for host in os.environ.get("DJANGO_ALLOWED_HOSTS", "localhost,127.0.0.1,[::1]").split(",")
    if host.strip()
]


# --- Face data encryption ---


def _validate_fernet_key(key: str | bytes, setting_name: str) -> bytes:
    """Ensure the provided key material is a valid Fernet key."""

    key_bytes = key.encode() if isinstance(key, str) else key
    try:
        Fernet(key_bytes)
    except (ValueError, TypeError) as exc:  # pragma: no cover
        raise ImproperlyConfigured(
            f"{setting_name} must be a valid 32-byte base64-encoded Fernet key."
        ) from exc
    return key_bytes


def _load_cached_dev_key(var_name: str) -> bytes | None:
    """Load a previously generated development key from disk."""

    if not DEV_KEY_CACHE_PATH.exists():
        return None

    try:
        cache = json.loads(DEV_KEY_CACHE_PATH.read_text())
    except (OSError, json.JSONDecodeError) as exc:  # pragma: no cover
        warnings.warn(f"Ignoring invalid dev key cache file: {exc}")
        return None

    cached_value = cache.get(var_name)
    if not cached_value:
        return None

    try:
        return _validate_fernet_key(cached_value, var_name)
    except ImproperlyConfigured:
        warnings.warn(f"Ignoring invalid cached {var_name}; regenerating.")
        return None


def _persist_dev_key(var_name: str, key: bytes) -> None:
    """Persist generated development keys so encrypted descriptors survive restarts."""

    try:
        existing = (
            json.loads(DEV_KEY_CACHE_PATH.read_text()) if DEV_KEY_CACHE_PATH.exists() else {}
        )
    except (OSError, json.JSONDecodeError):  # pragma: no cover
        existing = {}

    existing[var_name] = key.decode()

    try:
        DEV_KEY_CACHE_PATH.write_text(json.dumps(existing, indent=2))
    except OSError as exc:  # pragma: no cover
        warnings.warn(f"Unable to persist dev encryption key cache: {exc}")


def _load_face_data_encryption_key() -> bytes:
    """Load the Fernet key used to encrypt stored face descriptors."""

    key = os.environ.get("FACE_DATA_ENCRYPTION_KEY")
    if key:
        return _validate_fernet_key(key, "FACE_DATA_ENCRYPTION_KEY")

    if DEBUG or TESTING:
        cached_key = _load_cached_dev_key("FACE_DATA_ENCRYPTION_KEY")
        if cached_key:
            return cached_key
        key_bytes = Fernet.generate_key()
        _persist_dev_key("FACE_DATA_ENCRYPTION_KEY", key_bytes)
        return key_bytes

    raise ImproperlyConfigured(
        "FACE_DATA_ENCRYPTION_KEY environment variable must be set in production environments."
    )


FACE_DATA_ENCRYPTION_KEY = _load_face_data_encryption_key()


# --- Application Configuration ---

INSTALLED_APPS = [
    # Custom applications for this project
    "checkin.apps.CheckinConfig",
    # Core Django applications
    "django.contrib.auth",
    "django.contrib.contenttypes",
]

MIDDLEWARE: list[str] = []


# --- Database Configuration ---
# https://docs.djangoproject.com/en/5.0/ref/settings/#databases

default_db_url = os.environ.get(
    "DATABASE_URL", f"sqlite:///{(BASE_DIR / 'db.sqlite3').as_posix()}"
)
conn_max_age = _parse_int_env("DATABASE_CONN_MAX_AGE", 0, minimum=0)

DATABASES = {
    "default": dj_database_url.parse(default_db_url, conn_max_age=conn_max_age),
}


def build_postgres_database_config() -> dict[str, Any]:
    """Return a PostgreSQL configuration derived from discrete environment variables."""

    return {
        "ENGINE": "django.db.backends.postgresql",
        "NAME": os.environ.get("DB_NAME", "checkin"),
        "USER": os.environ.get("DB_USER", "checkin"),
        "PASSWORD": os.environ.get("DB_PASSWORD", "checkin"),
        "HOST": os.environ.get("DB_HOST", "localhost"),
        "PORT": os.environ.get("DB_PORT", "5432"),
        "CONN_MAX_AGE": _parse_int_env("DB_CONN_MAX_AGE", 600, minimum=0),
    }


# --- Password hashing ---
# Login verifies stored credentials with Django's hashers. Tests use a fast hasher.

if TESTING:
    PASSWORD_HASHERS = ["django.contrib.auth.hashers.MD5PasswordHasher"]


# --- Internationalization ---

LANGUAGE_CODE = "en-us"
TIME_ZONE = os.environ.get("DJANGO_TIME_ZONE", "Asia/Bangkok")
USE_I18N = True
USE_TZ = True

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"


# --- Logging ---

RECOGNITION_LOG_LEVEL = os.environ.get("RECOGNITION_LOG_LEVEL", "INFO").upper()

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "standard": {
            "format": "%(asctime)s %(levelname)s %(name)s: %(message)s",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "standard",
        },
    },
    "loggers": {
        "checkin": {
            "handlers": ["console"],
            "level": RECOGNITION_LOG_LEVEL,
            "propagate": True,
        },
    },
}


# --- Check-in decision engine ---

# Polling interval of the detection loop. Ticks never overlap; a tick that falls
# due while the previous one is still running is skipped.
RECOGNITION_TICK_INTERVAL_SECONDS = _get_float_env(
    "RECOGNITION_TICK_INTERVAL_SECONDS", default=0.2, minimum=0.01
)
RECOGNITION_ENROLLMENT_TICK_INTERVAL_SECONDS = _get_float_env(
    "RECOGNITION_ENROLLMENT_TICK_INTERVAL_SECONDS", default=0.25, minimum=0.01
)

# Confidence tiers: [name, max_distance, required_frames, overlay colour].
# A distance at or above the last tier's max_distance is rejected outright.
RECOGNITION_CHECKIN_TIERS = _get_tiers_env(
    "RECOGNITION_CHECKIN_TIERS",
    [
        ["strict", 0.35, 3, "#00ff00"],
        ["normal", 0.48, 6, "#ffff00"],
        ["mask", 0.55, 12, "#ffa500"],
    ],
)
RECOGNITION_LOGIN_TIERS = _get_tiers_env(
    "RECOGNITION_LOGIN_TIERS",
    [
        ["strict", 0.42, 2, "#00ff00"],
        ["normal", 0.48, 4, "#ffff00"],
    ],
)
RECOGNITION_ENROLLMENT_TIERS = _get_tiers_env(
    "RECOGNITION_ENROLLMENT_TIERS",
    [
        ["capture", 1.0, 6, "#00ff00"],
    ],
)

_LIVENESS_CHOICES = ("none", "passive", "challenge")
RECOGNITION_CHECKIN_LIVENESS = _get_choice_env(
    "RECOGNITION_CHECKIN_LIVENESS", "none", _LIVENESS_CHOICES
)
RECOGNITION_LOGIN_LIVENESS = _get_choice_env(
    "RECOGNITION_LOGIN_LIVENESS", "passive", _LIVENESS_CHOICES
)
RECOGNITION_ENROLLMENT_LIVENESS = _get_choice_env(
    "RECOGNITION_ENROLLMENT_LIVENESS", "challenge", _LIVENESS_CHOICES
)

# Matcher cut-off for attributing a face to a label. ``None`` uses the policy's
# reject boundary; a looser value only affects how near misses are reported.
RECOGNITION_CHECKIN_MATCH_DISTANCE = _get_float_env(
    "RECOGNITION_CHECKIN_MATCH_DISTANCE", default=None, minimum=0.0
)
RECOGNITION_LOGIN_MATCH_DISTANCE = _get_float_env(
    "RECOGNITION_LOGIN_MATCH_DISTANCE", default=0.7, minimum=0.0
)

# Admission zone (pixels, centred in the frame) and the minimum face width.
RECOGNITION_ZONE_SIZE = _parse_int_env("RECOGNITION_ZONE_SIZE", 300, minimum=1)
RECOGNITION_MIN_FACE_WIDTH = _parse_int_env("RECOGNITION_MIN_FACE_WIDTH", 180, minimum=1)
RECOGNITION_ENROLLMENT_ZONE_WIDTH = _parse_int_env(
    "RECOGNITION_ENROLLMENT_ZONE_WIDTH", 220, minimum=1
)
RECOGNITION_ENROLLMENT_ZONE_HEIGHT = _parse_int_env(
    "RECOGNITION_ENROLLMENT_ZONE_HEIGHT", 300, minimum=1
)
RECOGNITION_ENROLLMENT_MIN_FACE_FRACTION = _get_float_env(
    "RECOGNITION_ENROLLMENT_MIN_FACE_FRACTION", default=0.22, minimum=0.0
)
RECOGNITION_MAX_FACES_PER_FRAME = _parse_int_env(
    "RECOGNITION_MAX_FACES_PER_FRAME", 5, minimum=1
)

RECOGNITION_ACCEPT_COOLDOWN_SECONDS = _get_float_env(
    "RECOGNITION_ACCEPT_COOLDOWN_SECONDS", default=10.0, minimum=0.0
)
RECOGNITION_TELEMETRY_WINDOW_SECONDS = _get_float_env(
    "RECOGNITION_TELEMETRY_WINDOW_SECONDS", default=10.0, minimum=0.0
)
RECOGNITION_CHECKIN_DUPLICATE_WINDOW_SECONDS = _parse_int_env(
    "RECOGNITION_CHECKIN_DUPLICATE_WINDOW_SECONDS", 30 * 60, minimum=0
)

# Liveness extractor tunables.
RECOGNITION_EAR_THRESHOLD = _get_float_env(
    "RECOGNITION_EAR_THRESHOLD", default=0.21, minimum=0.0
)
RECOGNITION_EAR_CONSEC_FRAMES = _parse_int_env("RECOGNITION_EAR_CONSEC_FRAMES", 2, minimum=1)
RECOGNITION_HEAD_TURN_THRESHOLD = _get_float_env(
    "RECOGNITION_HEAD_TURN_THRESHOLD", default=0.45, minimum=0.0
)
RECOGNITION_MOTION_HISTORY_SIZE = _parse_int_env(
    "RECOGNITION_MOTION_HISTORY_SIZE", 10, minimum=5
)
RECOGNITION_MOTION_FLOOR = _get_float_env("RECOGNITION_MOTION_FLOOR", default=0.5, minimum=0.0)
RECOGNITION_MOTION_CEILING = _get_float_env(
    "RECOGNITION_MOTION_CEILING", default=20.0, minimum=0.0
)
RECOGNITION_REQUIRED_BLINKS = _parse_int_env("RECOGNITION_REQUIRED_BLINKS", 2, minimum=1)

_raw_seed = os.environ.get("RECOGNITION_CHALLENGE_SEED")
RECOGNITION_CHALLENGE_SEED = (
    _parse_int_env("RECOGNITION_CHALLENGE_SEED", 0) if _raw_seed else None
)

# Server-side re-verification bands for a submitted descriptor.
RECOGNITION_VERIFY_STRICT_DISTANCE = _get_float_env(
    "RECOGNITION_VERIFY_STRICT_DISTANCE", default=0.42, minimum=0.0
)
RECOGNITION_VERIFY_NORMAL_DISTANCE = _get_float_env(
    "RECOGNITION_VERIFY_NORMAL_DISTANCE", default=0.48, minimum=0.0
)

# Monitoring thresholds.
RECOGNITION_TICK_ALERT_SECONDS = _get_float_env(
    "RECOGNITION_TICK_ALERT_SECONDS", default=1.0, minimum=0.0
)
RECOGNITION_HEALTH_ALERT_HISTORY = _parse_int_env(
    "RECOGNITION_HEALTH_ALERT_HISTORY", 50, minimum=1
)
