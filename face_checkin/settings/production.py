"""Production settings overriding the defaults with hardened options."""

from __future__ import annotations

from .base import *  # noqa: F401,F403
from .base import DATABASES, _get_bool_env, build_postgres_database_config
from .sentry import initialize_sentry

DEBUG = False

# SQLite is only a development default; production always runs on PostgreSQL.
if DATABASES["default"].get("ENGINE") == "django.db.backends.sqlite3":
    DATABASES["default"] = build_postgres_database_config()

if _get_bool_env("DATABASE_SSL_REQUIRE", default=True):
    DATABASES["default"].setdefault("OPTIONS", {})["sslmode"] = "require"


initialize_sentry()
