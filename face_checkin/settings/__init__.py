"""Default settings module; production deployments use ``face_checkin.settings.production``."""

from .base import *  # noqa: F401,F403
