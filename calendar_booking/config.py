"""Runtime settings for the calendar booking core.

Values are read from the environment (and a ``.env`` file) once, into a
``Settings`` object that is passed explicitly to every component.
"""

import logging
import os

from dotenv import load_dotenv
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

DEFAULT_APPOINTMENT_DURATION_MINUTES = 60
DEFAULT_MAX_CONCURRENT_APPOINTMENTS = 100
DEFAULT_SCOPES = [
    "https://www.googleapis.com/auth/calendar",
    "https://www.googleapis.com/auth/calendar.events",
]


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Settings(BaseModel):
    """Explicit configuration injected into the booking components."""

    google_client_id: str = ""
    google_client_secret: str = ""
    google_redirect_uri: str = ""
    google_api_base_url: str = "https://www.googleapis.com/calendar/v3"
    google_oauth_auth_url: str = "https://accounts.google.com/o/oauth2/v2/auth"
    google_oauth_token_url: str = "https://oauth2.googleapis.com/token"
    google_oauth_revoke_url: str = "https://oauth2.googleapis.com/revoke"
    google_api_timeout_seconds: float = Field(30.0, gt=0)

    default_appointment_duration_minutes: int = Field(DEFAULT_APPOINTMENT_DURATION_MINUTES, gt=0)
    default_max_concurrent_appointments: int = Field(DEFAULT_MAX_CONCURRENT_APPOINTMENTS, ge=0)
    default_timezone: str | None = None
    allow_unattributed_changes: bool = True

    @property
    def oauth_configured(self) -> bool:
        return bool(self.google_client_id and self.google_client_secret and self.google_redirect_uri)

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from environment variables (loading ``.env`` first)."""
        load_dotenv()
        settings = cls(
            google_client_id=os.environ.get("GOOGLE_CLIENT_ID", ""),
            google_client_secret=os.environ.get("GOOGLE_CLIENT_SECRET", ""),
            google_redirect_uri=os.environ.get("GOOGLE_REDIRECT_URI", ""),
            google_api_timeout_seconds=float(os.environ.get("GOOGLE_API_TIMEOUT_SECONDS", "30")),
            default_appointment_duration_minutes=int(
                os.environ.get(
                    "DEFAULT_APPOINTMENT_DURATION_MINUTES",
                    str(DEFAULT_APPOINTMENT_DURATION_MINUTES),
                )
            ),
            default_max_concurrent_appointments=int(
                os.environ.get(
                    "DEFAULT_MAX_CONCURRENT_APPOINTMENTS",
                    str(DEFAULT_MAX_CONCURRENT_APPOINTMENTS),
                )
            ),
            default_timezone=os.environ.get("DEFAULT_TIMEZONE") or os.environ.get("TZ") or None,
            allow_unattributed_changes=_env_bool("ALLOW_UNATTRIBUTED_CHANGES", True),
        )
        if not settings.oauth_configured:
            logger.warning("Google OAuth configuration is incomplete")
        return settings
