"""Pydantic models for integration records, tool-call payloads and results."""

import json
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from .exceptions import IntegrationMisconfigured

CALENDAR_INTEGRATION_TYPE = "calendar"
GOOGLE_PROVIDER = "google"


class IntegrationStatus(str, Enum):
    """Lifecycle status of an integration record."""
    PENDING = "pending"
    CONFIGURED = "configured"
    ACTIVE = "active"
    ERROR = "error"
    EXPIRED = "expired"


# ============================================================================
# Integration record
# ============================================================================


class GoogleCalendarConfig(BaseModel):
    """Google Calendar provider configuration embedded in an integration."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    provider: Literal["google"] = GOOGLE_PROVIDER
    access_token: str
    refresh_token: str = ""
    expires_at: int = 0
    scope: str = ""
    calendar_id: str = "primary"
    timezone: str | None = None
    max_concurrent_appointments: int | None = Field(None, ge=0)
    single_active_booking: bool = True

    def to_storage(self) -> str:
        """Serialize for the ``config`` column of the integrations table."""
        return self.model_dump_json(by_alias=True, exclude={"provider"})

    def sanitized(self) -> dict[str, Any]:
        """Config view without secrets."""
        return {
            "calendarId": self.calendar_id,
            "scope": self.scope,
            "expiresAt": self.expires_at,
            "timezone": self.timezone,
            "maxConcurrentAppointments": self.max_concurrent_appointments,
            "singleActiveBooking": self.single_active_booking,
            "hasRefreshToken": bool(self.refresh_token),
        }


PROVIDER_CONFIGS: dict[str, type[BaseModel]] = {
    GOOGLE_PROVIDER: GoogleCalendarConfig,
}


def parse_provider_config(provider: str | None, raw: Any) -> GoogleCalendarConfig | None:
    """Validate a stored config blob against the schema for its provider.

    Raises IntegrationMisconfigured when the blob cannot be decoded or does
    not match the schema. Returns None for providers without a schema.
    """
    model = PROVIDER_CONFIGS.get(provider or "")
    if model is None:
        return None
    if isinstance(raw, str):
        try:
            raw = json.loads(raw) if raw else {}
        except ValueError as e:
            raise IntegrationMisconfigured(details={"reason": f"config is not valid JSON: {e}"}) from e
    if raw is None:
        raw = {}
    try:
        return model.model_validate(raw)
    except PydanticValidationError as e:
        raise IntegrationMisconfigured(details={"reason": str(e)}) from e


class Integration(BaseModel):
    """One connected calendar account for one agent."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str
    agent_id: str
    name: str = "Google Calendar"
    description: str | None = None
    type: str = CALENDAR_INTEGRATION_TYPE
    provider: str = GOOGLE_PROVIDER
    config: GoogleCalendarConfig | None = None
    credentials: str | None = None
    status: IntegrationStatus = IntegrationStatus.PENDING
    is_active: bool = True
    created_by: str | None = None
    created_at: int | None = None
    updated_at: int | None = None

    @classmethod
    def from_entity(cls, entity: dict[str, Any]) -> "Integration":
        """Build from a table entity, validating the provider config once."""
        data = dict(entity)
        data.setdefault("id", data.get("rowKey"))
        data.setdefault("agentId", data.get("partitionKey"))
        data["config"] = parse_provider_config(data.get("provider"), data.get("config"))
        try:
            return cls.model_validate(data)
        except PydanticValidationError as e:
            raise IntegrationMisconfigured(details={"reason": str(e)}) from e

    def to_entity(self) -> dict[str, Any]:
        """Serialize to a table entity with the config stored as JSON."""
        entity = self.model_dump(by_alias=True, exclude={"config"}, mode="json")
        entity["partitionKey"] = self.agent_id
        entity["rowKey"] = self.id
        entity["config"] = self.config.to_storage() if self.config else "{}"
        return entity

    def public_view(self) -> dict[str, Any]:
        """Integration without credentials and with a sanitized config."""
        data = self.model_dump(by_alias=True, exclude={"config", "credentials"}, mode="json")
        data["config"] = self.config.sanitized() if self.config else {}
        return data


class IntegrationCreate(BaseModel):
    """Manually supplied tokens for a new Google Calendar integration."""
    agentId: str
    name: str | None = None
    description: str | None = None
    accessToken: str | None = None
    refreshToken: str | None = None
    expiresAt: int | None = None
    calendarId: str | None = None
    scope: str | None = None
    timezone: str | None = None
    maxConcurrentAppointments: int | None = Field(None, ge=0)
    singleActiveBooking: bool | None = None


class IntegrationUpdate(BaseModel):
    """Editable integration fields. Only fields present in the payload apply."""
    name: str | None = None
    description: str | None = None
    status: IntegrationStatus | None = None
    calendarId: str | None = None
    timezone: str | None = None
    maxConcurrentAppointments: int | None = Field(None, ge=0)
    singleActiveBooking: bool | None = None


class AuthCodeRequest(BaseModel):
    """OAuth callback payload."""
    code: str
    state: str | None = None
    agentId: str | None = None


# ============================================================================
# Tool-call payloads
# ============================================================================


class EventDateTime(BaseModel):
    """DateTime specification for calendar events."""
    date: str | None = Field(None, description="Date for all-day events (YYYY-MM-DD)")
    dateTime: str | None = Field(None, description="DateTime for timed events (RFC3339)")
    timeZone: str | None = Field(None, description="Timezone (e.g., 'America/New_York')")


class EventAttendee(BaseModel):
    """Event attendee."""
    email: str
    displayName: str | None = None


class EventParameters(BaseModel):
    """Parameters the LLM supplies with a calendar tool call."""
    model_config = ConfigDict(extra="ignore")

    eventId: str | None = None
    summary: str | None = None
    start: EventDateTime | None = None
    end: EventDateTime | None = None
    location: str | None = None
    description: str | None = None
    attendees: list[EventAttendee] | None = None
    reminders: dict[str, Any] | None = None
    addConferenceCall: bool | None = None
    sendNotifications: Literal["all", "none", "externalOnly", "default"] | None = None
    userEmail: str | None = None
    userName: str | None = None
    startDate: str | None = None
    endDate: str | None = None

    @field_validator("location", mode="before")
    @classmethod
    def _location_display_name(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return value.get("displayName")
        return value

    def is_set(self, field: str) -> bool:
        """True when the caller explicitly supplied ``field``."""
        return field in self.model_fields_set


class ActionName(str, Enum):
    """Calendar actions the tool-call layer can request."""
    CREATE_EVENT = "createEvent"
    UPDATE_EVENT = "updateEvent"
    DELETE_EVENT = "deleteEvent"
    GET_MY_BOOKED_EVENTS = "getMyBookedEvents"
    LIST_MY_BOOKED_EVENTS = "listMyBookedEvents"
    GET_EVENTS = "getEvents"


class ActionRequest(BaseModel):
    """Inbound tool-call envelope."""
    integrationId: str
    action: ActionName
    eventId: str | None = None
    parameters: EventParameters = Field(default_factory=EventParameters)
    requestingUserId: str


class ActionResult(BaseModel):
    """Outbound result envelope returned to the tool-call layer."""
    success: bool
    message: str | None = None
    result: dict[str, Any] | None = None
    error: str | None = None
    details: dict[str, Any] | None = None
    requestedSlotUnavailable: bool = False
    userAlreadyHasAppointment: bool = False
    status_code: int = Field(200, exclude=True)
