"""Pytest fixtures and sample data for Calendar Booking tests."""

import copy
from datetime import UTC, datetime, timedelta
from typing import Any
from unittest.mock import AsyncMock

import pytest

from calendar_booking.calendar_utils import event_window, overlaps, parse_datetime
from calendar_booking.concurrency import BookingConcurrencyController
from calendar_booking.config import Settings
from calendar_booking.exceptions import GatewayError
from calendar_booking.identity import build_attribution
from calendar_booking.models import GoogleCalendarConfig, Integration, IntegrationStatus
from calendar_booking.orchestrator import EventMutationOrchestrator
from calendar_booking.permissions import PermissionResolver
from calendar_booking.store import (
    AGENT_PARTITION,
    AGENTS_TABLE,
    USER_ROLES_TABLE,
    InMemoryTableStore,
    IntegrationRepository,
    RoleDirectory,
    now_ms,
)
from calendar_booking.tokens import TokenManager

AGENT_ID = "agent-1"
INTEGRATION_ID = "integration-1"
OWNER_ID = "owner-1"
ADMIN_ID = "whatsapp:+15550000000"
USER_A = "whatsapp:+15551234567"
USER_B = "whatsapp:+15557654321"


# ============================================================================
# Sample Calendar Data
# ============================================================================


def slot(days_from_now: int = 1, hour: int = 10, minute: int = 0) -> str:
    """RFC3339 UTC timestamp for a day relative to today at a fixed clock time."""
    day = datetime.now(UTC) + timedelta(days=days_from_now)
    return day.replace(hour=hour, minute=minute, second=0, microsecond=0).strftime("%Y-%m-%dT%H:%M:%SZ")


def get_sample_event(
    event_id: str = "event_123",
    summary: str = "Appointment",
    start: str | None = None,
    end: str | None = None,
    booked_by: str | None = None,
    attendees: list[dict[str, Any]] | None = None,
    is_all_day: bool = False,
) -> dict[str, Any]:
    """Generate a sample event, optionally attributed to a chat identity."""
    start = start or slot(1, 10)
    if end is None:
        end = (parse_datetime(start) + timedelta(hours=1)).strftime("%Y-%m-%dT%H:%M:%SZ")

    if is_all_day:
        start_obj = {"date": start[:10]}
        end_obj = {"date": end[:10]}
    else:
        start_obj = {"dateTime": start, "timeZone": "UTC"}
        end_obj = {"dateTime": end, "timeZone": "UTC"}

    event = {
        "id": event_id,
        "summary": summary,
        "description": "Booked via WhatsApp",
        "start": start_obj,
        "end": end_obj,
        "status": "confirmed",
        "etag": '"1"',
        "htmlLink": f"https://calendar.google.com/event?eid={event_id}",
        "reminders": {"useDefault": False, "overrides": [{"method": "popup", "minutes": 30}]},
    }
    if booked_by is not None:
        event["extendedProperties"] = {"private": build_attribution(booked_by, AGENT_ID, name="Sample")}
    if attendees is not None:
        event["attendees"] = attendees
    return event


SAMPLE_CALENDARS = [
    {"id": "owner@example.com", "summary": "Clinic", "primary": True, "accessRole": "owner", "timeZone": "UTC"},
    {"id": "team_calendar_123", "summary": "Team", "primary": False, "accessRole": "writer"},
]


# ============================================================================
# Fake Google Calendar
# ============================================================================


class FakeCalendarGateway:
    """In-memory stand-in for GoogleCalendarGateway.

    Listing honors Google's overlap semantics (an event is returned when it
    overlaps ``[timeMin, timeMax)``) and skips cancelled events. Deleted ids
    answer 410 afterwards; unknown ids answer 404.
    """

    def __init__(self, events: list[dict[str, Any]] | None = None):
        self.events: dict[str, dict[str, Any]] = {}
        self.deleted: set[str] = set()
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.calendars = copy.deepcopy(SAMPLE_CALENDARS)
        self.fail_list: GatewayError | None = None
        self.fail_insert: GatewayError | None = None
        self._counter = 0
        for event in events or []:
            self.add(event)

    def add(self, event: dict[str, Any]) -> dict[str, Any]:
        stored = copy.deepcopy(event)
        stored.setdefault("etag", '"1"')
        stored.setdefault("status", "confirmed")
        self.events[stored["id"]] = stored
        return stored

    def calls_to(self, method: str) -> list[dict[str, Any]]:
        return [kwargs for name, kwargs in self.calls if name == method]

    async def list_calendars(self, max_results: int | None = None) -> dict[str, Any]:
        self.calls.append(("list_calendars", {}))
        return {"items": copy.deepcopy(self.calendars)}

    async def list_all_events(
        self,
        calendar_id: str,
        time_min: str,
        time_max: str,
        order_by: str | None = "startTime",
        max_results: int = 250,
    ) -> list[dict[str, Any]]:
        self.calls.append(("list_all_events", {"calendar_id": calendar_id, "time_min": time_min, "time_max": time_max}))
        if self.fail_list:
            raise self.fail_list
        window_start, window_end = parse_datetime(time_min), parse_datetime(time_max)
        found = []
        for event in self.events.values():
            if event.get("status") == "cancelled":
                continue
            window = event_window(event, "UTC")
            if window and overlaps(window[0], window[1], window_start, window_end):
                found.append(copy.deepcopy(event))
        return sorted(found, key=lambda e: event_window(e, "UTC")[0])

    async def get_event(self, calendar_id: str, event_id: str) -> dict[str, Any]:
        self.calls.append(("get_event", {"event_id": event_id}))
        if event_id in self.deleted:
            raise GatewayError("Resource has been deleted", status_code=410, reason="deleted")
        if event_id not in self.events:
            raise GatewayError("Not Found", status_code=404, reason="notFound")
        return copy.deepcopy(self.events[event_id])

    async def insert_event(
        self,
        calendar_id: str,
        event_data: dict[str, Any],
        send_updates: str | None = None,
        conference_data_version: int | None = None,
    ) -> dict[str, Any]:
        self.calls.append(("insert_event", {
            "event": copy.deepcopy(event_data),
            "send_updates": send_updates,
            "conference_data_version": conference_data_version,
        }))
        if self.fail_insert:
            raise self.fail_insert
        self._counter += 1
        event = {
            **copy.deepcopy(event_data),
            "id": f"created_{self._counter}",
            "htmlLink": f"https://calendar.google.com/event?eid=created_{self._counter}",
        }
        if "conferenceData" in event_data:
            event["hangoutLink"] = "https://meet.google.com/abc-defg-hij"
        return copy.deepcopy(self.add(event))

    async def update_event(
        self,
        calendar_id: str,
        event_id: str,
        event_data: dict[str, Any],
        send_updates: str | None = None,
        conference_data_version: int | None = None,
        etag: str | None = None,
    ) -> dict[str, Any]:
        self.calls.append(("update_event", {
            "event_id": event_id,
            "event": copy.deepcopy(event_data),
            "send_updates": send_updates,
            "etag": etag,
        }))
        current = self.events.get(event_id)
        if current is None:
            raise GatewayError("Not Found", status_code=404, reason="notFound")
        if etag is not None and etag != current.get("etag"):
            raise GatewayError("Precondition Failed", status_code=412, reason="conditionNotMet")
        version = int(current.get("etag", '"1"').strip('"')) + 1
        updated = {**copy.deepcopy(event_data), "id": event_id, "etag": f'"{version}"'}
        self.events[event_id] = updated
        return copy.deepcopy(updated)

    async def delete_event(self, calendar_id: str, event_id: str, send_updates: str | None = None) -> dict[str, Any]:
        self.calls.append(("delete_event", {"event_id": event_id, "send_updates": send_updates}))
        if event_id in self.deleted:
            raise GatewayError("Resource has been deleted", status_code=410, reason="deleted")
        if event_id not in self.events:
            raise GatewayError("Not Found", status_code=404, reason="notFound")
        del self.events[event_id]
        self.deleted.add(event_id)
        return {"success": True}


# ============================================================================
# Integration helpers
# ============================================================================


def make_integration(
    integration_id: str = INTEGRATION_ID,
    expires_in_ms: int = 3600 * 1000,
    **config_overrides: Any,
) -> Integration:
    """Active Google Calendar integration with a token valid for ``expires_in_ms``."""
    config = {
        "access_token": "access-token",
        "refresh_token": "refresh-token",
        "expires_at": now_ms() + expires_in_ms,
        "scope": "https://www.googleapis.com/auth/calendar",
        "calendar_id": "owner@example.com",
        "timezone": "UTC",
        **config_overrides,
    }
    return Integration(
        id=integration_id,
        agent_id=AGENT_ID,
        name="Google Calendar (Clinic)",
        config=GoogleCalendarConfig(**config),
        credentials=config["refresh_token"] or config["access_token"],
        status=IntegrationStatus.ACTIVE,
        created_by=OWNER_ID,
        created_at=now_ms(),
    )


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def settings():
    """Settings with OAuth configured and UTC as the default timezone."""
    return Settings(
        google_client_id="client-id",
        google_client_secret="client-secret",
        google_redirect_uri="https://example.com/oauth/callback",
        default_timezone="UTC",
    )


@pytest.fixture
async def store():
    """Table store seeded with an agent owner and one admin role."""
    store = InMemoryTableStore()
    await store.create_entity(AGENTS_TABLE, {
        "partitionKey": AGENT_PARTITION,
        "rowKey": AGENT_ID,
        "userId": OWNER_ID,
    })
    await store.create_entity(USER_ROLES_TABLE, {
        "partitionKey": AGENT_ID,
        "rowKey": "role-admin",
        "agentId": AGENT_ID,
        "userId": ADMIN_ID,
        "role": "admin",
        "isActive": True,
    })
    return store


@pytest.fixture
def repository(store):
    return IntegrationRepository(store)


@pytest.fixture
async def integration(repository):
    """The default active integration, stored."""
    return await repository.create(make_integration())


@pytest.fixture
def fake_calendar():
    return FakeCalendarGateway()


@pytest.fixture
def mock_oauth_client():
    """Mock GoogleOAuthClient returning a fresh access token on refresh."""
    client = AsyncMock()
    client.refresh_access_token.return_value = {"access_token": "new-access-token", "expires_in": 3600}
    client.revoke_token.return_value = True
    client.build_auth_url = lambda state, scopes=None: f"https://accounts.google.com/o/oauth2/v2/auth?state={state}"
    return client


@pytest.fixture
def orchestrator(settings, store, repository, fake_calendar, mock_oauth_client):
    """Orchestrator wired to the fake calendar and in-memory store."""
    return EventMutationOrchestrator(
        settings=settings,
        repository=repository,
        token_manager=TokenManager(repository, mock_oauth_client),
        permissions=PermissionResolver(RoleDirectory(store), settings.allow_unattributed_changes),
        concurrency=BookingConcurrencyController(settings),
        gateway_factory=lambda token: fake_calendar,
    )
