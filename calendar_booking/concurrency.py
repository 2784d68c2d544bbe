"""Booking admission: one active booking per user and a per-slot ceiling.

The checks query Google Calendar and the insert happens afterwards, so two
requests racing for the same slot from different processes can both pass.
``BookingGuard`` is the hook for serializing check-then-insert per calendar;
``LocalBookingGuard`` does so within a single process.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta
from typing import Any, AsyncIterator

from .calendar_utils import event_window, format_event_time, is_active_event, overlaps, to_rfc3339
from .config import Settings
from .exceptions import AvailabilityCheckFailed, DuplicateActiveBooking, GatewayError, SlotUnavailable
from .gateway import GoogleCalendarGateway
from .identity import get_attribution, normalize_identifier, same_identity
from .models import GoogleCalendarConfig

logger = logging.getLogger(__name__)

ACTIVE_BOOKING_HORIZON_DAYS = 365


class BookingGuard:
    """No-op guard: checks and inserts are not serialized."""

    @asynccontextmanager
    async def hold(self, calendar_id: str) -> AsyncIterator[None]:
        yield


class LocalBookingGuard(BookingGuard):
    """Serializes bookings per calendar id inside one process."""

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}
        self._holders: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, calendar_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(calendar_id, asyncio.Lock())
        self._holders[calendar_id] = self._holders.get(calendar_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            # Drop the lock once nobody holds or waits on it.
            self._holders[calendar_id] -= 1
            if not self._holders[calendar_id]:
                del self._holders[calendar_id]
                del self._locks[calendar_id]


def occupies_window(
    event: dict[str, Any],
    window_start: datetime,
    window_end: datetime,
    tz_name: str | None = None,
) -> bool:
    """True when a non-cancelled event overlaps the window.

    Events without readable times are counted, since the provider matched them.
    """
    if event.get("status") == "cancelled":
        return False
    bounds = event_window(event, tz_name)
    return bounds is None or overlaps(bounds[0], bounds[1], window_start, window_end)


def dedupe_events(events: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Drop repeated event ids, keeping the first occurrence."""
    seen: set[str] = set()
    unique = []
    for event in events:
        event_id = event.get("id")
        if event_id in seen:
            continue
        if event_id is not None:
            seen.add(event_id)
        unique.append(event)
    return unique


async def find_user_bookings(
    gateway: GoogleCalendarGateway,
    config: GoogleCalendarConfig,
    requesting_user_id: str,
    time_min: str,
    time_max: str,
) -> list[dict[str, Any]]:
    """Events in the window attributed to ``requesting_user_id``."""
    if not normalize_identifier(requesting_user_id):
        return []
    events = await gateway.list_all_events(config.calendar_id, time_min, time_max)
    mine = [event for event in events if same_identity(get_attribution(event), requesting_user_id)]
    return dedupe_events(mine)


class BookingConcurrencyController:
    """Admits or rejects a new booking window."""

    def __init__(self, settings: Settings):
        self.settings = settings

    def ceiling(self, config: GoogleCalendarConfig) -> int:
        if config.max_concurrent_appointments is not None:
            return config.max_concurrent_appointments
        return self.settings.default_max_concurrent_appointments

    async def check_active_booking(
        self,
        gateway: GoogleCalendarGateway,
        config: GoogleCalendarConfig,
        requesting_user_id: str,
    ) -> None:
        """Reject when the requester already holds a booking that has not ended."""
        now = datetime.now(UTC)
        try:
            bookings = await find_user_bookings(
                gateway,
                config,
                requesting_user_id,
                to_rfc3339(now),
                to_rfc3339(now + timedelta(days=ACTIVE_BOOKING_HORIZON_DAYS)),
            )
        except GatewayError as e:
            logger.error("Active booking lookup failed on %s: %s", config.calendar_id, e)
            raise AvailabilityCheckFailed(details={"reason": str(e)}) from e

        active = [event for event in bookings if is_active_event(event, now, config.timezone)]
        if not active:
            return

        existing = active[0]
        logger.warning(
            "User %s already has %d active booking(s) on %s",
            normalize_identifier(requesting_user_id),
            len(active),
            config.calendar_id,
        )
        raise DuplicateActiveBooking(
            f"You already have an appointment scheduled for {format_event_time(existing.get('start'))} "
            f"({existing.get('summary', 'Appointment')}). Only one active appointment is allowed at a time. "
            "Would you like to reschedule it?",
            details={
                "existingAppointment": {
                    "id": existing.get("id"),
                    "summary": existing.get("summary"),
                    "start": existing.get("start"),
                    "end": existing.get("end"),
                },
                "userAlreadyHasAppointment": True,
            },
        )

    async def check_slot(
        self,
        gateway: GoogleCalendarGateway,
        config: GoogleCalendarConfig,
        window_start: datetime,
        window_end: datetime,
        exclude_event_id: str | None = None,
    ) -> int:
        """Reject when the overlapping events reach the ceiling. Returns the count."""
        ceiling = self.ceiling(config)
        try:
            events = await gateway.list_all_events(
                config.calendar_id,
                to_rfc3339(window_start),
                to_rfc3339(window_end),
                order_by=None,
            )
        except GatewayError as e:
            logger.error("Slot availability query failed on %s: %s", config.calendar_id, e)
            raise AvailabilityCheckFailed(details={"reason": str(e)}) from e

        overlapping = [
            event
            for event in dedupe_events(events)
            if event.get("id") != exclude_event_id
            and occupies_window(event, window_start, window_end, config.timezone)
        ]
        count = len(overlapping)
        logger.info(
            "%d event(s) overlap %s - %s on %s (ceiling %d)",
            count,
            to_rfc3339(window_start),
            to_rfc3339(window_end),
            config.calendar_id,
            ceiling,
        )
        if count >= ceiling:
            if ceiling == 1:
                message = "The requested time slot is already taken. Please choose another time."
            else:
                message = (
                    f"The requested time slot has reached the limit of {ceiling} appointments. "
                    "Please choose another time."
                )
            raise SlotUnavailable(
                message,
                details={
                    "existingEventsCount": count,
                    "maxConcurrentAppointments": ceiling,
                    "requestedSlotUnavailable": True,
                },
            )
        return count

    async def authorize_new_booking(
        self,
        gateway: GoogleCalendarGateway,
        config: GoogleCalendarConfig,
        window_start: datetime,
        window_end: datetime,
        requesting_user_id: str | None,
        exclude_event_id: str | None = None,
        check_active_booking: bool = True,
    ) -> None:
        """Run the duplicate-booking check, then the slot ceiling check."""
        if check_active_booking and config.single_active_booking and requesting_user_id:
            await self.check_active_booking(gateway, config, requesting_user_id)
        await self.check_slot(gateway, config, window_start, window_end, exclude_event_id)
