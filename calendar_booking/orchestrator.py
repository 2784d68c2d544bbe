"""Executes calendar tool calls: create, update, delete and list bookings.

Every action follows the same prefix: load the integration, check it is an
active Google Calendar integration, make sure the access token is fresh.
Steps raise BookingError subclasses; the public methods turn them into an
ActionResult so the tool-call layer always gets a structured answer.
"""

import copy
import logging
import uuid
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from typing import Any

from .calendar_utils import (
    compute_default_end,
    event_boundary,
    event_result,
    is_valid_email,
    resolve_time_range,
    resolve_timezone,
)
from .concurrency import BookingConcurrencyController, BookingGuard, find_user_bookings
from .config import Settings
from .exceptions import (
    BookingError,
    ConcurrentModification,
    GatewayAuthError,
    GatewayError,
    IntegrationInactive,
    NotFound,
    PermissionDenied,
    ProviderError,
    SlotUnavailable,
    ValidationError,
    WrongIntegrationType,
)
from .gateway import GatewayFactory, GoogleCalendarGateway
from .identity import (
    BOOKED_BY_USER_ID_KEY,
    LAST_MODIFIED_AT_KEY,
    LAST_MODIFIED_BY_KEY,
    attribution_summary,
    build_attribution,
    get_attribution,
    normalize_identifier,
    private_properties,
    strip_channel_prefix,
)
from .models import (
    CALENDAR_INTEGRATION_TYPE,
    GOOGLE_PROVIDER,
    ActionName,
    ActionRequest,
    ActionResult,
    EventParameters,
    GoogleCalendarConfig,
    Integration,
    IntegrationStatus,
)
from .permissions import PermissionResolver
from .store import IntegrationRepository, now_ms
from .tokens import TokenManager

logger = logging.getLogger(__name__)

MY_BOOKINGS_WINDOW_DAYS = 365
EVENTS_WINDOW_DAYS = 30


# ============================================================================
# Result helpers
# ============================================================================


def failure_result(error: BookingError) -> ActionResult:
    """Convert a BookingError into the outbound result envelope."""
    details = error.details or {}
    return ActionResult(
        success=False,
        message=error.message,
        error=error.error,
        details=error.details,
        requestedSlotUnavailable=bool(details.get("requestedSlotUnavailable")),
        userAlreadyHasAppointment=bool(details.get("userAlreadyHasAppointment")),
        status_code=error.status_code,
    )


def classify_gateway_error(e: GatewayError) -> BookingError:
    """Map a provider error onto the booking error taxonomy."""
    details = {"providerStatus": e.status_code, "reason": e.reason, "providerMessage": str(e)}
    if isinstance(e, GatewayAuthError):
        return ProviderError(
            "Google Calendar rejected the stored authorization.",
            details=details,
            status_code=401,
        )
    if e.status_code == 403:
        return PermissionDenied(
            "Google Calendar does not allow this change to the appointment.",
            details={**details, "source": "provider"},
        )
    if e.status_code in (404, 410):
        return NotFound("The appointment was not found in the calendar.", details=details)
    if e.status_code == 409:
        return SlotUnavailable(
            "The requested time slot is no longer available. Please choose another time.",
            details={**details, "requestedSlotUnavailable": True},
        )
    if e.status_code == 412:
        return ConcurrentModification(
            "The appointment was changed by someone else while you were editing it. "
            "Please review the current details and try again.",
            details=details,
        )
    return ProviderError(str(e), details=details)


def notification_option(value: str | None) -> str:
    """Map the tool-call ``sendNotifications`` value onto Google's ``sendUpdates``."""
    if value in ("none", "externalOnly", "all"):
        return value
    return "all"


def channel_name(requesting_user_id: str) -> str:
    return "WhatsApp" if requesting_user_id.lower().startswith("whatsapp:") else "chat"


def build_event_title(summary: str | None, user_name: str | None, channel: str = "WhatsApp") -> str:
    """Appointment title, generated from the user's name when missing."""
    name = (user_name or "").strip()
    if not summary or not summary.strip():
        return f"Appointment with {name}" if name else f"Appointment booked via {channel}"
    summary = summary.strip()
    if name and name.lower() not in summary.lower():
        return f"{summary} - {name}"
    return summary


def build_event_description(description: str | None, user_name: str | None, requesting_user_id: str) -> str:
    """Caller description followed by a contact block for the calendar owner."""
    context = "\n".join([
        f"Booked for: {user_name or 'Chat user'}",
        f"Booked via {channel_name(requesting_user_id)}",
        f"Contact: {strip_channel_prefix(requesting_user_id)}",
    ])
    if description:
        return f"{description}\n\n---\n{context}"
    return context


def _time_object(value: Any) -> dict[str, Any] | None:
    """Dump an EventDateTime, or None if it carries neither date nor dateTime."""
    if value is None:
        return None
    data = value.model_dump(exclude_none=True)
    if not data.get("dateTime") and not data.get("date"):
        return None
    return data


def booking_window(start: dict[str, Any], end: dict[str, Any], tz_name: str | None) -> tuple[datetime, datetime]:
    """Validated ``[start, end)`` for a new or moved booking."""
    if bool(start.get("dateTime")) != bool(end.get("dateTime")):
        raise ValidationError("start and end must both be date-times or both be all-day dates.")
    window_start = event_boundary(start, tz_name)
    window_end = event_boundary(end, tz_name)
    if window_start is None or window_end is None:
        raise ValidationError("A valid start and end are required.")
    if window_end <= window_start:
        raise ValidationError("The end of the appointment must be after its start.")
    return window_start, window_end


def merge_event_update(
    existing: dict[str, Any],
    params: EventParameters,
    default_tz: str,
    default_duration_minutes: int,
) -> tuple[dict[str, Any], bool, bool]:
    """Apply only the fields present in ``params`` onto a copy of ``existing``.

    Returns (updated_event, changed, time_changed). Fields that were not
    supplied (attendees, reminders, recurrence, extended properties, ...) are
    carried over from the fetched event untouched.
    """
    updated = copy.deepcopy(existing)
    changed = False
    time_changed = False

    new_start = _time_object(params.start)
    if new_start is not None:
        if new_start.get("dateTime"):
            new_start = {
                "dateTime": new_start["dateTime"],
                "timeZone": new_start.get("timeZone") or (existing.get("start") or {}).get("timeZone") or default_tz,
            }
        else:
            new_start = {"date": new_start["date"]}
        if new_start != existing.get("start"):
            updated["start"] = new_start
            changed = time_changed = True

    new_end = _time_object(params.end)
    if new_end is not None:
        if new_end.get("dateTime"):
            new_end = {
                "dateTime": new_end["dateTime"],
                "timeZone": new_end.get("timeZone")
                or (existing.get("end") or {}).get("timeZone")
                or updated["start"].get("timeZone")
                or default_tz,
            }
        else:
            new_end = {"date": new_end["date"]}
        if new_end != existing.get("end"):
            updated["end"] = new_end
            changed = time_changed = True
    elif time_changed:
        updated["end"] = _shifted_end(existing, updated["start"], default_tz, default_duration_minutes)

    if params.is_set("summary") and params.summary is not None:
        summary = build_event_title(params.summary, params.userName)
        if summary != existing.get("summary"):
            updated["summary"] = summary
            changed = True

    for field in ("description", "location", "reminders"):
        value = getattr(params, field)
        if params.is_set(field) and value is not None and value != existing.get(field):
            updated[field] = value
            changed = True

    if params.is_set("attendees") and params.attendees is not None:
        attendees = [attendee.model_dump(exclude_none=True) for attendee in params.attendees]
        if attendees != existing.get("attendees"):
            updated["attendees"] = attendees
            changed = True

    return updated, changed, time_changed


def _shifted_end(
    existing: dict[str, Any],
    new_start: dict[str, Any],
    default_tz: str,
    default_duration_minutes: int,
) -> dict[str, Any]:
    """End for a moved event whose caller gave only a new start.

    Keeps the original duration when the event kind (timed or all-day) did
    not change; otherwise falls back to the default duration.
    """
    old_start = existing.get("start") or {}
    old_end = existing.get("end") or {}
    same_kind = bool(old_start.get("dateTime")) == bool(new_start.get("dateTime"))
    old_begin = event_boundary(old_start, default_tz) if old_start else None
    old_finish = event_boundary(old_end, default_tz) if old_end else None
    if not same_kind or old_begin is None or old_finish is None:
        return compute_default_end(new_start, default_duration_minutes)

    duration = old_finish - old_begin
    if new_start.get("dateTime"):
        begin = event_boundary(new_start, default_tz)
        return {"dateTime": (begin + duration).isoformat(), "timeZone": new_start.get("timeZone") or default_tz}
    begin = event_boundary(new_start, default_tz)
    return {"date": (begin + timedelta(days=max(duration.days, 1))).date().isoformat()}


# ============================================================================
# Orchestrator
# ============================================================================


class EventMutationOrchestrator:
    """Runs calendar actions for the tool-call layer."""

    def __init__(
        self,
        settings: Settings,
        repository: IntegrationRepository,
        token_manager: TokenManager,
        permissions: PermissionResolver,
        concurrency: BookingConcurrencyController,
        gateway_factory: GatewayFactory | None = None,
        booking_guard: BookingGuard | None = None,
    ):
        self.settings = settings
        self.repository = repository
        self.token_manager = token_manager
        self.permissions = permissions
        self.concurrency = concurrency
        self.gateway_factory = gateway_factory or (lambda token: GoogleCalendarGateway(token, settings))
        self.booking_guard = booking_guard or BookingGuard()

    async def execute(self, request: ActionRequest) -> ActionResult:
        """Dispatch an inbound tool call to the matching action."""
        params = request.parameters
        user_id = request.requestingUserId
        if request.action == ActionName.CREATE_EVENT:
            return await self.create_event(request.integrationId, params, user_id)
        if request.action == ActionName.UPDATE_EVENT:
            return await self.update_event(request.integrationId, request.eventId or params.eventId, params, user_id)
        if request.action == ActionName.DELETE_EVENT:
            return await self.delete_event(request.integrationId, request.eventId or params.eventId, params, user_id)
        if request.action in (ActionName.GET_MY_BOOKED_EVENTS, ActionName.LIST_MY_BOOKED_EVENTS):
            return await self.list_my_booked_events(request.integrationId, user_id, params)
        return await self.get_events(request.integrationId, params)

    async def _guarded(self, action: str, integration_id: str, step: Callable[[], Awaitable[ActionResult]]) -> ActionResult:
        try:
            return await step()
        except BookingError as e:
            log = logger.error if e.status_code >= 500 else logger.warning
            log("%s on integration %s failed: %s", action, integration_id, e.message)
            return failure_result(e)
        except GatewayError as e:
            logger.error("%s on integration %s failed at provider: %s", action, integration_id, e)
            return failure_result(classify_gateway_error(e))

    async def _prepare(self, integration_id: str) -> tuple[Integration, GoogleCalendarConfig, GoogleCalendarGateway]:
        """Load and validate the integration, then refresh its token if needed."""
        integration = await self.repository.get(integration_id)
        if integration is None:
            raise NotFound("Integration not found.", details={"integrationId": integration_id})
        if integration.type != CALENDAR_INTEGRATION_TYPE or integration.provider != GOOGLE_PROVIDER:
            raise WrongIntegrationType("This integration is not a Google Calendar integration.")
        if integration.status != IntegrationStatus.ACTIVE or not integration.is_active or integration.config is None:
            raise IntegrationInactive(f"The Google Calendar integration ({integration.name}) is not active.")

        config = await self.token_manager.ensure_fresh_token(integration)
        return integration, config, self.gateway_factory(config.access_token)

    @staticmethod
    def _fetch_failure(e: GatewayError, event_id: str, message: str) -> BookingError:
        """Classify a failed lookup of the event about to be changed."""
        error = classify_gateway_error(e)
        if type(error) is ProviderError and not isinstance(e, GatewayAuthError):
            return ProviderError(message, details={**(error.details or {}), "eventId": event_id})
        error.details = {**(error.details or {}), "eventId": event_id}
        return error

    def _timezone(self, config: GoogleCalendarConfig, explicit: str | None = None) -> str:
        return resolve_timezone(explicit, config.timezone, self.settings.default_timezone)

    # ========== createEvent ==========

    async def create_event(
        self,
        integration_id: str,
        params: EventParameters,
        requesting_user_id: str,
    ) -> ActionResult:
        """Book a new appointment attributed to ``requesting_user_id``."""
        return await self._guarded(
            "createEvent",
            integration_id,
            lambda: self._create_event(integration_id, params, requesting_user_id),
        )

    async def _create_event(
        self,
        integration_id: str,
        params: EventParameters,
        requesting_user_id: str,
    ) -> ActionResult:
        if not normalize_identifier(requesting_user_id):
            raise ValidationError("A requesting user id is required to book an appointment.")
        if params.userEmail and not is_valid_email(params.userEmail):
            raise ValidationError(f"Invalid email address: {params.userEmail}")
        for attendee in params.attendees or []:
            if not is_valid_email(attendee.email):
                raise ValidationError(f"Invalid attendee email address: {attendee.email}")

        start = _time_object(params.start)
        if start is None:
            raise ValidationError("A valid start date/time (start) is required.")

        integration, config, gateway = await self._prepare(integration_id)
        tz_name = self._timezone(config, start.get("timeZone"))
        if start.get("dateTime") and not start.get("timeZone"):
            start["timeZone"] = tz_name

        end = _time_object(params.end)
        if end is None:
            end = compute_default_end(start, self.settings.default_appointment_duration_minutes)
            logger.info("Computed end for new appointment: %s", end)
        if end.get("dateTime") and not end.get("timeZone"):
            end["timeZone"] = start.get("timeZone", tz_name)
        window_start, window_end = booking_window(start, end, tz_name)

        user_name = params.userName or params.userEmail
        attendees: list[dict[str, Any]] = []
        if params.userEmail:
            attendees.append({"email": params.userEmail.strip(), "displayName": user_name})
        attendees.extend(attendee.model_dump(exclude_none=True) for attendee in params.attendees or [])

        body: dict[str, Any] = {
            "summary": build_event_title(params.summary, user_name, channel_name(requesting_user_id)),
            "description": build_event_description(params.description, user_name, requesting_user_id),
            "start": start,
            "end": end,
            "reminders": params.reminders or {"useDefault": True},
            "extendedProperties": {
                "private": build_attribution(
                    requesting_user_id,
                    integration.agent_id,
                    email=params.userEmail,
                    name=params.userName,
                ),
            },
        }
        if params.location:
            body["location"] = params.location
        if attendees:
            body["attendees"] = attendees

        conference_version = None
        send_updates = notification_option(params.sendNotifications)
        if params.addConferenceCall:
            body["conferenceData"] = {
                "createRequest": {
                    "requestId": str(uuid.uuid4()),
                    "conferenceSolutionKey": {"type": "hangoutsMeet"},
                }
            }
            conference_version = 1

        async with self.booking_guard.hold(config.calendar_id):
            await self.concurrency.authorize_new_booking(
                gateway,
                config,
                window_start,
                window_end,
                requesting_user_id,
            )
            logger.info(
                "Creating appointment on %s for %s",
                config.calendar_id,
                normalize_identifier(requesting_user_id),
            )
            created = await gateway.insert_event(
                config.calendar_id,
                body,
                send_updates=send_updates,
                conference_data_version=conference_version,
            )

        logger.info("Appointment %s created on integration %s", created.get("id"), integration.id)
        return ActionResult(
            success=True,
            message="Appointment created successfully.",
            result=event_result(created, "created"),
            status_code=201,
        )

    # ========== updateEvent ==========

    async def update_event(
        self,
        integration_id: str,
        event_id: str | None,
        params: EventParameters,
        requesting_user_id: str,
    ) -> ActionResult:
        """Change an existing appointment, merging only the supplied fields."""
        return await self._guarded(
            "updateEvent",
            integration_id,
            lambda: self._update_event(integration_id, event_id, params, requesting_user_id),
        )

    async def _update_event(
        self,
        integration_id: str,
        event_id: str | None,
        params: EventParameters,
        requesting_user_id: str,
    ) -> ActionResult:
        if not event_id:
            raise ValidationError("eventId is required for updateEvent.")

        integration, config, gateway = await self._prepare(integration_id)
        try:
            existing = await gateway.get_event(config.calendar_id, event_id)
        except GatewayError as e:
            if e.status_code in (404, 410):
                raise NotFound(
                    "The appointment you are trying to change was not found.",
                    details={"eventId": event_id},
                ) from e
            raise self._fetch_failure(e, event_id, "Could not verify the existing appointment before updating it.") from e
        if existing.get("status") == "cancelled":
            raise NotFound("The appointment you are trying to change was cancelled.", details={"eventId": event_id})

        await self.permissions.authorize(existing, requesting_user_id, integration.agent_id)

        tz_name = self._timezone(config)
        updated, changed, time_changed = merge_event_update(
            existing,
            params,
            tz_name,
            self.settings.default_appointment_duration_minutes,
        )

        conference_version = None
        if params.addConferenceCall and not existing.get("conferenceData"):
            updated["conferenceData"] = {
                "createRequest": {
                    "requestId": str(uuid.uuid4()),
                    "conferenceSolutionKey": {"type": "hangoutsMeet"},
                }
            }
            conference_version = 1
            changed = True

        if not changed:
            logger.info("No changes requested for event %s", event_id)
            return ActionResult(
                success=True,
                message="No changes were requested for this appointment.",
                result=event_result(existing, "updated"),
            )

        props = private_properties(existing)
        props[BOOKED_BY_USER_ID_KEY] = get_attribution(existing) or normalize_identifier(requesting_user_id)
        props[LAST_MODIFIED_BY_KEY] = strip_channel_prefix(requesting_user_id)
        props[LAST_MODIFIED_AT_KEY] = str(now_ms())
        updated["extendedProperties"] = {**(existing.get("extendedProperties") or {}), "private": props}

        async def apply() -> dict[str, Any]:
            try:
                return await gateway.update_event(
                    config.calendar_id,
                    event_id,
                    updated,
                    send_updates=notification_option(params.sendNotifications),
                    conference_data_version=conference_version,
                    etag=existing.get("etag"),
                )
            except GatewayError as e:
                if e.status_code == 412:
                    logger.warning("Event %s changed concurrently (etag mismatch)", event_id)
                raise

        if time_changed:
            window_start, window_end = booking_window(updated["start"], updated["end"], tz_name)
            async with self.booking_guard.hold(config.calendar_id):
                await self.concurrency.authorize_new_booking(
                    gateway,
                    config,
                    window_start,
                    window_end,
                    requesting_user_id,
                    exclude_event_id=event_id,
                    check_active_booking=False,
                )
                result = await apply()
        else:
            result = await apply()

        logger.info("Appointment %s updated by %s", event_id, normalize_identifier(requesting_user_id))
        return ActionResult(
            success=True,
            message="Appointment updated successfully.",
            result=event_result(result, "updated"),
        )

    # ========== deleteEvent ==========

    async def delete_event(
        self,
        integration_id: str,
        event_id: str | None,
        params: EventParameters,
        requesting_user_id: str,
    ) -> ActionResult:
        """Cancel an appointment. Deleting a missing event succeeds."""
        return await self._guarded(
            "deleteEvent",
            integration_id,
            lambda: self._delete_event(integration_id, event_id, params, requesting_user_id),
        )

    @staticmethod
    def _already_gone(event_id: str, status: str, message: str) -> ActionResult:
        return ActionResult(success=True, message=message, result={"id": event_id, "status": status})

    async def _delete_event(
        self,
        integration_id: str,
        event_id: str | None,
        params: EventParameters,
        requesting_user_id: str,
    ) -> ActionResult:
        if not event_id:
            raise ValidationError("eventId is required for deleteEvent.")

        integration, config, gateway = await self._prepare(integration_id)
        try:
            existing = await gateway.get_event(config.calendar_id, event_id)
        except GatewayError as e:
            if e.status_code == 404:
                logger.warning("Event %s not found; treating delete as done", event_id)
                return self._already_gone(event_id, "not_found", "The appointment had already been deleted or never existed.")
            if e.status_code == 410:
                logger.warning("Event %s already deleted (410)", event_id)
                return self._already_gone(event_id, "already_deleted", "The appointment had already been deleted.")
            raise self._fetch_failure(e, event_id, "Could not verify the appointment before deleting it.") from e
        if existing.get("status") == "cancelled":
            return self._already_gone(event_id, "already_deleted", "The appointment had already been deleted.")

        await self.permissions.authorize(existing, requesting_user_id, integration.agent_id)

        try:
            await gateway.delete_event(
                config.calendar_id,
                event_id,
                send_updates=notification_option(params.sendNotifications),
            )
        except GatewayError as e:
            if e.status_code == 410:
                return self._already_gone(event_id, "already_deleted", "The appointment had already been deleted.")
            if e.status_code == 404:
                return self._already_gone(event_id, "not_found", "The appointment no longer exists in the calendar.")
            raise

        logger.info("Appointment %s deleted by %s", event_id, normalize_identifier(requesting_user_id))
        return ActionResult(
            success=True,
            message="Appointment cancelled successfully.",
            result={
                "id": event_id,
                "status": "deleted",
                "deletedBy": requesting_user_id,
                "timestamp": datetime.now(UTC).isoformat(),
            },
        )

    # ========== Read paths ==========

    async def list_my_booked_events(
        self,
        integration_id: str,
        requesting_user_id: str,
        params: EventParameters | None = None,
    ) -> ActionResult:
        """Appointments attributed to the requesting user."""
        params = params or EventParameters()
        return await self._guarded(
            "getMyBookedEvents",
            integration_id,
            lambda: self._list_my_booked_events(integration_id, requesting_user_id, params),
        )

    async def _list_my_booked_events(
        self,
        integration_id: str,
        requesting_user_id: str,
        params: EventParameters,
    ) -> ActionResult:
        time_min, time_max = resolve_time_range(params.startDate, params.endDate, MY_BOOKINGS_WINDOW_DAYS)
        integration, config, gateway = await self._prepare(integration_id)
        events = await find_user_bookings(gateway, config, requesting_user_id, time_min, time_max)

        count = len(events)
        if count:
            message = f"Found {count} booked appointment{'s' if count != 1 else ''}."
        else:
            message = "You have no appointments scheduled."
        return ActionResult(
            success=True,
            message=message,
            result={
                "integrationId": integration.id,
                "calendarId": config.calendar_id,
                "userId": normalize_identifier(requesting_user_id),
                "events": [
                    {
                        **event_result(event, "location", "description"),
                        "summary": event.get("summary") or "Untitled",
                        "attribution": attribution_summary(event),
                    }
                    for event in events
                ],
                "period": {"start": time_min, "end": time_max},
            },
        )

    async def get_events(self, integration_id: str, params: EventParameters | None = None) -> ActionResult:
        """All events in a window (defaults to the next 30 days)."""
        params = params or EventParameters()
        return await self._guarded(
            "getEvents",
            integration_id,
            lambda: self._get_events(integration_id, params),
        )

    async def _get_events(self, integration_id: str, params: EventParameters) -> ActionResult:
        time_min, time_max = resolve_time_range(params.startDate, params.endDate, EVENTS_WINDOW_DAYS)
        integration, config, gateway = await self._prepare(integration_id)
        events = await gateway.list_all_events(config.calendar_id, time_min, time_max)
        return ActionResult(
            success=True,
            message=f"Found {len(events)} events.",
            result={
                "integrationId": integration.id,
                "calendarId": config.calendar_id,
                "events": [
                    {"id": e.get("id"), "summary": e.get("summary"), "start": e.get("start"), "end": e.get("end")}
                    for e in events
                ],
                "period": {"start": time_min, "end": time_max},
            },
        )
