"""HTTP clients for the Google Calendar v3 API and Google OAuth endpoints."""

import logging
from collections.abc import Callable
from typing import Any
from urllib.parse import quote

import httpx

from .config import DEFAULT_SCOPES, Settings
from .exceptions import GatewayAuthError, GatewayError, OAuthError

logger = logging.getLogger(__name__)

MAX_LIST_PAGES = 10


def _parse_google_error(response: httpx.Response, default: str) -> tuple[str, str | None]:
    """Extract (message, reason) from a Google API error body."""
    try:
        data = response.json()
    except ValueError:
        return default, None
    error = data.get("error") if isinstance(data, dict) else None
    if isinstance(error, dict):
        reasons = error.get("errors") or [{}]
        return error.get("message", default), reasons[0].get("reason") or error.get("status")
    if isinstance(error, str):
        return data.get("error_description", error), error
    return default, None


class GoogleCalendarGateway:
    """Client for the Google Calendar v3 REST API, bound to one access token.

    Every method is a single network call (list_all_events pages through
    results). Nothing is retried here; errors are raised as GatewayError with
    the HTTP status preserved so callers can classify 404/410/403/412.
    """

    def __init__(
        self,
        access_token: str,
        settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        settings = settings or Settings()
        self.access_token = access_token
        self.base_url = settings.google_api_base_url.rstrip("/")
        self.timeout = settings.google_api_timeout_seconds
        self._transport = transport

    def _get_headers(self, if_match: str | None = None) -> dict[str, str]:
        """Return headers for API requests."""
        headers = {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
        }
        if if_match:
            headers["If-Match"] = if_match
        return headers

    def _events_url(self, calendar_id: str, event_id: str | None = None) -> str:
        url = f"{self.base_url}/calendars/{quote(calendar_id, safe='')}/events"
        if event_id is not None:
            url = f"{url}/{quote(event_id, safe='')}"
        return url

    def _handle_response(self, response: httpx.Response) -> dict[str, Any]:
        """Handle response and raise appropriate exceptions for errors."""
        if response.status_code == 401:
            message, reason = _parse_google_error(response, "Invalid or expired access token")
            raise GatewayAuthError(message, status_code=401, reason=reason)

        if response.status_code >= 400:
            message, reason = _parse_google_error(response, "Google Calendar error")
            raise GatewayError(
                f"Google Calendar error ({response.status_code}): {message}",
                status_code=response.status_code,
                reason=reason,
            )

        if response.status_code == 204 or not response.content:
            return {}
        return response.json()

    async def _request(
        self,
        method: str,
        url: str,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
        if_match: str | None = None,
    ) -> dict[str, Any]:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.request(
                    method,
                    url,
                    headers=self._get_headers(if_match),
                    params=params or None,
                    json=json,
                )
        except httpx.RequestError as e:
            raise GatewayError(f"Google Calendar request failed: {e}") from e
        return self._handle_response(response)

    # ========== Calendar Operations ==========

    async def list_calendars(self, max_results: int | None = None) -> dict[str, Any]:
        """List calendars visible to the authorized account."""
        params: dict[str, Any] = {}
        if max_results is not None:
            params["maxResults"] = max_results
        return await self._request("GET", f"{self.base_url}/users/me/calendarList", params=params)

    # ========== Event Operations ==========

    async def list_events(
        self,
        calendar_id: str,
        time_min: str | None = None,
        time_max: str | None = None,
        max_results: int | None = None,
        page_token: str | None = None,
        single_events: bool = True,
        order_by: str | None = None,
        q: str | None = None,
    ) -> dict[str, Any]:
        """List events overlapping ``[time_min, time_max)``."""
        params: dict[str, Any] = {"singleEvents": "true" if single_events else "false"}

        if time_min is not None:
            params["timeMin"] = time_min
        if time_max is not None:
            params["timeMax"] = time_max
        if max_results is not None:
            params["maxResults"] = max_results
        if page_token is not None:
            params["pageToken"] = page_token
        if order_by is not None:
            params["orderBy"] = order_by
        if q is not None:
            params["q"] = q

        return await self._request("GET", self._events_url(calendar_id), params=params)

    async def list_all_events(
        self,
        calendar_id: str,
        time_min: str,
        time_max: str,
        order_by: str | None = "startTime",
        max_results: int = 250,
    ) -> list[dict[str, Any]]:
        """List events across result pages (bounded by MAX_LIST_PAGES)."""
        items: list[dict[str, Any]] = []
        page_token = None
        for _ in range(MAX_LIST_PAGES):
            page = await self.list_events(
                calendar_id,
                time_min=time_min,
                time_max=time_max,
                max_results=max_results,
                page_token=page_token,
                order_by=order_by,
            )
            items.extend(page.get("items", []))
            page_token = page.get("nextPageToken")
            if not page_token:
                break
        else:
            logger.warning("Stopped listing %s after %d pages", calendar_id, MAX_LIST_PAGES)
        return items

    async def get_event(self, calendar_id: str, event_id: str) -> dict[str, Any]:
        """Get a specific event by ID."""
        return await self._request("GET", self._events_url(calendar_id, event_id))

    async def insert_event(
        self,
        calendar_id: str,
        event_data: dict[str, Any],
        send_updates: str | None = None,
        conference_data_version: int | None = None,
    ) -> dict[str, Any]:
        """Create a new event in a calendar."""
        params: dict[str, Any] = {}
        if send_updates is not None:
            params["sendUpdates"] = send_updates
        if conference_data_version is not None:
            params["conferenceDataVersion"] = conference_data_version
        return await self._request("POST", self._events_url(calendar_id), params=params, json=event_data)

    async def update_event(
        self,
        calendar_id: str,
        event_id: str,
        event_data: dict[str, Any],
        send_updates: str | None = None,
        conference_data_version: int | None = None,
        etag: str | None = None,
    ) -> dict[str, Any]:
        """Update an event (full replacement).

        When ``etag`` is given the write is conditional and Google answers
        412 if the event changed since it was read.
        """
        params: dict[str, Any] = {}
        if send_updates is not None:
            params["sendUpdates"] = send_updates
        if conference_data_version is not None:
            params["conferenceDataVersion"] = conference_data_version
        return await self._request(
            "PUT",
            self._events_url(calendar_id, event_id),
            params=params,
            json=event_data,
            if_match=etag,
        )

    async def delete_event(
        self,
        calendar_id: str,
        event_id: str,
        send_updates: str | None = None,
    ) -> dict[str, Any]:
        """Delete an event."""
        params: dict[str, Any] = {}
        if send_updates is not None:
            params["sendUpdates"] = send_updates
        await self._request("DELETE", self._events_url(calendar_id, event_id), params=params)
        return {"success": True}


class GoogleOAuthClient:
    """Google OAuth 2.0 token endpoints for one client application."""

    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None):
        self.settings = settings
        self._transport = transport

    def build_auth_url(self, state: str, scopes: list[str] | None = None) -> str:
        """Consent URL requesting offline access (so a refresh token is issued)."""
        params = {
            "client_id": self.settings.google_client_id,
            "redirect_uri": self.settings.google_redirect_uri,
            "response_type": "code",
            "scope": " ".join(scopes or DEFAULT_SCOPES),
            "access_type": "offline",
            "prompt": "consent",
            "state": state,
        }
        return str(httpx.URL(self.settings.google_oauth_auth_url, params=params))

    async def _token_request(self, data: dict[str, str]) -> dict[str, Any]:
        payload = {
            "client_id": self.settings.google_client_id,
            "client_secret": self.settings.google_client_secret,
            **data,
        }
        try:
            async with httpx.AsyncClient(
                timeout=self.settings.google_api_timeout_seconds, transport=self._transport
            ) as client:
                response = await client.post(self.settings.google_oauth_token_url, data=payload)
        except httpx.RequestError as e:
            raise GatewayError(f"OAuth request failed: {e}") from e

        if response.status_code >= 400:
            message, error = _parse_google_error(response, "OAuth token request failed")
            raise OAuthError(message, status_code=response.status_code, error=error)
        return response.json()

    async def exchange_code(self, code: str) -> dict[str, Any]:
        """Exchange an authorization code for access and refresh tokens."""
        return await self._token_request({
            "code": code,
            "grant_type": "authorization_code",
            "redirect_uri": self.settings.google_redirect_uri,
        })

    async def refresh_access_token(self, refresh_token: str) -> dict[str, Any]:
        """Exchange a refresh token for a new access token.

        Google may or may not return a new refresh token.
        """
        return await self._token_request({
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        })

    async def revoke_token(self, token: str) -> bool:
        """Revoke a token. Returns False when Google refuses."""
        try:
            async with httpx.AsyncClient(
                timeout=self.settings.google_api_timeout_seconds, transport=self._transport
            ) as client:
                response = await client.post(
                    self.settings.google_oauth_revoke_url,
                    params={"token": token},
                    headers={"Content-Type": "application/x-www-form-urlencoded"},
                )
        except httpx.RequestError as e:
            raise GatewayError(f"OAuth revoke failed: {e}") from e
        if response.status_code >= 400:
            logger.warning("Token revoke rejected (status %s): %s", response.status_code, response.text)
            return False
        return True


GatewayFactory = Callable[[str], GoogleCalendarGateway]
