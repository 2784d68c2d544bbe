"""Lifecycle of Google Calendar integration records.

Connect (OAuth consent or manual tokens), read, edit, disconnect, and list
the calendars an integration can see. Every operation checks the acting
user against the agent's owner and roles.
"""

import base64
import json
import logging
import uuid
from typing import Any

from .config import DEFAULT_SCOPES, Settings
from .exceptions import (
    GatewayError,
    IntegrationInactive,
    NotFound,
    OAuthError,
    PermissionDenied,
    ProviderError,
    ValidationError,
    WrongIntegrationType,
)
from .gateway import GatewayFactory, GoogleCalendarGateway, GoogleOAuthClient
from .models import (
    CALENDAR_INTEGRATION_TYPE,
    GOOGLE_PROVIDER,
    GoogleCalendarConfig,
    Integration,
    IntegrationCreate,
    IntegrationStatus,
    IntegrationUpdate,
)
from .store import IntegrationRepository, RoleDirectory, now_ms
from .tokens import DEFAULT_TOKEN_LIFETIME_MS, TokenManager

logger = logging.getLogger(__name__)


def encode_state(user_id: str, agent_id: str) -> str:
    """OAuth ``state`` value carrying who started the consent flow."""
    payload = json.dumps({"userId": user_id, "agentId": agent_id}).encode()
    return base64.urlsafe_b64encode(payload).decode()


def decode_state(state: str) -> dict[str, str]:
    """Inverse of encode_state. Raises ValidationError on garbage."""
    try:
        data = json.loads(base64.urlsafe_b64decode(state.encode()).decode())
    except ValueError as e:
        raise ValidationError("Invalid OAuth state parameter.") from e
    if not isinstance(data, dict) or not data.get("agentId"):
        raise ValidationError("Invalid OAuth state parameter.")
    return data


class GoogleCalendarIntegrationService:
    """Create, read, update and disconnect Google Calendar integrations."""

    def __init__(
        self,
        settings: Settings,
        repository: IntegrationRepository,
        roles: RoleDirectory,
        oauth_client: GoogleOAuthClient,
        token_manager: TokenManager,
        gateway_factory: GatewayFactory | None = None,
    ):
        self.settings = settings
        self.repository = repository
        self.roles = roles
        self.oauth_client = oauth_client
        self.token_manager = token_manager
        self.gateway_factory = gateway_factory or (lambda token: GoogleCalendarGateway(token, settings))

    async def _require_access(self, agent_id: str, user_id: str, message: str) -> None:
        if not await self.roles.has_access(agent_id, user_id):
            logger.warning("User %s has no access to agent %s", user_id, agent_id)
            raise PermissionDenied(message)

    async def _load(self, integration_id: str) -> Integration:
        integration = await self.repository.get(integration_id)
        if integration is None:
            raise NotFound("Integration not found.", details={"integrationId": integration_id})
        return integration

    @staticmethod
    def _require_google(integration: Integration) -> None:
        if integration.type != CALENDAR_INTEGRATION_TYPE or integration.provider != GOOGLE_PROVIDER:
            raise WrongIntegrationType("This integration is not a Google Calendar integration.")

    # ========== Connect ==========

    async def get_auth_url(self, agent_id: str, user_id: str) -> dict[str, Any]:
        """Consent URL for connecting a calendar to ``agent_id``."""
        await self._require_access(agent_id, user_id, "You don't have access to this agent.")
        if not self.settings.oauth_configured:
            raise ProviderError("Google OAuth is not configured on this server.")
        auth_url = self.oauth_client.build_auth_url(encode_state(user_id, agent_id), DEFAULT_SCOPES)
        return {"authUrl": auth_url, "message": "Authorization URL generated."}

    async def process_auth_code(self, code: str, user_id: str, agent_id: str) -> dict[str, Any]:
        """Exchange the consent code and store an active integration.

        The primary calendar is selected, or the first listed calendar when
        none is flagged primary.
        """
        await self._require_access(agent_id, user_id, "You don't have permission to configure this agent.")
        try:
            tokens = await self.oauth_client.exchange_code(code)
        except (OAuthError, GatewayError) as e:
            logger.error("Authorization code exchange failed for agent %s: %s", agent_id, e)
            raise ValidationError("Could not obtain an access token from Google.", details={"reason": str(e)}) from e
        access_token = tokens.get("access_token")
        if not access_token:
            raise ValidationError("Could not obtain an access token from Google.")

        try:
            calendars = (await self.gateway_factory(access_token).list_calendars()).get("items", [])
        except GatewayError as e:
            raise ProviderError("Could not list the account's calendars.", details={"reason": str(e)}) from e
        primary = next((cal for cal in calendars if cal.get("primary")), calendars[0] if calendars else None)
        if not primary or not primary.get("id"):
            raise ValidationError("Could not determine the user's primary calendar.")

        expires_in = tokens.get("expires_in")
        config = GoogleCalendarConfig(
            access_token=access_token,
            refresh_token=tokens.get("refresh_token") or "",
            expires_at=now_ms() + int(expires_in) * 1000 if expires_in else 0,
            scope=tokens.get("scope") or "",
            calendar_id=primary["id"],
            timezone=primary.get("timeZone"),
        )
        label = primary.get("summary") or primary["id"]
        integration = Integration(
            id=str(uuid.uuid4()),
            agent_id=agent_id,
            name=f"Google Calendar ({label})",
            description=f"Google Calendar integration ({label})",
            config=config,
            credentials=config.refresh_token or config.access_token,
            status=IntegrationStatus.ACTIVE,
            created_by=user_id,
            created_at=now_ms(),
        )
        await self.repository.create(integration)
        logger.info("Google Calendar integration %s created for agent %s", integration.id, agent_id)
        return {"integrationId": integration.id, "success": True}

    async def create_integration(self, data: IntegrationCreate, user_id: str) -> dict[str, Any]:
        """Store an integration from externally obtained tokens."""
        await self._require_access(data.agentId, user_id, "You don't have permission to modify this agent.")
        if not data.accessToken:
            raise ValidationError("An access token is required.")

        now = now_ms()
        config = GoogleCalendarConfig(
            access_token=data.accessToken,
            refresh_token=data.refreshToken or "",
            expires_at=data.expiresAt or now + DEFAULT_TOKEN_LIFETIME_MS,
            scope=data.scope or DEFAULT_SCOPES[0],
            calendar_id=data.calendarId or "primary",
            timezone=data.timezone,
            max_concurrent_appointments=data.maxConcurrentAppointments,
            single_active_booking=True if data.singleActiveBooking is None else data.singleActiveBooking,
        )
        integration = Integration(
            id=str(uuid.uuid4()),
            agent_id=data.agentId,
            name=data.name or "Google Calendar",
            description=data.description or "Google Calendar integration",
            config=config,
            credentials=config.refresh_token or config.access_token,
            status=IntegrationStatus.ACTIVE,
            created_by=user_id,
            created_at=now,
        )
        await self.repository.create(integration)
        logger.info("Google Calendar integration %s created manually for agent %s", integration.id, data.agentId)
        return {**integration.public_view(), "message": "Integration created."}

    # ========== Read / edit ==========

    async def get_integration(self, integration_id: str, user_id: str) -> dict[str, Any]:
        """Integration details without tokens."""
        integration = await self._load(integration_id)
        await self._require_access(integration.agent_id, user_id, "You don't have access to this integration.")
        return integration.public_view()

    async def update_integration(self, integration_id: str, data: IntegrationUpdate, user_id: str) -> dict[str, Any]:
        """Apply the supplied fields. Returns a "no changes" message when nothing differs."""
        integration = await self._load(integration_id)
        await self._require_access(integration.agent_id, user_id, "You don't have permission to modify this integration.")
        self._require_google(integration)
        if integration.config is None:
            raise ValidationError("Integration has no calendar configuration.")

        supplied = data.model_fields_set
        fields: dict[str, Any] = {}
        for key, attr in (("name", "name"), ("description", "description")):
            value = getattr(data, key)
            if key in supplied and value is not None and value != getattr(integration, attr):
                fields[key] = value
        if "status" in supplied and data.status is not None and data.status != integration.status:
            fields["status"] = data.status.value

        config_changes: dict[str, Any] = {}
        for key, attr in (
            ("calendarId", "calendar_id"),
            ("timezone", "timezone"),
            ("maxConcurrentAppointments", "max_concurrent_appointments"),
            ("singleActiveBooking", "single_active_booking"),
        ):
            value = getattr(data, key)
            if key not in supplied or value == getattr(integration.config, attr):
                continue
            if value is None and attr in ("calendar_id", "single_active_booking"):
                continue
            config_changes[attr] = value

        if not fields and not config_changes:
            return {"message": "No changes were made."}

        config = integration.config.model_copy(update=config_changes)
        if config_changes:
            fields["config"] = config.to_storage()
        await self.repository.update_fields(integration, fields)

        updated = integration.model_copy(update={
            "name": fields.get("name", integration.name),
            "description": fields.get("description", integration.description),
            "status": IntegrationStatus(fields.get("status", integration.status)),
            "config": config,
        })
        logger.info("Integration %s updated (%s)", integration_id, ", ".join(sorted(fields)))
        return {**updated.public_view(), "message": "Integration updated."}

    async def delete_integration(self, integration_id: str, user_id: str) -> dict[str, Any]:
        """Deactivate the integration, then revoke its tokens on a best-effort basis."""
        integration = await self._load(integration_id)
        await self._require_access(integration.agent_id, user_id, "You don't have permission to delete this integration.")

        await self.repository.update_fields(integration, {
            "isActive": False,
            "status": IntegrationStatus.PENDING.value,
        })

        config = integration.config
        if config is not None:
            for token in (config.access_token, config.refresh_token):
                if not token:
                    continue
                try:
                    await self.oauth_client.revoke_token(token)
                except GatewayError as e:
                    logger.warning("Token revoke for integration %s failed: %s", integration_id, e)

        logger.info("Integration %s deactivated by %s", integration_id, user_id)
        return {"id": integration_id, "message": "Integration deleted (deactivated)."}

    async def list_calendars(self, integration_id: str, user_id: str) -> dict[str, Any]:
        """Calendars visible to the connected account."""
        integration = await self._load(integration_id)
        if not await self.roles.is_owner_or_admin(integration.agent_id, user_id):
            raise PermissionDenied("You don't have access to this integration.")
        self._require_google(integration)
        if integration.status != IntegrationStatus.ACTIVE or not integration.is_active or integration.config is None:
            raise IntegrationInactive(f"The Google Calendar integration ({integration.name}) is not active.")

        config = await self.token_manager.ensure_fresh_token(integration)
        try:
            response = await self.gateway_factory(config.access_token).list_calendars()
        except GatewayError as e:
            logger.error("Listing calendars for integration %s failed: %s", integration_id, e)
            raise ProviderError(str(e), details={"providerStatus": e.status_code}) from e

        return {
            "integrationId": integration_id,
            "calendars": [
                {
                    "id": cal.get("id"),
                    "summary": cal.get("summary"),
                    "description": cal.get("description"),
                    "primary": cal.get("primary", False),
                    "accessRole": cal.get("accessRole"),
                }
                for cal in response.get("items", [])
            ],
            "currentCalendarId": config.calendar_id,
        }
