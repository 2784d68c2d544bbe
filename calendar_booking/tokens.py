"""Access-token lifecycle for Google Calendar integrations.

Concurrent refreshes for the same integration are not serialized: each
request refreshes independently and the last write wins. Google keeps older
access tokens valid until they expire, and a later request simply refreshes
again, so the race costs an extra token exchange at worst.
"""

import logging

from .exceptions import AuthExpired, AuthRefreshFailed, GatewayError, OAuthError
from .gateway import GoogleOAuthClient
from .models import GoogleCalendarConfig, Integration, IntegrationStatus
from .store import IntegrationRepository, now_ms

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_LIFETIME_MS = 3600 * 1000


class TokenManager:
    """Keeps an integration's access token usable before each API call."""

    def __init__(self, repository: IntegrationRepository, oauth_client: GoogleOAuthClient):
        self.repository = repository
        self.oauth_client = oauth_client

    async def ensure_fresh_token(self, integration: Integration) -> GoogleCalendarConfig:
        """Return the integration config with a non-expired access token.

        Refreshes (and persists) when ``expiresAt`` has passed.

        Raises:
            AuthExpired: no refresh token, or Google rejected it (invalid_grant)
            AuthRefreshFailed: any other refresh failure
        """
        config = integration.config
        if config.expires_at > now_ms():
            return config

        if not config.refresh_token:
            logger.error("Integration %s has no refresh token; re-authentication required", integration.id)
            await self.repository.update_status(integration, IntegrationStatus.EXPIRED)
            raise AuthExpired(
                "Calendar access expired and no refresh token is available. "
                "The calendar must be connected again.",
            )

        logger.info("Refreshing access token for integration %s", integration.id)
        try:
            tokens = await self.oauth_client.refresh_access_token(config.refresh_token)
        except OAuthError as e:
            if e.is_invalid_grant:
                logger.error("Refresh token for integration %s is invalid or revoked", integration.id)
                await self.repository.update_status(integration, IntegrationStatus.EXPIRED)
                raise AuthExpired(
                    "Calendar authorization was revoked. The calendar must be connected again.",
                    details={"reason": e.error},
                ) from e
            await self.repository.update_status(integration, IntegrationStatus.ERROR)
            raise AuthRefreshFailed(details={"reason": str(e)}) from e
        except GatewayError as e:
            logger.error("Token refresh for integration %s failed: %s", integration.id, e)
            await self.repository.update_status(integration, IntegrationStatus.ERROR)
            raise AuthRefreshFailed(details={"reason": str(e)}) from e

        access_token = tokens.get("access_token")
        if not access_token:
            await self.repository.update_status(integration, IntegrationStatus.ERROR)
            raise AuthRefreshFailed(details={"reason": "Refresh response did not include an access token"})

        expires_in = tokens.get("expires_in")
        refreshed = config.model_copy(update={
            "access_token": access_token,
            "expires_at": now_ms() + int(expires_in) * 1000 if expires_in else now_ms() + DEFAULT_TOKEN_LIFETIME_MS,
            "refresh_token": tokens.get("refresh_token") or config.refresh_token,
        })
        integration.config = refreshed
        await self.repository.save_tokens(integration)
        integration.status = IntegrationStatus.ACTIVE
        logger.info("Access token refreshed and saved for integration %s", integration.id)
        return refreshed
