"""Tests for the access-token lifecycle manager."""

import json

import pytest

from calendar_booking.exceptions import AuthExpired, AuthRefreshFailed, GatewayError, OAuthError
from calendar_booking.models import IntegrationStatus
from calendar_booking.store import INTEGRATIONS_TABLE, now_ms
from calendar_booking.tokens import TokenManager

from .conftest import AGENT_ID, INTEGRATION_ID, make_integration


async def stored_entity(store):
    return await store.get_entity(INTEGRATIONS_TABLE, AGENT_ID, INTEGRATION_ID)


async def test_fresh_token_is_returned_without_refresh(repository, mock_oauth_client, integration):
    manager = TokenManager(repository, mock_oauth_client)
    config = await manager.ensure_fresh_token(integration)
    assert config.access_token == "access-token"
    mock_oauth_client.refresh_access_token.assert_not_called()


async def test_expired_token_is_refreshed_and_persisted(store, repository, mock_oauth_client):
    integration = await repository.create(make_integration(expires_in_ms=-1000))
    manager = TokenManager(repository, mock_oauth_client)

    config = await manager.ensure_fresh_token(integration)

    assert config.access_token == "new-access-token"
    assert config.expires_at > now_ms()
    assert config.refresh_token == "refresh-token"
    mock_oauth_client.refresh_access_token.assert_awaited_once_with("refresh-token")

    entity = await stored_entity(store)
    stored = json.loads(entity["config"])
    assert stored["accessToken"] == "new-access-token"
    assert stored["refreshToken"] == "refresh-token"
    assert entity["status"] == "active"


async def test_rotated_refresh_token_is_persisted(store, repository, mock_oauth_client):
    mock_oauth_client.refresh_access_token.return_value = {
        "access_token": "new-access-token",
        "refresh_token": "rotated-refresh-token",
        "expires_in": 3599,
    }
    integration = await repository.create(make_integration(expires_in_ms=-1000))

    await TokenManager(repository, mock_oauth_client).ensure_fresh_token(integration)

    stored = json.loads((await stored_entity(store))["config"])
    assert stored["refreshToken"] == "rotated-refresh-token"


async def test_missing_refresh_token_marks_expired(store, repository, mock_oauth_client):
    integration = await repository.create(make_integration(expires_in_ms=-1000, refresh_token=""))

    with pytest.raises(AuthExpired):
        await TokenManager(repository, mock_oauth_client).ensure_fresh_token(integration)

    mock_oauth_client.refresh_access_token.assert_not_called()
    assert (await stored_entity(store))["status"] == IntegrationStatus.EXPIRED.value


async def test_invalid_grant_marks_expired(store, repository, mock_oauth_client):
    mock_oauth_client.refresh_access_token.side_effect = OAuthError(
        "Token has been expired or revoked.", status_code=400, error="invalid_grant"
    )
    integration = await repository.create(make_integration(expires_in_ms=-1000))

    with pytest.raises(AuthExpired):
        await TokenManager(repository, mock_oauth_client).ensure_fresh_token(integration)

    assert (await stored_entity(store))["status"] == IntegrationStatus.EXPIRED.value
    assert integration.status == IntegrationStatus.EXPIRED


async def test_other_oauth_error_marks_error(store, repository, mock_oauth_client):
    mock_oauth_client.refresh_access_token.side_effect = OAuthError(
        "Unauthorized client", status_code=401, error="unauthorized_client"
    )
    integration = await repository.create(make_integration(expires_in_ms=-1000))

    with pytest.raises(AuthRefreshFailed):
        await TokenManager(repository, mock_oauth_client).ensure_fresh_token(integration)

    assert (await stored_entity(store))["status"] == IntegrationStatus.ERROR.value


async def test_network_failure_marks_error(store, repository, mock_oauth_client):
    mock_oauth_client.refresh_access_token.side_effect = GatewayError("OAuth request failed: timeout")
    integration = await repository.create(make_integration(expires_in_ms=-1000))

    with pytest.raises(AuthRefreshFailed):
        await TokenManager(repository, mock_oauth_client).ensure_fresh_token(integration)

    assert (await stored_entity(store))["status"] == IntegrationStatus.ERROR.value


async def test_response_without_access_token_fails(repository, mock_oauth_client):
    mock_oauth_client.refresh_access_token.return_value = {"expires_in": 3600}
    integration = await repository.create(make_integration(expires_in_ms=-1000))

    with pytest.raises(AuthRefreshFailed):
        await TokenManager(repository, mock_oauth_client).ensure_fresh_token(integration)
