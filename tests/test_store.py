"""Tests for the table store, integration records and role lookups."""

import json

import pytest

from calendar_booking.exceptions import IntegrationMisconfigured
from calendar_booking.models import Integration, IntegrationStatus
from calendar_booking.store import (
    INTEGRATIONS_TABLE,
    EntityNotFoundError,
    InMemoryTableStore,
    IntegrationRepository,
    RoleDirectory,
)

from .conftest import ADMIN_ID, AGENT_ID, INTEGRATION_ID, OWNER_ID, USER_A, make_integration

# ============================================================================
# InMemoryTableStore
# ============================================================================


async def test_store_returns_copies():
    store = InMemoryTableStore()
    await store.create_entity("t", {"partitionKey": "p", "rowKey": "r", "value": [1]})
    entity = await store.get_entity("t", "p", "r")
    entity["value"].append(2)
    assert (await store.get_entity("t", "p", "r"))["value"] == [1]


async def test_store_rejects_duplicate_create():
    store = InMemoryTableStore()
    await store.create_entity("t", {"partitionKey": "p", "rowKey": "r"})
    with pytest.raises(ValueError):
        await store.create_entity("t", {"partitionKey": "p", "rowKey": "r"})


async def test_store_update_merges():
    store = InMemoryTableStore()
    await store.create_entity("t", {"partitionKey": "p", "rowKey": "r", "a": 1, "b": 2})
    await store.update_entity("t", {"partitionKey": "p", "rowKey": "r", "b": 3})
    assert await store.get_entity("t", "p", "r") == {"partitionKey": "p", "rowKey": "r", "a": 1, "b": 3}


async def test_store_update_missing_entity():
    with pytest.raises(EntityNotFoundError):
        await InMemoryTableStore().update_entity("t", {"partitionKey": "p", "rowKey": "r"})


# ============================================================================
# IntegrationRepository
# ============================================================================


async def test_integration_round_trip(store, repository):
    await repository.create(make_integration(max_concurrent_appointments=3))

    entity = await store.get_entity(INTEGRATIONS_TABLE, AGENT_ID, INTEGRATION_ID)
    assert isinstance(entity["config"], str)
    assert json.loads(entity["config"])["maxConcurrentAppointments"] == 3

    loaded = await repository.get(INTEGRATION_ID)
    assert loaded.config.max_concurrent_appointments == 3
    assert loaded.config.calendar_id == "owner@example.com"
    assert loaded.status == IntegrationStatus.ACTIVE


async def test_missing_integration(repository):
    assert await repository.get("nope") is None


async def test_corrupt_config_is_reported(store, repository):
    entity = make_integration().to_entity()
    entity["config"] = "{not json"
    await store.create_entity(INTEGRATIONS_TABLE, entity)
    with pytest.raises(IntegrationMisconfigured):
        await repository.get(INTEGRATION_ID)


async def test_config_without_access_token_is_reported(store, repository):
    entity = make_integration().to_entity()
    entity["config"] = json.dumps({"refreshToken": "r"})
    await store.create_entity(INTEGRATIONS_TABLE, entity)
    with pytest.raises(IntegrationMisconfigured):
        await repository.get(INTEGRATION_ID)


async def test_negative_ceiling_is_reported(store, repository):
    entity = make_integration().to_entity()
    entity["config"] = json.dumps({"accessToken": "a", "maxConcurrentAppointments": -1})
    await store.create_entity(INTEGRATIONS_TABLE, entity)
    with pytest.raises(IntegrationMisconfigured):
        await repository.get(INTEGRATION_ID)


async def test_update_status_writes_and_tracks(store, repository, integration):
    assert await repository.update_status(integration, IntegrationStatus.ERROR) is True
    assert integration.status == IntegrationStatus.ERROR
    assert (await store.get_entity(INTEGRATIONS_TABLE, AGENT_ID, INTEGRATION_ID))["status"] == "error"


async def test_update_status_never_raises(repository):
    ghost = make_integration("ghost")
    assert await repository.update_status(ghost, IntegrationStatus.EXPIRED) is False
    assert ghost.status == IntegrationStatus.ACTIVE


def test_public_view_hides_tokens():
    view = make_integration().public_view()
    assert "credentials" not in view
    assert "accessToken" not in view["config"]
    assert view["config"]["hasRefreshToken"] is True


def test_entity_keys_fall_back_to_table_keys():
    entity = make_integration().to_entity()
    del entity["id"]
    del entity["agentId"]
    integration = Integration.from_entity(entity)
    assert integration.id == INTEGRATION_ID
    assert integration.agent_id == AGENT_ID


# ============================================================================
# RoleDirectory
# ============================================================================


async def test_owner_and_admin_lookup(store):
    roles = RoleDirectory(store)
    assert await roles.is_owner(AGENT_ID, OWNER_ID) is True
    assert await roles.is_owner_or_admin(AGENT_ID, ADMIN_ID) is True
    assert await roles.is_owner_or_admin(AGENT_ID, USER_A) is False
    assert await roles.is_owner_or_admin(AGENT_ID, "") is False


async def test_has_access_accepts_any_active_role(store):
    await store.create_entity("userroles", {
        "partitionKey": AGENT_ID,
        "rowKey": "role-viewer",
        "agentId": AGENT_ID,
        "userId": USER_A,
        "role": "viewer",
        "isActive": True,
    })
    roles = RoleDirectory(store)
    assert await roles.has_access(AGENT_ID, USER_A) is True
    assert await roles.is_owner_or_admin(AGENT_ID, USER_A) is False
