"""Table store interface, an in-memory implementation, and record accessors.

The real persistence layer is a key/value table service; this module only
depends on the four generic operations of ``TableStore``.
"""

import copy
import logging
import time
from typing import Any, Protocol

from .models import Integration, IntegrationStatus

logger = logging.getLogger(__name__)

INTEGRATIONS_TABLE = "integrations"
AGENTS_TABLE = "agents"
USER_ROLES_TABLE = "userroles"

AGENT_PARTITION = "agent"
ADMIN_ROLE = "admin"


def now_ms() -> int:
    return int(time.time() * 1000)


class EntityNotFoundError(Exception):
    """Raised by a table store when an entity does not exist."""

    pass


class TableStore(Protocol):
    """Generic table operations consumed by this package."""

    async def get_entity(self, table: str, partition_key: str, row_key: str) -> dict[str, Any] | None: ...

    async def list_entities(self, table: str, filters: dict[str, Any] | None = None) -> list[dict[str, Any]]: ...

    async def create_entity(self, table: str, entity: dict[str, Any]) -> None: ...

    async def update_entity(self, table: str, entity: dict[str, Any]) -> None: ...


class InMemoryTableStore:
    """Dict-backed TableStore with equality filters and merge updates."""

    def __init__(self):
        self._tables: dict[str, dict[tuple[str, str], dict[str, Any]]] = {}

    def _table(self, table: str) -> dict[tuple[str, str], dict[str, Any]]:
        return self._tables.setdefault(table, {})

    async def get_entity(self, table: str, partition_key: str, row_key: str) -> dict[str, Any] | None:
        entity = self._table(table).get((partition_key, row_key))
        return copy.deepcopy(entity) if entity is not None else None

    async def list_entities(self, table: str, filters: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        filters = filters or {}
        return [
            copy.deepcopy(entity)
            for entity in self._table(table).values()
            if all(entity.get(key) == value for key, value in filters.items())
        ]

    async def create_entity(self, table: str, entity: dict[str, Any]) -> None:
        key = (entity["partitionKey"], entity["rowKey"])
        if key in self._table(table):
            raise ValueError(f"Entity {key} already exists in {table}")
        self._table(table)[key] = copy.deepcopy(entity)

    async def update_entity(self, table: str, entity: dict[str, Any]) -> None:
        key = (entity["partitionKey"], entity["rowKey"])
        existing = self._table(table).get(key)
        if existing is None:
            raise EntityNotFoundError(f"Entity {key} not found in {table}")
        existing.update(copy.deepcopy(entity))


# ============================================================================
# Integration records
# ============================================================================


class IntegrationRepository:
    """Fetch and update integration records through a TableStore."""

    def __init__(self, store: TableStore):
        self.store = store

    async def get(self, integration_id: str) -> Integration | None:
        """Load an integration by id, validating its provider config."""
        entities = await self.store.list_entities(INTEGRATIONS_TABLE, {"rowKey": integration_id})
        if not entities:
            return None
        return Integration.from_entity(entities[0])

    async def create(self, integration: Integration) -> Integration:
        await self.store.create_entity(INTEGRATIONS_TABLE, integration.to_entity())
        return integration

    async def update_fields(self, integration: Integration, fields: dict[str, Any]) -> None:
        """Merge ``fields`` (storage names) into the stored record."""
        entity = {
            "partitionKey": integration.agent_id,
            "rowKey": integration.id,
            "updatedAt": now_ms(),
            **fields,
        }
        await self.store.update_entity(INTEGRATIONS_TABLE, entity)

    async def save_tokens(self, integration: Integration) -> None:
        """Persist the integration's config and mark it active."""
        config = integration.config
        await self.update_fields(integration, {
            "config": config.to_storage(),
            "credentials": config.refresh_token or config.access_token,
            "status": IntegrationStatus.ACTIVE.value,
        })

    async def update_status(self, integration: Integration, status: IntegrationStatus) -> bool:
        """Write a new status. Failures are logged, not raised."""
        try:
            await self.update_fields(integration, {"status": status.value})
        except EntityNotFoundError:
            logger.warning("Integration %s disappeared before status update to %s", integration.id, status.value)
            return False
        except Exception:
            logger.exception("Failed to update status of integration %s to %s", integration.id, status.value)
            return False
        integration.status = status
        logger.info("Integration %s status set to %s", integration.id, status.value)
        return True


# ============================================================================
# Agent ownership and roles
# ============================================================================


class RoleDirectory:
    """Answers owner/admin questions from the agents and user-roles tables."""

    def __init__(self, store: TableStore):
        self.store = store

    async def is_owner(self, agent_id: str, user_id: str) -> bool:
        agent = await self.store.get_entity(AGENTS_TABLE, AGENT_PARTITION, agent_id)
        return bool(agent) and agent.get("userId") == user_id

    async def is_owner_or_admin(self, agent_id: str, user_id: str) -> bool:
        if not user_id:
            return False
        if await self.is_owner(agent_id, user_id):
            return True
        roles = await self.store.list_entities(USER_ROLES_TABLE, {
            "agentId": agent_id,
            "userId": user_id,
            "role": ADMIN_ROLE,
            "isActive": True,
        })
        return bool(roles)

    async def has_access(self, agent_id: str, user_id: str) -> bool:
        """Owner, or any active role on the agent."""
        if not user_id:
            return False
        if await self.is_owner(agent_id, user_id):
            return True
        roles = await self.store.list_entities(USER_ROLES_TABLE, {
            "agentId": agent_id,
            "userId": user_id,
            "isActive": True,
        })
        return bool(roles)
