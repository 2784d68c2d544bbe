"""Decides whether a chat identity may change a booked calendar event."""

import logging
from typing import Any

from .exceptions import PermissionDenied
from .identity import get_attribution, normalize_identifier, same_identity
from .store import RoleDirectory

logger = logging.getLogger(__name__)

BELONGS_TO_ANOTHER_USER = "belongs_to_another_user"
INSUFFICIENT_ROLE = "insufficient_role"


class PermissionResolver:
    """Attribution-tag ownership with an agent owner/admin override.

    Events without an attribution tag (created outside the chat flow, or
    before tagging existed) are open to any requester when
    ``allow_unattributed`` is set; otherwise only owners and admins may
    change them.
    """

    def __init__(self, roles: RoleDirectory, allow_unattributed: bool = True):
        self.roles = roles
        self.allow_unattributed = allow_unattributed

    async def _is_admin(self, agent_id: str, requesting_user_id: str) -> bool:
        try:
            return await self.roles.is_owner_or_admin(agent_id, requesting_user_id)
        except Exception:
            logger.exception("Role lookup failed for %s on agent %s", requesting_user_id, agent_id)
            return False

    async def authorize(self, event: dict[str, Any], requesting_user_id: str, agent_id: str) -> None:
        """Raise PermissionDenied unless the requester may mutate ``event``."""
        event_id = event.get("id")
        owner = get_attribution(event)

        if owner is None:
            if self.allow_unattributed:
                logger.warning(
                    "Event %s has no attribution tag; allowing change by %s",
                    event_id,
                    requesting_user_id,
                )
                return
            if await self._is_admin(agent_id, requesting_user_id):
                return
            raise PermissionDenied(
                "This appointment has no recorded owner and can only be changed by an administrator.",
                details={"reason": INSUFFICIENT_ROLE, "eventId": event_id},
            )

        if same_identity(owner, requesting_user_id):
            return
        if await self._is_admin(agent_id, requesting_user_id):
            logger.info("Admin override: %s changing event %s owned by %s", requesting_user_id, event_id, owner)
            return

        logger.warning(
            "Permission denied: %s tried to change event %s booked by %s",
            normalize_identifier(requesting_user_id),
            event_id,
            owner,
        )
        raise PermissionDenied(
            "You don't have permission to change this appointment because it belongs to another user.",
            details={"reason": BELONGS_TO_ANOTHER_USER, "eventId": event_id},
        )
