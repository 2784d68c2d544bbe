"""Chat identity normalization and the attribution tag stored on events."""

import re
import time
from typing import Any

CHANNEL_PREFIX_RE = re.compile(r"^\s*whatsapp:", re.IGNORECASE)
MIN_INTERNATIONAL_DIGITS = 10

# Keys inside event.extendedProperties.private
BOOKED_BY_USER_ID_KEY = "bookedByUserId"
BOOKED_BY_ORIGINAL_ID_KEY = "bookedByOriginalId"
BOOKED_BY_EMAIL_KEY = "bookedByEmail"
BOOKED_BY_NAME_KEY = "bookedByName"
BOOKED_BY_AGENT_KEY = "bookedByAgentId"
BOOKED_AT_KEY = "bookedAt"
LAST_MODIFIED_BY_KEY = "lastModifiedBy"
LAST_MODIFIED_AT_KEY = "lastModifiedAt"


def strip_channel_prefix(identifier: str | None) -> str:
    return CHANNEL_PREFIX_RE.sub("", identifier or "").strip()


def normalize_identifier(identifier: str | None) -> str:
    """Canonical form of a chat identity used for attribution matching.

    Phone-like identities keep only digits and a single leading ``+``; a
    ``+`` is added when there are enough digits for an international number.
    Anything containing letters or ``@`` (emails, opaque ids) is lowercased.
    """
    raw = strip_channel_prefix(identifier)
    if not raw:
        return ""
    if "@" in raw or any(ch.isalpha() for ch in raw):
        return raw.lower()

    digits = re.sub(r"\D", "", raw)
    if not digits:
        return ""
    if raw.lstrip().startswith("+") or len(digits) >= MIN_INTERNATIONAL_DIGITS:
        return "+" + digits
    return digits


def same_identity(a: str | None, b: str | None) -> bool:
    """Compare two identities by normalized form. Empty never matches."""
    left = normalize_identifier(a)
    return bool(left) and left == normalize_identifier(b)


def private_properties(event: dict[str, Any] | None) -> dict[str, str]:
    return dict(((event or {}).get("extendedProperties") or {}).get("private") or {})


def get_attribution(event: dict[str, Any] | None) -> str | None:
    """Attributed identity of an event, or None for untagged events."""
    return private_properties(event).get(BOOKED_BY_USER_ID_KEY) or None


def build_attribution(
    requesting_user_id: str,
    agent_id: str,
    email: str | None = None,
    name: str | None = None,
) -> dict[str, str]:
    """Private extended properties written when an event is booked."""
    return {
        BOOKED_BY_USER_ID_KEY: normalize_identifier(requesting_user_id),
        BOOKED_BY_ORIGINAL_ID_KEY: strip_channel_prefix(requesting_user_id),
        BOOKED_BY_EMAIL_KEY: email or "",
        BOOKED_BY_NAME_KEY: name or "",
        BOOKED_BY_AGENT_KEY: agent_id,
        BOOKED_AT_KEY: str(int(time.time() * 1000)),
    }


def attribution_summary(event: dict[str, Any]) -> dict[str, str | None]:
    """Attribution sub-fields surfaced to callers for display."""
    props = private_properties(event)
    return {
        "userId": props.get(BOOKED_BY_USER_ID_KEY),
        "email": props.get(BOOKED_BY_EMAIL_KEY) or None,
        "name": props.get(BOOKED_BY_NAME_KEY) or None,
    }
