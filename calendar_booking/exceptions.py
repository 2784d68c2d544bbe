"""Custom exceptions for the calendar booking core."""

from typing import Any


# ============================================================================
# Gateway (provider-level) errors
# ============================================================================


class GatewayError(Exception):
    """Base exception for Google API errors."""

    def __init__(self, message: str, status_code: int | None = None, reason: str | None = None):
        self.status_code = status_code
        self.reason = reason
        super().__init__(message)


class GatewayAuthError(GatewayError):
    """Raised when Google rejects the access token (401)."""

    pass


class OAuthError(GatewayError):
    """Raised when the OAuth token endpoint returns an error payload."""

    def __init__(self, message: str, status_code: int | None = None, error: str | None = None):
        self.error = error
        super().__init__(message, status_code=status_code, reason=error)

    @property
    def is_invalid_grant(self) -> bool:
        return self.error == "invalid_grant"


# ============================================================================
# Booking errors (mapped to result envelopes)
# ============================================================================


class BookingError(Exception):
    """Base exception for failures returned to the tool-call layer.

    Carries an HTTP-style status code, a short human-readable message that can
    be relayed through a chat, and optional structured details.
    """

    status_code: int = 500
    error: str = "Unexpected error"

    def __init__(
        self,
        message: str | None = None,
        details: dict[str, Any] | None = None,
        status_code: int | None = None,
    ):
        self.message = message or self.error
        self.details = details
        if status_code is not None:
            self.status_code = status_code
        super().__init__(self.message)


class NotFound(BookingError):
    status_code = 404
    error = "Not found"


class WrongIntegrationType(BookingError):
    status_code = 400
    error = "Integration is not a Google Calendar integration"


class IntegrationInactive(BookingError):
    status_code = 400
    error = "Integration is not active"


class IntegrationMisconfigured(BookingError):
    status_code = 500
    error = "Integration configuration is invalid"


class AuthExpired(BookingError):
    """No usable refresh token. A human must re-authorize the calendar."""

    status_code = 401
    error = "Calendar authorization expired"


class AuthRefreshFailed(BookingError):
    status_code = 401
    error = "Failed to refresh access token"


class PermissionDenied(BookingError):
    status_code = 403
    error = "Permission denied"


class SlotUnavailable(BookingError):
    status_code = 409
    error = "Requested slot unavailable"


class DuplicateActiveBooking(BookingError):
    status_code = 409
    error = "Duplicate appointment"


class ConcurrentModification(BookingError):
    status_code = 412
    error = "Concurrent modification"


class AvailabilityCheckFailed(BookingError):
    status_code = 500
    error = "Failed to check calendar availability"


class ValidationError(BookingError):
    status_code = 400
    error = "Invalid request"


class ProviderError(BookingError):
    status_code = 500
    error = "Google Calendar error"
