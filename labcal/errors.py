"""Exception taxonomy for calendar connection and sync."""

from typing import Optional


class CalendarSyncError(Exception):
    """Base class for all calendar integration errors."""


class AuthenticationRequired(CalendarSyncError):
    """No usable credentials; the user has to reconnect the calendar."""

    def __init__(self, message: str, connection_id: Optional[str] = None):
        super().__init__(message)
        self.connection_id = connection_id


class TransientProviderError(CalendarSyncError):
    """Network failure, rate limit or provider-side 5xx. Safe to retry."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class SyncTokenInvalid(CalendarSyncError):
    """The provider rejected the stored sync token (HTTP 410)."""


class ProviderRequestRejected(CalendarSyncError):
    """The provider refused a request for good (404 for a removed calendar, 403, 400). Not retried."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class PermissionDenied(CalendarSyncError):
    """An administrator-only operation was attempted by a non-administrator."""


class ConfirmationRequired(CalendarSyncError):
    """A destructive operation was attempted without the exact confirmation phrase."""


class InvalidState(CalendarSyncError):
    """OAuth state missing, expired, reused or bound to another user."""


class ExchangeFailed(CalendarSyncError):
    """The provider rejected the authorization code."""


class SecretStoreError(CalendarSyncError):
    """Secret store failure."""


class SecretNotFound(SecretStoreError):
    """No credential record exists for the connection."""


class SecretStoreUnavailable(SecretStoreError):
    """The secret store backend is temporarily unreachable."""


class MigrationIncomplete(CalendarSyncError):
    """Legacy credential cleanup refused because verification did not pass."""


class EventNormalizationError(ValueError):
    """A remote event could not be mapped onto the mirrored event shape."""
