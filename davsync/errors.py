from __future__ import annotations


class SyncError(Exception):
    """Base class for every error raised by the sync core."""


class AuthError(SyncError):
    """The provider rejected the credential; the connection needs reauthorization."""


class SyncTokenInvalidated(SyncError):
    """The server refused a stored sync-token. Recovered by a full sync."""

    def __init__(self, calendar_id: str, sync_token: str, reason: str = "") -> None:
        self.calendar_id = calendar_id
        self.sync_token = sync_token
        self.reason = reason
        super().__init__(f"sync token rejected for {calendar_id}: {reason or 'no reason given'}")


class TransientNetworkError(SyncError):
    """Connection, timeout or server-side failure worth retrying later."""


class ParseError(SyncError):
    """One calendar component could not be normalized."""

    def __init__(self, message: str, href: str = "", uid: str = "") -> None:
        self.href = href
        self.uid = uid
        super().__init__(message)


class StoreApplyError(SyncError):
    """A change-set could not be applied; nothing from the batch was persisted."""


class ProviderNotFoundError(SyncError):
    pass


class NoTargetCalendarError(SyncError):
    pass


class UnsupportedProviderError(SyncError, KeyError):
    pass


class IllegalTransition(SyncError):
    pass
