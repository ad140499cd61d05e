"""Error taxonomy for the sync engine.

- TransientRemoteError: network failures and 5xx responses (retried)
- PermanentRemoteError: validation/4xx responses (also retried; the queue
  only sees a boolean result so it cannot tell the two apart)
- InvalidReference: missing record, owner, or state mapping (never retried)
- SubscriptionError: a change-notification channel failed to open
- ConflictNotFound: resolution requested for an unknown or settled conflict
- SyncNotConfigured: manual sync requested without an API key
"""

from __future__ import annotations


class SyncError(Exception):
    """Base class for sync engine errors."""


class RemoteSyncError(SyncError):
    """A unit of remote work failed.

    Attributes:
        status_code: HTTP status from the CRM integration, if any.
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class TransientRemoteError(RemoteSyncError):
    """Network failure, timeout, or 5xx from the remote CRM."""


class PermanentRemoteError(RemoteSyncError):
    """Validation failure or 4xx from the remote CRM."""


class InvalidReference(SyncError):
    """A queue operation points at a record or mapping that does not exist.

    Attributes:
        entity: Kind of missing entity ("record", "mapping", ...).
        reference: Identifier that could not be resolved.
    """

    def __init__(self, entity: str, reference: str) -> None:
        self.entity = entity
        self.reference = reference
        super().__init__(f"Unknown {entity} reference '{reference}'")


class SubscriptionError(SyncError):
    """Raised when the change-notification channel for an owner cannot open."""

    def __init__(self, owner_id: str, reason: str) -> None:
        self.owner_id = owner_id
        self.reason = reason
        super().__init__(f"Channel subscription failed for owner '{owner_id}': {reason}")


class ConflictNotFound(SyncError):
    """Raised when resolving a conflict that is missing or already resolved."""

    def __init__(self, conflict_id: str) -> None:
        self.conflict_id = conflict_id
        super().__init__(f"No pending conflict '{conflict_id}'")


class SyncNotConfigured(SyncError):
    """Raised when a manual sync is requested for an owner without an API key."""

    def __init__(self, owner_id: str) -> None:
        self.owner_id = owner_id
        super().__init__(f"CRM sync is not configured for owner '{owner_id}'")
