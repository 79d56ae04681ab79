"""Error taxonomy for notesync.

Local failures abort the current operation before any remote call is made.
Remote failures are raised by the remote client and converted into
structured results at the component boundary (trash state machine, sync
engine), so callers can report partial success without losing a local
mutation.

CRITICAL: This module must have NO third-party dependencies.
"""

from __future__ import annotations

from typing import Optional

__all__ = [
    "NoteSyncError",
    "LocalWriteFailure",
    "NoteNotFound",
    "RemoteError",
    "RemoteUnreachable",
    "RemoteNotFound",
    "RemoteOtherFailure",
    "NotAuthenticated",
    "ConflictDetected",
]


class NoteSyncError(Exception):
    """Base class for all notesync errors."""


class LocalWriteFailure(NoteSyncError):
    """The local store could not be read or written.

    Fatal to the current operation.
    """


class NoteNotFound(NoteSyncError):
    """No note with the given local ID exists in the expected collection."""

    def __init__(self, local_id: str, collection: str = "notes") -> None:
        self.local_id = local_id
        self.collection = collection
        super().__init__(f"Note {local_id} not found in {collection}")


class RemoteError(NoteSyncError):
    """Base class for failures talking to the server."""

    def __init__(self, message: str, url: Optional[str] = None) -> None:
        self.url = url
        super().__init__(message)


class RemoteUnreachable(RemoteError):
    """Network-level failure: connection refused, DNS, timeout.

    Transient. Never trips an availability breaker.
    """


class RemoteNotFound(RemoteError):
    """The server answered 404."""

    def __init__(
        self, message: str, url: Optional[str] = None, payload: Optional[dict] = None
    ) -> None:
        super().__init__(message, url)
        self.payload = payload


class RemoteOtherFailure(RemoteError):
    """Any other HTTP or protocol level failure."""

    def __init__(
        self, message: str, url: Optional[str] = None, status_code: Optional[int] = None
    ) -> None:
        super().__init__(message, url)
        self.status_code = status_code


class NotAuthenticated(RemoteError):
    """No bearer credential is available, or the server rejected it."""


class ConflictDetected(NoteSyncError):
    """Both the local store and the server changed since the last sync."""

    def __init__(self, local_changes: bool = True, server_updates: bool = True) -> None:
        self.local_changes = local_changes
        self.server_updates = server_updates
        super().__init__("Local and server data both changed; choose how to resolve")
