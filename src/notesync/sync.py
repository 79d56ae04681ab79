"""Sync engine for notesync.

Reconciles the local store with the server:
- upload_to_cloud: send the full local data set, adopt assigned server IDs
- download_from_cloud: fetch records changed since the last sync (or all of
  them) and merge
- smart_sync: pick upload, download, nothing, or report a conflict
- force_sync: download then upload, ignoring the conflict guard

One operation runs at a time per engine. A call made while another is in
flight returns an "in progress" result at once and makes no remote call.

Remote errors never escape the public operations; they come back as a failed
SyncResult with local data untouched.

CRITICAL: This module must have NO third-party dependencies.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .background import PeriodicSync
from .conflicts import ResolutionChoice, merge
from .errors import (
    ConflictDetected,
    LocalWriteFailure,
    NoteNotFound,
    NotAuthenticated,
    RemoteError,
)
from .remote_client import RemoteClient
from .store import REMOTE_ABSENT_FIELD, LocalStore
from .timestamp_utils import is_newer, now_timestamp, parse_timestamp, record_timestamp
from .validation import is_valid_server_id

logger = logging.getLogger(__name__)

__all__ = ["SyncEngine", "SyncResult", "SyncStatus"]


class SyncStatus(Enum):
    IDLE = "idle"
    SYNCING = "syncing"
    SUCCESS = "success"
    ERROR = "error"


@dataclass
class SyncResult:
    """Result of a sync operation."""

    success: bool
    action: str
    message: str = ""
    uploaded: int = 0
    downloaded: int = 0
    server_wins: int = 0
    has_updates: Optional[bool] = None
    conflict: bool = False
    in_progress: bool = False
    skipped: bool = False
    errors: List[str] = None
    error: Optional[Exception] = None

    def __post_init__(self):
        if self.errors is None:
            self.errors = []
        if self.error is not None and not self.errors:
            self.errors.append(str(self.error))

    def raise_for_status(self) -> None:
        """Re-raise the stored error of a failed result.

        Raises:
            ConflictDetected: For a conflict result
            RemoteError: The remote error that failed the operation
            LocalWriteFailure: The local error that failed the operation
        """
        if self.error is not None:
            raise self.error

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "action": self.action,
            "message": self.message,
            "uploaded": self.uploaded,
            "downloaded": self.downloaded,
            "server_wins": self.server_wins,
            "has_updates": self.has_updates,
            "conflict": self.conflict,
            "in_progress": self.in_progress,
            "skipped": self.skipped,
            "errors": list(self.errors),
        }


class SyncEngine:
    """Owns the sync state for one local store and one server.

    Args:
        store: Local store
        client: Remote client
    """

    def __init__(self, store: LocalStore, client: RemoteClient) -> None:
        self.store = store
        self.client = client
        self._sync_lock = threading.Lock()
        persisted = store.get_sync_config().get("syncStatus") or SyncStatus.IDLE.value
        try:
            self._status = SyncStatus(persisted)
        except ValueError:
            self._status = SyncStatus.IDLE
        if self._status is SyncStatus.SYNCING:
            # A previous process died mid-sync
            self._status = SyncStatus.IDLE

    @property
    def status(self) -> SyncStatus:
        return self._status

    @property
    def is_syncing(self) -> bool:
        return self._sync_lock.locked()

    @property
    def last_sync_time(self) -> Optional[str]:
        return self.store.get_sync_config().get("lastSyncTime")

    # ===== Guard =====

    def _exclusive(self, action: str, operation: Callable[[], SyncResult]) -> SyncResult:
        """Run operation unless another sync is in flight or there is no token."""
        if not self.client.has_token():
            logger.info(f"Skipping {action}: not logged in")
            return SyncResult(
                success=False,
                action=action,
                message="Not logged in; cloud sync skipped",
                skipped=True,
                error=NotAuthenticated("Not logged in"),
            )

        if not self._sync_lock.acquire(blocking=False):
            logger.info(f"Skipping {action}: sync already in progress")
            return SyncResult(
                success=False,
                action=action,
                message="Sync already in progress",
                in_progress=True,
            )

        previous = self._status
        try:
            self._status = SyncStatus.SYNCING
            try:
                result = operation()
            except LocalWriteFailure as e:
                logger.error(f"{action} failed locally: {e}")
                result = SyncResult(success=False, action=action, message=str(e), error=e)
            if result.conflict:
                # Nothing was transferred, so the last outcome still stands
                self._status = previous
            else:
                self._status = SyncStatus.SUCCESS if result.success else SyncStatus.ERROR
            self._save_status()
            return result
        finally:
            self._sync_lock.release()

    def _save_status(self) -> None:
        try:
            self.store.save_sync_config(self.last_sync_time, self._status.value)
        except LocalWriteFailure as e:
            logger.error(f"Could not persist sync status: {e}")

    def _remote_failure(self, action: str, error: RemoteError) -> SyncResult:
        logger.warning(f"{action} failed: {error}")
        return SyncResult(success=False, action=action, message=f"{action.capitalize()} failed: {error}", error=error)

    # ===== Upload =====

    def upload_to_cloud(self) -> SyncResult:
        """Upload all local notes, tags and drafts."""
        return self._exclusive("upload", self._upload)

    def _upload(self) -> SyncResult:
        snapshot = self.store.get_local_data()
        notes = [n for n in snapshot["notes"] if not n.get(REMOTE_ABSENT_FIELD)]
        if len(notes) < len(snapshot["notes"]):
            logger.debug(f"Not uploading {len(snapshot['notes']) - len(notes)} notes purged on the server")
        try:
            sync_time, assigned = self.client.upload(
                notes, snapshot["tags"], snapshot["drafts"], self.last_sync_time
            )
        except RemoteError as e:
            return self._remote_failure("upload", e)

        sync_time = sync_time or now_timestamp()
        self.store.mark_uploaded(notes, assigned, sync_time)
        self.store.save_sync_config(sync_time, SyncStatus.SUCCESS.value)
        logger.info(f"Uploaded {len(notes)} notes, {len(assigned)} new server ids")
        return SyncResult(
            success=True,
            action="upload",
            message=f"Uploaded {len(notes)} notes",
            uploaded=len(notes),
        )

    # ===== Download =====

    def download_from_cloud(self, full: bool = False) -> SyncResult:
        """Download notes changed since the last sync and merge them.

        Args:
            full: Fetch every server note instead of the changes since the
                last sync
        """
        return self._exclusive("download", lambda: self._download(full))

    def _download(self, full: bool = False) -> SyncResult:
        snapshot = self.store.get_local_data()
        try:
            server_notes, server_sync_time = self.client.fetch_notes(None if full else self.last_sync_time)
        except RemoteError as e:
            return self._remote_failure("download", e)

        trash = self.store.get_trash()
        trash_ids = {n["localId"] for n in trash}
        trash_sids = {str(n["serverId"]) for n in trash if is_valid_server_id(n.get("serverId"))}
        incoming = []
        for note in server_notes:
            if note.get("isDeleted") or note.get("deleteTime"):
                continue
            if note.get("localId") in trash_ids:
                continue
            if is_valid_server_id(note.get("serverId")) and str(note["serverId"]) in trash_sids:
                continue
            incoming.append(note)

        result = merge(snapshot, {"notes": incoming})
        sync_time = server_sync_time or now_timestamp()
        self.store.apply_merge(snapshot, result.as_data(), sync_time)
        self.store.save_sync_config(sync_time, SyncStatus.SUCCESS.value)
        logger.info(
            f"Downloaded {len(incoming)} notes ({len(server_notes) - len(incoming)} skipped): "
            f"new={result.from_server}, updated={result.server_wins}"
        )
        return SyncResult(
            success=True,
            action="download",
            message=f"Downloaded {len(incoming)} notes",
            downloaded=len(incoming),
            server_wins=result.server_wins,
        )

    # ===== Checks =====

    def check_updates(self) -> SyncResult:
        """Ask the server whether it has changes since the last sync."""
        if not self.client.has_token():
            return SyncResult(
                success=False,
                action="check",
                message="Not logged in; cloud sync skipped",
                skipped=True,
                error=NotAuthenticated("Not logged in"),
            )
        try:
            has_updates = self.client.check_updates(self.last_sync_time)
        except RemoteError as e:
            return self._remote_failure("check", e)
        return SyncResult(
            success=True,
            action="check",
            message="Server has updates" if has_updates else "No server updates",
            has_updates=has_updates,
        )

    def has_local_changes(self) -> bool:
        """Check whether anything local changed after the last sync."""
        data = self.store.get_local_data()
        last_sync = parse_timestamp(self.last_sync_time)
        if last_sync is None:
            return any(data.values())

        for note in data["notes"]:
            if note.get(REMOTE_ABSENT_FIELD):
                continue
            if is_newer(record_timestamp(note), last_sync):
                return True
        for tag in data["tags"]:
            if is_newer(parse_timestamp(tag.get("createTime")), last_sync):
                return True
        for draft in data["drafts"]:
            if is_newer(record_timestamp(draft), last_sync):
                return True
        return False

    # ===== Combined =====

    def smart_sync(self) -> SyncResult:
        """Sync in whichever direction is needed.

        When both sides changed, nothing is transferred and a conflict
        result is returned for the user to resolve.
        """
        return self._exclusive("smart", self._smart)

    def _smart(self) -> SyncResult:
        local_changes = self.has_local_changes()
        try:
            server_updates = self.client.check_updates(self.last_sync_time)
        except RemoteError as e:
            return self._remote_failure("smart sync", e)

        if local_changes and server_updates:
            logger.info("Both local and server data changed; conflict")
            return SyncResult(
                success=False,
                action="smart",
                message="Local and server data both changed",
                has_updates=True,
                conflict=True,
                error=ConflictDetected(True, True),
            )
        if server_updates:
            return self._download()
        if local_changes:
            return self._upload()
        return SyncResult(success=True, action="smart", message="Already up to date", has_updates=False)

    def force_sync(self) -> SyncResult:
        """Download then upload without the conflict guard."""
        return self._exclusive("force", self._force)

    def _force(self) -> SyncResult:
        down = self._download()
        if not down.success:
            return down
        up = self._upload()
        return SyncResult(
            success=up.success,
            action="force",
            message=f"{down.message}; {up.message}",
            uploaded=up.uploaded,
            downloaded=down.downloaded,
            server_wins=down.server_wins,
            error=up.error,
        )

    # ===== Conflict resolution =====

    def resolve_conflict(self, local_id: str, choice: ResolutionChoice) -> SyncResult:
        """Resolve a conflict on one note.

        KEEP_LOCAL marks the note as locally authoritative and uploads.
        KEEP_REMOTE replaces the local note with the server copy.
        """
        return self._exclusive("resolve", lambda: self._resolve(local_id, choice))

    def _resolve(self, local_id: str, choice: ResolutionChoice) -> SyncResult:
        note = self.store.get_note(local_id)
        if note is None:
            error = NoteNotFound(local_id)
            return SyncResult(success=False, action="resolve", message=str(error), error=error)

        if choice is ResolutionChoice.KEEP_LOCAL:
            self.store.mark_needs_upload(local_id)
            result = self._upload()
            result.action = "resolve"
            return result

        if not is_valid_server_id(note.get("serverId")):
            error = NoteNotFound(local_id, "server")
            return SyncResult(
                success=False,
                action="resolve",
                message="Note was never uploaded; nothing to take from the server",
                error=error,
            )
        try:
            server_note = self.client.get_note(note["serverId"])
        except RemoteError as e:
            return self._remote_failure("resolve", e)

        server_note["localId"] = local_id
        server_note["serverId"] = note["serverId"]
        server_note["isModified"] = False
        server_note["lastSyncTime"] = now_timestamp()
        self.store.put_note(server_note)
        return SyncResult(success=True, action="resolve", message="Kept server version", downloaded=1)

    # ===== Status =====

    def get_sync_status(self) -> Dict[str, Any]:
        """Get local sync state plus the server's view when reachable."""
        status: Dict[str, Any] = {
            "status": self._status.value,
            "is_syncing": self.is_syncing,
            "last_sync_time": self.last_sync_time,
            "logged_in": self.client.has_token(),
            "has_local_changes": self.has_local_changes(),
            "server": None,
        }
        if status["logged_in"]:
            try:
                status["server"] = self.client.get_sync_status()
            except RemoteError as e:
                logger.debug(f"Server sync status unavailable: {e}")
                status["server_error"] = str(e)
        return status

    def reset_sync_status(self) -> None:
        """Forget the last sync time so the next sync is a full one."""
        self._status = SyncStatus.IDLE
        self.store.save_sync_config(None, SyncStatus.IDLE.value)
        logger.info("Sync status reset")

    def start_periodic(self, interval: float) -> PeriodicSync:
        """Start calling smart_sync every interval seconds."""
        periodic = PeriodicSync(self.smart_sync, interval)
        periodic.start()
        return periodic
