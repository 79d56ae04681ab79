"""Trash lifecycle for notesync.

A note is active, trashed or purged. Every transition is two-phase:

1. Local: the store moves the note between collections synchronously and
   durably. If this fails the operation fails and nothing is sent.
2. Remote: with a valid server ID and a token, the matching server call runs
   on a background thread. Its outcome only updates auxiliary metadata and
   the result handle; it never rolls back the local move.

Trash listing prefers the server's list while the trash-listing capability
is available and falls back to the local trash otherwise. The capability is
marked unavailable when every known listing endpoint answers 404, and made
available again only by an explicit refresh.

CRITICAL: This module must have NO third-party dependencies.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from .background import BackgroundTask, BackgroundTasks
from .breaker import TRASH_LISTING, AvailabilityBreaker
from .errors import LocalWriteFailure, NoteNotFound, RemoteError, RemoteNotFound
from .models import ServerId
from .remote_client import DeleteOutcome, OutcomeKind, RemoteClient
from .store import LocalStore
from .timestamp_utils import parse_timestamp
from .validation import ValidationError, is_valid_server_id

logger = logging.getLogger(__name__)

__all__ = [
    "TrashStateMachine",
    "TrashResult",
    "BatchResult",
    "TrashListing",
    "SORT_FIELDS",
    "DEFAULT_RETENTION_DAYS",
]

DEFAULT_RETENTION_DAYS = 30

SORT_FIELDS = ("deleteTime", "createTime", "title", "wordCount")

_LOCAL_ERRORS = (LocalWriteFailure, NoteNotFound, ValidationError)


@dataclass
class TrashResult:
    """Result of one trash transition.

    success reflects the local phase and is final when the result is
    returned. The remote fields are filled in by the background leg; call
    wait() to block until it settles.
    """

    success: bool
    action: str
    local_id: str
    summary: str
    already: bool = False
    remote_attempted: bool = False
    remote_pending: bool = False
    remote_success: Optional[bool] = None
    outcome: Optional[DeleteOutcome] = None
    error: Optional[Exception] = None
    _task: Optional[BackgroundTask] = field(default=None, repr=False, compare=False)

    @property
    def message(self) -> str:
        if not self.success or not (self.remote_attempted or self.remote_pending):
            return self.summary
        if self.remote_pending:
            return f"{self.summary}, cloud sync pending (not logged in)"
        if self.remote_success is None:
            return f"{self.summary}, cloud sync pending"
        if self.remote_success:
            return f"{self.summary} and synced"
        return f"{self.summary}, cloud sync failed"

    def wait(self, timeout: Optional[float] = None) -> "TrashResult":
        """Block until the remote leg has settled (or timeout)."""
        if self._task is not None:
            self._task.wait(timeout)
        return self

    def record(self, outcome: DeleteOutcome) -> None:
        self.outcome = outcome
        self.remote_success = outcome.succeeded

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "action": self.action,
            "local_id": self.local_id,
            "message": self.message,
            "already": self.already,
            "remote_attempted": self.remote_attempted,
            "remote_success": self.remote_success,
            "outcome": self.outcome.kind.value if self.outcome else None,
            "error": str(self.error) if self.error else None,
        }


@dataclass
class BatchResult:
    """Aggregate of a batch transition. Counts are read live from results."""

    action: str
    results: List[TrashResult] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.results)

    @property
    def local_success_count(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def remote_success_count(self) -> int:
        return sum(1 for r in self.results if r.remote_success)

    @property
    def failed_ids(self) -> List[str]:
        return [r.local_id for r in self.results if not r.success]

    @property
    def success(self) -> bool:
        return self.local_success_count == self.total

    @property
    def message(self) -> str:
        text = f"{self.action}: {self.local_success_count}/{self.total} done locally"
        attempted = sum(1 for r in self.results if r.remote_attempted)
        if attempted:
            text += f", {self.remote_success_count}/{attempted} synced"
        return text

    def wait(self, timeout: Optional[float] = None) -> "BatchResult":
        for result in self.results:
            result.wait(timeout)
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action,
            "total": self.total,
            "local_success_count": self.local_success_count,
            "remote_success_count": self.remote_success_count,
            "failed_ids": self.failed_ids,
            "message": self.message,
            "results": [r.to_dict() for r in self.results],
        }


@dataclass
class TrashListing:
    """Trashed notes and where they came from ("remote" or "local")."""

    notes: List[Dict[str, Any]]
    source: str
    error: Optional[str] = None


def _sort_key(sort_by: str) -> Callable[[Dict[str, Any]], Any]:
    if sort_by in ("deleteTime", "createTime"):
        return lambda note: parse_timestamp(note.get(sort_by))
    if sort_by == "title":
        return lambda note: (note.get("title") or "").casefold()
    if sort_by == "wordCount":
        return lambda note: note.get("wordCount")
    raise ValidationError("sort_by", f"must be one of {', '.join(SORT_FIELDS)}")


def sort_notes(
    notes: List[Dict[str, Any]], sort_by: str = "deleteTime", descending: bool = True
) -> List[Dict[str, Any]]:
    """Sort notes by a field; notes missing the field go last either way."""
    key = _sort_key(sort_by)
    present = [n for n in notes if key(n) is not None]
    missing = [n for n in notes if key(n) is None]
    return sorted(present, key=key, reverse=descending) + missing


class TrashStateMachine:
    """Delete, restore and purge notes local-first.

    Args:
        store: Local store
        client: Remote client
        engine: Sync engine used for the resync after a restore (optional)
        tasks: Runner for the remote legs
        breaker: Availability breaker for the trash listing
        retention_days: Days a note stays in the trash before it expires
    """

    def __init__(
        self,
        store: LocalStore,
        client: RemoteClient,
        engine: Any = None,
        tasks: Optional[BackgroundTasks] = None,
        breaker: Optional[AvailabilityBreaker] = None,
        retention_days: int = DEFAULT_RETENTION_DAYS,
    ) -> None:
        self.store = store
        self.client = client
        self.engine = engine
        self.tasks = tasks or BackgroundTasks()
        self.breaker = breaker or AvailabilityBreaker()
        self.retention_days = retention_days

    # ===== Remote leg plumbing =====

    def _schedule(
        self,
        name: str,
        pending: List[Tuple[TrashResult, ServerId]],
        leg: Callable[[TrashResult, ServerId], None],
        after: Optional[Callable[[List[TrashResult]], None]] = None,
    ) -> None:
        """Run leg for each pending result on one background task."""
        if not pending:
            return
        if not self.client.has_token():
            for result, _ in pending:
                result.remote_pending = True
            logger.info(f"{name}: not logged in, {len(pending)} remote call(s) pending")
            return

        def run() -> None:
            for result, server_id in pending:
                try:
                    leg(result, server_id)
                except (RemoteError, LocalWriteFailure) as e:
                    logger.warning(f"{name} remote leg for {result.local_id} failed: {e}")
                    if result.remote_success is None:
                        result.remote_success = False
            if after is not None:
                after([result for result, _ in pending])

        for result, _ in pending:
            result.remote_attempted = True
        task = self.tasks.submit(name, run)
        for result, _ in pending:
            result._task = task

    def _confirm(self, result: TrashResult, outcome: DeleteOutcome, operation: str) -> None:
        result.record(outcome)
        if outcome.succeeded:
            self.store.clear_pending_remote(result.local_id, operation)
        else:
            logger.warning(f"Remote {operation} of {result.local_id} failed: {outcome.reason}")

    # ===== Delete =====

    def _delete_local(self, local_id: str) -> Tuple[TrashResult, Optional[ServerId]]:
        try:
            note, already = self.store.move_to_trash(local_id)
        except _LOCAL_ERRORS as e:
            logger.error(f"Could not move {local_id} to trash: {e}")
            return TrashResult(False, "delete", local_id, f"Delete failed: {e}", error=e), None
        if already:
            return TrashResult(True, "delete", local_id, "Already in trash", already=True), None
        server_id = note.get("serverId")
        return (
            TrashResult(True, "delete", local_id, "Moved to trash"),
            server_id if is_valid_server_id(server_id) else None,
        )

    def _delete_leg(self, result: TrashResult, server_id: ServerId) -> None:
        self._confirm(result, self.client.delete_note(server_id), "delete")

    def delete(self, local_id: str) -> TrashResult:
        """Move a note to the trash. Deleting a trashed note is a no-op."""
        return self.delete_many([local_id]).results[0]

    def delete_many(self, local_ids: Iterable[str]) -> BatchResult:
        batch = BatchResult("delete")
        pending = []
        for local_id in local_ids:
            result, server_id = self._delete_local(local_id)
            batch.results.append(result)
            if server_id is not None:
                pending.append((result, server_id))
        self._schedule("delete", pending, self._delete_leg)
        return batch

    # ===== Restore =====

    def _restore_local(self, local_id: str) -> Tuple[TrashResult, Optional[ServerId]]:
        try:
            note, already = self.store.restore_from_trash(local_id)
        except _LOCAL_ERRORS as e:
            logger.error(f"Could not restore {local_id}: {e}")
            return TrashResult(False, "restore", local_id, f"Restore failed: {e}", error=e), None
        if already:
            return TrashResult(True, "restore", local_id, "Already active", already=True), None
        server_id = note.get("serverId")
        return (
            TrashResult(True, "restore", local_id, "Restored"),
            server_id if is_valid_server_id(server_id) else None,
        )

    def _restore_leg(self, result: TrashResult, server_id: ServerId) -> None:
        outcome = self.client.restore_note(server_id)
        if outcome.kind is OutcomeKind.ALREADY_ABSENT:
            result.record(outcome)
            logger.info(f"{result.local_id} was purged on the server; keeping it local only")
            self.store.mark_remote_absent(result.local_id)
            return
        self._confirm(result, outcome, "restore")

    def _resync_after_restore(self, results: List[TrashResult]) -> None:
        if self.engine is None:
            return
        sync_result = self.engine.download_from_cloud(full=True)
        if not sync_result.success:
            logger.warning(f"Resync after restore did not complete: {sync_result.message}")

    def restore(self, local_id: str) -> TrashResult:
        """Move a note from the trash back to the active set."""
        return self.restore_many([local_id]).results[0]

    def restore_many(self, local_ids: Iterable[str]) -> BatchResult:
        batch = BatchResult("restore")
        pending = []
        for local_id in local_ids:
            result, server_id = self._restore_local(local_id)
            batch.results.append(result)
            if server_id is not None:
                pending.append((result, server_id))
        self._schedule("restore", pending, self._restore_leg, self._resync_after_restore)
        return batch

    # ===== Permanent delete =====

    def _purge_local(self, local_id: str) -> Tuple[TrashResult, Optional[ServerId]]:
        try:
            note = self.store.purge_from_trash(local_id)
        except _LOCAL_ERRORS as e:
            logger.error(f"Could not permanently delete {local_id}: {e}")
            return TrashResult(False, "purge", local_id, f"Permanent delete failed: {e}", error=e), None
        server_id = note.get("serverId")
        return (
            TrashResult(True, "purge", local_id, "Permanently deleted"),
            server_id if is_valid_server_id(server_id) else None,
        )

    def _purge_leg(self, result: TrashResult, server_id: ServerId) -> None:
        result.record(self.client.purge_note(server_id))
        if not result.remote_success:
            logger.warning(f"Remote purge of {result.local_id} failed: {result.outcome.reason}")

    def _refresh_after_purge(self, results: List[TrashResult]) -> None:
        if any(r.outcome is not None and r.outcome.succeeded for r in results):
            self._list_remote()

    def permanent_delete(self, local_id: str) -> TrashResult:
        """Delete a trashed note for good."""
        return self.permanent_delete_many([local_id]).results[0]

    def permanent_delete_many(self, local_ids: Iterable[str], action: str = "purge") -> BatchResult:
        batch = BatchResult(action)
        pending = []
        for local_id in local_ids:
            result, server_id = self._purge_local(local_id)
            batch.results.append(result)
            if server_id is not None:
                pending.append((result, server_id))
        self._schedule(action, pending, self._purge_leg, self._refresh_after_purge)
        return batch

    def empty_trash(self) -> BatchResult:
        """Permanently delete everything in the trash."""
        ids = [note["localId"] for note in self.store.get_trash()]
        return self.permanent_delete_many(ids, action="empty")

    # ===== Retention =====

    def days_in_trash(self, note: Dict[str, Any], now: Optional[datetime] = None) -> Optional[int]:
        deleted_at = parse_timestamp(note.get("deleteTime"))
        if deleted_at is None:
            return None
        now = now or datetime.now(timezone.utc)
        return max(0, (now - deleted_at).days)

    def days_remaining(self, note: Dict[str, Any], now: Optional[datetime] = None) -> Optional[int]:
        """Days until the note expires from the trash (0 when already expired)."""
        days = self.days_in_trash(note, now)
        if days is None:
            return None
        return max(0, self.retention_days - days)

    def purge_expired(self, now: Optional[datetime] = None) -> BatchResult:
        """Permanently delete trashed notes older than the retention window."""
        expired = self.store.get_expired_trash(self.retention_days, now)
        logger.info(f"{len(expired)} trashed note(s) past {self.retention_days} days")
        return self.permanent_delete_many([n["localId"] for n in expired], action="purge_expired")

    # ===== Listing =====

    def _list_remote(self) -> Optional[str]:
        """Mirror the server trash into the local trash.

        Returns:
            None on success, otherwise the reason the local trash was kept
        """
        if not self.breaker.is_available(TRASH_LISTING):
            return "trash listing unavailable on server"
        if not self.client.has_token():
            return "not logged in"
        try:
            server_notes = self.client.list_trash()
        except RemoteNotFound as e:
            self.breaker.trip(TRASH_LISTING)
            return str(e)
        except RemoteError as e:
            logger.warning(f"Could not list server trash: {e}")
            return str(e)
        try:
            self.store.replace_trash_from_server(server_notes)
        except LocalWriteFailure as e:
            logger.error(f"Could not store server trash: {e}")
            return str(e)
        return None

    def list_trash(self, sort_by: str = "deleteTime", descending: bool = True) -> TrashListing:
        """List trashed notes, from the server when possible.

        Never-synced notes in the local trash are always part of the list.
        """
        _sort_key(sort_by)
        error = self._list_remote()
        notes = sort_notes(self.store.get_trash(), sort_by, descending)
        return TrashListing(notes=notes, source="local" if error else "remote", error=error)

    def list_local(self, sort_by: str = "deleteTime", descending: bool = True) -> TrashListing:
        return TrashListing(notes=sort_notes(self.store.get_trash(), sort_by, descending), source="local")

    def refresh(self, sort_by: str = "deleteTime", descending: bool = True) -> TrashListing:
        """User-initiated refresh: re-enable the trash listing and list again."""
        self.breaker.reset(TRASH_LISTING)
        return self.list_trash(sort_by, descending)
