"""Local store for notesync.

The store is a single JSON document holding the active notes, the trash,
tags, drafts and the sync metadata. It is owned exclusively by this device.
All methods return JSON-serializable copies (dicts, lists, primitives), so
callers can never mutate the store behind its back.

Every read-modify-write runs inside one transaction under a re-entrant lock
and is persisted atomically (temp file + rename) before the in-memory state
is swapped. A failed write leaves both the file and the in-memory state as
they were and raises LocalWriteFailure.

CRITICAL: This module must have NO third-party dependencies beyond uuid6.
"""

from __future__ import annotations

import copy
import json
import logging
import os
import tempfile
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

from .errors import LocalWriteFailure, NoteNotFound
from .models import (
    FROM_SERVER_FLAG,
    NEEDS_UPLOAD_FLAG,
    TRASH_FIELDS,
    count_words,
    new_local_id,
)
from .timestamp_utils import now_timestamp, parse_timestamp
from .validation import ValidationError, is_valid_server_id, validate_local_id, validate_note_payload

logger = logging.getLogger(__name__)

__all__ = ["LocalStore", "MEMORY", "PENDING_REMOTE_FIELD", "REMOTE_ABSENT_FIELD"]

MEMORY = ":memory:"

NOTES_KEY = "notes"
TRASH_KEY = "trash"
TAGS_KEY = "tags"
DRAFTS_KEY = "drafts"
SYNC_CONFIG_KEY = "syncConfig"

# Auxiliary metadata written by the best-effort remote legs
PENDING_REMOTE_FIELD = "pendingRemote"
# Set on a restored note the server had already purged; such a note is
# never uploaded again
REMOTE_ABSENT_FIELD = "remoteAbsent"

_EDITABLE_FIELDS = ("title", "content", "category", "tags", "images", "voices")


def _empty_document() -> Dict[str, Any]:
    return {
        NOTES_KEY: [],
        TRASH_KEY: [],
        TAGS_KEY: [],
        DRAFTS_KEY: [],
        SYNC_CONFIG_KEY: {"lastSyncTime": None, "syncStatus": "idle", "updatedAt": None},
    }


def _index(records: List[Dict[str, Any]], key: str = "localId") -> Dict[Any, Dict[str, Any]]:
    return {r[key]: r for r in records if r.get(key) is not None}


def _find(records: List[Dict[str, Any]], local_id: str) -> int:
    for i, record in enumerate(records):
        if record.get("localId") == local_id:
            return i
    return -1


def _server_ids(records: List[Dict[str, Any]]) -> set:
    return {str(r["serverId"]) for r in records if is_valid_server_id(r.get("serverId"))}


class LocalStore:
    """Persisted, keyed collection of notes plus a trash collection.

    Args:
        path: Path of the JSON file, or ":memory:" for a non-persistent store
    """

    def __init__(self, path: Union[Path, str]) -> None:
        self.path: Optional[Path] = None if str(path) == MEMORY else Path(path)
        self._lock = threading.RLock()
        self._data = self._load()
        logger.debug(f"Opened local store at {path}")

    # ===== Persistence =====

    def _load(self) -> Dict[str, Any]:
        """Load the document, creating an empty one if the file is missing.

        Raises:
            LocalWriteFailure: If the file exists but cannot be read or parsed
        """
        data = _empty_document()
        if self.path is None or not self.path.exists():
            return data
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                loaded = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise LocalWriteFailure(f"Cannot read local store {self.path}: {e}") from e
        if not isinstance(loaded, dict):
            raise LocalWriteFailure(f"Local store {self.path} is not a JSON object")
        data.update(loaded)
        return data

    def _write_file(self, data: Dict[str, Any]) -> None:
        """Write the document atomically."""
        assert self.path is not None
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, temp_path = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}_")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, ensure_ascii=False)
                f.flush()
                os.fsync(f.fileno())
            os.replace(temp_path, self.path)
        except Exception:
            if os.path.exists(temp_path):
                os.unlink(temp_path)
            raise

    def _persist(self, data: Dict[str, Any]) -> None:
        if self.path is None:
            return
        try:
            self._write_file(data)
        except (OSError, TypeError, ValueError) as e:
            logger.error(f"Failed to write local store {self.path}: {e}")
            raise LocalWriteFailure(f"Failed to write local store: {e}") from e

    @contextmanager
    def _transaction(self) -> Iterator[Dict[str, Any]]:
        """Yield a working copy; commit it only if the block and the write succeed."""
        with self._lock:
            draft = copy.deepcopy(self._data)
            yield draft
            draft[SYNC_CONFIG_KEY] = draft.get(SYNC_CONFIG_KEY) or {}
            self._persist(draft)
            self._data = draft

    def _read(self, key: str) -> Any:
        with self._lock:
            return copy.deepcopy(self._data.get(key))

    def close(self) -> None:
        """Release the store. Data is already durable after every write."""
        logger.debug(f"Closed local store at {self.path or MEMORY}")

    # ===== Reads =====

    def get_notes(self) -> List[Dict[str, Any]]:
        """Get all active notes."""
        return self._read(NOTES_KEY) or []

    def get_trash(self) -> List[Dict[str, Any]]:
        """Get all trashed notes."""
        return self._read(TRASH_KEY) or []

    def get_tags(self) -> List[Dict[str, Any]]:
        return self._read(TAGS_KEY) or []

    def get_drafts(self) -> List[Dict[str, Any]]:
        return self._read(DRAFTS_KEY) or []

    def get_local_data(self) -> Dict[str, List[Dict[str, Any]]]:
        """Get a consistent snapshot of everything that syncs."""
        with self._lock:
            return {
                NOTES_KEY: self.get_notes(),
                TAGS_KEY: self.get_tags(),
                DRAFTS_KEY: self.get_drafts(),
            }

    def get_note(self, local_id: str) -> Optional[Dict[str, Any]]:
        """Get an active note by local ID."""
        with self._lock:
            i = _find(self._data[NOTES_KEY], local_id)
            return copy.deepcopy(self._data[NOTES_KEY][i]) if i >= 0 else None

    def get_trashed_note(self, local_id: str) -> Optional[Dict[str, Any]]:
        """Get a trashed note by local ID."""
        with self._lock:
            i = _find(self._data[TRASH_KEY], local_id)
            return copy.deepcopy(self._data[TRASH_KEY][i]) if i >= 0 else None

    def find_by_server_id(self, server_id: Any) -> Optional[Dict[str, Any]]:
        """Find a note in either collection by its server ID."""
        if not is_valid_server_id(server_id):
            return None
        with self._lock:
            for key in (NOTES_KEY, TRASH_KEY):
                for note in self._data[key]:
                    if str(note.get("serverId")) == str(server_id):
                        return copy.deepcopy(note)
        return None

    def get_sync_config(self) -> Dict[str, Any]:
        """Get the persisted sync metadata."""
        return self._read(SYNC_CONFIG_KEY) or {}

    # ===== Note editing =====

    def create_note(
        self,
        content: str = "",
        title: str = "",
        category: Optional[str] = None,
        tags: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        """Create a new active note and bump the use count of its tags.

        Returns:
            The stored note dict
        """
        now = now_timestamp()
        note = {
            "localId": new_local_id(),
            "title": title,
            "content": content,
            "category": category,
            "tags": list(tags or []),
            "images": [],
            "voices": [],
            "wordCount": count_words(content),
            "createTime": now,
            "updateTime": now,
            "isModified": True,
        }
        validate_note_payload(note)
        with self._transaction() as data:
            data[NOTES_KEY].append(note)
            self._bump_tags(data, note["tags"], now)
        return copy.deepcopy(note)

    def update_note(self, local_id: str, **fields: Any) -> Dict[str, Any]:
        """Apply a local edit to an active note.

        Only title, content, category, tags, images and voices are editable.

        Raises:
            NoteNotFound: If the note is not in the active collection
            ValidationError: If a field is not editable or has a bad value
        """
        local_id = validate_local_id(local_id)
        for name in fields:
            if name not in _EDITABLE_FIELDS:
                raise ValidationError(name, "is not an editable field")

        now = now_timestamp()
        with self._transaction() as data:
            i = _find(data[NOTES_KEY], local_id)
            if i < 0:
                raise NoteNotFound(local_id)
            note = data[NOTES_KEY][i]
            new_tags = [t for t in fields.get("tags", []) if t not in note.get("tags", [])]
            note.update(fields)
            validate_note_payload(note)
            note["wordCount"] = count_words(note.get("content") or "")
            note["updateTime"] = now
            note["isModified"] = True
            self._bump_tags(data, new_tags, now)
            return copy.deepcopy(note)

    def save_draft(self, draft: Dict[str, Any]) -> Dict[str, Any]:
        """Insert or replace a draft by its id."""
        now = now_timestamp()
        draft = dict(draft)
        draft.setdefault("id", new_local_id())
        draft.setdefault("createTime", now)
        draft["updateTime"] = now
        with self._transaction() as data:
            drafts = [d for d in data[DRAFTS_KEY] if d.get("id") != draft["id"]]
            drafts.append(draft)
            data[DRAFTS_KEY] = drafts
        return copy.deepcopy(draft)

    @staticmethod
    def _bump_tags(data: Dict[str, Any], names: List[str], now: str) -> None:
        by_name = _index(data[TAGS_KEY], "name")
        for name in names:
            if name in by_name:
                by_name[name]["useCount"] = int(by_name[name].get("useCount") or 0) + 1
            else:
                tag = {"name": name, "useCount": 1, "createTime": now}
                data[TAGS_KEY].append(tag)
                by_name[name] = tag

    # ===== Trash transitions =====

    def move_to_trash(self, local_id: str) -> Tuple[Dict[str, Any], bool]:
        """Move a note from the active collection to the trash.

        Returns:
            Tuple of (trashed note, already_trashed)

        Raises:
            NoteNotFound: If the note is in neither collection
            LocalWriteFailure: If the store cannot be written
        """
        local_id = validate_local_id(local_id)
        with self._transaction() as data:
            i = _find(data[NOTES_KEY], local_id)
            if i < 0:
                j = _find(data[TRASH_KEY], local_id)
                if j >= 0:
                    return copy.deepcopy(data[TRASH_KEY][j]), True
                raise NoteNotFound(local_id)

            note = data[NOTES_KEY].pop(i)
            note["deleteTime"] = now_timestamp()
            note["isDeleted"] = True
            note["status"] = "deleted"
            note.pop(NEEDS_UPLOAD_FLAG, None)
            if is_valid_server_id(note.get("serverId")):
                note[PENDING_REMOTE_FIELD] = "delete"
            data[TRASH_KEY] = [n for n in data[TRASH_KEY] if n.get("localId") != local_id]
            data[TRASH_KEY].append(note)
            return copy.deepcopy(note), False

    def restore_from_trash(self, local_id: str) -> Tuple[Dict[str, Any], bool]:
        """Move a note from the trash back to the active collection.

        Clears the trash markers, bumps updateTime and flags the note as
        modified so the next upload carries it.

        Returns:
            Tuple of (restored note, already_active)

        Raises:
            NoteNotFound: If the note is in neither collection
            LocalWriteFailure: If the store cannot be written
        """
        local_id = validate_local_id(local_id)
        with self._transaction() as data:
            j = _find(data[TRASH_KEY], local_id)
            if j < 0:
                i = _find(data[NOTES_KEY], local_id)
                if i >= 0:
                    return copy.deepcopy(data[NOTES_KEY][i]), True
                raise NoteNotFound(local_id, "trash")

            note = data[TRASH_KEY].pop(j)
            for name in TRASH_FIELDS:
                note.pop(name, None)
            note.pop(PENDING_REMOTE_FIELD, None)
            note["updateTime"] = now_timestamp()
            note["isModified"] = True
            if is_valid_server_id(note.get("serverId")):
                note[PENDING_REMOTE_FIELD] = "restore"
            data[NOTES_KEY] = [n for n in data[NOTES_KEY] if n.get("localId") != local_id]
            data[NOTES_KEY].append(note)
            return copy.deepcopy(note), False

    def purge_from_trash(self, local_id: str) -> Dict[str, Any]:
        """Remove a note from the trash for good.

        Raises:
            NoteNotFound: If the note is not in the trash
            LocalWriteFailure: If the store cannot be written
        """
        local_id = validate_local_id(local_id)
        with self._transaction() as data:
            j = _find(data[TRASH_KEY], local_id)
            if j < 0:
                raise NoteNotFound(local_id, "trash")
            return data[TRASH_KEY].pop(j)

    def clear_pending_remote(self, local_id: str, operation: str) -> bool:
        """Record that a best-effort remote leg has been confirmed.

        Only clears the marker if it still refers to the same operation, so a
        late response cannot erase the marker of a newer transition.

        Returns:
            True if a marker was cleared
        """
        with self._transaction() as data:
            for key in (NOTES_KEY, TRASH_KEY):
                i = _find(data[key], local_id)
                if i >= 0 and data[key][i].get(PENDING_REMOTE_FIELD) == operation:
                    del data[key][i][PENDING_REMOTE_FIELD]
                    return True
        return False

    def mark_remote_absent(self, local_id: str) -> bool:
        """Record that the server no longer has a restored note.

        The note stays active locally with its serverId, but is left out of
        every later upload so the server does not get it back.

        Returns:
            True if an active note was marked
        """
        with self._transaction() as data:
            i = _find(data[NOTES_KEY], local_id)
            if i < 0:
                return False
            note = data[NOTES_KEY][i]
            note[REMOTE_ABSENT_FIELD] = True
            if note.get(PENDING_REMOTE_FIELD) == "restore":
                del note[PENDING_REMOTE_FIELD]
            return True

    def get_expired_trash(
        self, retention_days: int, now: Optional[datetime] = None
    ) -> List[Dict[str, Any]]:
        """Get trashed notes whose retention window has elapsed."""
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(days=retention_days)
        expired = []
        for note in self.get_trash():
            deleted_at = parse_timestamp(note.get("deleteTime"))
            if deleted_at is not None and deleted_at <= cutoff:
                expired.append(note)
        return expired

    def replace_trash_from_server(self, server_notes: List[Dict[str, Any]]) -> int:
        """Make the local trash mirror the server's authoritative trash list.

        Local-only notes (no server ID) and notes whose remote delete has not
        been confirmed yet are kept. Server entries for notes that are active
        locally are ignored, so a pending restore is never undone.

        Returns:
            Number of notes in the trash afterwards
        """
        with self._transaction() as data:
            active_ids = {n["localId"] for n in data[NOTES_KEY]}
            active_sids = _server_ids(data[NOTES_KEY])
            local_by_sid = {
                str(n["serverId"]): n
                for n in data[TRASH_KEY]
                if is_valid_server_id(n.get("serverId"))
            }

            new_trash: List[Dict[str, Any]] = []
            seen_sids = set()
            for server_note in server_notes:
                sid = server_note.get("serverId")
                if not is_valid_server_id(sid):
                    continue
                sid_key = str(sid)
                existing = local_by_sid.get(sid_key)
                local_id = (existing or {}).get("localId") or server_note.get("localId") or f"server-{sid}"
                if sid_key in active_sids or local_id in active_ids or sid_key in seen_sids:
                    continue
                note = dict(server_note)
                note["localId"] = local_id
                note["isDeleted"] = True
                note["deleteTime"] = (
                    server_note.get("deleteTime")
                    or (existing or {}).get("deleteTime")
                    or now_timestamp()
                )
                note.pop(FROM_SERVER_FLAG, None)
                new_trash.append(note)
                seen_sids.add(sid_key)

            for note in data[TRASH_KEY]:
                sid = note.get("serverId")
                if not is_valid_server_id(sid):
                    new_trash.append(note)
                elif str(sid) not in seen_sids and note.get(PENDING_REMOTE_FIELD) == "delete":
                    new_trash.append(note)

            data[TRASH_KEY] = new_trash
            return len(new_trash)

    # ===== Sync support =====

    def apply_merge(
        self,
        snapshot: Dict[str, List[Dict[str, Any]]],
        merged: Dict[str, List[Dict[str, Any]]],
        last_sync_time: Optional[str] = None,
    ) -> None:
        """Persist a merge result computed from an earlier snapshot.

        Trash operations and local edits may have landed while the download
        was in flight. At whole-record granularity:
        - records trashed or purged since the snapshot stay out of the active set
        - records edited since the snapshot keep the newer local version
        - records created since the snapshot are kept

        Args:
            snapshot: The get_local_data() result the merge was computed from
            merged: Dict with notes, tags, drafts from the conflict resolver
            last_sync_time: Stamped on every merged note when given
        """
        with self._transaction() as data:
            trash_ids = {n["localId"] for n in data[TRASH_KEY]}
            trash_sids = _server_ids(data[TRASH_KEY])
            current = _index(data[NOTES_KEY])
            before = _index(snapshot.get(NOTES_KEY, []))

            notes: List[Dict[str, Any]] = []
            placed = set()
            for record in merged.get(NOTES_KEY, []):
                local_id = record["localId"]
                sid = record.get("serverId")
                if local_id in trash_ids or (is_valid_server_id(sid) and str(sid) in trash_sids):
                    continue
                if local_id in before and local_id not in current:
                    # Trashed and purged while in flight
                    continue
                now_rec = current.get(local_id)
                if now_rec is not None and local_id in before and now_rec != before[local_id]:
                    kept = dict(now_rec)
                    if not is_valid_server_id(kept.get("serverId")) and is_valid_server_id(sid):
                        kept["serverId"] = sid
                    notes.append(kept)
                else:
                    record = dict(record)
                    if last_sync_time:
                        record["lastSyncTime"] = last_sync_time
                    notes.append(record)
                placed.add(local_id)

            for local_id, record in current.items():
                if local_id not in placed and local_id not in before:
                    notes.append(record)

            data[NOTES_KEY] = notes

            tags = {t["name"]: dict(t) for t in merged.get(TAGS_KEY, [])}
            for tag in data[TAGS_KEY]:
                if tag["name"] in tags:
                    tags[tag["name"]]["useCount"] = max(
                        int(tags[tag["name"]].get("useCount") or 0),
                        int(tag.get("useCount") or 0),
                    )
                else:
                    tags[tag["name"]] = tag
            data[TAGS_KEY] = list(tags.values())

            drafts = {d["id"]: d for d in merged.get(DRAFTS_KEY, []) if d.get("id")}
            before_drafts = _index(snapshot.get(DRAFTS_KEY, []), "id")
            for draft in data[DRAFTS_KEY]:
                draft_id = draft.get("id")
                if draft_id not in before_drafts or draft != before_drafts[draft_id]:
                    drafts[draft_id] = draft
            data[DRAFTS_KEY] = list(drafts.values())

    def mark_uploaded(
        self,
        uploaded: List[Dict[str, Any]],
        assigned_ids: Dict[str, Any],
        sync_time: Optional[str],
    ) -> int:
        """Record a confirmed upload.

        Adopts server IDs for notes that had none, and clears isModified and
        needsUpload on notes that were not edited again during the upload.

        Args:
            uploaded: Snapshot of the notes that were sent
            assigned_ids: Mapping of localId to the serverId the server assigned
            sync_time: Server-reported sync timestamp

        Returns:
            Number of notes whose modified flag was cleared
        """
        sent = _index(uploaded)
        cleared = 0
        with self._transaction() as data:
            for key in (NOTES_KEY, TRASH_KEY):
                for note in data[key]:
                    local_id = note.get("localId")
                    sid = assigned_ids.get(local_id)
                    if is_valid_server_id(sid) and not is_valid_server_id(note.get("serverId")):
                        note["serverId"] = sid
                    if key != NOTES_KEY or local_id not in sent:
                        continue
                    if note.get("updateTime") != sent[local_id].get("updateTime"):
                        continue
                    if note.get("isModified"):
                        cleared += 1
                    note["isModified"] = False
                    note.pop(NEEDS_UPLOAD_FLAG, None)
                    if sync_time:
                        note["lastSyncTime"] = sync_time
        return cleared

    def put_note(self, note: Dict[str, Any]) -> None:
        """Insert or replace an active note wholesale (last writer wins).

        A note that is currently trashed stays trashed.

        Raises:
            NoteNotFound: If the note is in the trash
        """
        local_id = validate_local_id(note.get("localId"))
        with self._transaction() as data:
            if _find(data[TRASH_KEY], local_id) >= 0:
                raise NoteNotFound(local_id, "notes")
            i = _find(data[NOTES_KEY], local_id)
            if i >= 0:
                data[NOTES_KEY][i] = dict(note)
            else:
                data[NOTES_KEY].append(dict(note))

    def mark_needs_upload(self, local_id: str) -> Dict[str, Any]:
        """Flag an active note as locally authoritative."""
        with self._transaction() as data:
            i = _find(data[NOTES_KEY], local_id)
            if i < 0:
                raise NoteNotFound(local_id)
            note = data[NOTES_KEY][i]
            note["isModified"] = True
            note["updateTime"] = now_timestamp()
            note[NEEDS_UPLOAD_FLAG] = True
            return copy.deepcopy(note)

    def save_sync_config(self, last_sync_time: Optional[str], sync_status: str) -> None:
        """Persist the sync metadata entry."""
        with self._transaction() as data:
            data[SYNC_CONFIG_KEY] = {
                "lastSyncTime": last_sync_time,
                "syncStatus": sync_status,
                "updatedAt": now_timestamp(),
            }
