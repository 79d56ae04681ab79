"""Data models for notesync.

The local store and the wire protocol both keep notes as JSON-serializable
dicts using the server's camelCase field names. The dataclasses here are
typed, immutable views over those dicts for code that wants attribute
access (CLI output, trash listings).

Note IDs are UUID7 hex strings generated on this device.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Tuple, Union

from uuid6 import uuid7

from .validation import is_valid_server_id

ServerId = Union[int, str]

# Merge annotations written by the conflict resolver
FROM_SERVER_FLAG = "isFromServer"
NEEDS_UPLOAD_FLAG = "needsUpload"

# Fields that mark a record as living in the trash collection
TRASH_FIELDS = ("deleteTime", "isDeleted", "status")


class NoteState(Enum):
    """Lifecycle states of a note."""

    ACTIVE = "active"
    TRASHED = "trashed"
    PURGED = "purged"


def new_local_id() -> str:
    """Generate a new client-side note identifier."""
    return uuid7().hex


@dataclass(frozen=True)
class Note:
    """A user-authored note.

    Attributes:
        local_id: Client-generated identifier, primary key on this device
        server_id: Identifier assigned by the server on first upload
        title: Note title
        content: Note body
        category: Category slug
        tags: Tag names attached to the note
        images: Image references (opaque)
        voices: Voice recording references (opaque)
        word_count: Cached word count
        create_time: ISO-8601 creation time
        update_time: ISO-8601 modification time, authority for conflicts
        is_modified: Local edit not yet confirmed uploaded
        last_sync_time: Last reconciliation involving this record
        delete_time: Set while the note is in the trash
    """

    local_id: str
    server_id: Optional[ServerId] = None
    title: str = ""
    content: str = ""
    category: Optional[str] = None
    tags: Tuple[str, ...] = ()
    images: Tuple[Any, ...] = ()
    voices: Tuple[Any, ...] = ()
    word_count: int = 0
    create_time: Optional[str] = None
    update_time: Optional[str] = None
    is_modified: bool = False
    last_sync_time: Optional[str] = None
    delete_time: Optional[str] = None

    @property
    def has_server_id(self) -> bool:
        return is_valid_server_id(self.server_id)

    @property
    def state(self) -> NoteState:
        return NoteState.TRASHED if self.delete_time else NoteState.ACTIVE

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Note":
        """Build a Note from a stored or wire dict."""
        return cls(
            local_id=data["localId"],
            server_id=data.get("serverId"),
            title=data.get("title") or "",
            content=data.get("content") or "",
            category=data.get("category"),
            tags=tuple(data.get("tags") or ()),
            images=tuple(data.get("images") or ()),
            voices=tuple(data.get("voices") or ()),
            word_count=int(data.get("wordCount") or 0),
            create_time=data.get("createTime"),
            update_time=data.get("updateTime"),
            is_modified=bool(data.get("isModified", False)),
            last_sync_time=data.get("lastSyncTime"),
            delete_time=data.get("deleteTime"),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the stored/wire dict form, omitting unset optionals."""
        data: Dict[str, Any] = {
            "localId": self.local_id,
            "title": self.title,
            "content": self.content,
            "category": self.category,
            "tags": list(self.tags),
            "images": list(self.images),
            "voices": list(self.voices),
            "wordCount": self.word_count,
            "createTime": self.create_time,
            "updateTime": self.update_time,
            "isModified": self.is_modified,
        }
        if self.server_id is not None:
            data["serverId"] = self.server_id
        if self.last_sync_time:
            data["lastSyncTime"] = self.last_sync_time
        if self.delete_time:
            data["deleteTime"] = self.delete_time
            data["isDeleted"] = True
        return data


@dataclass(frozen=True)
class Tag:
    """A tag with a monotonic usage counter. Identity is the name."""

    name: str
    use_count: int = 0
    create_time: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Tag":
        return cls(
            name=data["name"],
            use_count=int(data.get("useCount") or 0),
            create_time=data.get("createTime"),
        )


def count_words(text: str) -> int:
    """Count words the way the note editor does: CJK chars plus latin words."""
    count = 0
    in_word = False
    for ch in text:
        if "一" <= ch <= "鿿":
            count += 1
            in_word = False
        elif ch.isalnum():
            if not in_word:
                count += 1
            in_word = True
        else:
            in_word = False
    return count
