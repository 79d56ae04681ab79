"""Test helper functions for notesync tests.

This module provides builders for note, tag and draft dicts with
deterministic IDs and timestamps.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

# Fixed timestamps, oldest first
T0 = "2024-01-01T10:00:00.000Z"
T1 = "2024-01-01T11:00:00.000Z"
T2 = "2024-01-01T12:00:00.000Z"
T3 = "2024-01-01T13:00:00.000Z"


def local_id(n: int) -> str:
    """Deterministic local ID for test note number n."""
    return f"0190000000007000800000000000{n:04d}"


def make_note(
    n: int,
    update_time: str = T1,
    server_id: Optional[Any] = None,
    is_modified: bool = False,
    **fields: Any,
) -> Dict[str, Any]:
    """Build a note dict as the local store keeps it."""
    note: Dict[str, Any] = {
        "localId": local_id(n),
        "title": f"Note {n}",
        "content": f"Content of note {n}",
        "category": None,
        "tags": [],
        "images": [],
        "voices": [],
        "wordCount": 4,
        "createTime": T0,
        "updateTime": update_time,
        "isModified": is_modified,
    }
    if server_id is not None:
        note["serverId"] = server_id
    note.update(fields)
    return note


def make_server_note(n: int, server_id: Any, update_time: str = T1, **fields: Any) -> Dict[str, Any]:
    """Build a note dict as the server sends it."""
    note = make_note(n, update_time=update_time, server_id=server_id, **fields)
    note.pop("isModified")
    return note


def make_tag(name: str, use_count: int = 1, create_time: str = T0) -> Dict[str, Any]:
    return {"name": name, "useCount": use_count, "createTime": create_time}


def make_draft(draft_id: str, update_time: str = T1, **fields: Any) -> Dict[str, Any]:
    draft = {
        "id": draft_id,
        "title": f"Draft {draft_id}",
        "content": "",
        "createTime": T0,
        "updateTime": update_time,
    }
    draft.update(fields)
    return draft
