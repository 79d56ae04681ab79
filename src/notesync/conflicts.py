"""Conflict resolution for notesync.

This module merges a local record set with a server record set using
per-record timestamps (last writer wins), with one protection: a note that
was edited locally and not yet uploaded is never replaced by a server copy
that is not strictly newer.

Matching:
- Notes are matched by localId, falling back to serverId when the server
  copy has no localId (records created through another client).
- Tags are matched by name; useCount takes the larger side.
- Drafts are matched by id; the newer updateTime wins.

All functions are pure: inputs are never mutated and the output depends only
on the inputs.

CRITICAL: This module must have NO third-party dependencies.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from .models import FROM_SERVER_FLAG, NEEDS_UPLOAD_FLAG
from .timestamp_utils import is_newer, parse_timestamp, record_timestamp
from .validation import is_valid_server_id

logger = logging.getLogger(__name__)

__all__ = ["ResolutionChoice", "MergeResult", "merge", "merge_notes", "merge_tags", "merge_drafts"]


class ResolutionChoice(Enum):
    """How to resolve a single-note conflict."""

    KEEP_LOCAL = "keep_local"
    KEEP_REMOTE = "keep_remote"


@dataclass
class MergeResult:
    """Result of merging a local set with a server set.

    Attributes:
        notes: Merged notes, local order first, then server-only notes
        tags: Merged tags
        drafts: Merged drafts
        from_server: Server-only notes inserted
        server_wins: Notes replaced by a newer server copy
        needs_upload: Notes kept locally and flagged for upload
    """

    notes: List[Dict[str, Any]] = field(default_factory=list)
    tags: List[Dict[str, Any]] = field(default_factory=list)
    drafts: List[Dict[str, Any]] = field(default_factory=list)
    from_server: int = 0
    server_wins: int = 0
    needs_upload: int = 0

    def as_data(self) -> Dict[str, List[Dict[str, Any]]]:
        """Get the merged collections keyed the way the local store keys them."""
        return {"notes": self.notes, "tags": self.tags, "drafts": self.drafts}


def _server_key(note: Dict[str, Any]) -> Optional[str]:
    sid = note.get("serverId")
    return str(sid) if is_valid_server_id(sid) else None


def merge_notes(
    local_notes: List[Dict[str, Any]],
    server_notes: List[Dict[str, Any]],
    result: Optional[MergeResult] = None,
) -> List[Dict[str, Any]]:
    """Merge note lists. Counters are recorded on result when given."""
    result = result if result is not None else MergeResult()

    merged: Dict[str, Dict[str, Any]] = {}
    order: List[str] = []
    by_server_id: Dict[str, str] = {}
    for note in local_notes:
        local_id = note["localId"]
        merged[local_id] = dict(note)
        order.append(local_id)
        key = _server_key(note)
        if key:
            by_server_id[key] = local_id

    matched = set()
    for server_note in server_notes:
        key = _server_key(server_note)
        local_id = server_note.get("localId")
        if local_id not in merged:
            local_id = by_server_id.get(key) if key else None

        if local_id is None or local_id not in merged:
            new_id = server_note.get("localId") or (f"server-{key}" if key else None)
            if new_id is None:
                logger.warning("Skipping server note with neither localId nor serverId")
                continue
            if new_id in merged:
                continue
            note = dict(server_note)
            note["localId"] = new_id
            note["isModified"] = False
            note[FROM_SERVER_FLAG] = True
            merged[new_id] = note
            order.append(new_id)
            matched.add(new_id)
            if key:
                by_server_id[key] = new_id
            result.from_server += 1
            continue

        if local_id in matched:
            logger.debug(f"Ignoring duplicate server copy of note {local_id}")
            continue
        matched.add(local_id)

        local = merged[local_id]
        local_time = record_timestamp(local)
        server_time = record_timestamp(server_note)
        if is_newer(server_time, local_time) and not local.get("isModified"):
            note = dict(server_note)
            note["localId"] = local_id
            if is_valid_server_id(local.get("serverId")):
                note["serverId"] = local["serverId"]
            note["isModified"] = False
            note.pop(NEEDS_UPLOAD_FLAG, None)
            merged[local_id] = note
            result.server_wins += 1
        else:
            if not is_valid_server_id(local.get("serverId")) and key:
                local["serverId"] = server_note["serverId"]
            local[NEEDS_UPLOAD_FLAG] = True

    for local_id in order:
        note = merged[local_id]
        if local_id not in matched:
            note[NEEDS_UPLOAD_FLAG] = True
        if note.get(NEEDS_UPLOAD_FLAG):
            result.needs_upload += 1

    return [merged[local_id] for local_id in order]


def merge_tags(
    local_tags: List[Dict[str, Any]], server_tags: List[Dict[str, Any]]
) -> List[Dict[str, Any]]:
    """Merge tags by name keeping the larger use count."""
    merged: Dict[str, Dict[str, Any]] = {}
    for tag in local_tags:
        merged[tag["name"]] = dict(tag)
    for tag in server_tags:
        name = tag.get("name")
        if not name:
            continue
        if name not in merged:
            merged[name] = dict(tag)
            continue
        merged[name]["useCount"] = max(
            int(merged[name].get("useCount") or 0), int(tag.get("useCount") or 0)
        )
    return list(merged.values())


def merge_drafts(
    local_drafts: List[Dict[str, Any]], server_drafts: List[Dict[str, Any]]
) -> List[Dict[str, Any]]:
    """Merge drafts by id; the newer updateTime wins, local wins ties."""
    merged: Dict[str, Dict[str, Any]] = {}
    for draft in local_drafts:
        merged[draft["id"]] = dict(draft)
    for draft in server_drafts:
        draft_id = draft.get("id")
        if not draft_id:
            continue
        local = merged.get(draft_id)
        if local is None or is_newer(
            parse_timestamp(draft.get("updateTime")), parse_timestamp(local.get("updateTime"))
        ):
            merged[draft_id] = dict(draft)
    return list(merged.values())


def merge(local_set: Dict[str, Any], server_set: Dict[str, Any]) -> MergeResult:
    """Merge a local data set with a server data set.

    Args:
        local_set: Dict with notes, tags, drafts lists (missing keys are empty)
        server_set: Same shape, as received from the server

    Returns:
        MergeResult with merged collections and counters
    """
    result = MergeResult()
    result.notes = merge_notes(local_set.get("notes") or [], server_set.get("notes") or [], result)
    result.tags = merge_tags(local_set.get("tags") or [], server_set.get("tags") or [])
    result.drafts = merge_drafts(local_set.get("drafts") or [], server_set.get("drafts") or [])
    logger.debug(
        f"Merged {len(result.notes)} notes: from_server={result.from_server}, "
        f"server_wins={result.server_wins}, needs_upload={result.needs_upload}"
    )
    return result
