"""Remote client for the notesync server.

Thin request/response wrapper over the server's note, trash and sync
endpoints. Every request carries a bearer token from a provider callable and
a per-call-class timeout. Transport problems are raised as typed errors from
notesync.errors; the trash endpoints convert them into a DeleteOutcome so
callers never have to match on error messages.

CRITICAL: This module must have NO third-party dependencies.
"""

from __future__ import annotations

import json
import logging
import socket
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from .config import Config
from .errors import (
    NotAuthenticated,
    RemoteError,
    RemoteNotFound,
    RemoteOtherFailure,
    RemoteUnreachable,
)
from .models import ServerId
from .validation import is_valid_server_id

logger = logging.getLogger(__name__)

__all__ = [
    "RemoteClient",
    "DeleteOutcome",
    "OutcomeKind",
    "TRASH_LIST_PATHS",
    "DEFAULT_TIMEOUTS",
]

# Known trash-listing endpoints, tried in order
TRASH_LIST_PATHS = ("/notes/trash", "/notes/trash/list", "/trash")

DEFAULT_TIMEOUTS = {"request": 30, "trash": 10, "check": 5}


class OutcomeKind(Enum):
    DELETED = "deleted"
    RESTORED = "restored"
    ALREADY_ABSENT = "already_absent"
    FAILED = "failed"


@dataclass(frozen=True)
class DeleteOutcome:
    """Result of a remote delete, restore or purge.

    ALREADY_ABSENT means the server answered 404, which is the desired end
    state for an idempotent call and counts as success.
    """

    kind: OutcomeKind
    reason: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.kind is not OutcomeKind.FAILED

    @classmethod
    def failed(cls, reason: str) -> "DeleteOutcome":
        return cls(OutcomeKind.FAILED, reason)


def normalize_note(note: Dict[str, Any]) -> Dict[str, Any]:
    """Map the server's record shape onto the local one.

    Older server builds send the identifier as "id" instead of "serverId".
    """
    note = dict(note)
    if "serverId" not in note and is_valid_server_id(note.get("id")):
        note["serverId"] = note.pop("id")
    return note


class RemoteClient:
    """Client for the notesync REST API.

    Args:
        base_url: API base URL, e.g. http://127.0.0.1:3000/api/v1
        token_provider: Callable returning the bearer token or None
        timeouts: Seconds per call class: "request", "trash", "check"
    """

    def __init__(
        self,
        base_url: str,
        token_provider: Callable[[], Optional[str]],
        timeouts: Optional[Dict[str, int]] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.token_provider = token_provider
        self.timeouts = dict(DEFAULT_TIMEOUTS)
        if timeouts:
            self.timeouts.update(timeouts)

    @classmethod
    def from_config(cls, config: Config) -> "RemoteClient":
        """Create a client using the configured base URL, token and timeouts."""
        return cls(config.get_api_base_url(), config.get_auth_token, config.get_timeouts())

    def has_token(self) -> bool:
        """Check whether a bearer credential is available."""
        return bool(self.token_provider())

    # ===== Transport =====

    def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        data: Optional[Dict[str, Any]] = None,
        timeout: Optional[int] = None,
    ) -> Any:
        """Make an authenticated JSON request and return the unwrapped payload.

        Responses shaped {success, data} are unwrapped to data.

        Raises:
            NotAuthenticated: No token, or the server answered 401/403
            RemoteNotFound: The server answered 404
            RemoteUnreachable: Connection failure or timeout
            RemoteOtherFailure: Any other HTTP error or malformed response
        """
        token = self.token_provider()
        if not token:
            raise NotAuthenticated("Not logged in")

        url = f"{self.base_url}{path}"
        if params:
            query = {k: v for k, v in params.items() if v is not None}
            if query:
                url = f"{url}?{urllib.parse.urlencode(query)}"

        headers = {"Authorization": f"Bearer {token}", "Accept": "application/json"}
        body = None
        if data is not None:
            body = json.dumps(data).encode("utf-8")
            headers["Content-Type"] = "application/json"
        request = urllib.request.Request(url, data=body, method=method, headers=headers)

        try:
            response = urllib.request.urlopen(request, timeout=timeout or self.timeouts["request"])
            raw = response.read()
        except urllib.error.HTTPError as e:
            payload = self._error_payload(e)
            message = f"HTTP {e.code}: {payload.get('error') or e.reason}"
            if e.code == 404:
                raise RemoteNotFound(message, url, payload) from e
            if e.code in (401, 403):
                raise NotAuthenticated(message, url) from e
            raise RemoteOtherFailure(message, url, e.code) from e
        except urllib.error.URLError as e:
            raise RemoteUnreachable(f"Connection failed to {url}: {e.reason}", url) from e
        except (socket.timeout, TimeoutError, ConnectionError) as e:
            raise RemoteUnreachable(f"Request to {url} failed: {e}", url) from e

        try:
            decoded = json.loads(raw.decode("utf-8")) if raw else {}
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise RemoteOtherFailure(f"Malformed response from {url}: {e}", url) from e

        if isinstance(decoded, dict) and "success" in decoded:
            if not decoded["success"]:
                error = decoded.get("error") or decoded.get("message") or "request failed"
                raise RemoteOtherFailure(f"Server error: {error}", url)
            return decoded.get("data") if decoded.get("data") is not None else {}
        return decoded

    @staticmethod
    def _error_payload(error: urllib.error.HTTPError) -> Dict[str, Any]:
        try:
            body = error.read().decode("utf-8")
            payload = json.loads(body) if body else {}
        except (OSError, ValueError, AttributeError):
            return {}
        return payload if isinstance(payload, dict) else {}

    # ===== Sync endpoints =====

    def fetch_notes(self, last_sync_time: Optional[str]) -> Tuple[List[Dict[str, Any]], Optional[str]]:
        """Get notes updated after last_sync_time (all notes when None).

        Returns:
            Tuple of (notes, server lastSyncTime)
        """
        data = self._request("GET", "/notes", params={"lastSyncTime": last_sync_time})
        notes = [normalize_note(n) for n in (data.get("notes") or [])]
        return notes, data.get("lastSyncTime")

    def upload(
        self,
        notes: List[Dict[str, Any]],
        tags: List[Dict[str, Any]],
        drafts: List[Dict[str, Any]],
        last_sync_time: Optional[str],
    ) -> Tuple[Optional[str], Dict[str, ServerId]]:
        """Upload the full local data set.

        Returns:
            Tuple of (server syncTime, mapping of localId to assigned serverId)
        """
        data = self._request(
            "POST",
            "/sync/upload",
            data={
                "notes": notes,
                "tags": tags,
                "drafts": drafts,
                "lastSyncTime": last_sync_time,
            },
        )
        assigned = {}
        for item in data.get("results") or []:
            local_id = item.get("localId")
            server_id = item.get("serverId", item.get("id"))
            if local_id and is_valid_server_id(server_id):
                assigned[local_id] = server_id
        return data.get("syncTime"), assigned

    def check_updates(self, since: Optional[str]) -> bool:
        """Ask the server whether anything changed after since."""
        data = self._request(
            "GET",
            "/sync/check-updates",
            params={"since": since},
            timeout=self.timeouts["check"],
        )
        return bool(data.get("hasUpdates"))

    def get_note(self, server_id: ServerId) -> Dict[str, Any]:
        """Get a single note by server ID."""
        data = self._request("GET", f"/notes/{server_id}")
        note = data.get("note", data) if isinstance(data, dict) else {}
        return normalize_note(note)

    def get_sync_status(self) -> Dict[str, Any]:
        return self._request("GET", "/sync/status", timeout=self.timeouts["check"])

    def health(self) -> Dict[str, Any]:
        return self._request("GET", "/health", timeout=self.timeouts["check"])

    # ===== Trash endpoints =====

    def _trash_call(
        self, method: str, path: str, server_id: Any, success: OutcomeKind
    ) -> DeleteOutcome:
        if not is_valid_server_id(server_id):
            return DeleteOutcome.failed(f"invalid server id {server_id!r}")
        try:
            self._request(method, path.format(server_id), timeout=self.timeouts["trash"])
        except RemoteNotFound:
            return DeleteOutcome(OutcomeKind.ALREADY_ABSENT)
        except RemoteError as e:
            logger.warning(f"{method} {path.format(server_id)} failed: {e}")
            return DeleteOutcome.failed(str(e))
        return DeleteOutcome(success)

    def delete_note(self, server_id: ServerId) -> DeleteOutcome:
        """Move a note to the server trash."""
        return self._trash_call("POST", "/notes/{}/delete", server_id, OutcomeKind.DELETED)

    def restore_note(self, server_id: ServerId) -> DeleteOutcome:
        """Restore a note from the server trash."""
        return self._trash_call("POST", "/notes/{}/restore", server_id, OutcomeKind.RESTORED)

    def purge_note(self, server_id: ServerId) -> DeleteOutcome:
        """Delete a note from the server for good."""
        return self._trash_call("DELETE", "/notes/{}/permanent", server_id, OutcomeKind.DELETED)

    def list_trash(self) -> List[Dict[str, Any]]:
        """Get the server trash, trying each known endpoint in order.

        A 404 whose body still carries a notes list is used as a payload.

        Raises:
            RemoteNotFound: Every endpoint answered 404 without a usable payload
            RemoteError: Any other failure, raised from the first endpoint that hit it
        """
        for path in TRASH_LIST_PATHS:
            try:
                data = self._request("GET", path, timeout=self.timeouts["trash"])
            except RemoteNotFound as e:
                notes = (e.payload or {}).get("notes")
                if isinstance(notes, list):
                    return [normalize_note(n) for n in notes]
                logger.debug(f"Trash listing not found at {path}")
                continue
            if isinstance(data, list):
                return [normalize_note(n) for n in data]
            return [normalize_note(n) for n in (data.get("notes") or [])]
        raise RemoteNotFound("No trash listing endpoint available", self.base_url)
