"""Reference server for notesync.

An in-memory Flask implementation of the server contract the remote client
talks to. It is used by the integration tests and for local development
(`notesync serve`). Nothing is persisted; restarting the server empties it.

Endpoints (all under /api/v1, all but /health require a bearer token when
the app is created with one):
    GET    /health                     Liveness check
    GET    /notes?lastSyncTime=<ts>    Notes changed after ts (all when absent)
    GET    /notes/<id>                 Single note
    POST   /notes/<id>/delete          Move to server trash
    POST   /notes/<id>/restore         Restore from server trash
    DELETE /notes/<id>/permanent       Delete for good
    GET    /notes/trash/list           Server trash (when trash listing is enabled)
    POST   /sync/upload                Upsert notes, tags and drafts
    GET    /sync/check-updates?since=  Whether anything changed after since
    GET    /sync/status                Counters and server time

Responses are wrapped as {"success": true, "data": ...}; errors as
{"success": false, "error": "..."} with a matching status code.
"""

from __future__ import annotations

import argparse
import functools
import logging
import threading
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from flask import Flask, Response, jsonify, request
from flask_cors import CORS
from werkzeug.serving import make_server

from .timestamp_utils import is_newer, now_timestamp, parse_timestamp
from .validation import ValidationError, is_valid_server_id, validate_note_payload

logger = logging.getLogger(__name__)

API_PREFIX = "/api/v1"
STATE_KEY = "NOTESYNC_STATE"


class ServerState:
    """In-memory data of the reference server.

    Attributes:
        notes: Notes keyed by integer server ID, including trashed ones
        tags: Tags keyed by name
        drafts: Drafts keyed by id
        requests: (method, path) of every request received, for inspection
    """

    def __init__(self, token: Optional[str] = None, trash_listing_enabled: bool = True) -> None:
        self.token = token
        self.trash_listing_enabled = trash_listing_enabled
        self.notes: Dict[int, Dict[str, Any]] = {}
        self.tags: Dict[str, Dict[str, Any]] = {}
        self.drafts: Dict[str, Dict[str, Any]] = {}
        self.requests: List[Tuple[str, str]] = []
        self.last_sync_time: Optional[str] = None
        self.lock = threading.RLock()
        self._next_id = 1

    def allocate_id(self, wanted: Any = None) -> int:
        """Get a server ID, reusing wanted when it is a free integer ID."""
        try:
            wanted_int = int(wanted) if is_valid_server_id(wanted) else None
        except (TypeError, ValueError):
            wanted_int = None
        if wanted_int is not None and wanted_int > 0 and wanted_int not in self.notes:
            self._next_id = max(self._next_id, wanted_int + 1)
            return wanted_int
        server_id = self._next_id
        self._next_id += 1
        return server_id

    def find(self, server_id: Any) -> Optional[Dict[str, Any]]:
        try:
            return self.notes.get(int(server_id))
        except (TypeError, ValueError):
            return None

    def find_by_local_id(self, local_id: Optional[str]) -> Optional[Dict[str, Any]]:
        if not local_id:
            return None
        for note in self.notes.values():
            if note.get("localId") == local_id:
                return note
        return None

    def count(self, path: str, method: str = "GET") -> int:
        """Number of requests received for a path (without the API prefix)."""
        return sum(1 for m, p in self.requests if m == method and p == path)


def get_state(app: Flask) -> ServerState:
    return app.config[STATE_KEY]


def ok(data: Any, status: int = 200) -> Tuple[Response, int]:
    return jsonify({"success": True, "data": data}), status


def fail(message: str, status: int) -> Tuple[Response, int]:
    return jsonify({"success": False, "error": message}), status


def api_endpoint(func: Callable) -> Callable:
    """Decorator for consistent API error handling.

    Catches ValidationError (400) and Exception (500) with proper
    JSON error responses and logging.
    """
    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except ValidationError as e:
            return fail(f"Invalid {e.field}: {e.message}", 400)
        except Exception as e:
            logger.error(f"Error in {func.__name__}: {e}")
            return fail(str(e), 500)
    return wrapper


def _changed_since(note: Dict[str, Any], since: Optional[str]) -> bool:
    reference = parse_timestamp(since)
    if reference is None:
        return True
    return is_newer(parse_timestamp(note.get("serverUpdateTime")), reference)


def create_app(token: Optional[str] = None, trash_listing_enabled: bool = True) -> Flask:
    """Create and configure the reference server application.

    Args:
        token: Bearer token every request must carry; None disables auth
        trash_listing_enabled: Serve the trash listing endpoint; when False
            every trash listing path answers 404 like an older server

    Returns:
        Configured Flask application
    """
    app = Flask(__name__)
    CORS(app)
    state = ServerState(token=token, trash_listing_enabled=trash_listing_enabled)
    app.config[STATE_KEY] = state

    @app.before_request
    def check_auth() -> Optional[Tuple[Response, int]]:
        path = request.path
        if path.startswith(API_PREFIX):
            path = path[len(API_PREFIX):]
        with state.lock:
            state.requests.append((request.method, path))
        if path == "/health" or request.method == "OPTIONS" or state.token is None:
            return None
        if request.headers.get("Authorization") != f"Bearer {state.token}":
            return fail("Unauthorized", 401)
        return None

    @app.errorhandler(404)
    def not_found(error: Any) -> Tuple[Response, int]:
        return fail("Not found", 404)

    @app.errorhandler(405)
    def method_not_allowed(error: Any) -> Tuple[Response, int]:
        return fail("Method not allowed", 405)

    @app.route(f"{API_PREFIX}/health", methods=["GET"])
    def health_check() -> Tuple[Response, int]:
        return ok({"status": "ok", "serverTime": now_timestamp()})

    # ===== Notes =====

    @app.route(f"{API_PREFIX}/notes", methods=["GET"])
    @api_endpoint
    def list_notes() -> Tuple[Response, int]:
        since = request.args.get("lastSyncTime")
        with state.lock:
            notes = [dict(n) for n in state.notes.values() if _changed_since(n, since)]
            return ok({"notes": notes, "lastSyncTime": now_timestamp()})

    @app.route(f"{API_PREFIX}/notes/trash/list", methods=["GET"])
    @api_endpoint
    def list_trash() -> Tuple[Response, int]:
        if not state.trash_listing_enabled:
            return fail("Not found", 404)
        with state.lock:
            notes = [dict(n) for n in state.notes.values() if n.get("isDeleted")]
            return ok({"notes": notes})

    @app.route(f"{API_PREFIX}/notes/<server_id>", methods=["GET"])
    @api_endpoint
    def get_note(server_id: str) -> Tuple[Response, int]:
        with state.lock:
            note = state.find(server_id)
            if note is None:
                return fail(f"Note {server_id} not found", 404)
            return ok({"note": dict(note)})

    @app.route(f"{API_PREFIX}/notes/<server_id>/delete", methods=["POST"])
    @api_endpoint
    def delete_note(server_id: str) -> Tuple[Response, int]:
        with state.lock:
            note = state.find(server_id)
            if note is None:
                return fail(f"Note {server_id} not found", 404)
            if not note.get("isDeleted"):
                now = now_timestamp()
                note.update(isDeleted=True, deleteTime=now, serverUpdateTime=now)
            return ok({"serverId": note["serverId"]})

    @app.route(f"{API_PREFIX}/notes/<server_id>/restore", methods=["POST"])
    @api_endpoint
    def restore_note(server_id: str) -> Tuple[Response, int]:
        with state.lock:
            note = state.find(server_id)
            if note is None:
                return fail(f"Note {server_id} not found", 404)
            note.pop("deleteTime", None)
            note["isDeleted"] = False
            note["serverUpdateTime"] = now_timestamp()
            return ok({"serverId": note["serverId"]})

    @app.route(f"{API_PREFIX}/notes/<server_id>/permanent", methods=["DELETE"])
    @api_endpoint
    def purge_note(server_id: str) -> Tuple[Response, int]:
        with state.lock:
            note = state.find(server_id)
            if note is None:
                return fail(f"Note {server_id} not found", 404)
            del state.notes[note["serverId"]]
            return ok({"serverId": note["serverId"]})

    # ===== Sync =====

    @app.route(f"{API_PREFIX}/sync/upload", methods=["POST"])
    @api_endpoint
    def upload() -> Tuple[Response, int]:
        payload = request.get_json(silent=True)
        if not isinstance(payload, dict):
            raise ValidationError("body", "must be a JSON object")

        results = []
        with state.lock:
            now = now_timestamp()
            for incoming in payload.get("notes") or []:
                validate_note_payload(incoming)
                existing = state.find(incoming.get("serverId")) or state.find_by_local_id(
                    incoming.get("localId")
                )
                note = dict(incoming)
                note.pop("isModified", None)
                note.pop("needsUpload", None)
                note.pop("isFromServer", None)
                note.pop("pendingRemote", None)
                if existing is not None:
                    note["serverId"] = existing["serverId"]
                    deleted_at = parse_timestamp(existing.get("deleteTime"))
                    if existing.get("isDeleted") and not is_newer(
                        parse_timestamp(note.get("updateTime")), deleted_at
                    ):
                        note["isDeleted"] = True
                        note["deleteTime"] = existing["deleteTime"]
                else:
                    note["serverId"] = state.allocate_id(incoming.get("serverId"))
                note.setdefault("isDeleted", False)
                note["serverUpdateTime"] = now
                state.notes[note["serverId"]] = note
                results.append({"localId": note.get("localId"), "serverId": note["serverId"]})

            for tag in payload.get("tags") or []:
                name = tag.get("name")
                if not name:
                    continue
                current = state.tags.get(name)
                if current is None or int(tag.get("useCount") or 0) > int(current.get("useCount") or 0):
                    state.tags[name] = dict(tag)

            for draft in payload.get("drafts") or []:
                draft_id = draft.get("id")
                current = state.drafts.get(draft_id)
                if draft_id and (
                    current is None
                    or not is_newer(
                        parse_timestamp(current.get("updateTime")),
                        parse_timestamp(draft.get("updateTime")),
                    )
                ):
                    state.drafts[draft_id] = dict(draft)

            state.last_sync_time = now
            logger.info(f"Upload: {len(results)} notes")
            return ok({"syncTime": now, "results": results})

    @app.route(f"{API_PREFIX}/sync/check-updates", methods=["GET"])
    @api_endpoint
    def check_updates() -> Tuple[Response, int]:
        since = request.args.get("since")
        with state.lock:
            has_updates = any(_changed_since(n, since) for n in state.notes.values())
            return ok({"hasUpdates": has_updates})

    @app.route(f"{API_PREFIX}/sync/status", methods=["GET"])
    @api_endpoint
    def sync_status() -> Tuple[Response, int]:
        with state.lock:
            trashed = sum(1 for n in state.notes.values() if n.get("isDeleted"))
            return ok({
                "noteCount": len(state.notes) - trashed,
                "trashCount": trashed,
                "tagCount": len(state.tags),
                "draftCount": len(state.drafts),
                "lastSyncTime": state.last_sync_time,
                "serverTime": now_timestamp(),
            })

    return app


class ServerThread(threading.Thread):
    """Serve an app from a background thread on 127.0.0.1.

    Port 0 picks a free port; the bound port is available as .port once
    the thread object is constructed.
    """

    def __init__(self, app: Flask, host: str = "127.0.0.1", port: int = 0) -> None:
        super().__init__(daemon=True)
        self.app = app
        self.server = make_server(host, port, app, threaded=True)
        self.host = host
        self.port = self.server.server_port

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}{API_PREFIX}"

    def run(self) -> None:
        logger.info(f"Reference server listening on {self.base_url}")
        self.server.serve_forever()

    def shutdown(self) -> None:
        self.server.shutdown()
        self.server.server_close()


def add_serve_subparser(subparsers: argparse._SubParsersAction) -> None:
    """Add serve subparser and its arguments.

    Args:
        subparsers: Parent subparsers object to add serve parser to
    """
    serve_parser = subparsers.add_parser(
        "serve",
        help="Start the in-memory reference server",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    serve_parser.add_argument(
        "--host", type=str, default="127.0.0.1", help="Host to bind to (default: 127.0.0.1)"
    )
    serve_parser.add_argument(
        "--port", type=int, default=3000, help="Port to bind to (default: 3000)"
    )
    serve_parser.add_argument(
        "--token", type=str, default=None, help="Bearer token clients must send"
    )
    serve_parser.add_argument(
        "--no-trash-listing",
        action="store_true",
        help="Answer 404 on the trash listing, like an older server",
    )
    serve_parser.add_argument("--debug", action="store_true", help="Enable debug mode")


def run(config_dir: Optional[Path], args: argparse.Namespace) -> int:
    """Run the reference server with given arguments.

    Returns:
        Exit code (0 for success)
    """
    logger.info("Starting notesync reference server")
    app = create_app(token=args.token, trash_listing_enabled=not args.no_trash_listing)
    app.run(host=args.host, port=args.port, debug=args.debug)
    return 0
