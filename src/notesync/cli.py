"""Command-line interface for notesync.

This module provides CLI commands for notes, sync and trash.

Commands:
    notes list|show|new|edit         Work with active notes
    sync status|now|upload|download|force|check|reset|resolve
    trash list|delete|restore|purge|empty|purge-expired|refresh
    config show|set                  Inspect or change settings
    serve                            Start the in-memory reference server

Trash commands report success as soon as the local change is stored. They
then wait for the cloud leg to settle so the message says whether it synced
(skip with --no-wait).
"""

from __future__ import annotations

import argparse
import json
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from .breaker import TRASH_LISTING
from .config import Config
from .conflicts import ResolutionChoice
from .errors import LocalWriteFailure, NoteNotFound
from .remote_client import RemoteClient
from .store import LocalStore
from .sync import SyncEngine, SyncResult
from .trash import SORT_FIELDS, BatchResult, TrashStateMachine
from .validation import ValidationError


@dataclass
class Services:
    """Everything a command may need, wired from one Config."""

    config: Config
    store: LocalStore
    client: RemoteClient
    engine: SyncEngine
    trash: TrashStateMachine

    @classmethod
    def from_config(cls, config: Config) -> "Services":
        store = LocalStore(config.get_store_file())
        client = RemoteClient.from_config(config)
        engine = SyncEngine(store, client)
        trash = TrashStateMachine(
            store,
            client,
            engine=engine,
            retention_days=config.get_trash_retention_days(),
        )
        return cls(config=config, store=store, client=client, engine=engine, trash=trash)

    def remote_wait_timeout(self) -> float:
        timeouts = self.config.get_timeouts()
        return float(timeouts["trash"] + timeouts["request"])


def print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False))


def format_note(note: Dict[str, Any], format_type: str = "text") -> str:
    """Format a single note for display.

    Args:
        note: Note dict from the local store
        format_type: Output format (text, json)

    Returns:
        Formatted note string
    """
    if format_type == "json":
        return json.dumps(note, indent=2, ensure_ascii=False)
    lines = [f"ID: {note['localId']}"]
    if note.get("serverId") is not None:
        lines.append(f"Server ID: {note['serverId']}")
    if note.get("title"):
        lines.append(f"Title: {note['title']}")
    lines.append(f"Created: {note.get('createTime')}")
    if note.get("updateTime"):
        lines.append(f"Modified: {note['updateTime']}")
    if note.get("deleteTime"):
        lines.append(f"Deleted: {note['deleteTime']}")
    if note.get("tags"):
        lines.append(f"Tags: {', '.join(note['tags'])}")
    if note.get("isModified"):
        lines.append("Status: modified, not uploaded")
    lines.append(f"\n{note.get('content', '')}")
    return "\n".join(lines)


def print_sync_result(result: SyncResult, args: argparse.Namespace) -> int:
    if args.format == "json":
        print_json(result.to_dict())
    else:
        print(result.message)
        for error in result.errors:
            if error != result.message:
                print(f"  - {error}")
    return 0 if result.success else 1


def print_trash_result(result: Any, args: argparse.Namespace) -> int:
    if args.format == "json":
        print_json(result.to_dict())
    elif isinstance(result, BatchResult):
        print(result.message)
        for item in result.results:
            print(f"  {item.local_id}: {item.message}")
    else:
        print(f"{result.local_id}: {result.message}")
    return 0 if result.success else 1


def _settle(services: Services, result: Any, args: argparse.Namespace) -> Any:
    if not getattr(args, "no_wait", False):
        result.wait(services.remote_wait_timeout())
    return result


# ===== notes =====


def cmd_notes_list(services: Services, args: argparse.Namespace) -> int:
    """List all active notes."""
    notes = services.store.get_notes()

    if args.format == "json":
        print_json(notes)
        return 0

    if not notes:
        print("No notes found.")
        return 0

    for i, note in enumerate(notes):
        if i > 0:
            print("\n" + "=" * 60 + "\n")
        content = note.get("content") or ""
        if len(content) > 100:
            content = content[:100] + "..."
        marker = " *" if note.get("isModified") else ""
        print(f"ID: {note['localId']} | Modified: {note.get('updateTime')}{marker}")
        if note.get("title"):
            print(f"Title: {note['title']}")
        print(content)
    return 0


def cmd_notes_show(services: Services, args: argparse.Namespace) -> int:
    """Show one note, active or trashed."""
    note = services.store.get_note(args.note_id) or services.store.get_trashed_note(args.note_id)
    if note is None:
        print(f"Error: Note {args.note_id} not found", file=sys.stderr)
        return 1
    print(format_note(note, args.format))
    return 0


def cmd_notes_new(services: Services, args: argparse.Namespace) -> int:
    """Create a new note."""
    content = args.content
    if content is None:
        content = sys.stdin.read()
    note = services.store.create_note(
        content=content,
        title=args.title or "",
        category=args.category,
        tags=args.tag or [],
    )
    if args.format == "json":
        print_json(note)
    else:
        print(f"Created note {note['localId']}")
    return 0


def cmd_notes_edit(services: Services, args: argparse.Namespace) -> int:
    """Edit an existing note."""
    fields: Dict[str, Any] = {}
    if args.content is not None:
        fields["content"] = args.content
    if args.title is not None:
        fields["title"] = args.title
    if args.tag is not None:
        fields["tags"] = args.tag
    if not fields:
        print("Error: Nothing to change. Use --content, --title or --tag.", file=sys.stderr)
        return 1
    note = services.store.update_note(args.note_id, **fields)
    if args.format == "json":
        print_json(note)
    else:
        print(f"Updated note {note['localId']}")
    return 0


# ===== sync =====


def cmd_sync_status(services: Services, args: argparse.Namespace) -> int:
    """Show local and server sync status."""
    status = services.engine.get_sync_status()
    listing = services.trash.breaker.status(TRASH_LISTING)
    status["trash_listing"] = listing

    if args.format == "json":
        print_json(status)
        return 0

    print(f"Status: {status['status']}")
    print(f"Last Sync: {status['last_sync_time'] or 'never'}")
    print(f"Logged In: {status['logged_in']}")
    print(f"Local Changes: {status['has_local_changes']}")
    server = status.get("server")
    if server:
        print(f"Server Notes: {server.get('noteCount')}")
        print(f"Server Trash: {server.get('trashCount')}")
    elif status.get("server_error"):
        print(f"Server: unreachable ({status['server_error']})")
    return 0


def cmd_sync_now(services: Services, args: argparse.Namespace) -> int:
    """Sync in whichever direction is needed."""
    result = services.engine.smart_sync()
    code = print_sync_result(result, args)
    if result.conflict and args.format != "json":
        print("Use 'sync force' or 'sync resolve <id> --keep local|remote'.")
    return code


def cmd_sync_upload(services: Services, args: argparse.Namespace) -> int:
    return print_sync_result(services.engine.upload_to_cloud(), args)


def cmd_sync_download(services: Services, args: argparse.Namespace) -> int:
    return print_sync_result(services.engine.download_from_cloud(full=args.full), args)


def cmd_sync_force(services: Services, args: argparse.Namespace) -> int:
    return print_sync_result(services.engine.force_sync(), args)


def cmd_sync_check(services: Services, args: argparse.Namespace) -> int:
    return print_sync_result(services.engine.check_updates(), args)


def cmd_sync_reset(services: Services, args: argparse.Namespace) -> int:
    """Forget the last sync time."""
    services.engine.reset_sync_status()
    if args.format == "json":
        print_json({"success": True, "message": "Sync status reset"})
    else:
        print("Sync status reset. The next sync is a full sync.")
    return 0


def cmd_sync_resolve(services: Services, args: argparse.Namespace) -> int:
    """Resolve a conflict on one note."""
    choice = ResolutionChoice.KEEP_LOCAL if args.keep == "local" else ResolutionChoice.KEEP_REMOTE
    return print_sync_result(services.engine.resolve_conflict(args.note_id, choice), args)


# ===== trash =====


def cmd_trash_list(services: Services, args: argparse.Namespace) -> int:
    """List trashed notes."""
    if args.local:
        listing = services.trash.list_local(args.sort, not args.asc)
    else:
        listing = services.trash.list_trash(args.sort, not args.asc)

    if args.format == "json":
        print_json({
            "source": listing.source,
            "error": listing.error,
            "notes": [
                dict(note, daysRemaining=services.trash.days_remaining(note))
                for note in listing.notes
            ],
        })
        return 0

    if listing.error:
        print(f"(showing local trash: {listing.error})")
    if not listing.notes:
        print("Trash is empty.")
        return 0
    for note in listing.notes:
        title = note.get("title") or (note.get("content") or "")[:40]
        remaining = services.trash.days_remaining(note)
        print(f"{note['localId']} | {title} | deleted {note.get('deleteTime')} | {remaining} days left")
    return 0


def cmd_trash_delete(services: Services, args: argparse.Namespace) -> int:
    """Move notes to the trash."""
    result = services.trash.delete_many(args.note_ids)
    return print_trash_result(_settle(services, _single(result), args), args)


def cmd_trash_restore(services: Services, args: argparse.Namespace) -> int:
    """Restore notes from the trash."""
    result = services.trash.restore_many(args.note_ids)
    return print_trash_result(_settle(services, _single(result), args), args)


def cmd_trash_purge(services: Services, args: argparse.Namespace) -> int:
    """Permanently delete trashed notes."""
    result = services.trash.permanent_delete_many(args.note_ids)
    return print_trash_result(_settle(services, _single(result), args), args)


def cmd_trash_empty(services: Services, args: argparse.Namespace) -> int:
    """Permanently delete everything in the trash."""
    return print_trash_result(_settle(services, services.trash.empty_trash(), args), args)


def cmd_trash_purge_expired(services: Services, args: argparse.Namespace) -> int:
    """Permanently delete trashed notes past the retention window."""
    return print_trash_result(_settle(services, services.trash.purge_expired(), args), args)


def cmd_trash_refresh(services: Services, args: argparse.Namespace) -> int:
    """Re-enable the server trash listing and list again."""
    listing = services.trash.refresh()
    if args.format == "json":
        print_json({"source": listing.source, "error": listing.error, "count": len(listing.notes)})
    else:
        print(f"Trash refreshed from {listing.source}: {len(listing.notes)} note(s)")
        if listing.error:
            print(f"  ({listing.error})")
    return 0


def _single(batch: BatchResult) -> Any:
    """Unwrap a one-item batch so single-note output stays simple."""
    return batch.results[0] if batch.total == 1 else batch


# ===== config =====


def cmd_config_show(services: Services, args: argparse.Namespace) -> int:
    data = services.config.as_dict()
    if args.format == "json":
        print_json(data)
    else:
        for key in sorted(data):
            print(f"{key}: {data[key]}")
    return 0


def cmd_config_set(services: Services, args: argparse.Namespace) -> int:
    services.config.set(args.key, args.value)
    print(f"{args.key} updated")
    return 0


# ===== parser =====


def add_cli_subparsers(subparsers: argparse._SubParsersAction) -> None:
    """Add the notes, sync, trash and config command groups.

    Args:
        subparsers: Parent subparsers object
    """
    # notes
    notes_parser = subparsers.add_parser("notes", help="Work with active notes")
    notes_sub = notes_parser.add_subparsers(dest="notes_command", help="Notes commands")
    notes_sub.add_parser("list", help="List all notes")

    show_parser = notes_sub.add_parser("show", help="Show details of a note")
    show_parser.add_argument("note_id", help="Local note ID")

    new_parser = notes_sub.add_parser("new", help="Create a new note")
    new_parser.add_argument("content", nargs="?", default=None, help="Note content (default: stdin)")
    new_parser.add_argument("--title", default=None, help="Note title")
    new_parser.add_argument("--category", default=None, help="Category slug")
    new_parser.add_argument("--tag", action="append", default=None, help="Tag name (repeatable)")

    edit_parser = notes_sub.add_parser("edit", help="Edit a note")
    edit_parser.add_argument("note_id", help="Local note ID")
    edit_parser.add_argument("--content", default=None, help="New content")
    edit_parser.add_argument("--title", default=None, help="New title")
    edit_parser.add_argument("--tag", action="append", default=None, help="Replace tags (repeatable)")

    # sync
    sync_parser = subparsers.add_parser("sync", help="Cloud sync commands")
    sync_sub = sync_parser.add_subparsers(dest="sync_command", help="Sync commands")
    sync_sub.add_parser("status", help="Show sync status")
    sync_sub.add_parser("now", help="Sync in whichever direction is needed")
    sync_sub.add_parser("upload", help="Upload local data")
    download_parser = sync_sub.add_parser("download", help="Download and merge server changes")
    download_parser.add_argument("--full", action="store_true", help="Fetch every server note, not just changes")
    sync_sub.add_parser("force", help="Download then upload, ignoring conflicts")
    sync_sub.add_parser("check", help="Check the server for updates")
    sync_sub.add_parser("reset", help="Forget the last sync time")
    resolve_parser = sync_sub.add_parser("resolve", help="Resolve a conflict on one note")
    resolve_parser.add_argument("note_id", help="Local note ID")
    resolve_parser.add_argument(
        "--keep", choices=["local", "remote"], required=True, help="Which version to keep"
    )

    # trash
    trash_parser = subparsers.add_parser("trash", help="Trash commands")
    trash_sub = trash_parser.add_subparsers(dest="trash_command", help="Trash commands")

    list_parser = trash_sub.add_parser("list", help="List trashed notes")
    list_parser.add_argument("--sort", choices=SORT_FIELDS, default="deleteTime", help="Sort field")
    list_parser.add_argument("--asc", action="store_true", help="Ascending order")
    list_parser.add_argument("--local", action="store_true", help="Do not contact the server")

    for name, help_text in (
        ("delete", "Move notes to the trash"),
        ("restore", "Restore notes from the trash"),
        ("purge", "Permanently delete trashed notes"),
    ):
        op_parser = trash_sub.add_parser(name, help=help_text)
        op_parser.add_argument("note_ids", nargs="+", help="Local note IDs")
        op_parser.add_argument("--no-wait", action="store_true", help="Do not wait for cloud sync")

    for name, help_text in (
        ("empty", "Permanently delete everything in the trash"),
        ("purge-expired", "Permanently delete notes past the retention window"),
    ):
        op_parser = trash_sub.add_parser(name, help=help_text)
        op_parser.add_argument("--no-wait", action="store_true", help="Do not wait for cloud sync")

    trash_sub.add_parser("refresh", help="Retry the server trash listing and list again")

    # config
    config_parser = subparsers.add_parser("config", help="Show or change settings")
    config_sub = config_parser.add_subparsers(dest="config_command", help="Config commands")
    config_sub.add_parser("show", help="Show settings")
    set_parser = config_sub.add_parser("set", help="Change a setting")
    set_parser.add_argument("key", help="Setting name")
    set_parser.add_argument("value", help="New value")


COMMANDS = {
    ("notes", "list"): cmd_notes_list,
    ("notes", "show"): cmd_notes_show,
    ("notes", "new"): cmd_notes_new,
    ("notes", "edit"): cmd_notes_edit,
    ("sync", "status"): cmd_sync_status,
    ("sync", "now"): cmd_sync_now,
    ("sync", "upload"): cmd_sync_upload,
    ("sync", "download"): cmd_sync_download,
    ("sync", "force"): cmd_sync_force,
    ("sync", "check"): cmd_sync_check,
    ("sync", "reset"): cmd_sync_reset,
    ("sync", "resolve"): cmd_sync_resolve,
    ("trash", "list"): cmd_trash_list,
    ("trash", "delete"): cmd_trash_delete,
    ("trash", "restore"): cmd_trash_restore,
    ("trash", "purge"): cmd_trash_purge,
    ("trash", "empty"): cmd_trash_empty,
    ("trash", "purge-expired"): cmd_trash_purge_expired,
    ("trash", "refresh"): cmd_trash_refresh,
    ("config", "show"): cmd_config_show,
    ("config", "set"): cmd_config_set,
}


def run(config_dir: Optional[Path], args: argparse.Namespace) -> int:
    """Run a CLI command with given arguments.

    Args:
        config_dir: Custom configuration directory or None for default
        args: Parsed command-line arguments

    Returns:
        Exit code (0 for success, 1 for error)
    """
    group = args.command
    sub = getattr(args, f"{group}_command", None)
    if not sub:
        print(f"Error: No {group} command specified. Use '{group} --help'.", file=sys.stderr)
        return 1
    handler = COMMANDS.get((group, sub))
    if handler is None:
        print(f"Error: Unknown {group} command '{sub}'", file=sys.stderr)
        return 1

    config = Config(config_dir=config_dir)
    try:
        services = Services.from_config(config)
    except LocalWriteFailure as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    try:
        return handler(services, args)
    except ValidationError as e:
        print(f"Error: Invalid {e.field} - {e.message}", file=sys.stderr)
        return 1
    except (NoteNotFound, LocalWriteFailure) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        services.store.close()
