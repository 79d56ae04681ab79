#!/usr/bin/env python3
"""notesync application entry point.

Usage:
    python -m notesync notes list                 # List active notes
    python -m notesync sync now                   # Sync with the server
    python -m notesync trash delete <id>          # Move a note to the trash
    python -m notesync serve --port 3000          # Start the reference server
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import List, NoReturn, Optional

from .cli import add_cli_subparsers
from .cli import run as run_cli
from .server import add_serve_subparser
from .server import run as run_server

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

logger = logging.getLogger(__name__)


def create_parser() -> argparse.ArgumentParser:
    """Create the unified argument parser.

    Returns:
        Configured ArgumentParser instance
    """
    parser = argparse.ArgumentParser(
        prog="notesync",
        description="notesync - local-first notes with cloud sync and a recoverable trash",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m notesync notes new "Buy milk" --tag shopping
  python -m notesync --format json trash list
  python -m notesync sync resolve <id> --keep remote
  python -m notesync config set auth_token <token>
""",
    )

    parser.add_argument(
        "-d", "--config-dir",
        type=Path,
        default=None,
        help="Custom configuration directory (default: ~/.config/notesync/)"
    )
    parser.add_argument(
        "--format",
        choices=["text", "json"],
        default="text",
        help="Output format (default: text)"
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable debug logging"
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")
    add_cli_subparsers(subparsers)
    add_serve_subparser(subparsers)
    return parser


def main(argv: Optional[List[str]] = None) -> NoReturn:
    """Main entry point for notesync.

    Parses arguments and dispatches to the CLI or the reference server.
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format=LOG_FORMAT,
    )

    if args.config_dir:
        logger.debug(f"Using custom config directory: {args.config_dir}")

    if args.command == "serve":
        exit_code = run_server(args.config_dir, args)
    elif args.command:
        exit_code = run_cli(args.config_dir, args)
    else:
        parser.print_help()
        exit_code = 1

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
