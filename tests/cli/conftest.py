"""Pytest fixtures for CLI tests.

Commands run in a subprocess (`python -m notesync`) against a temporary
config directory, the same way a user would run them.
"""

from __future__ import annotations

import json
import os
import subprocess
import sys
from pathlib import Path
from typing import Any, Callable, List

import pytest

SRC_DIR = Path(__file__).parent.parent.parent / "src"


def run_notesync(config_dir: Path, *args: str, input_text: str = None) -> subprocess.CompletedProcess:
    """Run the notesync CLI with a given config directory.

    Args:
        config_dir: Config directory passed with -d
        args: Command-line arguments after -d
        input_text: Text fed to stdin

    Returns:
        Completed process with text stdout and stderr
    """
    env = dict(os.environ)
    env["PYTHONPATH"] = os.pathsep.join(filter(None, [str(SRC_DIR), env.get("PYTHONPATH")]))
    return subprocess.run(
        [sys.executable, "-m", "notesync", "-d", str(config_dir), *args],
        capture_output=True,
        text=True,
        input=input_text,
        env=env,
        timeout=60,
    )


@pytest.fixture
def cli(test_config_dir: Path) -> Callable[..., subprocess.CompletedProcess]:
    """Run a command against the test config directory."""
    def runner(*args: str, input_text: str = None) -> subprocess.CompletedProcess:
        return run_notesync(test_config_dir, *args, input_text=input_text)
    return runner


@pytest.fixture
def cli_json(cli: Callable[..., subprocess.CompletedProcess]) -> Callable[..., Any]:
    """Run a command with --format json and parse stdout."""
    def runner(*args: str) -> Any:
        result = cli("--format", "json", *args)
        assert result.returncode in (0, 1), result.stderr
        return json.loads(result.stdout)
    return runner


@pytest.fixture
def note_ids(cli_json: Callable[..., Any]) -> List[str]:
    """Create three local notes and return their IDs."""
    return [cli_json("notes", "new", f"note number {i}", "--title", f"Note {i}")["localId"] for i in range(3)]
