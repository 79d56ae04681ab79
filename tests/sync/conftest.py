"""Pytest fixtures for sync integration tests.

This module provides fixtures for:
- Running the in-memory reference server on a free port
- Creating isolated client nodes (config, store, engine, trash) pointed at it
"""

from __future__ import annotations

import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Generator

import pytest
import requests

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))

from notesync.cli import Services
from notesync.config import Config
from notesync.server import ServerState, ServerThread, create_app, get_state

TEST_TOKEN = "test-token"
WAIT = 10


@dataclass
class RunningServer:
    """A reference server serving from a background thread."""

    thread: ServerThread
    state: ServerState

    @property
    def base_url(self) -> str:
        return self.thread.base_url

    def get(self, path: str, **kwargs) -> requests.Response:
        return requests.get(f"{self.base_url}{path}", headers=self.auth_headers(), timeout=5, **kwargs)

    def post(self, path: str, **kwargs) -> requests.Response:
        return requests.post(f"{self.base_url}{path}", headers=self.auth_headers(), timeout=5, **kwargs)

    def delete(self, path: str, **kwargs) -> requests.Response:
        return requests.delete(f"{self.base_url}{path}", headers=self.auth_headers(), timeout=5, **kwargs)

    @staticmethod
    def auth_headers() -> dict:
        return {"Authorization": f"Bearer {TEST_TOKEN}"}


def start_server(trash_listing_enabled: bool = True) -> RunningServer:
    app = create_app(token=TEST_TOKEN, trash_listing_enabled=trash_listing_enabled)
    thread = ServerThread(app)
    thread.start()
    return RunningServer(thread=thread, state=get_state(app))


@pytest.fixture
def server() -> Generator[RunningServer, None, None]:
    """Reference server with every endpoint enabled."""
    running = start_server()
    yield running
    running.thread.shutdown()


@pytest.fixture
def legacy_server() -> Generator[RunningServer, None, None]:
    """Reference server without a trash listing endpoint."""
    running = start_server(trash_listing_enabled=False)
    yield running
    running.thread.shutdown()


def create_node(base_dir: Path, name: str, base_url: str, token: str = TEST_TOKEN) -> Services:
    """Create a client node with its own config directory and store.

    Args:
        base_dir: Parent directory for node files
        name: Node directory name
        base_url: Server API base URL
        token: Bearer token, or "" for a logged-out node
    """
    config_dir = base_dir / name
    config_dir.mkdir(parents=True, exist_ok=True)
    config = Config(config_dir=config_dir)
    config.set("api_base_url", base_url)
    config.set_auth_token(token or None)
    return Services.from_config(config)


@pytest.fixture
def make_node(tmp_path: Path) -> Generator[Callable[..., Services], None, None]:
    """Factory for client nodes; stores are closed after the test."""
    nodes = []

    def factory(name: str, base_url: str, token: str = TEST_TOKEN) -> Services:
        node = create_node(tmp_path, name, base_url, token)
        nodes.append(node)
        return node

    yield factory
    for node in nodes:
        node.trash.tasks.wait_all(WAIT)
        node.store.close()


@pytest.fixture
def node(server: RunningServer, make_node: Callable[..., Services]) -> Services:
    """A logged-in client node pointed at the server."""
    return make_node("node_a", server.base_url)
