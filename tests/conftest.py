"""Pytest fixtures for notesync tests.

This module provides fixtures for test configuration and local stores.
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Generator

import pytest

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from notesync.config import Config
from notesync.store import LocalStore


@pytest.fixture
def test_config_dir(tmp_path: Path) -> Path:
    """Create temporary config directory for tests.

    Args:
        tmp_path: pytest temporary directory fixture

    Returns:
        Path to temporary config directory.
    """
    config_dir = tmp_path / "notesync_test"
    config_dir.mkdir(parents=True, exist_ok=True)
    return config_dir


@pytest.fixture
def test_config(test_config_dir: Path) -> Config:
    """Create test configuration.

    Args:
        test_config_dir: Temporary config directory

    Returns:
        Config instance for testing.
    """
    return Config(config_dir=test_config_dir)


@pytest.fixture
def store_path(test_config_dir: Path) -> Path:
    """Get path for the test store file."""
    return test_config_dir / "store.json"


@pytest.fixture
def store(store_path: Path) -> Generator[LocalStore, None, None]:
    """Create an empty file-backed local store.

    Yields:
        Empty LocalStore instance.
    """
    local_store = LocalStore(store_path)
    yield local_store
    local_store.close()


@pytest.fixture
def memory_store() -> LocalStore:
    """Create a non-persistent local store."""
    return LocalStore(":memory:")
