"""Configuration management for notesync.

This module handles loading and saving application configuration to/from
a JSON file. The config directory can be customized via CLI argument.

CRITICAL: This module must have NO third-party dependencies.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Optional

from .validation import ValidationError

__all__ = ["Config", "DEFAULT_CONFIG"]

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "config.json"

DEFAULT_CONFIG: Dict[str, Any] = {
    "api_base_url": "http://127.0.0.1:3000/api/v1",
    "auth_token": None,
    "store_file": None,  # Resolved to <config_dir>/store.json
    "request_timeout": 30,
    "trash_timeout": 10,
    "check_timeout": 5,
    "trash_retention_days": 30,
    "sync_interval_seconds": 300,
}

_INT_KEYS = frozenset([
    "request_timeout",
    "trash_timeout",
    "check_timeout",
    "trash_retention_days",
    "sync_interval_seconds",
])


class Config:
    """Manages application configuration stored in JSON format.

    Attributes:
        config_dir: Path to the configuration directory
        config_file: Path to the JSON configuration file
    """

    def __init__(self, config_dir: Optional[Path] = None) -> None:
        """Initialize configuration manager.

        Args:
            config_dir: Custom config directory path. If None, uses ~/.config/notesync/
        """
        if config_dir is None:
            config_dir = Path.home() / ".config" / "notesync"
        self.config_dir = Path(config_dir)
        self.config_dir.mkdir(parents=True, exist_ok=True)
        self.config_file = self.config_dir / CONFIG_FILENAME
        self._data: Dict[str, Any] = self._load()

    def _load(self) -> Dict[str, Any]:
        """Load config from disk, creating it with defaults if missing."""
        data = dict(DEFAULT_CONFIG)
        data["store_file"] = str(self.config_dir / "store.json")

        if not self.config_file.exists():
            self._write(data)
            return data

        try:
            with open(self.config_file, "r", encoding="utf-8") as f:
                loaded = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Could not read {self.config_file}: {e}. Using defaults.")
            return data

        if not isinstance(loaded, dict):
            logger.warning(f"Ignoring malformed config in {self.config_file}")
            return data

        data.update(loaded)
        return data

    def _write(self, data: Dict[str, Any]) -> None:
        """Write config atomically."""
        fd, temp_path = tempfile.mkstemp(dir=self.config_dir, prefix=".config_")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, sort_keys=True)
            os.replace(temp_path, self.config_file)
        except Exception:
            if os.path.exists(temp_path):
                os.unlink(temp_path)
            raise

    def get(self, key: str, default: Any = None) -> Any:
        """Get a configuration value."""
        value = self._data.get(key)
        return value if value is not None else default

    def set(self, key: str, value: Any) -> None:
        """Set a configuration value and save to file.

        Raises:
            ValidationError: If an integer setting gets a non-positive value
        """
        if key in _INT_KEYS:
            try:
                value = int(value)
            except (TypeError, ValueError):
                raise ValidationError(key, "must be an integer")
            if value <= 0:
                raise ValidationError(key, "must be positive")
        self._data[key] = value
        self._write(self._data)

    def get_config_dir(self) -> Path:
        """Get the configuration directory path."""
        return self.config_dir

    def as_dict(self) -> Dict[str, Any]:
        """Get a copy of the whole configuration with the token masked."""
        data = dict(self._data)
        if data.get("auth_token"):
            data["auth_token"] = "***"
        return data

    # ===== Remote Configuration =====

    def get_api_base_url(self) -> str:
        """Get the server base URL without a trailing slash."""
        return str(self.get("api_base_url", DEFAULT_CONFIG["api_base_url"])).rstrip("/")

    def get_auth_token(self) -> Optional[str]:
        """Get the bearer token, or None when not logged in."""
        return self.get("auth_token") or None

    def set_auth_token(self, token: Optional[str]) -> None:
        """Store or clear the bearer token."""
        self.set("auth_token", token or None)

    def get_timeouts(self) -> Dict[str, int]:
        """Get remote call timeouts in seconds, keyed by call class."""
        return {
            "request": int(self.get("request_timeout", DEFAULT_CONFIG["request_timeout"])),
            "trash": int(self.get("trash_timeout", DEFAULT_CONFIG["trash_timeout"])),
            "check": int(self.get("check_timeout", DEFAULT_CONFIG["check_timeout"])),
        }

    # ===== Local Configuration =====

    def get_store_file(self) -> Path:
        """Get the path of the local store JSON file."""
        return Path(self.get("store_file", str(self.config_dir / "store.json")))

    def get_trash_retention_days(self) -> int:
        """Get how many days trashed notes are kept before expiring."""
        return int(self.get("trash_retention_days", DEFAULT_CONFIG["trash_retention_days"]))

    def get_sync_interval(self) -> int:
        """Get the periodic sync interval in seconds."""
        return int(self.get("sync_interval_seconds", DEFAULT_CONFIG["sync_interval_seconds"]))
