"""Availability breaker for optional remote capabilities.

Some servers do not implement every endpoint (older builds have no trash
listing). Once a capability is confirmed absent, further calls to it are
skipped and the local store is used instead, until the user explicitly
refreshes. Network failures never trip the breaker; only "not found on
every known endpoint" does.

Each engine or state machine owns its own breaker instance.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Optional

logger = logging.getLogger(__name__)

TRASH_LISTING = "trash_listing"


@dataclass
class CapabilityState:
    unavailable: bool = False
    trip_count: int = 0
    last_tripped_at: Optional[datetime] = None


class AvailabilityBreaker:
    """Per-capability unavailable flags."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._states: Dict[str, CapabilityState] = {}

    def _state(self, capability: str) -> CapabilityState:
        return self._states.setdefault(capability, CapabilityState())

    def is_available(self, capability: str) -> bool:
        """True unless the capability has been confirmed absent."""
        with self._lock:
            return not self._state(capability).unavailable

    def trip(self, capability: str) -> None:
        """Mark a capability as confirmed absent."""
        with self._lock:
            state = self._state(capability)
            if not state.unavailable:
                state.unavailable = True
                state.trip_count += 1
                state.last_tripped_at = datetime.now(timezone.utc)
                logger.info(f"Remote capability '{capability}' unavailable; using local data")

    def reset(self, capability: str) -> None:
        """Allow another attempt. Called only on explicit user refresh."""
        with self._lock:
            state = self._state(capability)
            if state.unavailable:
                logger.info(f"Resetting availability of '{capability}'")
            state.unavailable = False

    def status(self, capability: str) -> Dict[str, object]:
        """Get a display snapshot of a capability."""
        with self._lock:
            state = self._state(capability)
            return {
                "capability": capability,
                "available": not state.unavailable,
                "trip_count": state.trip_count,
                "last_tripped_at": state.last_tripped_at.isoformat() if state.last_tripped_at else None,
            }
