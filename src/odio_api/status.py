"""Adapter status record shared between the backend and its readers.

The status lives in a no-expiry cache under a single key.  Writers go
through ``StatusStore.update()`` which reads a copy, applies a mutation
and stores the result; readers get a copy from ``StatusStore.get()`` and
can never touch the stored record.
"""

import copy
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

from .cache import Cache

logger = logging.getLogger(__name__)

STATUS_KEY = "current"


@dataclass(frozen=True)
class KnownDevice:
    """A device BlueZ knows about on our adapter."""

    path: str
    address: str
    name: str
    connected: bool = False
    trusted: bool = False
    paired: bool = False

    def to_dict(self) -> dict:
        return {
            "path": self.path,
            "address": self.address,
            "name": self.name,
            "connected": self.connected,
            "trusted": self.trusted,
            "paired": self.paired,
        }


@dataclass
class AdapterStatus:
    """Snapshot of the adapter state as last recorded by the backend."""

    powered: bool = False
    discoverable: bool = False
    pairable: bool = False
    pairing_active: bool = False
    pairing_until: datetime | None = None
    known_devices: list[KnownDevice] = field(default_factory=list)

    def to_dict(self) -> dict:
        data = {
            "powered": self.powered,
            "discoverable": self.discoverable,
            "pairable": self.pairable,
            "pairing_active": self.pairing_active,
            "known_devices": [d.to_dict() for d in self.known_devices],
        }
        if self.pairing_until is not None:
            data["pairing_until"] = self.pairing_until.isoformat()
        return data


class StatusStore:
    """Read-modify-write access to the cached AdapterStatus."""

    def __init__(
        self,
        cache: Cache[AdapterStatus] | None = None,
        on_change: Callable[[AdapterStatus], None] | None = None,
    ):
        self._cache = cache if cache is not None else Cache(ttl=0)
        self._on_change = on_change
        self._lock = threading.Lock()

    def get(self) -> AdapterStatus:
        """Return a copy of the current status (zero value if unset)."""
        status, found = self._cache.get(STATUS_KEY)
        if not found:
            return AdapterStatus()
        return copy.deepcopy(status)

    def update(self, fn: Callable[[AdapterStatus], None]) -> AdapterStatus:
        """Apply *fn* to a copy of the status, store it and return a copy."""
        with self._lock:
            status = self.get()
            fn(status)
            self._cache.set(STATUS_KEY, status)
            snapshot = copy.deepcopy(status)
        if self._on_change is not None:
            try:
                self._on_change(copy.deepcopy(snapshot))
            except Exception:
                logger.exception("Status change callback failed")
        return snapshot
