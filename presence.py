"""
In-memory presence registry: which username currently owns a live connection.

One entry per username. A second login overwrites the first (last writer
wins); there is no multi-device fan-out. Content is volatile and rebuilt
from nothing on restart.
"""
import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

LOGGER = logging.getLogger("messenger.presence")


@dataclass(frozen=True)
class PresenceEntry:
    username: str
    connection: Any
    display_name: str


class PresenceRegistry:
    def __init__(self):
        self._lock = threading.Lock()
        self._entries: Dict[str, PresenceEntry] = {}

    def register(self, username: str, connection: Any, display_name: str) -> Optional[Any]:
        """Bind `username` to `connection`; returns the evicted connection, if any"""
        entry = PresenceEntry(username, connection, display_name)
        with self._lock:
            previous = self._entries.pop(username, None)
            self._entries[username] = entry
        if previous is not None and previous.connection is not connection:
            LOGGER.info("%s logged in again; previous connection evicted", username)
            return previous.connection
        return None

    def unregister(self, username: str, connection: Any = None) -> bool:
        """
        Drop the entry for `username`. When `connection` is given the entry is
        only removed if it still belongs to that connection, so a stale socket
        closing late cannot remove a newer login.
        """
        with self._lock:
            entry = self._entries.get(username)
            if entry is None:
                return False
            if connection is not None and entry.connection is not connection:
                return False
            del self._entries[username]
            return True

    def lookup(self, username: str) -> Optional[Any]:
        with self._lock:
            entry = self._entries.get(username)
        return entry.connection if entry else None

    def display_name(self, username: str) -> Optional[str]:
        with self._lock:
            entry = self._entries.get(username)
        return entry.display_name if entry else None

    def update_display_name(self, username: str, display_name: str) -> None:
        with self._lock:
            entry = self._entries.get(username)
            if entry is not None:
                self._entries[username] = PresenceEntry(username, entry.connection, display_name)

    def list_all(self) -> List[dict]:
        with self._lock:
            entries = list(self._entries.values())
        return [{"username": e.username, "display_name": e.display_name} for e in entries]

    def connections(self) -> List[Any]:
        with self._lock:
            return [e.connection for e in self._entries.values()]

    def is_online(self, username: str) -> bool:
        with self._lock:
            return username in self._entries

    def __len__(self):
        with self._lock:
            return len(self._entries)
