"""Key-value persistence used by the store snapshots.

Every client-side store persists itself as one JSON string under a fixed key.
The snapshot service only talks to the :class:`KeyValueStore` protocol so that
tests can run against :class:`InMemoryKeyValueStore` while the server keeps the
blobs in the ``storage_entries`` sqlite table.
"""
from __future__ import annotations

import logging
import sqlite3
from typing import Callable, Dict, Mapping, Optional, Protocol, Set

from database import get_db_connection

LOGGER = logging.getLogger(__name__)


class KeyValueStore(Protocol):
    def get(self, key: str) -> Optional[str]:
        ...

    def set(self, key: str, value: str) -> None:
        ...

    def remove(self, key: str) -> None:
        ...

    def keys(self) -> Set[str]:
        ...


class InMemoryKeyValueStore:
    """Dictionary-backed store for tests and one-off command line runs."""

    def __init__(self, initial: Optional[Mapping[str, str]] = None) -> None:
        self._entries: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self._entries.get(key)

    def set(self, key: str, value: str) -> None:
        self._entries[key] = value

    def remove(self, key: str) -> None:
        self._entries.pop(key, None)

    def keys(self) -> Set[str]:
        return set(self._entries)

    def set_many(self, items: Mapping[str, str]) -> None:
        self._entries.update(items)


class SqliteKeyValueStore:
    """Store backed by the ``storage_entries`` table."""

    def __init__(self, connection_factory: Callable[[], sqlite3.Connection] = get_db_connection) -> None:
        self._connect = connection_factory

    def get(self, key: str) -> Optional[str]:
        conn = self._connect()
        try:
            row = conn.execute("SELECT value FROM storage_entries WHERE key = ?", (key,)).fetchone()
        finally:
            conn.close()
        return row[0] if row else None

    def set(self, key: str, value: str) -> None:
        self.set_many({key: value})

    def set_many(self, items: Mapping[str, str]) -> None:
        """Write all ``items`` in a single transaction."""
        conn = self._connect()
        try:
            with conn:
                conn.executemany(
                    "INSERT INTO storage_entries (key, value) VALUES (?, ?) "
                    "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                    list(items.items()),
                )
        finally:
            conn.close()

    def remove(self, key: str) -> None:
        conn = self._connect()
        try:
            with conn:
                conn.execute("DELETE FROM storage_entries WHERE key = ?", (key,))
        finally:
            conn.close()

    def keys(self) -> Set[str]:
        conn = self._connect()
        try:
            rows = conn.execute("SELECT key FROM storage_entries").fetchall()
        finally:
            conn.close()
        return {row[0] for row in rows}
