"""Off-device backup history stored in the ``backups`` table.

Each save stores the canonical JSON of a backup envelope together with a
change-detection hash and per-entity counts. Only the newest
:data:`MAX_REMOTE_BACKUPS` rows are kept; every successful insert prunes the
rest.
"""
from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from database import get_db_connection
from services.fingerprint import canonical_json, string_hash

LOGGER = logging.getLogger(__name__)

__all__ = [
    "MAX_REMOTE_BACKUPS",
    "METADATA_EXTRACTORS",
    "RemoteBackup",
    "RemoteBackupError",
    "RemoteBackupGateway",
    "SaveResult",
    "extract_metadata",
]

MAX_REMOTE_BACKUPS = 10


class RemoteBackupError(RuntimeError):
    """Raised when the backup table cannot be read or written."""


def _count(store_key: str, field_name: str) -> Callable[[Mapping[str, Any]], Optional[int]]:
    def extractor(stores: Mapping[str, Any]) -> Optional[int]:
        store = stores.get(store_key)
        if not isinstance(store, Mapping):
            return None
        state = store.get("state")
        if not isinstance(state, Mapping):
            return None
        items = state.get(field_name)
        if not isinstance(items, list):
            return None
        return len(items)

    return extractor


# One extractor per metadata field; a missing shape omits the field.
METADATA_EXTRACTORS: Dict[str, Callable[[Mapping[str, Any]], Optional[int]]] = {
    "customers": _count("customer-store", "customers"),
    "contracts": _count("sales-target-storage", "contracts"),
    "targets": _count("sales-target-storage", "targets"),
    "estimates": _count("estimate-storage", "estimates"),
    "newVehicles": _count("showroom-storage", "newVehicles"),
    "usedVehicles": _count("showroom-storage", "usedVehicles"),
    "salesReps": _count("settings-storage", "salesReps"),
    "surveyResponses": _count("survey-storage", "responses"),
}


def extract_metadata(payload: Any) -> Dict[str, int]:
    """Count entities in the ``data`` section of a backup envelope."""
    metadata: Dict[str, int] = {}
    if not isinstance(payload, Mapping):
        return metadata
    stores = payload.get("data")
    if not isinstance(stores, Mapping):
        return metadata
    for name, extractor in METADATA_EXTRACTORS.items():
        try:
            value = extractor(stores)
        except (TypeError, AttributeError) as exc:
            LOGGER.warning("Metadata extractor %s failed: %s", name, exc)
            continue
        if value is not None:
            metadata[name] = value
    return metadata


@dataclass
class RemoteBackup:
    id: str
    created_at: str
    size_bytes: int
    data_hash: str
    metadata: Optional[Dict[str, int]] = None
    data: Any = None

    def to_dict(self, include_data: bool = False) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "id": self.id,
            "createdAt": self.created_at,
            "sizeBytes": self.size_bytes,
            "dataHash": self.data_hash,
            "metadata": self.metadata,
        }
        if include_data:
            payload["data"] = self.data
        return payload


@dataclass
class SaveResult:
    skipped: bool
    backup_id: Optional[str] = None
    size_bytes: Optional[int] = None
    data_hash: Optional[str] = None
    metadata: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        if self.skipped:
            return {"success": True, "skipped": True, "message": "データに変更がないためスキップしました"}
        return {
            "success": True,
            "message": "バックアップを保存しました",
            "backupId": self.backup_id,
            "sizeBytes": self.size_bytes,
            "dataHash": self.data_hash,
            "metadata": self.metadata,
        }


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _load_metadata(raw: Optional[str]) -> Optional[Dict[str, int]]:
    if not raw:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return None


class RemoteBackupGateway:
    """Read and write the backup history table.

    ``save`` runs the hash check, insert and prune inside one ``BEGIN
    IMMEDIATE`` transaction, so concurrent writers on the same database are
    serialised by sqlite's write lock.
    """

    def __init__(
        self,
        connection_factory: Callable[[], sqlite3.Connection] = get_db_connection,
        limit: int = MAX_REMOTE_BACKUPS,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._connect = connection_factory
        self.limit = limit
        self._clock = clock

    def list_backups(self) -> List[RemoteBackup]:
        conn = self._connect()
        try:
            rows = conn.execute(
                "SELECT id, created_at, size_bytes, data_hash, metadata FROM backups "
                "ORDER BY created_at DESC, rowid DESC LIMIT ?",
                (self.limit,),
            ).fetchall()
        except sqlite3.Error as exc:
            LOGGER.error("Backup list error: %s", exc)
            raise RemoteBackupError(str(exc)) from exc
        finally:
            conn.close()
        return [
            RemoteBackup(
                id=row["id"],
                created_at=row["created_at"],
                size_bytes=row["size_bytes"],
                data_hash=row["data_hash"],
                metadata=_load_metadata(row["metadata"]),
            )
            for row in rows
        ]

    def _new_id(self) -> Tuple[str, str]:
        created_at = self._clock().astimezone(timezone.utc)
        millis = int(created_at.timestamp() * 1000)
        return f"cloud-backup-{millis}-{uuid.uuid4().hex[:6]}", created_at.isoformat(timespec="microseconds")

    def save(
        self,
        data: Any,
        data_hash: Optional[str] = None,
        skip_if_unchanged: bool = False,
    ) -> SaveResult:
        """Store ``data`` (a backup envelope) unless it matches the newest row."""
        if data is None:
            raise ValueError("No data provided")

        serialized = canonical_json(data)
        digest = data_hash or string_hash(serialized)

        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            if skip_if_unchanged:
                latest = conn.execute(
                    "SELECT data_hash FROM backups ORDER BY created_at DESC, rowid DESC LIMIT 1"
                ).fetchone()
                if latest is not None and latest["data_hash"] == digest:
                    conn.rollback()
                    LOGGER.info("Skipping remote backup; data unchanged (%s)", digest)
                    return SaveResult(skipped=True, data_hash=digest)

            backup_id, created_at = self._new_id()
            size_bytes = len(serialized.encode("utf-8"))
            metadata = extract_metadata(data)
            conn.execute(
                "INSERT INTO backups (id, created_at, data, size_bytes, data_hash, metadata) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (backup_id, created_at, serialized, size_bytes, digest, json.dumps(metadata)),
            )
            pruned = conn.execute(
                "DELETE FROM backups WHERE id NOT IN ("
                "SELECT id FROM backups ORDER BY created_at DESC, rowid DESC LIMIT ?)",
                (self.limit,),
            ).rowcount
            conn.commit()
        except sqlite3.Error as exc:
            conn.rollback()
            LOGGER.error("Backup save error: %s", exc)
            raise RemoteBackupError(str(exc)) from exc
        finally:
            conn.close()

        LOGGER.info("Stored remote backup %s (%d bytes, pruned %d)", backup_id, size_bytes, max(pruned, 0))
        return SaveResult(
            skipped=False,
            backup_id=backup_id,
            size_bytes=size_bytes,
            data_hash=digest,
            metadata=metadata,
        )

    def get(self, backup_id: str) -> Optional[RemoteBackup]:
        conn = self._connect()
        try:
            row = conn.execute("SELECT * FROM backups WHERE id = ?", (backup_id,)).fetchone()
        except sqlite3.Error as exc:
            LOGGER.error("Backup get error: %s", exc)
            raise RemoteBackupError(str(exc)) from exc
        finally:
            conn.close()
        if row is None:
            return None
        return RemoteBackup(
            id=row["id"],
            created_at=row["created_at"],
            size_bytes=row["size_bytes"],
            data_hash=row["data_hash"],
            metadata=_load_metadata(row["metadata"]),
            data=json.loads(row["data"]),
        )

    def delete(self, backup_id: str) -> bool:
        conn = self._connect()
        try:
            with conn:
                deleted = conn.execute("DELETE FROM backups WHERE id = ?", (backup_id,)).rowcount
        except sqlite3.Error as exc:
            LOGGER.error("Backup delete error: %s", exc)
            raise RemoteBackupError(str(exc)) from exc
        finally:
            conn.close()
        return deleted > 0
