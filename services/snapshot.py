"""Export, restore and local history of store snapshots.

A snapshot ("backup envelope") bundles the JSON blob of every persisted store
into one document::

    {"version": "1.0", "createdAt": "<ISO-8601>", "data": {"<key>": <json>, ...}}

Only the keys in :data:`STORAGE_KEYS` are ever read or written. Keys in an
envelope that this version does not know about are ignored on restore so that
envelopes written by newer versions can still be applied.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from dateutil import parser as date_parser

from services.config import resolve_timezone
from services.fingerprint import data_hash
from services.storage import KeyValueStore

LOGGER = logging.getLogger(__name__)

__all__ = [
    "BACKUP_VERSION",
    "BackupEnvelope",
    "BackupError",
    "SnapshotStore",
    "STORAGE_KEYS",
    "format_bytes",
    "read_backup_file",
]

BACKUP_VERSION = "1.0"

STORAGE_KEYS = (
    "customer-store",
    "sales-target-storage",
    "showroom-storage",
    "settings-storage",
    "chat-storage",
    "contact-storage",
    "auth-storage",
    "sidebar-order-storage",
    "estimate-storage",
    "contract-management-storage",
    "user-permissions-storage",
    "survey-storage",
)

STORAGE_KEY_NAMES: Mapping[str, str] = {
    "customer-store": "顧客データ",
    "sales-target-storage": "営業目標・契約",
    "showroom-storage": "展示車両",
    "settings-storage": "アプリ設定",
    "chat-storage": "チャット",
    "contact-storage": "連絡先",
    "auth-storage": "認証情報",
    "sidebar-order-storage": "メニュー順序",
    "estimate-storage": "見積データ",
    "contract-management-storage": "契約管理",
    "user-permissions-storage": "ユーザー権限",
    "survey-storage": "アンケート",
}

# Browsers allow roughly 5 MiB per origin and store UTF-16 text.
STORAGE_QUOTA_BYTES = 5 * 1024 * 1024

AUTO_BACKUP_KEY = "katomo-auto-backup"
AUTO_BACKUP_HISTORY_KEY = "katomo-backup-history"
MAX_AUTO_BACKUPS = 5

_ITEM_COUNT_FIELDS = (
    "customers",
    "contracts",
    "targets",
    "estimates",
    "newVehicles",
    "usedVehicles",
    "salesReps",
    "messages",
)

# (store key, state field, label) used by the per-entity summary
_COUNT_LABELS = (
    ("customer-store", "customers", "顧客"),
    ("sales-target-storage", "contracts", "契約"),
    ("sales-target-storage", "targets", "営業目標"),
    ("showroom-storage", "newVehicles", "新車展示"),
    ("showroom-storage", "usedVehicles", "中古車展示"),
    ("settings-storage", "salesReps", "担当者"),
    ("settings-storage", "vehicleModels", "車種"),
    ("chat-storage", "messages", "チャットメッセージ"),
    ("estimate-storage", "estimates", "見積"),
    ("contract-management-storage", "contracts", "契約管理"),
)


class BackupError(RuntimeError):
    """Raised when a backup file cannot be read."""


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"))


def _utf16_units(text: str) -> int:
    return len(text.encode("utf-16-le")) // 2


def format_bytes(size: int) -> str:
    if size <= 0:
        return "0 B"
    units = ("B", "KB", "MB", "GB")
    value = float(size)
    index = 0
    while value >= 1024 and index < len(units) - 1:
        value /= 1024
        index += 1
    return f"{round(value, 2):g} {units[index]}"


@dataclass
class BackupEnvelope:
    version: str
    created_at: str
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"version": self.version, "createdAt": self.created_at, "data": self.data}

    def to_json(self, indent: Optional[int] = 2) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False, indent=indent)

    @classmethod
    def from_dict(cls, payload: Any) -> Optional["BackupEnvelope"]:
        """Return an envelope, or ``None`` when the shape is not a backup."""
        if not isinstance(payload, Mapping):
            return None
        version = payload.get("version")
        data = payload.get("data")
        if not version or not isinstance(data, Mapping):
            return None
        return cls(version=str(version), created_at=str(payload.get("createdAt") or ""), data=dict(data))


@dataclass
class RestoreResult:
    success: bool
    message: str
    restored_keys: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"success": self.success, "message": self.message, "restoredKeys": list(self.restored_keys)}


@dataclass(frozen=True)
class StorageUsage:
    used: int
    total: int
    percentage: float

    def to_dict(self) -> Dict[str, Any]:
        return {"used": self.used, "total": self.total, "percentage": self.percentage}


@dataclass(frozen=True)
class StoreInfo:
    key: str
    name: str
    exists: bool
    size_bytes: int
    item_count: Optional[int] = None

    @property
    def size_formatted(self) -> str:
        return format_bytes(self.size_bytes)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "key": self.key,
            "name": self.name,
            "exists": self.exists,
            "sizeBytes": self.size_bytes,
            "sizeFormatted": self.size_formatted,
        }
        if self.item_count is not None:
            payload["itemCount"] = self.item_count
        return payload


@dataclass(frozen=True)
class BackupHistoryItem:
    id: str
    created_at: str
    size_bytes: int
    data_hash: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "createdAt": self.created_at,
            "sizeBytes": self.size_bytes,
            "dataHash": self.data_hash,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "BackupHistoryItem":
        return cls(
            id=str(payload["id"]),
            created_at=str(payload.get("createdAt") or ""),
            size_bytes=int(payload.get("sizeBytes") or 0),
            data_hash=str(payload.get("dataHash") or ""),
        )


@dataclass(frozen=True)
class AutoBackupResult:
    saved: bool
    message: str
    backup_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"saved": self.saved, "message": self.message}
        if self.backup_id:
            payload["backupId"] = self.backup_id
        return payload


def read_backup_file(content: Union[bytes, str]) -> Dict[str, Any]:
    """Parse the JSON text of a downloaded backup file."""
    if isinstance(content, bytes):
        try:
            content = content.decode("utf-8-sig")
        except UnicodeDecodeError as exc:
            raise BackupError("ファイルの読み込みに失敗しました") from exc
    try:
        payload = json.loads(content)
    except json.JSONDecodeError as exc:
        raise BackupError("ファイルの解析に失敗しました") from exc
    if not isinstance(payload, dict):
        raise BackupError("ファイルの解析に失敗しました")
    return payload


def backup_filename(created_at: datetime, tz=None) -> str:
    local = created_at.astimezone(tz or resolve_timezone())
    return f"katomo_backup_{local:%Y%m%d_%H%M}.json"


def single_store_filename(key: str, created_at: datetime, tz=None) -> str:
    local = created_at.astimezone(tz or resolve_timezone())
    return f"katomo_{key}_{local:%Y%m%d}.json"


def _state_of(value: Any) -> Optional[Mapping[str, Any]]:
    if isinstance(value, Mapping):
        state = value.get("state")
        if isinstance(state, Mapping):
            return state
    return None


class SnapshotStore:
    """Snapshot operations over a :class:`~services.storage.KeyValueStore`.

    The store is not safe to share between threads that restore and export
    overlapping keys at the same time; callers serialise those operations.
    """

    def __init__(self, store: KeyValueStore, clock: Callable[[], datetime] = _utc_now) -> None:
        self.store = store
        self._clock = clock

    def _read(self, key: str) -> Optional[Any]:
        raw = self.store.get(key)
        if not raw:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            return raw

    def _envelope(self, data: Dict[str, Any]) -> BackupEnvelope:
        return BackupEnvelope(version=BACKUP_VERSION, created_at=_iso(self._clock()), data=data)

    def export_all(self) -> BackupEnvelope:
        data: Dict[str, Any] = {}
        for key in STORAGE_KEYS:
            value = self._read(key)
            if value is not None:
                data[key] = value
        return self._envelope(data)

    def export_one(self, key: str) -> Optional[BackupEnvelope]:
        """Envelope for a single store, or ``None`` when there is nothing to export."""
        if key not in STORAGE_KEYS:
            return None
        value = self._read(key)
        if value is None:
            return None
        return self._envelope({key: value})

    def restore(self, envelope: Union[BackupEnvelope, Mapping[str, Any]]) -> RestoreResult:
        """Overwrite every known store present in ``envelope``.

        All values are serialised before anything is written. Stores that
        offer ``set_many`` receive the whole batch in one call; otherwise keys
        are written one by one and a failure part way leaves earlier keys
        written.
        """
        if not isinstance(envelope, BackupEnvelope):
            envelope = BackupEnvelope.from_dict(envelope)
        if envelope is None:
            return RestoreResult(False, "バックアップファイルの形式が正しくありません")

        try:
            staged = {key: _dumps(value) for key, value in envelope.data.items() if key in STORAGE_KEYS}
            ignored = sorted(set(envelope.data) - set(staged))
            if ignored:
                LOGGER.info("Ignoring unknown keys in backup: %s", ", ".join(ignored))

            set_many = getattr(self.store, "set_many", None)
            if callable(set_many):
                set_many(staged)
            else:
                for key, value in staged.items():
                    self.store.set(key, value)
        except Exception as exc:
            LOGGER.exception("Restoring backup failed")
            return RestoreResult(False, f"復元に失敗しました: {exc}")

        LOGGER.info("Restored %d stores from backup created at %s", len(staged), envelope.created_at or "unknown")
        return RestoreResult(
            True,
            "データを復元しました。ページを再読み込みして反映してください。",
            restored_keys=list(staged),
        )

    def clear_all(self) -> None:
        for key in STORAGE_KEYS:
            self.store.remove(key)
        LOGGER.info("Cleared all stores")

    def usage_estimate(self) -> StorageUsage:
        characters = 0
        for key in STORAGE_KEYS:
            value = self.store.get(key)
            if value:
                characters += _utf16_units(key) + _utf16_units(value)
        used = characters * 2
        return StorageUsage(used=used, total=STORAGE_QUOTA_BYTES, percentage=used / STORAGE_QUOTA_BYTES * 100)

    def inventory(self, include_missing: bool = False) -> List[StoreInfo]:
        entries: List[StoreInfo] = []
        for key in STORAGE_KEYS:
            raw = self.store.get(key)
            if not raw and not include_missing:
                continue
            item_count: Optional[int] = None
            if raw:
                try:
                    state = _state_of(json.loads(raw))
                except json.JSONDecodeError:
                    state = None
                if state is not None:
                    for name in _ITEM_COUNT_FIELDS:
                        items = state.get(name)
                        if isinstance(items, list):
                            item_count = (item_count or 0) + len(items)
            entries.append(
                StoreInfo(
                    key=key,
                    name=STORAGE_KEY_NAMES.get(key, key),
                    exists=bool(raw),
                    size_bytes=len(raw.encode("utf-8")) if raw else 0,
                    item_count=item_count,
                )
            )
        return entries

    def data_counts(self) -> Dict[str, Union[int, str]]:
        counts: Dict[str, Union[int, str]] = {}
        for key in STORAGE_KEYS:
            raw = self.store.get(key)
            if not raw:
                continue
            try:
                state = _state_of(json.loads(raw))
            except json.JSONDecodeError:
                counts[key] = "不明"
                continue
            if state is None:
                continue
            for store_key, field_name, label in _COUNT_LABELS:
                if store_key != key:
                    continue
                items = state.get(field_name)
                if isinstance(items, list):
                    counts[label] = len(items)
                elif key != "customer-store":
                    counts[label] = 0
        return counts

    # Local auto-backups

    def backup_history(self) -> List[BackupHistoryItem]:
        raw = self.store.get(AUTO_BACKUP_HISTORY_KEY)
        if not raw:
            return []
        try:
            return [BackupHistoryItem.from_dict(item) for item in json.loads(raw)]
        except (json.JSONDecodeError, TypeError, KeyError, ValueError):
            LOGGER.warning("Discarding unreadable backup history")
            return []

    def _write_history(self, history: List[BackupHistoryItem]) -> None:
        self.store.set(AUTO_BACKUP_HISTORY_KEY, _dumps([item.to_dict() for item in history]))

    def save_auto_backup(self) -> AutoBackupResult:
        """Store a local snapshot unless nothing changed since the newest one."""
        try:
            envelope = self.export_all()
            digest = data_hash(envelope.data)
            history = self.backup_history()
            if history and history[0].data_hash == digest:
                return AutoBackupResult(False, "データに変更がないためスキップしました")

            millis = int(self._clock().timestamp() * 1000)
            existing_ids = {item.id for item in history}
            while f"backup-{millis}" in existing_ids:
                millis += 1
            backup_id = f"backup-{millis}"

            payload = _dumps(envelope.to_dict())
            self.store.set(f"{AUTO_BACKUP_KEY}-{backup_id}", payload)
            item = BackupHistoryItem(
                id=backup_id,
                created_at=envelope.created_at,
                size_bytes=len(payload.encode("utf-8")),
                data_hash=digest,
            )
            history.insert(0, item)
            while len(history) > MAX_AUTO_BACKUPS:
                pruned = history.pop()
                self.store.remove(f"{AUTO_BACKUP_KEY}-{pruned.id}")
            self._write_history(history)
        except Exception as exc:
            LOGGER.exception("Auto backup failed")
            return AutoBackupResult(False, f"バックアップに失敗しました: {exc}")

        return AutoBackupResult(True, f"バックアップを保存しました ({format_bytes(item.size_bytes)})", backup_id)

    def get_auto_backup(self, backup_id: str) -> Optional[BackupEnvelope]:
        raw = self.store.get(f"{AUTO_BACKUP_KEY}-{backup_id}")
        if not raw:
            return None
        try:
            return BackupEnvelope.from_dict(json.loads(raw))
        except json.JSONDecodeError:
            return None

    def restore_from_auto_backup(self, backup_id: str) -> RestoreResult:
        envelope = self.get_auto_backup(backup_id)
        if envelope is None:
            return RestoreResult(False, "バックアップが見つかりません")
        return self.restore(envelope)

    def delete_auto_backup(self, backup_id: str) -> None:
        self.store.remove(f"{AUTO_BACKUP_KEY}-{backup_id}")
        self._write_history([item for item in self.backup_history() if item.id != backup_id])

    def clear_backup_history(self) -> None:
        for item in self.backup_history():
            self.store.remove(f"{AUTO_BACKUP_KEY}-{item.id}")
        self.store.remove(AUTO_BACKUP_HISTORY_KEY)

    def time_since_last_backup(self, now: Optional[datetime] = None) -> Optional[str]:
        history = self.backup_history()
        if not history:
            return None
        try:
            last = date_parser.isoparse(history[0].created_at)
        except ValueError:
            return None
        if last.tzinfo is None:
            last = last.replace(tzinfo=timezone.utc)
        elapsed = (now or self._clock()) - last
        minutes = int(elapsed.total_seconds() // 60)
        hours = minutes // 60
        days = hours // 24
        if days > 0:
            return f"{days}日前"
        if hours > 0:
            return f"{hours}時間前"
        if minutes > 0:
            return f"{minutes}分前"
        return "たった今"
