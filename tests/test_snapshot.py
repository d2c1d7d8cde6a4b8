import json
from datetime import datetime, timedelta, timezone

import pytest
import pytz

from services.snapshot import (
    AUTO_BACKUP_HISTORY_KEY,
    AUTO_BACKUP_KEY,
    BACKUP_VERSION,
    MAX_AUTO_BACKUPS,
    STORAGE_KEYS,
    STORAGE_QUOTA_BYTES,
    BackupEnvelope,
    BackupError,
    SnapshotStore,
    backup_filename,
    format_bytes,
    read_backup_file,
    single_store_filename,
)
from services.storage import InMemoryKeyValueStore

FIXED_NOW = datetime(2024, 5, 1, 3, 4, 5, tzinfo=timezone.utc)


def customer_blob(*names):
    return json.dumps({"state": {"customers": [{"name": name} for name in names]}, "version": 0})


@pytest.fixture()
def kv():
    return InMemoryKeyValueStore(
        {
            "customer-store": customer_blob("山田", "鈴木"),
            "settings-storage": json.dumps({"state": {"salesReps": [{"name": "目黒"}]}}),
            "unrelated-key": "keep me out",
        }
    )


@pytest.fixture()
def snapshots(kv):
    return SnapshotStore(kv, clock=lambda: FIXED_NOW)


class PlainStore:
    """Store without batch writes."""

    def __init__(self):
        self.entries = {}

    def get(self, key):
        return self.entries.get(key)

    def set(self, key, value):
        self.entries[key] = value

    def remove(self, key):
        self.entries.pop(key, None)

    def keys(self):
        return set(self.entries)


class FailingStore(PlainStore):
    def set_many(self, items):
        raise OSError("disk full")


def test_export_all_only_includes_known_keys(snapshots):
    envelope = snapshots.export_all()

    assert envelope.version == BACKUP_VERSION
    assert envelope.created_at == "2024-05-01T03:04:05.000Z"
    assert set(envelope.data) == {"customer-store", "settings-storage"}
    assert envelope.data["customer-store"]["state"]["customers"][0]["name"] == "山田"


def test_export_keeps_unparseable_values_as_text(kv, snapshots):
    kv.set("chat-storage", "not json")
    assert snapshots.export_all().data["chat-storage"] == "not json"


def test_export_one(snapshots):
    envelope = snapshots.export_one("customer-store")
    assert list(envelope.data) == ["customer-store"]
    assert snapshots.export_one("chat-storage") is None
    assert snapshots.export_one("unrelated-key") is None


def test_envelope_json_shape(snapshots):
    payload = json.loads(snapshots.export_one("settings-storage").to_json())
    assert payload == {
        "version": "1.0",
        "createdAt": "2024-05-01T03:04:05.000Z",
        "data": {"settings-storage": {"state": {"salesReps": [{"name": "目黒"}]}}},
    }


def test_restore_writes_known_keys_and_ignores_the_rest(kv, snapshots):
    result = snapshots.restore(
        {
            "version": "2.0",
            "createdAt": "2030-01-01T00:00:00.000Z",
            "data": {
                "customer-store": {"state": {"customers": []}},
                "future-storage": {"state": {}},
            },
        }
    )

    assert result.success
    assert result.restored_keys == ["customer-store"]
    assert result.message.startswith("データを復元しました")
    assert kv.get("customer-store") == '{"state":{"customers":[]}}'
    assert kv.get("future-storage") is None
    # untouched keys survive a restore
    assert kv.get("settings-storage") is not None


@pytest.mark.parametrize(
    "payload",
    [
        None,
        [],
        {"data": {}},
        {"version": "1.0"},
        {"version": "1.0", "data": []},
    ],
)
def test_restore_rejects_invalid_envelopes(kv, snapshots, payload):
    before = kv.get("customer-store")
    result = snapshots.restore(payload)

    assert not result.success
    assert result.message == "バックアップファイルの形式が正しくありません"
    assert kv.get("customer-store") == before


def test_restore_without_batch_writes():
    store = PlainStore()
    result = SnapshotStore(store).restore({"version": "1.0", "data": {"chat-storage": {"state": {}}}})
    assert result.success
    assert store.get("chat-storage") == '{"state":{}}'


def test_restore_failure_is_reported_not_raised():
    result = SnapshotStore(FailingStore()).restore({"version": "1.0", "data": {"chat-storage": {}}})
    assert not result.success
    assert "disk full" in result.message


def test_export_then_restore_into_empty_store(snapshots):
    target = InMemoryKeyValueStore()
    envelope = BackupEnvelope.from_dict(json.loads(snapshots.export_all().to_json()))

    SnapshotStore(target).restore(envelope)

    assert json.loads(target.get("customer-store")) == json.loads(customer_blob("山田", "鈴木"))
    assert target.keys() == {"customer-store", "settings-storage"}


def test_clear_all_leaves_other_keys(kv, snapshots):
    snapshots.clear_all()
    assert kv.keys() == {"unrelated-key"}


def test_usage_estimate_counts_utf16_characters():
    kv = InMemoryKeyValueStore({"customer-store": "abcd", "unrelated-key": "x" * 100})
    usage = SnapshotStore(kv).usage_estimate()

    assert usage.used == (len("customer-store") + 4) * 2
    assert usage.total == STORAGE_QUOTA_BYTES
    assert usage.percentage == pytest.approx(usage.used / STORAGE_QUOTA_BYTES * 100)


def test_usage_estimate_counts_surrogate_pairs_twice():
    kv = InMemoryKeyValueStore({"customer-store": "山😀"})
    usage = SnapshotStore(kv).usage_estimate()

    assert usage.used == (len("customer-store") + 3) * 2


def test_inventory(snapshots):
    present = snapshots.inventory()
    assert [info.key for info in present] == ["customer-store", "settings-storage"]
    assert present[0].item_count == 2
    assert present[0].name == "顧客データ"
    assert present[1].item_count == 1

    everything = snapshots.inventory(include_missing=True)
    assert [info.key for info in everything] == list(STORAGE_KEYS)
    missing = [info for info in everything if not info.exists]
    assert all(info.size_bytes == 0 and info.item_count is None for info in missing)


def test_data_counts(snapshots):
    assert snapshots.data_counts() == {"顧客": 2, "担当者": 1, "車種": 0}


@pytest.mark.parametrize(
    "size, text",
    [(0, "0 B"), (512, "512 B"), (1024, "1 KB"), (1536, "1.5 KB"), (5 * 1024 * 1024, "5 MB")],
)
def test_format_bytes(size, text):
    assert format_bytes(size) == text


def test_read_backup_file():
    assert read_backup_file(b'\xef\xbb\xbf{"version": "1.0", "data": {}}') == {"version": "1.0", "data": {}}
    with pytest.raises(BackupError):
        read_backup_file(b"not json")
    with pytest.raises(BackupError):
        read_backup_file("[1, 2]")
    with pytest.raises(BackupError):
        read_backup_file(b"\xff\xfe\x00")


def test_download_filenames_use_local_time():
    tokyo = pytz.timezone("Asia/Tokyo")
    moment = datetime(2024, 5, 1, 3, 4, tzinfo=timezone.utc)
    assert backup_filename(moment, tokyo) == "katomo_backup_20240501_1204.json"
    assert single_store_filename("customer-store", moment, tokyo) == "katomo_customer-store_20240501.json"


class Clock:
    def __init__(self, start):
        self.now = start

    def __call__(self):
        return self.now


def test_auto_backup_skips_unchanged_data(kv):
    snapshots = SnapshotStore(kv, clock=Clock(FIXED_NOW))

    first = snapshots.save_auto_backup()
    second = snapshots.save_auto_backup()

    assert first.saved
    assert first.backup_id == f"backup-{int(FIXED_NOW.timestamp() * 1000)}"
    assert not second.saved
    assert second.message == "データに変更がないためスキップしました"
    assert len(snapshots.backup_history()) == 1
    assert kv.get(f"{AUTO_BACKUP_KEY}-{first.backup_id}") is not None


def test_auto_backup_history_keeps_newest_five(kv):
    clock = Clock(FIXED_NOW)
    snapshots = SnapshotStore(kv, clock=clock)

    ids = []
    for index in range(MAX_AUTO_BACKUPS + 2):
        kv.set("customer-store", customer_blob(f"顧客{index}"))
        clock.now = FIXED_NOW + timedelta(minutes=index)
        ids.append(snapshots.save_auto_backup().backup_id)

    history = snapshots.backup_history()
    assert [item.id for item in history] == list(reversed(ids))[:MAX_AUTO_BACKUPS]
    for pruned in ids[:2]:
        assert kv.get(f"{AUTO_BACKUP_KEY}-{pruned}") is None
    stored = json.loads(kv.get(AUTO_BACKUP_HISTORY_KEY))
    assert len(stored) == MAX_AUTO_BACKUPS


def test_auto_backup_ids_stay_unique_within_one_millisecond(kv):
    snapshots = SnapshotStore(kv, clock=Clock(FIXED_NOW))
    first = snapshots.save_auto_backup().backup_id
    kv.set("customer-store", customer_blob("別人"))
    second = snapshots.save_auto_backup().backup_id
    assert first != second


def test_restore_from_auto_backup(kv):
    snapshots = SnapshotStore(kv, clock=Clock(FIXED_NOW))
    backup_id = snapshots.save_auto_backup().backup_id
    kv.set("customer-store", customer_blob("上書き"))

    result = snapshots.restore_from_auto_backup(backup_id)

    assert result.success
    assert json.loads(kv.get("customer-store")) == json.loads(customer_blob("山田", "鈴木"))
    missing = snapshots.restore_from_auto_backup("backup-0")
    assert not missing.success
    assert missing.message == "バックアップが見つかりません"


def test_delete_and_clear_auto_backups(kv):
    clock = Clock(FIXED_NOW)
    snapshots = SnapshotStore(kv, clock=clock)
    first = snapshots.save_auto_backup().backup_id
    kv.set("customer-store", customer_blob("別人"))
    clock.now = FIXED_NOW + timedelta(minutes=1)
    second = snapshots.save_auto_backup().backup_id

    snapshots.delete_auto_backup(first)
    assert [item.id for item in snapshots.backup_history()] == [second]
    assert snapshots.get_auto_backup(first) is None

    snapshots.clear_backup_history()
    assert snapshots.backup_history() == []
    assert kv.get(AUTO_BACKUP_HISTORY_KEY) is None
    assert kv.get(f"{AUTO_BACKUP_KEY}-{second}") is None


@pytest.mark.parametrize(
    "elapsed, text",
    [
        (timedelta(seconds=30), "たった今"),
        (timedelta(minutes=5), "5分前"),
        (timedelta(hours=2, minutes=10), "2時間前"),
        (timedelta(days=3, hours=1), "3日前"),
    ],
)
def test_time_since_last_backup(kv, elapsed, text):
    snapshots = SnapshotStore(kv, clock=Clock(FIXED_NOW))
    assert snapshots.time_since_last_backup() is None
    snapshots.save_auto_backup()
    assert snapshots.time_since_last_backup(FIXED_NOW + elapsed) == text
