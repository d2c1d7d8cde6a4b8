import io
import json

import pytest

import app as crm_app
import database
from services.csv_codec import COLUMN_COUNT, COLUMN_MAP, CSV_HEADERS, parse_rows, serialize_rows
from services.storage import SqliteKeyValueStore


@pytest.fixture(autouse=True)
def set_testing_flag():
    original = crm_app.app.config.get('TESTING')
    crm_app.app.config['TESTING'] = True
    try:
        yield
    finally:
        if original is None:
            crm_app.app.config.pop('TESTING', None)
        else:
            crm_app.app.config['TESTING'] = original


@pytest.fixture()
def client(tmp_path, monkeypatch):
    monkeypatch.setattr(database, 'DATABASE_FILE', tmp_path / 'katomo_crm.db')
    monkeypatch.setattr(database, 'ensure_data_root', lambda: tmp_path)
    monkeypatch.setattr(crm_app, '_db_bootstrapped', False)
    return crm_app.app.test_client()


@pytest.fixture()
def kv(client):
    database.init_db()
    return SqliteKeyValueStore()


def envelope(*customers):
    return {
        "version": "1.0",
        "createdAt": "2024-05-01T00:00:00.000Z",
        "data": {"customer-store": {"state": {"customers": [{"name": name} for name in customers]}}},
    }


def seed_customers(kv, customers):
    kv.set("customer-store", json.dumps({"state": {"customers": customers}, "version": 0}))


def make_row(**cells):
    row = [""] * COLUMN_COUNT
    for name, value in cells.items():
        row[COLUMN_MAP[name]] = value
    return row


@pytest.mark.parametrize("body", [{}, {"data": None}, [1, 2], "text", 3])
def test_save_backup_requires_data(client, body):
    response = client.post('/api/backup', json=body)
    assert response.status_code == 400
    assert response.get_json() == {"success": False, "error": "No data provided"}


def test_save_backup_accepts_empty_data_object(client):
    response = client.post('/api/backup', json={"data": {}})
    assert response.status_code == 200
    assert response.get_json()["success"] is True
    assert len(client.get('/api/backup').get_json()["backups"]) == 1


def test_backup_round_trip(client):
    saved = client.post('/api/backup', json={"data": envelope("山田")})
    assert saved.status_code == 200
    body = saved.get_json()
    assert body["success"] is True
    assert body["metadata"] == {"customers": 1}
    backup_id = body["backupId"]

    listing = client.get('/api/backup').get_json()
    assert listing["success"] is True
    assert [item["id"] for item in listing["backups"]] == [backup_id]
    assert "data" not in listing["backups"][0]

    detail = client.get(f'/api/backup/{backup_id}').get_json()
    assert detail["backup"]["data"] == envelope("山田")

    download = client.get(f'/api/backup/{backup_id}?format=download')
    assert download.status_code == 200
    assert "katomo_cloud_backup_" in download.headers["Content-Disposition"]
    assert json.loads(download.data.decode("utf-8")) == envelope("山田")

    deleted = client.delete(f'/api/backup/{backup_id}')
    assert deleted.get_json()["success"] is True
    assert client.get(f'/api/backup/{backup_id}').status_code == 404


def test_save_backup_skips_unchanged_data(client):
    payload = {"data": envelope("山田"), "skipIfSame": True}
    assert client.post('/api/backup', json=payload).get_json().get("skipped") is not True
    second = client.post('/api/backup', json=payload).get_json()
    assert second["skipped"] is True
    assert len(client.get('/api/backup').get_json()["backups"]) == 1


def test_export_storage(client, kv):
    seed_customers(kv, [{"name": "山田"}])
    kv.set("not-a-store", "ignored")

    response = client.get('/api/storage/export')
    assert response.status_code == 200
    assert "katomo_backup_" in response.headers["Content-Disposition"]
    payload = json.loads(response.data.decode("utf-8"))
    assert payload["version"] == "1.0"
    assert list(payload["data"]) == ["customer-store"]

    single = client.get('/api/storage/export?key=customer-store')
    assert "katomo_customer-store_" in single.headers["Content-Disposition"]
    assert client.get('/api/storage/export?key=chat-storage').status_code == 404


def test_restore_storage_from_json_body(client, kv):
    response = client.post(
        '/api/storage/restore',
        json={"version": "1.0", "data": {"chat-storage": {"state": {"messages": []}}, "zzz": {}}},
    )
    body = response.get_json()
    assert response.status_code == 200
    assert body["success"] is True
    assert body["restoredKeys"] == ["chat-storage"]
    assert kv.get("chat-storage") == '{"state":{"messages":[]}}'
    assert kv.get("zzz") is None


def test_restore_storage_from_uploaded_file(client, kv):
    data = {"file": (io.BytesIO(json.dumps(envelope("鈴木")).encode("utf-8")), "backup.json")}
    response = client.post('/api/storage/restore', data=data, content_type='multipart/form-data')
    assert response.status_code == 200
    assert json.loads(kv.get("customer-store")) == envelope("鈴木")["data"]["customer-store"]


def test_restore_storage_rejects_bad_input(client, kv):
    assert client.post('/api/storage/restore', json={"foo": 1}).status_code == 400
    data = {"file": (io.BytesIO(b"not json"), "backup.json")}
    response = client.post('/api/storage/restore', data=data, content_type='multipart/form-data')
    assert response.status_code == 400
    assert response.get_json()["success"] is False


def test_usage_inventory_and_clear(client, kv):
    seed_customers(kv, [{"name": "山田"}, {"name": "鈴木"}])

    usage = client.get('/api/storage/usage').get_json()
    assert usage["used"] > 0
    assert usage["total"] == 5 * 1024 * 1024

    inventory = client.get('/api/storage/inventory').get_json()
    assert [store["key"] for store in inventory["stores"]] == ["customer-store"]
    assert inventory["stores"][0]["itemCount"] == 2
    assert inventory["counts"] == {"顧客": 2}
    assert len(client.get('/api/storage/inventory?all=1').get_json()["stores"]) == 12

    assert client.post('/api/storage/clear').get_json() == {"success": True}
    assert kv.get("customer-store") is None


def test_auto_backups(client, kv):
    seed_customers(kv, [{"name": "山田"}])

    created = client.post('/api/storage/auto-backups').get_json()
    assert created["saved"] is True
    assert client.post('/api/storage/auto-backups').get_json()["saved"] is False

    listing = client.get('/api/storage/auto-backups').get_json()
    assert [item["id"] for item in listing["history"]] == [created["backupId"]]
    assert listing["lastBackup"] == "たった今"

    seed_customers(kv, [])
    restored = client.post(f'/api/storage/auto-backups/{created["backupId"]}/restore')
    assert restored.status_code == 200
    assert json.loads(kv.get("customer-store"))["state"]["customers"] == [{"name": "山田"}]
    assert client.post('/api/storage/auto-backups/backup-0/restore').status_code == 404

    assert client.delete(f'/api/storage/auto-backups/{created["backupId"]}').get_json()["success"]
    assert client.get('/api/storage/auto-backups').get_json()["history"] == []


def test_push_remote_backup(client, kv):
    seed_customers(kv, [{"name": "山田"}])

    first = client.post('/api/storage/remote-backup').get_json()
    assert first["success"] is True
    assert first["metadata"] == {"customers": 1}
    assert client.post('/api/storage/remote-backup').get_json()["skipped"] is True

    seed_customers(kv, [{"name": "山田"}, {"name": "鈴木"}])
    third = client.post('/api/storage/remote-backup').get_json()
    assert third["metadata"] == {"customers": 2}
    assert len(client.get('/api/backup').get_json()["backups"]) == 2


def test_import_customers_csv(client, kv):
    kv.set(
        "user-permissions-storage",
        json.dumps({"state": {"users": [{"id": "u1", "name": "佐藤一郎"}]}}),
    )
    seed_customers(kv, [{"id": "c-1", "name": "山田太郎", "address": "東京都港区"}])
    text = serialize_rows(
        [
            CSV_HEADERS,
            make_row(status="オーナー", sales_rep="佐藤", name="山田太郎", address="東京都新宿区"),
            make_row(name="鈴木花子", address="大阪府大阪市"),
        ]
    )
    data = {"csv_file": (io.BytesIO(text.encode("cp932")), "customers.csv"), "encoding": "cp932"}

    response = client.post('/api/customers/import-csv', data=data, content_type='multipart/form-data')
    body = response.get_json()

    assert response.status_code == 200
    assert body["success"] is True
    assert body["encoding"] == "cp932"
    assert [customer["name"] for customer in body["customers"]] == ["山田太郎", "鈴木花子"]
    assert body["customers"][0]["assignedSalesRepId"] == "u1"
    assert body["customers"][0]["status"] == "owner"
    assert body["duplicateWarnings"][0]["existingCustomerId"] == "c-1"


def test_import_customers_csv_requires_file(client):
    response = client.post('/api/customers/import-csv', data={}, content_type='multipart/form-data')
    assert response.status_code == 400


def test_export_customers_csv(client, kv):
    seed_customers(
        kv,
        [
            {"id": "1", "name": "山田太郎", "status": "owner"},
            {"id": "2", "name": "鈴木花子", "status": "rank_a"},
        ],
    )

    response = client.get('/api/customers/export-csv?scope=owners')
    assert response.status_code == 200
    assert "attachment" in response.headers["Content-Disposition"]
    rows = parse_rows(response.data.decode("cp932"))
    assert rows[0] == CSV_HEADERS
    assert [row[COLUMN_MAP["name"]] for row in rows[1:]] == ["山田太郎"]

    everyone = parse_rows(client.get('/api/customers/export-csv').data.decode("cp932"))
    assert len(everyone) == 3
    assert client.get('/api/customers/export-csv?scope=nobody').status_code == 400


def test_sales_target_import_and_template(client, kv):
    template = client.get('/api/sales-targets/template')
    assert template.status_code == 200
    assert template.data.decode("cp932").startswith("担当名,契約日")

    data = {
        "csv_file": (io.BytesIO(template.data), "targets.csv"),
        "salesReps": ["目黒"],
    }
    response = client.post('/api/sales-targets/import-csv', data=data, content_type='multipart/form-data')
    body = response.get_json()

    assert body["success"] is True
    assert len(body["contracts"]) == 3
    assert body["newSalesReps"] == ["野島"]
