import io
import json
import sys
import traceback
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
from flask import Flask, Response, jsonify, request, send_file

from database import get_db_connection, init_db
from services.config import get_server_port, resolve_timezone
from services.customer_import import (
    encode_csv_for_download,
    export_all_customers_to_csv,
    export_customers_to_csv,
    export_owners_to_csv,
    import_customers,
    read_customer_csv,
)
from services.encoding import detect_encoding, encode_shift_jis
from services.fingerprint import data_hash
from services.remote_backup import RemoteBackupError, RemoteBackupGateway
from services.sales_target_import import import_sales_targets, sales_target_csv_template
from services.snapshot import (
    BackupError,
    SnapshotStore,
    backup_filename,
    read_backup_file,
    single_store_filename,
)
from services.storage import SqliteKeyValueStore

# Load environment variables from .env file
load_dotenv()

# --- App Initialization ---
app = Flask(__name__)
app.json.sort_keys = False
app.json.ensure_ascii = False

_db_bootstrapped = False

CSV_EXPORT_SCOPES = {
    'prospects': (export_customers_to_csv, '顧客データ'),
    'owners': (export_owners_to_csv, 'オーナーデータ'),
    'all': (export_all_customers_to_csv, '顧客データ_全件'),
}


@app.before_request
def _ensure_database():
    """Guarantee the SQLite schema exists before serving any request."""
    global _db_bootstrapped
    if _db_bootstrapped:
        return
    try:
        init_db()
        _db_bootstrapped = True
    except Exception as exc:  # pragma: no cover - defensive logging
        app.logger.exception("Failed to initialize database before request: %s", exc)


def get_snapshot_store() -> SnapshotStore:
    return SnapshotStore(SqliteKeyValueStore(get_db_connection))


def get_backup_gateway() -> RemoteBackupGateway:
    return RemoteBackupGateway(get_db_connection)


def _error(message: str, status: int):
    return jsonify({"success": False, "error": message}), status


def _json_download(body: str, filename: str) -> Response:
    response = Response(body, mimetype='application/json')
    response.headers['Content-Disposition'] = f"attachment; filename*=UTF-8''{filename}"
    return response


def _csv_download(csv_text: str, filename: str) -> Response:
    return send_file(
        io.BytesIO(encode_csv_for_download(csv_text)),
        mimetype='text/csv; charset=shift_jis',
        as_attachment=True,
        download_name=filename,
    )


def _store_state(store: SnapshotStore, key: str) -> Dict[str, Any]:
    raw = store.store.get(key)
    if not raw:
        return {}
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError:
        app.logger.error(f"JSONDecodeError for store {key}")
        return {}
    state = payload.get('state') if isinstance(payload, dict) else None
    return state if isinstance(state, dict) else {}


def _read_upload(field_name: str) -> Optional[bytes]:
    upload = request.files.get(field_name)
    if upload is None or upload.filename == '':
        return None
    return upload.stream.read()


# --- Remote backups ---

@app.route('/api/backup', methods=['GET'])
def list_backups():
    try:
        backups = get_backup_gateway().list_backups()
    except RemoteBackupError as exc:
        return _error(str(exc), 500)
    return jsonify({"success": True, "backups": [backup.to_dict() for backup in backups]})


@app.route('/api/backup', methods=['POST'])
def save_backup():
    body = request.get_json(silent=True)
    if not isinstance(body, dict) or body.get('data') is None:
        return _error('No data provided', 400)
    data = body['data']
    try:
        result = get_backup_gateway().save(
            data,
            data_hash=body.get('dataHash') or None,
            skip_if_unchanged=bool(body.get('skipIfSame')),
        )
    except RemoteBackupError as exc:
        return _error(str(exc), 500)
    return jsonify(result.to_dict())


@app.route('/api/backup/<string:backup_id>', methods=['GET'])
def get_backup(backup_id):
    try:
        backup = get_backup_gateway().get(backup_id)
    except RemoteBackupError as exc:
        return _error(str(exc), 500)
    if backup is None:
        return _error('Backup not found', 404)

    if request.args.get('format') == 'download':
        created_at = datetime.fromisoformat(backup.created_at)
        local = created_at.astimezone(resolve_timezone())
        filename = f"katomo_cloud_backup_{local:%Y%m%d_%H%M}.json"
        return _json_download(json.dumps(backup.data, ensure_ascii=False, indent=2), filename)

    return jsonify({"success": True, "backup": backup.to_dict(include_data=True)})


@app.route('/api/backup/<string:backup_id>', methods=['DELETE'])
def delete_backup(backup_id):
    try:
        get_backup_gateway().delete(backup_id)
    except RemoteBackupError as exc:
        return _error(str(exc), 500)
    return jsonify({"success": True, "message": "バックアップを削除しました"})


# --- Store snapshots ---

@app.route('/api/storage/export', methods=['GET'])
def export_storage():
    store = get_snapshot_store()
    key = request.args.get('key')
    now = datetime.now(timezone.utc)
    if key:
        envelope = store.export_one(key)
        if envelope is None:
            return _error('データが見つかりません', 404)
        return _json_download(envelope.to_json(), single_store_filename(key, now))
    envelope = store.export_all()
    return _json_download(envelope.to_json(), backup_filename(now))


@app.route('/api/storage/restore', methods=['POST'])
def restore_storage():
    try:
        upload = _read_upload('file')
        if upload is not None:
            payload = read_backup_file(upload)
        else:
            payload = request.get_json(silent=True)
    except BackupError as exc:
        app.logger.error("Restore rejected: %s", exc)
        return jsonify({"success": False, "message": str(exc)}), 400

    if payload is None:
        return jsonify({"success": False, "message": "バックアップファイルの形式が正しくありません"}), 400

    result = get_snapshot_store().restore(payload)
    return jsonify(result.to_dict()), (200 if result.success else 400)


@app.route('/api/storage/clear', methods=['POST'])
def clear_storage():
    get_snapshot_store().clear_all()
    return jsonify({"success": True})


@app.route('/api/storage/usage', methods=['GET'])
def storage_usage():
    return jsonify(get_snapshot_store().usage_estimate().to_dict())


@app.route('/api/storage/inventory', methods=['GET'])
def storage_inventory():
    store = get_snapshot_store()
    include_missing = request.args.get('all') in ('1', 'true')
    return jsonify({
        "stores": [info.to_dict() for info in store.inventory(include_missing=include_missing)],
        "counts": store.data_counts(),
    })


@app.route('/api/storage/auto-backups', methods=['GET'])
def list_auto_backups():
    store = get_snapshot_store()
    return jsonify({
        "history": [item.to_dict() for item in store.backup_history()],
        "lastBackup": store.time_since_last_backup(),
    })


@app.route('/api/storage/auto-backups', methods=['POST'])
def create_auto_backup():
    return jsonify(get_snapshot_store().save_auto_backup().to_dict())


@app.route('/api/storage/auto-backups/<string:backup_id>/restore', methods=['POST'])
def restore_auto_backup(backup_id):
    result = get_snapshot_store().restore_from_auto_backup(backup_id)
    return jsonify(result.to_dict()), (200 if result.success else 404)


@app.route('/api/storage/auto-backups/<string:backup_id>', methods=['DELETE'])
def delete_auto_backup(backup_id):
    get_snapshot_store().delete_auto_backup(backup_id)
    return jsonify({"success": True})


@app.route('/api/storage/remote-backup', methods=['POST'])
def push_remote_backup():
    """Send the current stores to the backup table, skipping unchanged data."""
    envelope = get_snapshot_store().export_all()
    try:
        result = get_backup_gateway().save(
            envelope.to_dict(),
            data_hash=data_hash(envelope.data),
            skip_if_unchanged=True,
        )
    except RemoteBackupError as exc:
        return _error(str(exc), 500)
    return jsonify(result.to_dict())


# --- CSV import / export ---

@app.route('/api/customers/import-csv', methods=['POST'])
def import_customers_csv():
    data = _read_upload('csv_file')
    if data is None:
        return _error('No file part', 400)

    try:
        encoding = request.form.get('encoding') or detect_encoding(data)
        text = read_customer_csv(data, encoding)
        store = get_snapshot_store()
        users = _store_state(store, 'user-permissions-storage').get('users') or []
        existing = _store_state(store, 'customer-store').get('customers') or []
        result = import_customers(
            text,
            users=[user for user in users if isinstance(user, dict)],
            existing_customers=[customer for customer in existing if isinstance(customer, dict)],
        )
    except Exception as exc:
        app.logger.error(f"Error processing CSV file: {exc}")
        app.logger.error(traceback.format_exc())
        return _error('CSVファイルの解析に失敗しました', 500)

    payload = result.to_dict()
    payload['success'] = True
    payload['encoding'] = encoding
    return jsonify(payload)


@app.route('/api/customers/export-csv', methods=['GET'])
def export_customers_csv():
    scope = request.args.get('scope', 'all')
    if scope not in CSV_EXPORT_SCOPES:
        return _error(f'Unknown scope: {scope}', 400)
    exporter, label = CSV_EXPORT_SCOPES[scope]

    customers: List[Dict[str, Any]] = _store_state(get_snapshot_store(), 'customer-store').get('customers') or []
    csv_text = exporter([customer for customer in customers if isinstance(customer, dict)])
    date_str = datetime.now(resolve_timezone()).strftime('%Y%m%d')
    return _csv_download(csv_text, f'{label}_{date_str}.csv')


@app.route('/api/sales-targets/import-csv', methods=['POST'])
def import_sales_targets_csv():
    data = _read_upload('csv_file')
    if data is None:
        return _error('No file part', 400)

    reps = request.form.getlist('salesReps')
    if not reps:
        settings = _store_state(get_snapshot_store(), 'settings-storage')
        reps = [rep.get('name') for rep in settings.get('salesReps') or [] if isinstance(rep, dict) and rep.get('name')]

    result = import_sales_targets(read_customer_csv(data), reps)
    payload = result.to_dict()
    payload['success'] = True
    return jsonify(payload)


@app.route('/api/sales-targets/template', methods=['GET'])
def sales_target_template():
    return send_file(
        io.BytesIO(encode_shift_jis(sales_target_csv_template())),
        mimetype='text/csv; charset=shift_jis',
        as_attachment=True,
        download_name='営業目標テンプレート.csv',
    )


def main():
    port = get_server_port()
    print(f"Starting Katomo CRM data service on port {port}.")
    app.run(host='0.0.0.0', port=port, debug=False)


if __name__ == '__main__':
    init_db()
    sys.exit(main())
