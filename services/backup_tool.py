"""Command-line access to store snapshots, backups and customer CSV files."""
from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
from typing import Optional, Sequence

from database import init_db
from services.customer_import import (
    encode_csv_for_download,
    export_all_customers_to_csv,
    export_customers_to_csv,
    export_owners_to_csv,
    import_customers,
    read_customer_csv,
)
from services.fingerprint import data_hash
from services.remote_backup import RemoteBackupError, RemoteBackupGateway
from services.snapshot import BackupError, SnapshotStore, format_bytes, read_backup_file
from services.storage import SqliteKeyValueStore

LOGGER = logging.getLogger(__name__)

EXPORTERS = {
    "prospects": export_customers_to_csv,
    "owners": export_owners_to_csv,
    "all": export_all_customers_to_csv,
}


def _snapshot_store() -> SnapshotStore:
    return SnapshotStore(SqliteKeyValueStore())


def _store_state(store: SnapshotStore, key: str) -> dict:
    raw = store.store.get(key)
    if not raw:
        return {}
    try:
        state = json.loads(raw).get("state")
    except (json.JSONDecodeError, AttributeError):
        return {}
    return state if isinstance(state, dict) else {}


def _cmd_export(args: argparse.Namespace) -> int:
    store = _snapshot_store()
    envelope = store.export_one(args.key) if args.key else store.export_all()
    if envelope is None:
        print(f"Nothing to export for {args.key}.")
        return 1
    Path(args.output).write_text(envelope.to_json(), encoding="utf-8")
    print(f"Exported {len(envelope.data)} store(s) to {args.output}")
    return 0


def _cmd_restore(args: argparse.Namespace) -> int:
    try:
        payload = read_backup_file(Path(args.file).read_bytes())
    except (OSError, BackupError) as exc:
        print(f"Restore failed: {exc}")
        return 1
    result = _snapshot_store().restore(payload)
    print(result.message)
    if result.restored_keys:
        print("Restored: " + ", ".join(result.restored_keys))
    return 0 if result.success else 1


def _cmd_import_csv(args: argparse.Namespace) -> int:
    try:
        text = read_customer_csv(Path(args.file).read_bytes(), args.encoding)
    except OSError as exc:
        print(f"Import failed: {exc}")
        return 1

    store = _snapshot_store()
    users = _store_state(store, "user-permissions-storage").get("users") or []
    existing = _store_state(store, "customer-store").get("customers") or []
    result = import_customers(
        text,
        users=[user for user in users if isinstance(user, dict)],
        existing_customers=[customer for customer in existing if isinstance(customer, dict)],
    )

    print(f"Parsed {len(result.customers)} customer(s).")
    for warning in result.duplicate_warnings:
        print(
            f"  row {warning.csv_row}: {warning.name} ({warning.prefecture}) "
            f"may duplicate {warning.existing_customer_id}"
        )
    for error in result.errors:
        print(f"  {error}")

    if args.save and result.customers:
        raw = store.store.get("customer-store")
        blob = json.loads(raw) if raw else {"state": {}, "version": 0}
        state = blob.setdefault("state", {})
        state["customers"] = list(existing) + [customer.to_dict() for customer in result.customers]
        store.store.set("customer-store", json.dumps(blob, ensure_ascii=False))
        print(f"Saved {len(result.customers)} customer(s) to customer-store.")

    return 0 if result.customers else 1


def _cmd_export_csv(args: argparse.Namespace) -> int:
    customers = _store_state(_snapshot_store(), "customer-store").get("customers") or []
    csv_text = EXPORTERS[args.scope]([c for c in customers if isinstance(c, dict)])
    Path(args.output).write_bytes(encode_csv_for_download(csv_text))
    print(f"Wrote {args.scope} customers to {args.output}")
    return 0


def _cmd_push(args: argparse.Namespace) -> int:
    envelope = _snapshot_store().export_all()
    try:
        result = RemoteBackupGateway().save(
            envelope.to_dict(),
            data_hash=data_hash(envelope.data),
            skip_if_unchanged=not args.force,
        )
    except RemoteBackupError as exc:
        print(f"Backup failed: {exc}")
        return 1
    if result.skipped:
        print("No changes since the last backup; skipped.")
    else:
        print(f"Stored backup {result.backup_id} ({format_bytes(result.size_bytes or 0)})")
    return 0


def _cmd_list(args: argparse.Namespace) -> int:
    try:
        backups = RemoteBackupGateway().list_backups()
    except RemoteBackupError as exc:
        print(f"Listing backups failed: {exc}")
        return 1
    if not backups:
        print("No backups stored.")
    for backup in backups:
        counts = ", ".join(f"{name}={count}" for name, count in (backup.metadata or {}).items())
        print(f"{backup.id}  {backup.created_at}  {format_bytes(backup.size_bytes)}  {counts}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Back up, restore and exchange Katomo CRM data.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    export = subparsers.add_parser("export", help="Write a backup file of the stores")
    export.add_argument("--key", help="Export a single store instead of all of them")
    export.add_argument("output", help="Destination JSON file")
    export.set_defaults(handler=_cmd_export)

    restore = subparsers.add_parser("restore", help="Restore the stores from a backup file")
    restore.add_argument("file", help="Backup JSON file")
    restore.set_defaults(handler=_cmd_restore)

    import_csv = subparsers.add_parser("import-csv", help="Parse a customer CSV file")
    import_csv.add_argument("file", help="CSV file (Shift-JIS or UTF-8)")
    import_csv.add_argument("--encoding", help="Override encoding detection")
    import_csv.add_argument(
        "--save",
        action="store_true",
        help="Append the parsed customers to customer-store",
    )
    import_csv.set_defaults(handler=_cmd_import_csv)

    export_csv = subparsers.add_parser("export-csv", help="Write customers as a Shift-JIS CSV file")
    export_csv.add_argument("--scope", choices=sorted(EXPORTERS), default="all")
    export_csv.add_argument("output", help="Destination CSV file")
    export_csv.set_defaults(handler=_cmd_export_csv)

    push = subparsers.add_parser("push", help="Store the current data in the backup table")
    push.add_argument("--force", action="store_true", help="Store even when nothing changed")
    push.set_defaults(handler=_cmd_push)

    listing = subparsers.add_parser("list", help="List stored backups, newest first")
    listing.set_defaults(handler=_cmd_list)

    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Entry-point used by ``backup_tool.py`` and the ``katomo-backup`` script."""
    args = build_parser().parse_args(argv)
    init_db()
    LOGGER.debug("Running %s", args.command)
    return args.handler(args)


if __name__ == "__main__":  # pragma: no cover - CLI behavior
    raise SystemExit(main())
