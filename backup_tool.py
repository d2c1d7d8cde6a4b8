"""Command-line interface for Katomo CRM backups and CSV exchange."""
from __future__ import annotations

from services.backup_tool import main


if __name__ == "__main__":  # pragma: no cover - thin wrapper
    raise SystemExit(main())
