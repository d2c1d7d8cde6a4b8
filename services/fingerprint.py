"""Canonical JSON serialization and the change-detection hash for backups."""
from __future__ import annotations

import json
import struct
from typing import Any


def canonical_json(value: Any) -> str:
    """Compact, key-sorted JSON; the exact text that is hashed and stored."""
    return json.dumps(value, ensure_ascii=False, sort_keys=True, separators=(",", ":"))


def string_hash(text: str) -> str:
    """32-bit polynomial (``h * 31 + c``) hash over UTF-16 code units, as hex.

    This only signals that a snapshot changed; collisions merely cost an extra
    backup row. Clients computing the same function over the same text produce
    the same digest.
    """
    value = 0
    for (unit,) in struct.iter_unpack("<H", text.encode("utf-16-le")):
        value = (value * 31 + unit) & 0xFFFFFFFF
    if value & 0x80000000:
        value -= 0x100000000
    return format(abs(value), "x")


def data_hash(value: Any) -> str:
    return string_hash(canonical_json(value))
