"""Byte encoding helpers for customer CSV files.

Spreadsheet tools used at the dealership read and write CSV files in the legacy
Windows Japanese code page (cp932, Microsoft's Shift-JIS), while files that
travel through browsers or other tools are usually UTF-8, occasionally with a
BOM. Detection is heuristic and never raises; when nothing fits, the ``auto``
hint is returned and :func:`decode_bytes` falls back to a lenient decode.
"""
from __future__ import annotations

import codecs
import logging
from typing import Optional

import chardet

LOGGER = logging.getLogger(__name__)

AUTO = "auto"
SHIFT_JIS = "cp932"

__all__ = [
    "AUTO",
    "SHIFT_JIS",
    "decode_bytes",
    "detect_encoding",
    "encode_shift_jis",
    "strip_bom",
]

_BOMS = (
    (codecs.BOM_UTF8, "utf-8-sig"),
    (codecs.BOM_UTF16_LE, "utf-16"),
    (codecs.BOM_UTF16_BE, "utf-16"),
)

# chardet reports several aliases for the Japanese legacy encodings
_CHARDET_ALIASES = {
    "shift_jis": SHIFT_JIS,
    "sjis": SHIFT_JIS,
    "cp932": SHIFT_JIS,
    "windows-31j": SHIFT_JIS,
    "euc-jp": "euc_jp",
    "iso-2022-jp": "iso2022_jp",
    "utf-8": "utf-8",
    "ascii": "ascii",
}

_MIN_CHARDET_CONFIDENCE = 0.5
_FALLBACK_CANDIDATES = ("utf-8-sig", SHIFT_JIS, "euc_jp")


def _decodes_as(data: bytes, encoding: str) -> bool:
    try:
        data.decode(encoding)
    except (UnicodeDecodeError, LookupError):
        return False
    return True


def detect_encoding(data: bytes) -> str:
    """Guess the codec for ``data``; returns :data:`AUTO` when undetermined."""
    if not data:
        return "ascii"

    for bom, encoding in _BOMS:
        if data.startswith(bom):
            return encoding

    if _decodes_as(data, "ascii"):
        return "ascii"
    if _decodes_as(data, "utf-8"):
        return "utf-8"

    guess = chardet.detect(data)
    name = (guess.get("encoding") or "").lower()
    confidence = guess.get("confidence") or 0.0
    mapped = _CHARDET_ALIASES.get(name)
    if mapped and confidence >= _MIN_CHARDET_CONFIDENCE and _decodes_as(data, mapped):
        return mapped

    # Short files confuse chardet; cp932 is what spreadsheets emit here.
    if _decodes_as(data, SHIFT_JIS):
        return SHIFT_JIS

    LOGGER.debug("Unable to determine encoding (chardet guess %r, confidence %.2f)", name, confidence)
    return AUTO


def strip_bom(text: str) -> str:
    if text.startswith("\ufeff"):
        return text[1:]
    return text


def decode_bytes(data: bytes, hint: Optional[str] = None) -> str:
    """Convert raw bytes to text using ``hint`` or the detected encoding."""
    encoding = hint or detect_encoding(data)
    if encoding != AUTO:
        try:
            return strip_bom(data.decode(encoding))
        except (UnicodeDecodeError, LookupError):
            LOGGER.warning("Declared encoding %s did not match the data; retrying", encoding)

    for candidate in _FALLBACK_CANDIDATES:
        try:
            return strip_bom(data.decode(candidate))
        except UnicodeDecodeError:
            continue
    return strip_bom(data.decode("utf-8", errors="replace"))


def encode_shift_jis(text: str) -> bytes:
    """Encode ``text`` as cp932; characters outside the code page become ``?``."""
    return text.encode(SHIFT_JIS, errors="replace")
