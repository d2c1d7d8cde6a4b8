"""Positional CSV layout used for customer lists.

Customer lists are exchanged as a fixed 21 column sheet (columns A to U). Only
14 columns carry data; B, C and P to T are kept blank so the sheet lines up with
the dealership's paper ledger. Rows are addressed by position rather than by
header so that files pasted straight out of a spreadsheet (tab separated, often
without a header line) import the same way as exported CSV files.
"""
from __future__ import annotations

import csv
import io
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from enum import IntEnum
from typing import Iterator, List, Mapping, Optional, Sequence

from dateutil import parser as date_parser

from services.config import resolve_timezone
from services.models import Customer, CustomerStatus

LOGGER = logging.getLogger(__name__)

COLUMN_COUNT = 21

CSV_HEADERS: List[str] = [
    "ステータス",
    "",
    "",
    "担当名",
    "お客様名",
    "フリガナ",
    "郵便番号",
    "住所",
    "住所２",
    "地区名",
    "電話番号１",
    "電話番号２",
    "ファーストコンタクト",
    "ファーストコンタクト２",
    "展示会",
    "",
    "",
    "",
    "",
    "",
    "契約日",
]


class Column(IntEnum):
    """Zero-based positions of the columns that carry data."""

    STATUS = 0  # A
    SALES_REP = 3  # D
    NAME = 4  # E
    KANA = 5  # F
    POSTAL_CODE = 6  # G
    ADDRESS = 7  # H
    ADDRESS2 = 8  # I
    REGION = 9  # J
    PHONE1 = 10  # K
    PHONE2 = 11  # L
    FIRST_CONTACT = 12  # M
    FIRST_CONTACT2 = 13  # N
    EXHIBITION = 14  # O
    CONTRACT_DATE = 20  # U


COLUMN_MAP: Mapping[str, int] = {column.name.lower(): int(column) for column in Column}

# Chubu is split into Koshinetsu, Hokuriku and Tokai on purpose.
PREFECTURE_REGIONS: Mapping[str, str] = {
    "北海道": "北海道",
    "青森": "東北", "岩手": "東北", "宮城": "東北", "秋田": "東北", "山形": "東北", "福島": "東北",
    "茨城": "関東", "栃木": "関東", "群馬": "関東", "埼玉": "関東", "千葉": "関東", "東京": "関東", "神奈川": "関東",
    "新潟": "甲信越", "長野": "甲信越", "山梨": "甲信越",
    "富山": "北陸", "石川": "北陸", "福井": "北陸",
    "岐阜": "東海", "静岡": "東海", "愛知": "東海", "三重": "東海",
    "滋賀": "近畿", "京都": "近畿", "大阪": "近畿", "兵庫": "近畿", "奈良": "近畿", "和歌山": "近畿",
    "鳥取": "中国", "島根": "中国", "岡山": "中国", "広島": "中国", "山口": "中国",
    "徳島": "四国", "香川": "四国", "愛媛": "四国", "高知": "四国",
    "福岡": "九州", "佐賀": "九州", "長崎": "九州", "熊本": "九州", "大分": "九州", "宮崎": "九州", "鹿児島": "九州",
    "沖縄": "沖縄",
}

# Leftmost match wins; longer names first so overlapping names resolve sensibly.
_PREFECTURE_PATTERN = re.compile(
    "|".join(re.escape(name) for name in sorted(PREFECTURE_REGIONS, key=len, reverse=True))
)

_OWNER_SPELLINGS = ("オーナー", "ｵｰﾅｰ", "おーなー")

STATUS_LABELS: Mapping[CustomerStatus, str] = {
    CustomerStatus.OWNER: "オーナー",
    CustomerStatus.CONTRACT: "契約",
    CustomerStatus.AWAITING_DELIVERY: "納車待ち",
    CustomerStatus.RANK_A: "ランクA",
    CustomerStatus.RANK_B: "ランクB",
    CustomerStatus.RANK_C: "ランクC",
    CustomerStatus.RANK_N: "ランクN",
    CustomerStatus.NEW: "新規",
}

_DATE_SEPARATORS = re.compile(r"[年月/]")


@dataclass(frozen=True)
class ParsedRow:
    """A tokenised record and the 1-based line it starts on."""

    line_number: int
    fields: List[str]


def get_region_from_address(address: Optional[str]) -> str:
    """Return the region of the first prefecture named in ``address``."""
    if not address:
        return ""
    match = _PREFECTURE_PATTERN.search(address)
    if not match:
        return ""
    return PREFECTURE_REGIONS[match.group(0)]


def parse_status(text: Optional[str]) -> CustomerStatus:
    """Map column A to a status: any spelling of "owner" is OWNER, the rest RANK_C."""
    status = (text or "").strip()
    upper = status.upper()
    if (
        any(spelling in status for spelling in _OWNER_SPELLINGS)
        or ("オ" in status and "ナ" in status)
        or "OWNER" in upper
    ):
        return CustomerStatus.OWNER
    return CustomerStatus.RANK_C


def status_label(status: Optional[CustomerStatus]) -> str:
    if status is None:
        return ""
    return STATUS_LABELS.get(status, "")


def detect_delimiter(first_line: str) -> str:
    """Tab only when the line has strictly more tabs than commas."""
    if first_line.count("\t") > first_line.count(","):
        return "\t"
    return ","


def _first_line(text: str) -> str:
    lines = text.splitlines()
    return lines[0] if lines else ""


def _is_blank(fields: Sequence[str]) -> bool:
    return all(not field.strip() for field in fields)


def iter_rows(
    text: str,
    delimiter: Optional[str] = None,
    errors: Optional[List[str]] = None,
) -> Iterator[ParsedRow]:
    """Yield non-blank records of ``text``.

    Quoted fields may contain the delimiter, doubled quotes and line breaks.
    Line numbers count every physical line, blank ones included. Records the
    reader rejects are reported through ``errors`` and skipped.
    """
    if delimiter is None:
        delimiter = detect_delimiter(_first_line(text))
        LOGGER.debug("Detected CSV delimiter %r", delimiter)

    reader = csv.reader(io.StringIO(text, newline=""), delimiter=delimiter, quotechar='"')
    while True:
        start_line = reader.line_num + 1
        try:
            fields = next(reader)
        except StopIteration:
            return
        except csv.Error as exc:
            LOGGER.warning("Skipping unreadable CSV record at line %d: %s", start_line, exc)
            if errors is not None:
                errors.append(f"行 {start_line}: CSVの形式が正しくありません ({exc})")
            continue
        if not fields or (_is_blank(fields) and reader.line_num == start_line):
            continue
        yield ParsedRow(line_number=start_line, fields=fields)


def parse_rows(text: str, delimiter: Optional[str] = None) -> List[List[str]]:
    return [row.fields for row in iter_rows(text, delimiter)]


def serialize_row(fields: Sequence[str], delimiter: str = ",") -> str:
    """Render one record, quoting fields that hold delimiters, quotes or newlines."""
    buffer = io.StringIO()
    writer = csv.writer(buffer, delimiter=delimiter, quoting=csv.QUOTE_MINIMAL, lineterminator="\r\n")
    writer.writerow(["" if field is None else str(field) for field in fields])
    return buffer.getvalue()[: -len("\r\n")]


def serialize_rows(rows: Sequence[Sequence[str]], delimiter: str = ",") -> str:
    return "\r\n".join(serialize_row(row, delimiter) for row in rows)


def normalize_row(fields: Sequence[str]) -> List[str]:
    """Pad or truncate to exactly :data:`COLUMN_COUNT` fields."""
    row = ["" if field is None else str(field) for field in fields[:COLUMN_COUNT]]
    row.extend([""] * (COLUMN_COUNT - len(row)))
    return row


def parse_first_contact_date(text: Optional[str], now: Optional[datetime] = None, tz=None) -> datetime:
    """Parse ``YYYY/MM/DD``, ``YYYY-MM-DD`` or ``YYYY年MM月DD日``; ``now`` otherwise."""
    tz = tz or resolve_timezone()
    fallback = now or datetime.now(tz)
    value = (text or "").strip()
    if not value:
        return fallback

    normalized = _DATE_SEPARATORS.sub("-", value).replace("日", "").strip()
    try:
        parsed = date_parser.isoparse(normalized)
    except ValueError:
        try:
            parsed = date_parser.parse(normalized, yearfirst=True)
        except (ValueError, OverflowError):
            LOGGER.debug("Unparseable first contact date %r; using current time", value)
            return fallback

    if parsed.tzinfo is None:
        parsed = tz.localize(parsed)
    return parsed


def format_local_date(timestamp: Optional[str], tz=None) -> str:
    """Render an ISO timestamp as a ``YYYY/MM/DD`` date in the local zone."""
    if not timestamp:
        return ""
    tz = tz or resolve_timezone()
    try:
        parsed = date_parser.isoparse(timestamp)
    except ValueError:
        return ""
    if parsed.tzinfo is None:
        parsed = tz.localize(parsed)
    return parsed.astimezone(tz).strftime("%Y/%m/%d")


def row_to_customer(
    fields: Sequence[str],
    columns: Optional[Mapping[str, int]] = None,
    *,
    now: Optional[datetime] = None,
    tz=None,
) -> Customer:
    """Read the data columns of a raw row into a partially populated customer.

    Identifiers and the linked sales-rep id are left for the caller to assign.
    """
    columns = columns or COLUMN_MAP
    row = normalize_row(fields)

    def cell(name: str) -> str:
        return row[columns[name]].strip()

    address = cell("address")
    phone1 = cell("phone1")
    phone2 = cell("phone2")
    timestamp = now or datetime.now(tz or resolve_timezone())

    return Customer(
        name=cell("name"),
        name_kana=cell("kana"),
        postal_code=cell("postal_code"),
        address=address,
        address2=cell("address2"),
        region=cell("region") or get_region_from_address(address),
        phone=phone1 or phone2,
        mobile=phone2 if phone1 else "",
        assigned_sales_rep_name=cell("sales_rep"),
        source=cell("exhibition"),
        status=parse_status(cell("status")),
        contract_date=cell("contract_date"),
        created_at=parse_first_contact_date(cell("first_contact"), now=timestamp, tz=tz).isoformat(),
        updated_at=timestamp.isoformat(),
    )


def customer_to_row(customer: Customer, tz=None) -> List[str]:
    row = [""] * COLUMN_COUNT
    row[Column.STATUS] = status_label(customer.status)
    row[Column.SALES_REP] = customer.assigned_sales_rep_name or ""
    row[Column.NAME] = customer.name or ""
    row[Column.KANA] = customer.name_kana or ""
    row[Column.POSTAL_CODE] = customer.postal_code or ""
    row[Column.ADDRESS] = customer.address or ""
    row[Column.ADDRESS2] = customer.address2 or ""
    row[Column.REGION] = customer.region or get_region_from_address(customer.address)
    row[Column.PHONE1] = customer.phone or ""
    row[Column.PHONE2] = customer.mobile or ""
    row[Column.FIRST_CONTACT] = format_local_date(customer.created_at, tz)
    row[Column.EXHIBITION] = customer.source or ""
    row[Column.CONTRACT_DATE] = customer.contract_date or ""
    return row
