"""Customer CSV import reconciliation and export."""
from __future__ import annotations

import logging
import re
import secrets
import string
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from services.csv_codec import (
    CSV_HEADERS,
    COLUMN_MAP,
    ParsedRow,
    customer_to_row,
    iter_rows,
    normalize_row,
    row_to_customer,
    serialize_rows,
)
from services.config import resolve_timezone
from services.encoding import decode_bytes, detect_encoding, encode_shift_jis, strip_bom
from services.models import Customer, CustomerStatus, DuplicateWarning, UserInfo

LOGGER = logging.getLogger(__name__)

__all__ = [
    "HEADER_SENTINELS",
    "ImportResult",
    "encode_csv_for_download",
    "export_all_customers_to_csv",
    "export_customers_to_csv",
    "export_owners_to_csv",
    "extract_prefecture",
    "import_customers",
    "read_customer_csv",
    "resolve_sales_rep",
]

# Names that only ever appear in a header line.
HEADER_SENTINELS = frozenset({"お客様名", "お客様", "名前", "氏名", "name", "NAME", "顧客名"})
NO_PREFECTURE_LABEL = "(県なし)"

_PREFECTURE_PREFIX = re.compile(r"^(.+?[都道府県])")
_ID_ALPHABET = string.ascii_lowercase + string.digits

CustomerLike = Union[Customer, Mapping[str, Any]]
UserLike = Union[UserInfo, Mapping[str, Any]]


@dataclass
class ImportResult:
    customers: List[Customer] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    duplicate_warnings: List[DuplicateWarning] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "customers": [customer.to_dict() for customer in self.customers],
            "errors": list(self.errors),
            "duplicateWarnings": [warning.to_dict() for warning in self.duplicate_warnings],
        }


@dataclass(frozen=True)
class _ExistingCustomer:
    id: str
    name: str
    prefecture: str


def extract_prefecture(address: Optional[str]) -> str:
    """Return the leading prefecture (``東京都``, ``大阪府`` ...) of an address."""
    if not address:
        return ""
    match = _PREFECTURE_PREFIX.match(address)
    return match.group(1) if match else ""


def _as_user(user: UserLike) -> UserInfo:
    if isinstance(user, UserInfo):
        return user
    return UserInfo.from_dict(user)


def _as_existing(customer: CustomerLike) -> _ExistingCustomer:
    if isinstance(customer, Customer):
        return _ExistingCustomer(customer.id, customer.name, extract_prefecture(customer.address))
    return _ExistingCustomer(
        str(customer.get("id", "")),
        str(customer.get("name") or ""),
        extract_prefecture(customer.get("address") or ""),
    )


def resolve_sales_rep(name: str, users: Sequence[UserInfo]) -> Optional[UserInfo]:
    """Exact name match first, then containment in either direction."""
    if not name or not users:
        return None
    for user in users:
        if user.name == name:
            return user
    for user in users:
        if user.name and (name in user.name or user.name in name):
            return user
    return None


def _generate_ids(index: int) -> tuple:
    millis = int(time.time() * 1000)
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(9))
    return f"csv-{millis}-{index}-{suffix}", f"C{millis}-{index}"


def _empty_result_diagnostics(rows: List[ParsedRow]) -> List[str]:
    diagnostics = ["データが見つかりませんでした。", f"総行数: {len(rows)}"]
    if rows:
        first = rows[0].fields
        name_cell = first[COLUMN_MAP["name"]] if len(first) > COLUMN_MAP["name"] else ""
        diagnostics.append(f"1行目の列数: {len(first)}")
        diagnostics.append(f'E列(5番目)の内容: "{name_cell or "(空)"}"')
        for row in rows[:3]:
            preview = ", ".join(
                f'{chr(ord("A") + index)}:"{value}"' for index, value in enumerate(row.fields[:10])
            )
            diagnostics.append(f"{row.line_number}行目: {preview}")
    return diagnostics


def import_customers(
    text: str,
    users: Optional[Iterable[UserLike]] = None,
    existing_customers: Optional[Iterable[CustomerLike]] = None,
    *,
    now: Optional[datetime] = None,
    tz=None,
) -> ImportResult:
    """Turn CSV text into candidate customers.

    Rows are never rejected wholesale: blank rows, rows without a name and
    repeated header lines are skipped, and rows that fail to convert are
    reported in ``errors`` by their line number in the file. Customers whose
    name and prefecture both match an existing record are still returned but
    also produce a duplicate warning.
    """
    result = ImportResult()
    tz = tz or resolve_timezone()
    known_users = [_as_user(user) for user in users or ()]
    existing = [_as_existing(customer) for customer in existing_customers or ()]

    rows = list(iter_rows(strip_bom(text), errors=result.errors))
    if not rows and not result.errors:
        result.errors.append("CSVファイルが空です")
        return result

    skipped = 0
    for index, parsed in enumerate(rows):
        line = parsed.line_number
        fields = normalize_row(parsed.fields)
        name = fields[COLUMN_MAP["name"]].strip()

        if not name:
            LOGGER.debug("Row %d: no customer name in column E, skipping", line)
            skipped += 1
            continue
        if name in HEADER_SENTINELS or "お客様名" in name:
            LOGGER.debug("Row %d: header row detected (%r), skipping", line, name)
            skipped += 1
            continue

        try:
            customer = row_to_customer(fields, now=now, tz=tz)
            customer.id, customer.customer_number = _generate_ids(index)

            rep = resolve_sales_rep(customer.assigned_sales_rep_name, known_users)
            if rep is not None:
                customer.assigned_sales_rep_id = rep.id
                LOGGER.debug("Row %d: linked sales rep %r to user %s", line, customer.assigned_sales_rep_name, rep.id)
            elif customer.assigned_sales_rep_name and known_users:
                LOGGER.debug("Row %d: no user matches sales rep %r", line, customer.assigned_sales_rep_name)
        except (ValueError, TypeError, KeyError, IndexError) as exc:
            LOGGER.warning("Row %d conversion error: %s", line, exc)
            result.errors.append(f"行 {line}: データの変換に失敗しました")
            continue

        if existing:
            prefecture = extract_prefecture(customer.address)
            duplicate = next(
                (
                    candidate
                    for candidate in existing
                    if candidate.name == name and candidate.prefecture == prefecture
                ),
                None,
            )
            if duplicate is not None:
                result.duplicate_warnings.append(
                    DuplicateWarning(
                        csv_row=line,
                        name=name,
                        prefecture=prefecture or NO_PREFECTURE_LABEL,
                        existing_customer_id=duplicate.id,
                        existing_customer_name=duplicate.name,
                    )
                )
                LOGGER.info("Row %d: possible duplicate of %s (%s)", line, duplicate.id, prefecture or "no prefecture")

        result.customers.append(customer)

    LOGGER.info(
        "CSV import: %d imported, %d skipped, %d duplicates, %d errors",
        len(result.customers),
        skipped,
        len(result.duplicate_warnings),
        len(result.errors),
    )

    if not result.customers and not result.errors:
        result.errors.extend(_empty_result_diagnostics(rows))

    return result


def read_customer_csv(data: bytes, encoding: Optional[str] = None) -> str:
    """Decode an uploaded CSV file, detecting Shift-JIS or UTF-8 when not given."""
    encoding = encoding or detect_encoding(data)
    LOGGER.info("Reading CSV upload (%d bytes, encoding %s)", len(data), encoding)
    return decode_bytes(data, encoding)


def _as_customer(customer: CustomerLike) -> Customer:
    if isinstance(customer, Customer):
        return customer
    return Customer.from_dict(customer)


def _render(customers: Iterable[Customer], tz=None) -> str:
    rows = [CSV_HEADERS] + [customer_to_row(customer, tz) for customer in customers]
    return serialize_rows(rows)


def export_customers_to_csv(customers: Iterable[CustomerLike], tz=None) -> str:
    """Export every customer that is not yet an owner."""
    prospects = [c for c in map(_as_customer, customers) if c.status != CustomerStatus.OWNER]
    return _render(prospects, tz)


def export_owners_to_csv(customers: Iterable[CustomerLike], tz=None) -> str:
    owners = [c for c in map(_as_customer, customers) if c.status == CustomerStatus.OWNER]
    return _render(owners, tz)


def export_all_customers_to_csv(customers: Iterable[CustomerLike], tz=None) -> str:
    return _render(map(_as_customer, customers), tz)


def encode_csv_for_download(csv_text: str) -> bytes:
    return encode_shift_jis(csv_text)
