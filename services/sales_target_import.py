"""Import of closed-deal spreadsheets into sales-target contracts.

Two sheet layouts are in circulation. The older seven column layout::

    担当名, 契約日, 顧客名, 車種, 売上金額, 利益, MQ

and the ledger layout, where one row may record a new car, a used car and a
modification at once::

    A 担当  B 契約日  C 顧客名  D 車種  E -  F 新車  G 中古  H 改造
    I 新車売上  J 新車利益  K 利益率  L 中古売上  M 中古利益  N -
    O 改造売上  P 改造利益

The layout is detected from the data rather than from the header.
"""
from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence

from dateutil import parser as date_parser

from services.csv_codec import iter_rows, serialize_row
from services.encoding import strip_bom

LOGGER = logging.getLogger(__name__)

FORMAT_SIMPLE = "v1"
FORMAT_LEDGER = "v2"

SIMPLE_HEADERS = ["担当名", "契約日", "顧客名", "車種", "売上金額", "利益", "MQ"]

# Ledger layout columns (zero-based)
_REP, _DATE, _CUSTOMER, _MODEL = 0, 1, 2, 3
_NEW_FLAG, _USED_FLAG, _MOD_FLAG = 5, 6, 7
_NEW_SALE, _NEW_PROFIT = 8, 9
_USED_SALE, _USED_PROFIT = 11, 12
_MOD_SALE, _MOD_PROFIT = 14, 15

# Simple layout columns
_SALE_AMOUNT, _PROFIT, _IS_MQ = 4, 5, 6

_HEADER_FRAGMENTS = ("担当", "日", "金額", "売上", "利益", "mq", "新車", "中古", "改造")
_HEADER_TOKENS = {"date", "rep", "amount", "profit"}
_MQ_TOKENS = {"1", "true", "yes", "○", "mq", "◯"}
_KANJI = re.compile(r"[\u4e00-\u9faf]+")
_EXCEL_EPOCH = date(1899, 12, 30)


@dataclass
class SalesTargetContract:
    sales_rep_name: str
    contract_date: str
    customer_name: str
    vehicle_model: str
    sale_amount: float
    profit: float
    is_mq: bool = False
    vehicle_type: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "salesRepName": self.sales_rep_name,
            "contractDate": self.contract_date,
            "customerName": self.customer_name,
            "vehicleModel": self.vehicle_model,
            "saleAmount": self.sale_amount,
            "profit": self.profit,
            "isMQ": self.is_mq,
        }
        if self.vehicle_type:
            payload["vehicleType"] = self.vehicle_type
        return payload


@dataclass
class SalesTargetImportResult:
    contracts: List[SalesTargetContract] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    new_sales_reps: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "contracts": [contract.to_dict() for contract in self.contracts],
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "newSalesReps": list(self.new_sales_reps),
        }


def parse_date_to_iso(text: Optional[str]) -> str:
    """Normalise the date formats found in the sheets to ``YYYY-MM-DD``."""
    value = (text or "").strip()
    if not value:
        return ""

    if re.fullmatch(r"\d{4}-\d{2}-\d{2}", value):
        return value

    match = re.fullmatch(r"(\d{4})/(\d{1,2})/(\d{1,2})", value)
    if match:
        year, month, day = match.groups()
        return f"{year}-{int(month):02d}-{int(day):02d}"

    match = re.fullmatch(r"(\d{1,2})/(\d{1,2})/(\d{4})", value)
    if match:
        month, day, year = match.groups()
        return f"{year}-{int(month):02d}-{int(day):02d}"

    match = re.search(r"(\d{4})年(\d{1,2})月(\d{1,2})日", value)
    if match:
        year, month, day = match.groups()
        return f"{year}-{int(month):02d}-{int(day):02d}"

    if value.isdigit():
        serial = int(value)
        # Excel serial days, roughly 1982 to 2064
        if 30000 < serial < 60000:
            return (_EXCEL_EPOCH + timedelta(days=serial)).isoformat()

    try:
        return date_parser.parse(value).date().isoformat()
    except (ValueError, OverflowError):
        return ""


def parse_amount(text: Optional[str]) -> float:
    value = (text or "").strip()
    if not value:
        return 0
    try:
        if "万" in value:
            amount = float(re.sub(r"[万円,\s]", "", value)) * 10000
        else:
            amount = float(re.sub(r"[円,\s¥￥]", "", value))
    except ValueError:
        return 0
    # nan and inf cannot be written as JSON
    return amount if math.isfinite(amount) else 0


def parse_is_mq(text: Optional[str]) -> bool:
    return (text or "").strip().lower() in _MQ_TOKENS


def parse_numeric_flag(text: Optional[str]) -> bool:
    """``1``, ``1.0`` and any larger count mark the vehicle type as sold."""
    value = (text or "").strip()
    if not value:
        return False
    try:
        return float(value) >= 1
    except ValueError:
        return False


def match_sales_rep_name(name: str, existing_names: Sequence[str]) -> Optional[str]:
    """Resolve a possibly abbreviated rep name to a registered one."""
    if not name:
        return None
    trimmed = name.strip()
    if trimmed in existing_names:
        return trimmed

    input_kanji = "".join(_KANJI.findall(trimmed))
    for existing in existing_names:
        if trimmed in existing or existing in trimmed:
            return existing
        existing_kanji = "".join(_KANJI.findall(existing))
        if input_kanji and existing_kanji and (
            input_kanji in existing_kanji or existing_kanji in input_kanji
        ):
            return existing
    return None


def _cell(row: Sequence[str], index: int) -> str:
    return row[index].strip() if index < len(row) else ""


def detect_format(rows: Sequence[Sequence[str]]) -> str:
    """Ledger sheets are wider than the simple layout and carry type flags."""
    for row in rows:
        # Profit and MQ share positions with the ledger flags in simple sheets
        if len(row) <= len(SIMPLE_HEADERS):
            continue
        if any(parse_numeric_flag(_cell(row, index)) for index in (_NEW_FLAG, _USED_FLAG, _MOD_FLAG)):
            return FORMAT_LEDGER
        if len(row) >= 9:
            if any(parse_amount(_cell(row, index)) > 0 for index in (_NEW_SALE, _USED_SALE, _MOD_SALE)):
                return FORMAT_LEDGER
    return FORMAT_SIMPLE


def _looks_like_header(row: Sequence[str]) -> bool:
    for cell in row:
        value = cell.lower()
        if value in _HEADER_TOKENS or any(fragment in value for fragment in _HEADER_FRAGMENTS):
            return True
    return False


class _Importer:
    def __init__(self, valid_sales_reps: Optional[Sequence[str]], today: date) -> None:
        self.valid_sales_reps = list(valid_sales_reps or [])
        self.today = today.isoformat()
        self.result = SalesTargetImportResult()
        self._new_reps: Dict[str, None] = {}

    def resolve_rep(self, raw_name: str, line: int) -> str:
        if not self.valid_sales_reps:
            return raw_name
        matched = match_sales_rep_name(raw_name, self.valid_sales_reps)
        if matched:
            if matched != raw_name:
                LOGGER.debug("Row %d: matched sales rep %r to %r", line, raw_name, matched)
            return matched
        self._new_reps.setdefault(raw_name, None)
        return raw_name

    def contract_date(self, raw: str, line: int) -> str:
        parsed = parse_date_to_iso(raw)
        if not parsed:
            self.result.warnings.append(
                f"行 {line}: 契約日「{raw}」を解析できませんでした。今日の日付を使用します。"
            )
            return self.today
        return parsed

    def require_rep(self, row: Sequence[str], line: int) -> Optional[str]:
        raw_name = _cell(row, _REP)
        if not raw_name:
            self.result.warnings.append(f"行 {line}: 担当者名がありません。スキップしました。")
            return None
        return self.resolve_rep(raw_name, line)

    def import_simple(self, row: Sequence[str], line: int) -> None:
        rep = self.require_rep(row, line)
        if rep is None:
            return
        self.result.contracts.append(
            SalesTargetContract(
                sales_rep_name=rep,
                contract_date=self.contract_date(_cell(row, _DATE), line),
                customer_name=_cell(row, _CUSTOMER) or f"CSV取込 {line}",
                vehicle_model=_cell(row, _MODEL),
                sale_amount=parse_amount(_cell(row, _SALE_AMOUNT)),
                profit=parse_amount(_cell(row, _PROFIT)),
                is_mq=parse_is_mq(_cell(row, _IS_MQ)),
            )
        )

    def import_ledger(self, row: Sequence[str], line: int) -> None:
        rep = self.require_rep(row, line)
        if rep is None:
            return
        model = _cell(row, _MODEL)
        sold = [
            ("new", _NEW_FLAG, _NEW_SALE, _NEW_PROFIT, model),
            ("used", _USED_FLAG, _USED_SALE, _USED_PROFIT, f"{model}（中古）" if model else "中古車"),
            ("modification", _MOD_FLAG, _MOD_SALE, _MOD_PROFIT, f"{model}（改造）" if model else "改造"),
        ]
        sold = [entry for entry in sold if parse_numeric_flag(_cell(row, entry[1]))]
        if not sold:
            LOGGER.debug("Row %d: no vehicle type flag, skipping", line)
            return

        contract_date = self.contract_date(_cell(row, _DATE), line)
        customer = _cell(row, _CUSTOMER) or f"CSV取込 {line}"
        for vehicle_type, _flag, sale_index, profit_index, vehicle_model in sold:
            self.result.contracts.append(
                SalesTargetContract(
                    sales_rep_name=rep,
                    contract_date=contract_date,
                    customer_name=customer,
                    vehicle_model=vehicle_model,
                    sale_amount=parse_amount(_cell(row, sale_index)),
                    profit=parse_amount(_cell(row, profit_index)),
                    is_mq=False,
                    vehicle_type=vehicle_type,
                )
            )

    def finish(self) -> SalesTargetImportResult:
        self.result.new_sales_reps = list(self._new_reps)
        return self.result


def import_sales_targets(
    text: str,
    valid_sales_reps: Optional[Sequence[str]] = None,
    *,
    today: Optional[date] = None,
) -> SalesTargetImportResult:
    importer = _Importer(valid_sales_reps, today or datetime.now().date())
    rows = list(iter_rows(strip_bom(text), errors=importer.result.errors))
    if not rows:
        if not importer.result.errors:
            importer.result.errors.append("CSVファイルが空です")
        return importer.finish()

    layout = detect_format([row.fields for row in rows])
    LOGGER.info("Sales target CSV: %d rows, layout %s", len(rows), layout)

    if _looks_like_header(rows[0].fields):
        rows = rows[1:]

    handler = importer.import_ledger if layout == FORMAT_LEDGER else importer.import_simple
    for parsed in rows:
        try:
            handler(parsed.fields, parsed.line_number)
        except (ValueError, TypeError, IndexError) as exc:
            LOGGER.warning("Sales target row %d error: %s", parsed.line_number, exc)
            importer.result.errors.append(f"行 {parsed.line_number}: データの変換に失敗しました")

    result = importer.finish()
    LOGGER.info(
        "Sales target CSV: %d contracts, %d warnings, %d new reps",
        len(result.contracts),
        len(result.warnings),
        len(result.new_sales_reps),
    )
    return result


def _format_amount(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else str(value)


def export_sales_targets_to_csv(contracts: Sequence[SalesTargetContract]) -> str:
    lines = [serialize_row(SIMPLE_HEADERS)]
    for contract in contracts:
        lines.append(
            serialize_row(
                [
                    contract.sales_rep_name,
                    contract.contract_date,
                    contract.customer_name,
                    contract.vehicle_model,
                    _format_amount(contract.sale_amount),
                    _format_amount(contract.profit),
                    "○" if contract.is_mq else "",
                ]
            )
        )
    return "\n".join(lines)


def sales_target_csv_template() -> str:
    sample_rows = [
        ["目黒", "2024-06-15", "山田太郎", "アミティ", "6500000", "850000", ""],
        ["野島", "2024-07-20", "鈴木花子", "ジル520", "8500000", "1100000", ""],
        ["目黒", "2024-08-05", "佐藤次郎", "ホビクル", "5800000", "720000", "○"],
    ]
    return "\n".join(",".join(row) for row in [SIMPLE_HEADERS] + sample_rows)
