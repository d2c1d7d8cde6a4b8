"""Customer-facing value types shared by the CSV and backup services."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Mapping, Optional


class CustomerStatus(str, Enum):
    """Kanban status of a customer. Values match the persisted store."""

    NEW = "new"
    OWNER = "owner"
    AWAITING_DELIVERY = "awaiting_delivery"
    RANK_A = "rank_a"
    RANK_B = "rank_b"
    RANK_C = "rank_c"
    RANK_N = "rank_n"
    CONTRACT = "contract"

    @classmethod
    def coerce(cls, value: Any) -> Optional["CustomerStatus"]:
        if isinstance(value, cls):
            return value
        if value in (None, ""):
            return None
        try:
            return cls(str(value))
        except ValueError:
            return None


@dataclass
class Customer:
    """The subset of a customer record that survives CSV import and export."""

    id: str = ""
    customer_number: str = ""
    name: str = ""
    name_kana: str = ""
    postal_code: str = ""
    address: str = ""
    address2: str = ""
    region: str = ""
    phone: str = ""
    mobile: str = ""
    assigned_sales_rep_id: Optional[str] = None
    assigned_sales_rep_name: str = ""
    source: str = ""
    status: Optional[CustomerStatus] = None
    contract_date: str = ""
    created_at: str = ""
    updated_at: str = ""

    def to_dict(self) -> Dict[str, Any]:
        """Serialise using the camelCase keys of ``customer-store``."""
        payload: Dict[str, Any] = {
            "id": self.id,
            "customerNumber": self.customer_number,
            "name": self.name,
            "nameKana": self.name_kana,
            "postalCode": self.postal_code,
            "address": self.address,
            "address2": self.address2,
            "region": self.region,
            "phone": self.phone,
            "mobile": self.mobile,
            "assignedSalesRepId": self.assigned_sales_rep_id,
            "assignedSalesRepName": self.assigned_sales_rep_name,
            "source": self.source,
            "status": self.status.value if self.status else None,
            "contractDate": self.contract_date,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }
        if payload["assignedSalesRepId"] is None:
            payload.pop("assignedSalesRepId")
        return payload

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Customer":
        def text(key: str) -> str:
            value = payload.get(key)
            return "" if value is None else str(value)

        rep_id = payload.get("assignedSalesRepId")
        return cls(
            id=text("id"),
            customer_number=text("customerNumber"),
            name=text("name"),
            name_kana=text("nameKana"),
            postal_code=text("postalCode"),
            address=text("address"),
            address2=text("address2"),
            region=text("region"),
            phone=text("phone"),
            mobile=text("mobile"),
            assigned_sales_rep_id=str(rep_id) if rep_id not in (None, "") else None,
            assigned_sales_rep_name=text("assignedSalesRepName"),
            source=text("source"),
            status=CustomerStatus.coerce(payload.get("status")),
            contract_date=text("contractDate"),
            created_at=text("createdAt"),
            updated_at=text("updatedAt"),
        )


@dataclass(frozen=True)
class UserInfo:
    """A sales rep that imported rows can be linked to."""

    id: str
    name: str

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "UserInfo":
        return cls(id=str(payload.get("id", "")), name=str(payload.get("name") or ""))


@dataclass(frozen=True)
class DuplicateWarning:
    csv_row: int
    name: str
    prefecture: str
    existing_customer_id: str
    existing_customer_name: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "csvRow": self.csv_row,
            "name": self.name,
            "prefecture": self.prefecture,
            "existingCustomerId": self.existing_customer_id,
            "existingCustomerName": self.existing_customer_name,
        }
