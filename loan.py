from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class LoanStatus(str, Enum):
    """Stored loan states. ``overdue`` is deliberately absent: it is derived on read."""

    ACTIVE = "active"
    RETURNED = "returned"
    LOST = "lost"


CLOSED_STATUSES = (LoanStatus.RETURNED, LoanStatus.LOST)


class ResourceCondition(str, Enum):
    GOOD = "good"
    DETERIORATED = "deteriorated"
    DAMAGED = "damaged"
    LOST = "lost"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Naive datetimes are taken to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _parse_dt(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    return ensure_utc(datetime.fromisoformat(str(value)))


def format_dt(value: Optional[datetime]) -> Optional[str]:
    # fixed width so stored timestamps compare correctly as text
    return ensure_utc(value).isoformat(timespec="microseconds") if value is not None else None


@dataclass
class Loan:
    """A loan of ``quantity`` units of one resource to one person."""

    id: str
    person_id: str
    resource_id: str
    quantity: int
    loan_date: datetime
    due_date: datetime
    status: LoanStatus = LoanStatus.ACTIVE
    returned_date: Optional[datetime] = None
    observations: Optional[str] = None
    resource_condition: Optional[ResourceCondition] = None
    stock_released: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_closed(self) -> bool:
        return self.status in CLOSED_STATUSES

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"Loan {self.id}: {self.quantity} x {self.resource_id} to {self.person_id} ({self.status.value})"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "person_id": self.person_id,
            "resource_id": self.resource_id,
            "quantity": self.quantity,
            "loan_date": format_dt(self.loan_date),
            "due_date": format_dt(self.due_date),
            "returned_date": format_dt(self.returned_date),
            "status": self.status.value,
            "observations": self.observations,
            "resource_condition": self.resource_condition.value if self.resource_condition else None,
            "created_at": format_dt(self.created_at),
            "updated_at": format_dt(self.updated_at),
        }

    @staticmethod
    def from_row(row: Any) -> "Loan":
        data = dict(row)
        condition = data.get("resource_condition")
        return Loan(
            id=data["id"],
            person_id=data["person_id"],
            resource_id=data["resource_id"],
            quantity=int(data["quantity"]),
            loan_date=_parse_dt(data["loan_date"]),
            due_date=_parse_dt(data["due_date"]),
            status=LoanStatus(data["status"]),
            returned_date=_parse_dt(data.get("returned_date")),
            observations=data.get("observations"),
            resource_condition=ResourceCondition(condition) if condition else None,
            stock_released=bool(data.get("stock_released", 0)),
            created_at=_parse_dt(data.get("created_at")),
            updated_at=_parse_dt(data.get("updated_at")),
        )


@dataclass(frozen=True)
class ResourceStock:
    resource_id: str
    total_quantity: int
    available_quantity: int

    @property
    def available(self) -> bool:
        return self.available_quantity > 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "resource_id": self.resource_id,
            "total_quantity": self.total_quantity,
            "available_quantity": self.available_quantity,
            "available": self.available,
        }
