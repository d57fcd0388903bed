from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

# Entity kinds double as table names.
ENTITY_KINDS = (
    "clients",
    "products",
    "stock",
    "bills",
    "bill_items",
    "ledger",
    "demand_batch",
    "demand",
)

LEDGER_BILL = "bill"
LEDGER_PAYMENT = "payment"


@dataclass(frozen=True)
class Client:
    id: Optional[int]
    name: str
    phone: Optional[str] = None
    address: Optional[str] = None
    updated_at: Optional[str] = None
    remote_id: Optional[str] = None
    is_synced: bool = False
    is_deleted: bool = False


@dataclass(frozen=True)
class Product:
    id: Optional[int]
    name: str
    weight: float = 0.0
    price: float = 0.0
    stock: float = 0.0
    updated_at: Optional[str] = None
    remote_id: Optional[str] = None
    is_synced: bool = False
    is_deleted: bool = False


@dataclass(frozen=True)
class StockLevel:
    product_id: int
    product_name: Optional[str]
    quantity: float = 0.0
    is_synced: bool = False


@dataclass(frozen=True)
class Bill:
    id: Optional[int]
    client_id: int
    total_amount: float = 0.0
    paid_amount: float = 0.0
    carry_forward: float = 0.0
    date: str = ""
    updated_at: Optional[str] = None
    remote_id: Optional[str] = None
    is_synced: bool = False
    is_deleted: bool = False


@dataclass(frozen=True)
class BillItem:
    id: Optional[int]
    bill_id: Optional[int]
    product_id: int
    quantity: float
    price: float
    updated_at: Optional[str] = None
    remote_id: Optional[str] = None
    is_synced: bool = False
    is_deleted: bool = False

    @property
    def line_total(self) -> float:
        return float(self.quantity) * float(self.price)


@dataclass(frozen=True)
class LedgerEntry:
    id: Optional[int]
    client_id: int
    bill_id: Optional[int]
    type: str
    amount: float
    date: str
    note: Optional[str] = None
    updated_at: Optional[str] = None
    remote_id: Optional[str] = None
    is_synced: bool = False
    is_deleted: bool = False


@dataclass(frozen=True)
class DemandBatch:
    id: int
    demand_date: str
    closed: bool = False
    updated_at: Optional[str] = None
    remote_id: Optional[str] = None
    is_synced: bool = False
    is_deleted: bool = False


@dataclass(frozen=True)
class Demand:
    id: int
    batch_id: int
    client_id: int
    product_id: int
    quantity: float
    date: str
    updated_at: Optional[str] = None
    remote_id: Optional[str] = None
    is_synced: bool = False
    is_deleted: bool = False


@dataclass(frozen=True)
class ProductTotal:
    product_id: int
    product_name: str
    total_qty: float


@dataclass(frozen=True)
class ClientDemandLine:
    client_id: int
    client_name: str
    product_id: int
    product_name: str
    qty: float


@dataclass(frozen=True)
class ClientBalance:
    client_id: int
    name: str
    phone: Optional[str]
    balance: float


@dataclass(frozen=True)
class PeriodSales:
    period: str
    bills: int
    revenue: float


@dataclass(frozen=True)
class ProductSales:
    product_id: int
    product_name: str
    quantity: float
    revenue: float
    bills: int


@dataclass(frozen=True)
class StockValue:
    product_id: int
    product_name: str
    stock: float
    price: float
    sold_qty: float

    @property
    def value(self) -> float:
        return float(self.stock) * float(self.price)


@dataclass(frozen=True)
class SyncedRow:
    """A row the gateway confirmed as persisted remotely."""

    entity_kind: str
    local_id: int
    remote_id: Optional[str] = None
    seen_updated_at: Optional[str] = None


@dataclass(frozen=True)
class SyncResult:
    success: bool
    message: str
    skipped: bool = False
    transmitted: tuple[SyncedRow, ...] = field(default_factory=tuple)

    @classmethod
    def ok(cls, message: str, transmitted: tuple[SyncedRow, ...] = ()) -> "SyncResult":
        return cls(success=True, message=message, transmitted=tuple(transmitted))

    @classmethod
    def failed(cls, message: str) -> "SyncResult":
        return cls(success=False, message=message)

    @classmethod
    def skip(cls, message: str) -> "SyncResult":
        return cls(success=False, message=message, skipped=True)

    @classmethod
    def coerce(cls, value: Any) -> "SyncResult":
        """Accept a SyncResult or a plain ``{"success", "message"}`` mapping."""
        if isinstance(value, SyncResult):
            return value
        if isinstance(value, Mapping):
            rows = []
            for r in value.get("transmitted") or ():
                if isinstance(r, SyncedRow):
                    rows.append(r)
                else:
                    rows.append(
                        SyncedRow(
                            entity_kind=str(r["entity_kind"]),
                            local_id=int(r["local_id"]),
                            remote_id=r.get("remote_id"),
                            seen_updated_at=r.get("seen_updated_at"),
                        )
                    )
            return cls(
                success=bool(value.get("success", False)),
                message=str(value.get("message", "")),
                skipped=bool(value.get("skipped", False)),
                transmitted=tuple(rows),
            )
        raise TypeError(f"Unsupported sync result: {value!r}")
