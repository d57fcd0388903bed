from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional, Protocol

from bizledger.domain.models import Bill, BillItem


class UnitOfWork(Protocol):
    def __enter__(self) -> "UnitOfWork": ...
    def __exit__(self, exc_type, exc, tb) -> None: ...
    def create_bill(self, client_id: int, items: Iterable[dict], paid_amount: float, carry_forward: float, date_iso: Optional[str] = None) -> int: ...
    def replace_bill(self, bill: Bill, items: Iterable[dict]) -> float: ...
    def adjust_item(self, item_id: int, new_quantity: float) -> float: ...


def _to_items(items: Iterable[dict]) -> list[BillItem]:
    return [
        BillItem(
            id=None,
            bill_id=None,
            product_id=int(it["product_id"]),
            quantity=float(it["quantity"]),
            price=float(it["price"]),
        )
        for it in items
    ]


@dataclass
class RepositoryUnitOfWork:
    """Unit of Work adapter for billing writes.

    Each repository composite already runs in its own SQL transaction; this
    keeps the billing service free of row-building details.
    """

    repo: object

    def __enter__(self) -> "RepositoryUnitOfWork":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        return None

    def create_bill(
        self,
        client_id: int,
        items: Iterable[dict],
        paid_amount: float,
        carry_forward: float,
        date_iso: Optional[str] = None,
    ) -> int:
        dt_iso = date_iso or datetime.now().replace(microsecond=0).isoformat(sep=" ")
        bill = Bill(
            id=None,
            client_id=int(client_id),
            paid_amount=float(paid_amount),
            carry_forward=float(carry_forward),
            date=dt_iso,
        )
        return int(self.repo.create_bill_with_items(bill, _to_items(items)))

    def replace_bill(self, bill: Bill, items: Iterable[dict]) -> float:
        return float(self.repo.update_bill_with_items(bill, _to_items(items)))

    def adjust_item(self, item_id: int, new_quantity: float) -> float:
        return float(self.repo.adjust_single_bill_item(int(item_id), float(new_quantity)))
