from __future__ import annotations

from dataclasses import replace
from typing import Callable, Iterable, Optional

import logging
from bizledger.domain.errors import NotFoundError, ValidationError
from bizledger.domain.models import Bill, BillItem
from bizledger.repositories.contracts import BillingRepository
from bizledger.repositories.unit_of_work import RepositoryUnitOfWork, UnitOfWork

log = logging.getLogger("bizledger.billing")


class BillingService:
    def __init__(
        self,
        repo: BillingRepository,
        uow_factory: Callable[[], UnitOfWork] | None = None,
    ):
        self.repo = repo
        self.uow_factory = uow_factory or (lambda: RepositoryUnitOfWork(repo))

    def _validate_items(self, items: list[dict]) -> float:
        if not items:
            raise ValidationError("Bill has no items.")
        total = 0.0
        for it in items:
            qty = float(it["quantity"])
            price = float(it["price"])
            if qty <= 0:
                raise ValidationError("Quantity must be > 0.")
            if price < 0:
                raise ValidationError("Price must be >= 0.")
            if not self.repo.get_product_by_id(int(it["product_id"])):
                raise NotFoundError("Product not found.")
            total += qty * price
        return total

    def create_bill(
        self,
        client_id: int,
        items: Iterable[dict],
        paid_amount: float = 0.0,
        date_iso: Optional[str] = None,
    ) -> int:
        """
        items: [{product_id, quantity, price}]

        Stock is decremented per item; a sale larger than the stock on hand
        leaves the product at zero.
        """
        items = list(items)
        if not self.repo.get_client_by_id(int(client_id)):
            raise NotFoundError("Client not found.")
        if paid_amount < 0:
            raise ValidationError("Paid amount must be >= 0.")
        total = self._validate_items(items)

        carry = self.repo.last_carry_forward(int(client_id)) + total - float(paid_amount)
        with self.uow_factory() as uow:
            bill_id = uow.create_bill(int(client_id), items, float(paid_amount), carry, date_iso)
        log.info(
            "bill_created bill_id=%s client_id=%s items=%s total=%.2f",
            bill_id,
            client_id,
            len(items),
            total,
            extra={"bill_id": bill_id, "client_id": int(client_id)},
        )
        return bill_id

    def update_bill(self, bill_id: int, items: Iterable[dict], paid_amount: Optional[float] = None) -> float:
        """Replace a bill's lines. Stock is not re-adjusted for replaced lines."""
        items = list(items)
        bill = self.get_bill(bill_id)
        self._validate_items(items)
        if paid_amount is not None:
            if paid_amount < 0:
                raise ValidationError("Paid amount must be >= 0.")
            bill = replace(bill, paid_amount=float(paid_amount))

        with self.uow_factory() as uow:
            total = uow.replace_bill(bill, items)
        log.info("bill_updated bill_id=%s items=%s total=%.2f", bill_id, len(items), total, extra={"bill_id": int(bill_id)})
        return total

    def adjust_item_quantity(self, item_id: int, new_quantity: float) -> float:
        if new_quantity <= 0:
            raise ValidationError("Quantity must be > 0.")
        item = self.repo.get_bill_item(int(item_id))
        if not item:
            raise NotFoundError("Bill item not found.")
        with self.uow_factory() as uow:
            total = uow.adjust_item(int(item_id), float(new_quantity))
        log.info(
            "bill_item_adjusted bill_id=%s item_id=%s old_qty=%s new_qty=%s total=%.2f",
            item.bill_id,
            item_id,
            item.quantity,
            new_quantity,
            total,
            extra={"bill_id": item.bill_id},
        )
        return total

    def delete_bill(self, bill_id: int) -> None:
        self.get_bill(bill_id)
        self.repo.delete_bill(int(bill_id))
        log.info("bill_deleted bill_id=%s", bill_id, extra={"bill_id": int(bill_id)})

    def get_bill(self, bill_id: int) -> Bill:
        bill = self.repo.get_bill_by_id(int(bill_id))
        if not bill:
            raise NotFoundError("Bill not found.")
        return bill

    def bill_items(self, bill_id: int) -> list[BillItem]:
        return self.repo.get_bill_items(int(bill_id))

    def bills_for_client(self, client_id: int) -> list[Bill]:
        return self.repo.list_bills_by_client(int(client_id))
