from __future__ import annotations

from typing import Iterable, Optional, Protocol

from bizledger.domain.models import Bill, BillItem, Client, LedgerEntry, Product


class BillingRepository(Protocol):
    def get_client_by_id(self, client_id: int) -> Optional[Client]: ...
    def get_product_by_id(self, product_id: int) -> Optional[Product]: ...
    def get_bill_by_id(self, bill_id: int) -> Optional[Bill]: ...
    def get_bill_items(self, bill_id: int) -> list[BillItem]: ...
    def get_bill_item(self, item_id: int) -> Optional[BillItem]: ...
    def list_bills_by_client(self, client_id: int) -> list[Bill]: ...
    def last_carry_forward(self, client_id: int) -> float: ...
    def ledger_entries_for_bill(self, bill_id: int) -> list[LedgerEntry]: ...
    def create_bill_with_items(self, bill: Bill, items: Iterable[BillItem]) -> int: ...
    def update_bill_with_items(self, bill: Bill, items: Iterable[BillItem]) -> float: ...
    def adjust_single_bill_item(self, item_id: int, new_quantity: float) -> float: ...
    def delete_bill(self, bill_id: int) -> None: ...
