from __future__ import annotations

import logging
from typing import Optional

from bizledger.domain.errors import NotFoundError, ValidationError
from bizledger.domain.models import LEDGER_BILL, ClientBalance, LedgerEntry

log = logging.getLogger("bizledger.billing")


class LedgerService:
    def __init__(self, repo):
        self.repo = repo

    def record_payment(
        self, client_id: int, amount: float, note: Optional[str] = None, date_iso: Optional[str] = None
    ) -> int:
        if amount <= 0:
            raise ValidationError("Payment amount must be > 0.")
        entry_id = self.repo.insert_cash_payment(int(client_id), float(amount), note, date_iso)
        log.info(
            "payment_recorded entry_id=%s client_id=%s amount=%.2f",
            entry_id,
            client_id,
            amount,
            extra={"entry_id": entry_id, "client_id": int(client_id)},
        )
        return entry_id

    def delete_payment(self, entry_id: int) -> None:
        if not self.repo.delete_ledger_entry(int(entry_id)):
            raise NotFoundError("Ledger entry not found.")
        log.info("payment_deleted entry_id=%s", entry_id, extra={"entry_id": int(entry_id)})

    def entries(self, client_id: int) -> list[LedgerEntry]:
        return self.repo.ledger_entries_for_client(int(client_id))

    def statement(self, client_id: int) -> list[tuple[LedgerEntry, float]]:
        """Entries in date order with the running balance after each one."""
        running = 0.0
        rows = []
        for e in self.repo.ledger_entries_for_client(int(client_id)):
            running += e.amount if e.type == LEDGER_BILL else -e.amount
            rows.append((e, running))
        return rows

    def balance(self, client_id: int) -> float:
        return self.repo.client_balance(int(client_id))

    def balances(self, only_outstanding: bool = False) -> list[ClientBalance]:
        return self.repo.clients_with_balances(outstanding_only=only_outstanding)

    def recalculate_carry_forward(self, client_id: int) -> float:
        carry = self.repo.recalculate_carry_forward(int(client_id))
        log.info("carry_forward_recalculated client_id=%s carry=%.2f", client_id, carry)
        return carry
