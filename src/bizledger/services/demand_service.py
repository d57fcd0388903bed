from __future__ import annotations

import logging
from datetime import date
from typing import Optional

from bizledger.domain.errors import NotFoundError, ValidationError
from bizledger.domain.models import ClientDemandLine, Demand, DemandBatch, ProductTotal

log = logging.getLogger(__name__)


class DemandService:
    def __init__(self, repo):
        self.repo = repo

    def open_batch(self, demand_date: Optional[date] = None) -> DemandBatch:
        d = (demand_date or date.today()).isoformat()
        batch_id = self.repo.get_or_create_batch_for_date(d)
        return self.get_batch(batch_id)

    def get_batch(self, batch_id: int) -> DemandBatch:
        b = self.repo.get_batch_by_id(int(batch_id))
        if not b:
            raise NotFoundError("Demand batch not found.")
        return b

    def history(self) -> list[DemandBatch]:
        return self.repo.list_batches()

    def add_demand(self, batch_id: int, client_id: int, product_id: int, quantity: float) -> int:
        if quantity <= 0:
            raise ValidationError("Quantity must be > 0.")
        if not self.repo.get_client_by_id(int(client_id)):
            raise NotFoundError("Client not found.")
        if not self.repo.get_product_by_id(int(product_id)):
            raise NotFoundError("Product not found.")
        return self.repo.insert_demand_entry(int(batch_id), int(client_id), int(product_id), float(quantity))

    def update_demand(self, demand_id: int, quantity: float) -> None:
        if quantity <= 0:
            raise ValidationError("Quantity must be > 0.")
        self.repo.update_demand_quantity(int(demand_id), float(quantity))

    def remove_demand(self, demand_id: int) -> None:
        self.repo.delete_demand_entry(int(demand_id))

    def entries(self, batch_id: int) -> list[Demand]:
        return self.repo.list_demand(int(batch_id))

    def totals(self, batch_id: int) -> list[ProductTotal]:
        return self.repo.batch_totals(int(batch_id))

    def client_breakdown(self, batch_id: int) -> list[ClientDemandLine]:
        return self.repo.batch_client_details(int(batch_id))

    def close_batch(
        self, batch_id: int, create_next_period: bool = True, next_date: Optional[date] = None
    ) -> Optional[int]:
        totals = self.repo.batch_totals(int(batch_id))
        next_id = self.repo.close_demand_batch(
            int(batch_id),
            create_next_period=create_next_period,
            next_date=next_date.isoformat() if next_date else None,
        )
        log.info(
            "demand_batch_closed batch_id=%s products=%s units=%.2f next_batch_id=%s",
            batch_id,
            len(totals),
            sum(t.total_qty for t in totals),
            next_id,
        )
        return next_id
