from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from bizledger.repositories.sqlite_repo import SqliteRepository
from bizledger.services.billing_service import BillingService
from bizledger.services.client_service import ClientService
from bizledger.services.demand_service import DemandService
from bizledger.services.inventory_service import InventoryService
from bizledger.services.ledger_service import LedgerService
from bizledger.services.reporting_service import ReportingService


@dataclass(frozen=True)
class AppContainer:
    repo: SqliteRepository
    clients: ClientService
    inventory: InventoryService
    billing: BillingService
    ledger: LedgerService
    demand: DemandService
    reporting: ReportingService


def build_container(db_path: Path | str) -> AppContainer:
    repo = SqliteRepository(db_path)
    repo.init_db()

    return AppContainer(
        repo=repo,
        clients=ClientService(repo),
        inventory=InventoryService(repo),
        billing=BillingService(repo),
        ledger=LedgerService(repo),
        demand=DemandService(repo),
        reporting=ReportingService(repo),
    )
