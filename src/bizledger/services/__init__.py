from .client_service import ClientService
from .inventory_service import InventoryService
from .billing_service import BillingService
from .ledger_service import LedgerService
from .demand_service import DemandService
from .reporting_service import ReportingService
from .sync_orchestrator import SyncOrchestrator, SyncHandle, SyncState

__all__ = [
    "ClientService",
    "InventoryService",
    "BillingService",
    "LedgerService",
    "DemandService",
    "ReportingService",
    "SyncOrchestrator",
    "SyncHandle",
    "SyncState",
]
