from .models import (
    Client,
    Product,
    StockLevel,
    Bill,
    BillItem,
    LedgerEntry,
    DemandBatch,
    Demand,
    ProductTotal,
    ClientDemandLine,
    ClientBalance,
    PeriodSales,
    ProductSales,
    StockValue,
    SyncResult,
    SyncedRow,
)
from .errors import (
    AppError,
    ValidationError,
    DuplicateNameError,
    NotFoundError,
    BatchClosedError,
    SchemaMigrationError,
    TransactionError,
    SyncError,
)

__all__ = [
    "Client",
    "Product",
    "StockLevel",
    "Bill",
    "BillItem",
    "LedgerEntry",
    "DemandBatch",
    "Demand",
    "ProductTotal",
    "ClientDemandLine",
    "ClientBalance",
    "PeriodSales",
    "ProductSales",
    "StockValue",
    "SyncResult",
    "SyncedRow",
    "AppError",
    "ValidationError",
    "DuplicateNameError",
    "NotFoundError",
    "BatchClosedError",
    "SchemaMigrationError",
    "TransactionError",
    "SyncError",
]
