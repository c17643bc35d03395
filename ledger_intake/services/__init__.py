"""Services package."""

from ledger_intake.services.storage import (
    AuditStorageInterface,
    InsufficientBalanceError,
    LedgerStorage,
    NotFoundError,
    PendingActionStorage,
    RateCacheStorage,
    SQLiteStore,
    StorageError,
)

__all__ = [
    # Storage services
    "AuditStorageInterface",
    "InsufficientBalanceError",
    "LedgerStorage",
    "NotFoundError",
    "PendingActionStorage",
    "RateCacheStorage",
    "SQLiteStore",
    "StorageError",
]
