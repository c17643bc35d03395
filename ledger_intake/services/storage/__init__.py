"""
Storage Services Package

Provides abstract interfaces and the SQLite implementation for staged
actions, the ledger, the rate cache and the audit log.
"""

from ledger_intake.services.storage.interface import (
    AuditStorageInterface,
    InsufficientBalanceError,
    LedgerStorage,
    NotFoundError,
    PendingActionStorage,
    RateCacheStorage,
    StorageError,
)
from ledger_intake.services.storage.sqlite_store import SQLiteStore

__all__ = [
    # Interfaces
    "AuditStorageInterface",
    "LedgerStorage",
    "PendingActionStorage",
    "RateCacheStorage",
    # Exceptions
    "InsufficientBalanceError",
    "NotFoundError",
    "StorageError",
    # SQLite implementation
    "SQLiteStore",
]
