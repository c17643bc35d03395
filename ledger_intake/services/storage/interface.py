"""
Storage interfaces for staged actions, the ledger, rates and the audit trail.

DESIGN DECISION: The hard guarantees (idempotent staging, the single
pending -> approved/rejected transition, atomic commits, serialized balance
updates) are promised here and kept by the backend inside its own
transactions. Callers never read-then-write to get them.

Only the operations the stager, review gate, committer and valuation
resolver call are declared.
"""

from abc import ABC, abstractmethod
from datetime import date, datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

from ledger_intake.models.action import Action, PendingAction, PendingStatus
from ledger_intake.models.audit import AuditEvent
from ledger_intake.models.ledger import (
    RateQuote,
    Transaction,
    Vault,
    VaultEntry,
    VaultMovement,
)


class PendingActionStorage(ABC):
    """
    Abstract interface for staged actions.

    CRITICAL: Records are never deleted. The only mutations are the single
    status transition, manual completion while pending, and commit bookkeeping.
    """

    @abstractmethod
    async def insert_if_absent(
        self,
        pending: PendingAction,
    ) -> tuple[PendingAction, bool]:
        """
        Insert a staged action unless one with the same (batch_id, signature)
        exists. Check and insert run in one write transaction.

        Returns:
            (stored_record, created). created is False for a duplicate delivery.
        """
        pass

    @abstractmethod
    async def get_pending_action(self, pending_id: UUID) -> Optional[PendingAction]:
        """Retrieve a staged action by id, or None."""
        pass

    @abstractmethod
    async def list_pending_actions(
        self,
        batch_id: Optional[str] = None,
        status: Optional[PendingStatus] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[PendingAction]:
        """List staged actions, oldest first, with optional filters."""
        pass

    @abstractmethod
    async def transition_status(
        self,
        pending_id: UUID,
        to_status: PendingStatus,
        decided_at: datetime,
        rejection_reason: Optional[str] = None,
    ) -> bool:
        """
        Compare-and-set pending -> to_status.

        Approval additionally requires a non-null action.

        Returns:
            True if this call performed the transition, False otherwise.
        """
        pass

    @abstractmethod
    async def approve_batch(
        self,
        batch_id: str,
        threshold: float,
        decided_at: datetime,
    ) -> list[UUID]:
        """
        Approve every pending member of the batch with a non-null action and
        confidence >= threshold, in one write transaction.

        Returns:
            IDs approved by this call.
        """
        pass

    @abstractmethod
    async def amend_action(
        self,
        pending_id: UUID,
        action: Action,
        confidence: float,
        meta: dict,
    ) -> bool:
        """
        Replace the action of a still-pending record (manual completion).

        Returns:
            True if the record was pending and got updated.
        """
        pass

    @abstractmethod
    async def record_commit_error(self, pending_id: UUID, error: str) -> None:
        """Remember why the last commit of an approved action failed."""
        pass


class LedgerStorage(ABC):
    """
    Abstract interface for transactions and vaults.

    CRITICAL: commit_transaction is the only writer of transactions, vault
    balances and vault entries, and writes all three or nothing.
    """

    @abstractmethod
    async def commit_transaction(
        self,
        transaction: Transaction,
        movements: list[VaultMovement],
    ) -> tuple[Transaction, list[VaultEntry], bool]:
        """
        Atomically insert the transaction, apply the movements to vault
        balances, append the vault entries and mark the pending action as
        committed.

        If the pending action already has a transaction, nothing is written
        and the existing transaction is returned.

        Returns:
            (transaction, entries, created)

        Raises:
            InsufficientBalanceError: A non-overdraft vault would go negative.
                Nothing is written.
        """
        pass

    @abstractmethod
    async def get_transaction(self, transaction_id: UUID) -> Optional[Transaction]:
        pass

    @abstractmethod
    async def get_transaction_for_action(self, pending_id: UUID) -> Optional[Transaction]:
        pass

    @abstractmethod
    async def list_entries(
        self,
        vault: Optional[str] = None,
        transaction_id: Optional[UUID] = None,
    ) -> list[VaultEntry]:
        """Vault entries in commit order."""
        pass

    @abstractmethod
    async def ensure_vault(self, name: str, allow_overdraft: bool = False) -> Vault:
        """Get a vault, creating it empty on first use."""
        pass

    @abstractmethod
    async def get_vault(self, name: str) -> Optional[Vault]:
        pass

    @abstractmethod
    async def list_vaults(self) -> list[Vault]:
        pass

    @abstractmethod
    async def list_pending_valuation(self, limit: int = 100) -> list[Transaction]:
        """Transactions committed with unresolved rates, for a re-resolution pass."""
        pass


class RateCacheStorage(ABC):
    """
    Abstract interface for the FX/price rate cache.

    Append-only and unique per (from, to, date, source).
    """

    @abstractmethod
    async def get_rate(
        self,
        from_currency: str,
        to_currency: str,
        rate_date: date,
    ) -> Optional[RateQuote]:
        """Any cached rate for the pair and date, regardless of source."""
        pass

    @abstractmethod
    async def put_rate(self, quote: RateQuote) -> RateQuote:
        """
        Insert a rate if its key is absent.

        Returns:
            The stored quote (the pre-existing one if the key was taken).
        """
        pass


class AuditStorageInterface(ABC):
    """Append-only audit table. Rows are never updated or deleted."""

    @abstractmethod
    async def append_event(self, event: AuditEvent) -> bool:
        """Insert one event; False if the row could not be written."""
        pass

    @abstractmethod
    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        """Get all events for one ingestion or review, in chronological order."""
        pass

    @abstractmethod
    async def get_events_by_entity(
        self,
        entity_type: str,
        entity_id: str,
    ) -> list[AuditEvent]:
        """Get all events for a specific entity, in chronological order."""
        pass

    @abstractmethod
    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """Get the most recent audit events (newest first)."""
        pass


class StorageError(Exception):
    """Base exception for storage operations."""
    pass


class NotFoundError(StorageError):
    """Entity not found in storage."""
    pass


class InsufficientBalanceError(StorageError):
    """A movement would drive a non-overdraft vault below zero."""

    def __init__(self, vault: str, asset: str, balance: Decimal, delta: Decimal):
        self.vault = vault
        self.asset = asset
        self.balance = balance
        self.delta = delta
        super().__init__(
            f"Vault '{vault}' has {balance} {asset}; applying {delta} would make it negative"
        )
