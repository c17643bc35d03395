"""
Ledger Committer

Converts an approved PendingAction into exactly one Transaction plus the
vault entries its verb implies.

CRITICAL BOUNDARIES:
1. Only approved actions are committed
2. One transaction per pending action, ever - a repeated commit returns the
   existing transaction
3. Transaction, vault balances, entries and the committed marker are written
   in ONE database transaction; a failed commit writes nothing
4. A non-overdraft vault never goes negative

DESIGN DECISION: Valuation is resolved BEFORE the write transaction opens.
Network calls never happen while the database write lock is held, and a
provider outage only flags the transaction (`valuation_pending`) instead of
failing the commit.
"""

from decimal import Decimal
from typing import Optional
from uuid import UUID

import structlog

from ledger_intake.audit import AuditLogger
from ledger_intake.config.settings import LedgerSettings
from ledger_intake.models.action import (
    Action,
    BorrowAction,
    IncomeAction,
    PendingAction,
    PendingStatus,
    RepayBorrowAction,
    SpendAction,
    StakeAction,
    TransferAction,
    UnstakeAction,
)
from ledger_intake.models.ledger import (
    CommitResult,
    EntryKind,
    Transaction,
    Valuation,
    VaultMovement,
)
from ledger_intake.services.storage import (
    InsufficientBalanceError,
    LedgerStorage,
    PendingActionStorage,
)
from ledger_intake.services.valuation import ValuationResolver
from ledger_intake.validation import ActionValidationError


logger = structlog.get_logger(__name__)


class LedgerInvariantViolation(Exception):
    """
    Committing would break a ledger invariant (e.g. a negative balance in a
    vault without overdraft). Nothing was written; the action stays approved
    and uncommitted.
    """

    def __init__(self, pending_id: UUID, message: str):
        self.pending_id = pending_id
        super().__init__(message)


class LedgerCommitter:
    """Commits approved actions to the ledger."""

    def __init__(
        self,
        storage: LedgerStorage,
        pending_storage: PendingActionStorage,
        resolver: ValuationResolver,
        settings: LedgerSettings,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self._storage = storage
        self._pending_storage = pending_storage
        self._resolver = resolver
        self._settings = settings
        self._audit_logger = audit_logger

    async def commit(
        self,
        pending: PendingAction,
        correlation_id: Optional[UUID] = None,
    ) -> CommitResult:
        """
        Commit an approved action.

        Returns:
            CommitResult. created=False when the action was already committed.

        Raises:
            ActionValidationError: the action is not approved or has no action.
            LedgerInvariantViolation: the movements would break a vault
                balance rule; nothing was written.
        """
        if pending.status is not PendingStatus.APPROVED:
            raise ActionValidationError(
                f"Pending action {pending.id} is {pending.status.value}, not approved"
            )
        if pending.action is None:
            raise ActionValidationError(f"Pending action {pending.id} has no action")

        if pending.committed_transaction_id is not None:
            existing = await self._storage.get_transaction(pending.committed_transaction_id)
            if existing is not None:
                entries = await self._storage.list_entries(transaction_id=existing.id)
                return CommitResult(transaction=existing, entries=entries, created=False)

        action = pending.action
        valuation = await self._resolver.resolve(action.unit, action.date)
        transaction = self.build_transaction(pending.id, action, valuation)
        movements = self.plan_movements(action, valuation)

        try:
            stored, entries, created = await self._storage.commit_transaction(
                transaction, movements
            )
        except InsufficientBalanceError as e:
            logger.warning(
                "commit_rejected",
                pending_id=str(pending.id),
                vault=e.vault,
                asset=e.asset,
                balance=str(e.balance),
                delta=str(e.delta),
            )
            await self._pending_storage.record_commit_error(pending.id, str(e))
            if self._audit_logger:
                await self._audit_logger.log_commit_failed(
                    pending_id=pending.id,
                    error_message=str(e),
                    correlation_id=correlation_id,
                )
            raise LedgerInvariantViolation(pending.id, str(e)) from e

        if created:
            logger.info(
                "transaction_committed",
                transaction_id=str(stored.id),
                pending_id=str(pending.id),
                verb=stored.type,
                asset=stored.asset,
                quantity=str(stored.quantity),
                valuation_pending=stored.valuation_pending,
            )
            if self._audit_logger:
                await self._audit_logger.log_transaction_committed(
                    transaction_id=stored.id,
                    pending_id=pending.id,
                    verb=stored.type,
                    amount=str(stored.quantity),
                    asset=stored.asset,
                    correlation_id=correlation_id,
                )
                if stored.valuation_pending:
                    await self._audit_logger.log_valuation_pending(
                        transaction_id=stored.id,
                        unit=stored.asset,
                        correlation_id=correlation_id,
                    )

        return CommitResult(transaction=stored, entries=entries, created=created)

    # =========================================================================
    # TRANSACTION
    # =========================================================================

    def build_transaction(
        self,
        pending_id: UUID,
        action: Action,
        valuation: Valuation,
    ) -> Transaction:
        """The immutable ledger record for an action and its valuation."""
        source, destination = self._endpoints(action)
        fee = action.fee

        return Transaction(
            pending_action_id=pending_id,
            date=action.date,
            type=action.verb,
            asset=action.unit,
            account=getattr(action, "account", None) or source or destination,
            destination_account=destination if source else None,
            counterparty=action.counterparty,
            tag=action.tag,
            note=action.note,
            quantity=action.amount,
            price_local=valuation.price_local,
            local_currency=valuation.local_currency,
            amount_local=valuation.local_amount(action.amount),
            fx_to_usd=valuation.fx_to_usd,
            fx_to_vnd=valuation.fx_to_vnd,
            amount_usd=valuation.usd_amount(action.amount),
            amount_vnd=valuation.vnd_amount(action.amount),
            fee_local=valuation.local_amount(fee),
            fee_usd=valuation.usd_amount(fee),
            fee_vnd=valuation.vnd_amount(fee),
            valuation_pending=valuation.pending,
        )

    # =========================================================================
    # VAULT ROUTING
    # =========================================================================

    def _endpoints(self, action: Action) -> tuple[Optional[str], Optional[str]]:
        """(vault debited, vault credited); either may be None."""
        settings = self._settings

        if isinstance(action, SpendAction):
            return action.vault or settings.default_spending_vault, None
        if isinstance(action, IncomeAction):
            return None, action.vault or settings.default_income_vault
        if isinstance(action, TransferAction):
            return action.source_account, action.destination_account
        if isinstance(action, StakeAction):
            return action.source_account, action.investment_account
        if isinstance(action, UnstakeAction):
            return action.investment_account, action.destination_account
        if isinstance(action, BorrowAction):
            return settings.borrowings_vault, action.account or settings.default_spending_vault
        if isinstance(action, RepayBorrowAction):
            return action.account or settings.default_spending_vault, settings.borrowings_vault

        raise ActionValidationError(f"No vault routing for verb '{action.verb}'")

    def plan_movements(self, action: Action, valuation: Valuation) -> list[VaultMovement]:
        """
        Vault movements implied by an action, in asset units.

        The fee is charged to the debited vault (it withdraws amount + fee).
        When nothing is debited, as for income, the deposit is amount - fee.
        """
        source, destination = self._endpoints(action)
        amount = action.amount
        fee = action.fee
        movements = []

        if source is not None:
            movements.append(self._movement(source, action.unit, EntryKind.WITHDRAW, amount + fee, valuation))
        if destination is not None:
            deposited = amount - fee if source is None else amount
            movements.append(self._movement(destination, action.unit, EntryKind.DEPOSIT, deposited, valuation))

        return [m for m in movements if m is not None]

    def _movement(
        self,
        vault: str,
        asset: str,
        kind: EntryKind,
        amount: Decimal,
        valuation: Valuation,
    ) -> Optional[VaultMovement]:
        if amount <= 0:
            return None
        return VaultMovement(
            vault=vault,
            asset=asset,
            kind=kind,
            amount=amount,
            usd_value=valuation.usd_amount(amount),
            allow_overdraft=vault in self._settings.overdraft_vault_names,
        )
