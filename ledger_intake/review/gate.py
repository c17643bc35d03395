"""
Review Gate

The state machine over staged actions:

    pending --approve--> approved   (terminal)
    pending --reject---> rejected   (terminal)

CRITICAL BOUNDARIES:
1. This is the ONLY component that moves a PendingAction out of pending
2. Repeating a decision on a terminal record is a no-op that returns the
   existing state, so retried or concurrent approvals are safe
3. A record with no action can be rejected or completed manually,
   but NEVER approved - there is nothing to commit

Transitions are compare-and-set in storage (`WHERE status = 'pending'`),
so two concurrent approvals produce exactly one transition.
"""

from typing import Optional
from uuid import UUID

import structlog

from ledger_intake.audit import AuditLogger
from ledger_intake.models.action import (
    Action,
    BatchApprovalResult,
    PendingAction,
    PendingStatus,
    ReviewOutcome,
    utc_now,
)
from ledger_intake.services.storage import NotFoundError, PendingActionStorage
from ledger_intake.validation import ActionValidationError


logger = structlog.get_logger(__name__)


class ReviewGate:
    """Single and bulk approve/reject over staged actions."""

    def __init__(
        self,
        storage: PendingActionStorage,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self._storage = storage
        self._audit_logger = audit_logger

    async def get(self, pending_id: UUID) -> PendingAction:
        """
        Raises:
            NotFoundError: no such staged action.
        """
        pending = await self._storage.get_pending_action(pending_id)
        if pending is None:
            raise NotFoundError(f"Pending action {pending_id} not found")
        return pending

    async def list(
        self,
        batch_id: Optional[str] = None,
        status: Optional[PendingStatus] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[PendingAction]:
        return await self._storage.list_pending_actions(
            batch_id=batch_id,
            status=status,
            limit=limit,
            offset=offset,
        )

    async def approve(
        self,
        pending_id: UUID,
        correlation_id: Optional[UUID] = None,
    ) -> ReviewOutcome:
        """
        Approve a pending action.

        Returns:
            ReviewOutcome. changed=False when the record was already terminal
            (including losing a race against a concurrent approval).

        Raises:
            NotFoundError: no such staged action.
            ActionValidationError: the record has no action to commit.
        """
        pending = await self.get(pending_id)
        if pending.status.is_terminal:
            return ReviewOutcome(pending_action=pending, changed=False)
        if pending.action is None:
            raise ActionValidationError(
                f"Pending action {pending_id} has no action; complete it manually or reject it"
            )

        changed = await self._storage.transition_status(
            pending_id, PendingStatus.APPROVED, decided_at=utc_now()
        )
        current = await self.get(pending_id)

        if changed:
            logger.info("action_approved", pending_id=str(pending_id))
            if self._audit_logger:
                await self._audit_logger.log_action_approved(
                    pending_id=pending_id,
                    correlation_id=correlation_id,
                )
        elif current.status is PendingStatus.PENDING:
            # Still pending but the CAS failed: the action was cleared concurrently
            raise ActionValidationError(f"Pending action {pending_id} has no action")

        return ReviewOutcome(pending_action=current, changed=changed)

    async def reject(
        self,
        pending_id: UUID,
        reason: Optional[str] = None,
        correlation_id: Optional[UUID] = None,
    ) -> ReviewOutcome:
        """
        Reject a pending action. Rejected records are kept for audit.

        Raises:
            NotFoundError: no such staged action.
        """
        pending = await self.get(pending_id)
        if pending.status.is_terminal:
            return ReviewOutcome(pending_action=pending, changed=False)

        changed = await self._storage.transition_status(
            pending_id,
            PendingStatus.REJECTED,
            decided_at=utc_now(),
            rejection_reason=reason,
        )
        current = await self.get(pending_id)

        if changed:
            logger.info("action_rejected", pending_id=str(pending_id), reason=reason)
            if self._audit_logger:
                await self._audit_logger.log_action_rejected(
                    pending_id=pending_id,
                    reason=reason,
                    correlation_id=correlation_id,
                )

        return ReviewOutcome(pending_action=current, changed=changed)

    async def approve_batch(
        self,
        batch_id: str,
        threshold: float,
        correlation_id: Optional[UUID] = None,
    ) -> BatchApprovalResult:
        """
        Approve every pending member of a batch with confidence >= threshold.

        Members below the threshold, and members without an action, are
        left pending for manual handling.
        """
        if not 0.0 <= threshold <= 1.0:
            raise ValueError("threshold must be within [0, 1]")

        approved_ids = await self._storage.approve_batch(
            batch_id, threshold, decided_at=utc_now()
        )

        remaining = await self._storage.list_pending_actions(
            batch_id=batch_id,
            status=PendingStatus.PENDING,
            limit=100_000,
        )
        result = BatchApprovalResult(
            batch_id=batch_id,
            threshold=threshold,
            approved_ids=approved_ids,
            below_threshold_ids=[p.id for p in remaining if p.action is not None],
            needs_completion_ids=[p.id for p in remaining if p.action is None],
        )

        logger.info(
            "batch_approved",
            batch_id=batch_id,
            threshold=threshold,
            approved=len(result.approved_ids),
            left_pending=len(remaining),
        )
        if self._audit_logger:
            await self._audit_logger.log_batch_approved(
                batch_id=batch_id,
                threshold=threshold,
                approved=len(result.approved_ids),
                left_pending=len(remaining),
                correlation_id=correlation_id,
            )

        return result

    async def amend(
        self,
        pending_id: UUID,
        action: Action,
        confidence: float = 1.0,
        correlation_id: Optional[UUID] = None,
    ) -> PendingAction:
        """
        Complete or correct the action of a still-pending record.

        The stored signature keeps identifying the original delivery, so a
        re-sent copy of it is still recognised as a duplicate. Each amendment
        entry in meta records that signature next to the action it replaced,
        which is what the signature was computed over.

        Raises:
            NotFoundError: no such staged action.
            ActionValidationError: the record is no longer pending.
        """
        pending = await self.get(pending_id)
        if pending.status.is_terminal:
            raise ActionValidationError(
                f"Pending action {pending_id} is {pending.status.value}; it can no longer be amended"
            )

        meta = dict(pending.meta)
        history = list(meta.get("amendments", []))
        history.append({
            "at": utc_now().isoformat(),
            "delivery_signature": pending.signature,
            "previous_action": pending.action.model_dump(mode="json") if pending.action else None,
        })
        meta["amendments"] = history

        if not await self._storage.amend_action(pending_id, action, confidence, meta):
            raise ActionValidationError(f"Pending action {pending_id} was decided concurrently")

        if self._audit_logger:
            await self._audit_logger.log_action_amended(
                pending_id=pending_id,
                verb=action.verb,
                correlation_id=correlation_id,
            )
        return await self.get(pending_id)
