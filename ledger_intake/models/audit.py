"""
Audit trail records.

A staged action can pass through extraction, validation, review and commit,
sometimes days apart and through different entry points (chat, statement
upload, CLI). Each hop writes an AuditEvent so a ledger line can be traced
back to the message or spreadsheet row that produced it.

DESIGN DECISION: Events are append-only rows keyed by event_id. Correction
happens by writing a new event, never by editing an old one.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from ledger_intake.models.action import utc_now


class AuditEventType(str, Enum):
    """What happened, grouped by pipeline stage."""
    # Extractor / Validator
    ACTION_EXTRACTED = "action_extracted"
    EXTRACTION_FAILED = "extraction_failed"
    VALIDATION_FAILED = "validation_failed"

    # Stager
    ACTION_STAGED = "action_staged"
    DUPLICATE_DELIVERY = "duplicate_delivery"
    SIGNATURE_REJECTED = "signature_rejected"

    # Review gate
    ACTION_APPROVED = "action_approved"
    ACTION_REJECTED = "action_rejected"
    ACTION_AMENDED = "action_amended"
    BATCH_APPROVED = "batch_approved"

    # Committer
    TRANSACTION_COMMITTED = "transaction_committed"
    COMMIT_FAILED = "commit_failed"
    VALUATION_PENDING = "valuation_pending"

    # Infrastructure
    SYSTEM_ERROR = "system_error"
    EXTERNAL_SERVICE_ERROR = "external_service_error"


class AuditSeverity(str, Enum):
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AuditEvent(BaseModel):
    """
    One row of the audit trail.

    entity_type/entity_id point at the record the event concerns
    (pending_action, transaction, batch, extraction, delivery).
    correlation_id ties together everything done for one ingestion or
    one review request.
    """

    event_id: UUID = Field(default_factory=uuid4)
    timestamp: datetime = Field(default_factory=utc_now, description="UTC")

    event_type: AuditEventType
    severity: AuditSeverity = AuditSeverity.INFO

    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    correlation_id: Optional[UUID] = None

    description: str = Field(..., max_length=500, description="One-line summary for humans")
    details: dict[str, Any] = Field(default_factory=dict)

    error_code: Optional[str] = None
    error_message: Optional[str] = None

    # Set for reviewer decisions (approve, reject, amend, bulk approve)
    is_user_action: bool = False

    def to_log_dict(self) -> dict:
        """Flatten to JSON-safe values for the structured logger."""
        return self.model_dump(mode="json")


class AuditEventBuilder:
    """
    Helper class to build audit events with common patterns.

    Usage:
        event = AuditEventBuilder.action_staged(pending_id, batch_id, 0.9, correlation_id)
        event = AuditEventBuilder.action_approved(pending_id, correlation_id)
    """

    @staticmethod
    def action_extracted(
        source: str,
        verb: Optional[str],
        confidence: float,
        correlation_id: Optional[UUID],
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.ACTION_EXTRACTED,
            entity_type="extraction",
            correlation_id=correlation_id,
            description=f"Extracted '{verb}' from {source} with {confidence:.0%} confidence",
            details={
                "source": source,
                "verb": verb,
                "confidence": confidence,
            },
        )

    @staticmethod
    def extraction_failed(
        source: str,
        reason: str,
        correlation_id: Optional[UUID],
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.EXTRACTION_FAILED,
            severity=AuditSeverity.WARNING,
            entity_type="extraction",
            correlation_id=correlation_id,
            description=f"Extraction from {source} failed; staged for manual entry",
            error_message=reason,
            details={
                "source": source,
            },
        )

    @staticmethod
    def validation_failed(
        source: str,
        issues: list[dict],
        correlation_id: Optional[UUID],
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.VALIDATION_FAILED,
            severity=AuditSeverity.WARNING,
            entity_type="extraction",
            correlation_id=correlation_id,
            description=f"Validation failed with {len(issues)} issues",
            details={
                "source": source,
                "issues": issues,
            },
        )

    @staticmethod
    def action_staged(
        pending_id: UUID,
        batch_id: Optional[str],
        confidence: float,
        correlation_id: Optional[UUID],
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.ACTION_STAGED,
            entity_type="pending_action",
            entity_id=str(pending_id),
            correlation_id=correlation_id,
            description=f"Action staged for review ({confidence:.0%} confidence)",
            details={
                "batch_id": batch_id,
                "confidence": confidence,
            },
        )

    @staticmethod
    def duplicate_delivery(
        pending_id: UUID,
        signature: str,
        correlation_id: Optional[UUID],
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.DUPLICATE_DELIVERY,
            entity_type="pending_action",
            entity_id=str(pending_id),
            correlation_id=correlation_id,
            description="Duplicate delivery ignored; existing record returned",
            details={
                "signature": signature,
            },
        )

    @staticmethod
    def signature_rejected(
        reason: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SIGNATURE_REJECTED,
            severity=AuditSeverity.ERROR,
            entity_type="delivery",
            correlation_id=correlation_id,
            description="Signed delivery rejected: signature mismatch",
            error_code="signature_mismatch",
            error_message=reason,
        )

    @staticmethod
    def action_approved(
        pending_id: UUID,
        correlation_id: Optional[UUID],
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.ACTION_APPROVED,
            entity_type="pending_action",
            entity_id=str(pending_id),
            correlation_id=correlation_id,
            description="Reviewer approved staged action",
            is_user_action=True,
        )

    @staticmethod
    def action_rejected(
        pending_id: UUID,
        reason: Optional[str],
        correlation_id: Optional[UUID],
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.ACTION_REJECTED,
            entity_type="pending_action",
            entity_id=str(pending_id),
            correlation_id=correlation_id,
            description="Reviewer rejected staged action",
            details={
                "reason": reason or "No reason provided",
            },
            is_user_action=True,
        )

    @staticmethod
    def action_amended(
        pending_id: UUID,
        verb: str,
        correlation_id: Optional[UUID],
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.ACTION_AMENDED,
            entity_type="pending_action",
            entity_id=str(pending_id),
            correlation_id=correlation_id,
            description=f"Reviewer completed the action manually as '{verb}'",
            details={
                "verb": verb,
            },
            is_user_action=True,
        )

    @staticmethod
    def batch_approved(
        batch_id: str,
        threshold: float,
        approved: int,
        left_pending: int,
        correlation_id: Optional[UUID],
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.BATCH_APPROVED,
            entity_type="batch",
            entity_id=batch_id,
            correlation_id=correlation_id,
            description=f"Bulk approval at {threshold:.0%}: {approved} approved, {left_pending} left pending",
            details={
                "threshold": threshold,
                "approved": approved,
                "left_pending": left_pending,
            },
            is_user_action=True,
        )

    @staticmethod
    def transaction_committed(
        transaction_id: UUID,
        pending_id: UUID,
        verb: str,
        amount: str,
        asset: str,
        correlation_id: Optional[UUID],
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.TRANSACTION_COMMITTED,
            entity_type="transaction",
            entity_id=str(transaction_id),
            correlation_id=correlation_id,
            description=f"Committed {verb}: {amount} {asset}",
            details={
                "pending_action_id": str(pending_id),
                "verb": verb,
                "amount": amount,
                "asset": asset,
            },
        )

    @staticmethod
    def commit_failed(
        pending_id: UUID,
        error_message: str,
        correlation_id: Optional[UUID],
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.COMMIT_FAILED,
            severity=AuditSeverity.ERROR,
            entity_type="pending_action",
            entity_id=str(pending_id),
            correlation_id=correlation_id,
            description="Commit failed; action stays approved for correction",
            error_code="ledger_invariant",
            error_message=error_message,
        )

    @staticmethod
    def valuation_pending(
        transaction_id: UUID,
        unit: str,
        correlation_id: Optional[UUID],
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.VALUATION_PENDING,
            severity=AuditSeverity.WARNING,
            entity_type="transaction",
            entity_id=str(transaction_id),
            correlation_id=correlation_id,
            description=f"Valuation of {unit} unresolved; needs later re-resolution",
            details={
                "unit": unit,
            },
        )

    @staticmethod
    def system_error(
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SYSTEM_ERROR,
            severity=AuditSeverity.ERROR,
            description=f"System error: {error_type}",
            error_message=error_message,
            details=details or {},
            correlation_id=correlation_id,
        )

    @staticmethod
    def external_service_error(
        service: str,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.EXTERNAL_SERVICE_ERROR,
            severity=AuditSeverity.ERROR,
            description=f"External service error: {service}",
            error_message=error_message,
            details={
                "service": service,
            },
            correlation_id=correlation_id,
        )
