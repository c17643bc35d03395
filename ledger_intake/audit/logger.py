"""
Audit Logger

Every pipeline stage reports what it did through AuditLogger, which
writes each event twice: once to the structlog stream and once to the
audit table, where reviewers and the CLI can query it by correlation id.

CRITICAL BOUNDARIES:
- A failed audit write is logged and reported as False. It never aborts
  staging, review or commit.
- Events are never updated after they are written.
"""

from typing import Optional
from uuid import UUID, uuid4

import structlog

from ledger_intake.models.audit import AuditEvent, AuditEventBuilder, AuditSeverity
from ledger_intake.services.storage import AuditStorageInterface


_LEVELS = {
    AuditSeverity.DEBUG: "debug",
    AuditSeverity.INFO: "info",
    AuditSeverity.WARNING: "warning",
    AuditSeverity.ERROR: "error",
    AuditSeverity.CRITICAL: "critical",
}


class AuditLogger:
    """Fans audit events out to the log stream and the audit table."""

    def __init__(self, storage: Optional[AuditStorageInterface] = None):
        # Without storage, events are only logged
        self._storage = storage
        self._logger = structlog.get_logger(__name__)

    async def log(self, event: AuditEvent) -> bool:
        """
        Record one event.

        Returns False only when the audit table write failed.
        """
        emit = getattr(self._logger, _LEVELS[event.severity])
        emit("audit_event", **event.to_log_dict())

        if self._storage is None:
            return True

        try:
            return await self._storage.append_event(event)
        except Exception as e:
            self._logger.error(
                "audit_storage_failed",
                error=str(e),
                event_id=str(event.event_id),
                event_type=event.event_type.value,
            )
            return False

    async def log_action_extracted(
        self,
        source: str,
        verb: Optional[str],
        confidence: float,
        correlation_id: Optional[UUID],
    ) -> None:
        """Log a successful extraction."""
        await self.log(AuditEventBuilder.action_extracted(
            source=source,
            verb=verb,
            confidence=confidence,
            correlation_id=correlation_id,
        ))

    async def log_extraction_failed(
        self,
        source: str,
        reason: str,
        correlation_id: Optional[UUID],
    ) -> None:
        """Log an extraction that produced no parsable table."""
        await self.log(AuditEventBuilder.extraction_failed(
            source=source,
            reason=reason,
            correlation_id=correlation_id,
        ))

    async def log_validation_failed(
        self,
        source: str,
        issues: list[dict],
        correlation_id: Optional[UUID],
    ) -> None:
        """Log validation failure."""
        await self.log(AuditEventBuilder.validation_failed(
            source=source,
            issues=issues,
            correlation_id=correlation_id,
        ))

    async def log_action_staged(
        self,
        pending_id: UUID,
        batch_id: Optional[str],
        confidence: float,
        correlation_id: Optional[UUID],
    ) -> None:
        await self.log(AuditEventBuilder.action_staged(
            pending_id=pending_id,
            batch_id=batch_id,
            confidence=confidence,
            correlation_id=correlation_id,
        ))

    async def log_duplicate_delivery(
        self,
        pending_id: UUID,
        signature: str,
        correlation_id: Optional[UUID],
    ) -> None:
        await self.log(AuditEventBuilder.duplicate_delivery(
            pending_id=pending_id,
            signature=signature,
            correlation_id=correlation_id,
        ))

    async def log_signature_rejected(
        self,
        reason: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.signature_rejected(
            reason=reason,
            correlation_id=correlation_id,
        ))

    async def log_action_approved(
        self,
        pending_id: UUID,
        correlation_id: Optional[UUID],
    ) -> None:
        """Log reviewer approval."""
        await self.log(AuditEventBuilder.action_approved(
            pending_id=pending_id,
            correlation_id=correlation_id,
        ))

    async def log_action_rejected(
        self,
        pending_id: UUID,
        reason: Optional[str],
        correlation_id: Optional[UUID],
    ) -> None:
        """Log reviewer rejection."""
        await self.log(AuditEventBuilder.action_rejected(
            pending_id=pending_id,
            reason=reason,
            correlation_id=correlation_id,
        ))

    async def log_action_amended(
        self,
        pending_id: UUID,
        verb: str,
        correlation_id: Optional[UUID],
    ) -> None:
        await self.log(AuditEventBuilder.action_amended(
            pending_id=pending_id,
            verb=verb,
            correlation_id=correlation_id,
        ))

    async def log_batch_approved(
        self,
        batch_id: str,
        threshold: float,
        approved: int,
        left_pending: int,
        correlation_id: Optional[UUID],
    ) -> None:
        await self.log(AuditEventBuilder.batch_approved(
            batch_id=batch_id,
            threshold=threshold,
            approved=approved,
            left_pending=left_pending,
            correlation_id=correlation_id,
        ))

    async def log_transaction_committed(
        self,
        transaction_id: UUID,
        pending_id: UUID,
        verb: str,
        amount: str,
        asset: str,
        correlation_id: Optional[UUID],
    ) -> None:
        await self.log(AuditEventBuilder.transaction_committed(
            transaction_id=transaction_id,
            pending_id=pending_id,
            verb=verb,
            amount=amount,
            asset=asset,
            correlation_id=correlation_id,
        ))

    async def log_commit_failed(
        self,
        pending_id: UUID,
        error_message: str,
        correlation_id: Optional[UUID],
    ) -> None:
        await self.log(AuditEventBuilder.commit_failed(
            pending_id=pending_id,
            error_message=error_message,
            correlation_id=correlation_id,
        ))

    async def log_valuation_pending(
        self,
        transaction_id: UUID,
        unit: str,
        correlation_id: Optional[UUID],
    ) -> None:
        await self.log(AuditEventBuilder.valuation_pending(
            transaction_id=transaction_id,
            unit=unit,
            correlation_id=correlation_id,
        ))

    async def log_error(
        self,
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log an error."""
        await self.log(AuditEventBuilder.system_error(
            error_type=error_type,
            error_message=error_message,
            details=details,
            correlation_id=correlation_id,
        ))

    async def log_external_service_error(
        self,
        service: str,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log external service error."""
        await self.log(AuditEventBuilder.external_service_error(
            service=service,
            error_message=error_message,
            correlation_id=correlation_id,
        ))


def create_correlation_id() -> UUID:
    """
    Create a new correlation ID for tracking related events.

    Use this at the start of a new ingestion or review request.
    Pass it through all subsequent operations.
    """
    return uuid4()
