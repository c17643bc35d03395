"""
Pending-Action Stager

Turns a validated envelope into a signed, persisted PendingAction.

DESIGN DECISION: Idempotency lives in the database, not in memory.
The surrounding transport delivers at least once, so the same envelope can
arrive twice, possibly concurrently and possibly across a restart. The
signature over the canonical payload is the idempotency key (scoped to the
batch), and storage checks-then-inserts inside one write transaction backed
by a unique index. A duplicate delivery returns the existing record.
"""

import hashlib
import re
from datetime import datetime
from typing import Optional
from uuid import UUID

import structlog

from ledger_intake.audit import AuditLogger
from ledger_intake.config.settings import StagingSettings
from ledger_intake.models.action import (
    ENVELOPE_FIELDS,
    ActionEnvelope,
    PendingAction,
    StageResult,
)
from ledger_intake.services.storage import PendingActionStorage
from ledger_intake.staging.signing import (
    SIGNATURE_HEADER,
    SignatureMismatch,
    canonical_json,
    compute_signature,
    verify_signature,
)


logger = structlog.get_logger(__name__)


def make_batch_id(source_name: str, processed_at: datetime) -> str:
    """
    Derive a batch id from the upload's source name and processing time.

    Deterministic: the same (source_name, processed_at) always yields the
    same id, so a retried ingestion of one upload lands in one batch.
    """
    slug = re.sub(r"[^a-z0-9]+", "_", source_name.lower()).strip("_") or "batch"
    stamp = processed_at.strftime("%Y%m%dT%H%M%S")
    digest = hashlib.sha256(
        f"{source_name}|{processed_at.isoformat()}".encode("utf-8")
    ).hexdigest()[:8]
    return f"{slug[:40]}_{stamp}_{digest}"


class PendingActionStager:
    """
    Signs and persists envelopes as pending actions.

    The signing secret arrives through StagingSettings at construction time;
    there is no global secret.
    """

    def __init__(
        self,
        storage: PendingActionStorage,
        settings: StagingSettings,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self._storage = storage
        self._secret = settings.signing_secret.get_secret_value()
        self._audit_logger = audit_logger

    def sign(self, envelope: ActionEnvelope) -> tuple[bytes, str]:
        """
        Produce the canonical body and its signature.

        Returns:
            (body, hex_signature)
        """
        body = canonical_json(envelope.signing_payload())
        return body, compute_signature(self._secret, body)

    def sign_outbound(self, envelope: ActionEnvelope) -> tuple[bytes, dict[str, str]]:
        """Body and headers for delivering an envelope to a remote stager."""
        body, signature = self.sign(envelope)
        return body, {
            SIGNATURE_HEADER: signature,
            "Content-Type": "application/json",
        }

    async def stage(
        self,
        envelope: ActionEnvelope,
        correlation_id: Optional[UUID] = None,
    ) -> StageResult:
        """
        Persist an envelope in pending status, at most once.

        Returns:
            StageResult. duplicate=True means an identical delivery was
            already staged and its record is returned unchanged.
        """
        _, signature = self.sign(envelope)
        candidate = PendingAction(
            **{name: getattr(envelope, name) for name in ENVELOPE_FIELDS},
            signature=signature,
        )

        stored, created = await self._storage.insert_if_absent(candidate)

        if created:
            logger.info(
                "action_staged",
                pending_id=str(stored.id),
                batch_id=stored.batch_id,
                verb=stored.action.verb if stored.action else None,
                confidence=stored.confidence,
            )
            if self._audit_logger:
                await self._audit_logger.log_action_staged(
                    pending_id=stored.id,
                    batch_id=stored.batch_id,
                    confidence=stored.confidence,
                    correlation_id=correlation_id,
                )
        else:
            logger.info(
                "duplicate_delivery",
                pending_id=str(stored.id),
                batch_id=stored.batch_id,
            )
            if self._audit_logger:
                await self._audit_logger.log_duplicate_delivery(
                    pending_id=stored.id,
                    signature=signature,
                    correlation_id=correlation_id,
                )

        return StageResult(pending_action=stored, duplicate=not created)

    async def receive_signed(
        self,
        body: bytes,
        signature: Optional[str],
        correlation_id: Optional[UUID] = None,
    ) -> StageResult:
        """
        Staging ingress for signed deliveries.

        The signature is checked against the exact bytes received before
        anything is parsed or stored.

        Raises:
            SignatureMismatch: authentication failure; nothing is staged.
        """
        try:
            verify_signature(self._secret, body, signature or "")
        except SignatureMismatch as e:
            logger.warning("signature_rejected", reason=str(e))
            if self._audit_logger:
                await self._audit_logger.log_signature_rejected(
                    reason=str(e),
                    correlation_id=correlation_id,
                )
            raise

        envelope = ActionEnvelope.model_validate_json(body)
        return await self.stage(envelope, correlation_id=correlation_id)
