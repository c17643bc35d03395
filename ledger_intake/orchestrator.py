"""
Flows that wire the pipeline stages together.

IngestionFlow: message, image or statement -> extract -> validate -> sign -> stage
ReviewFlow: list -> approve/reject/amend -> value -> commit

DESIGN DECISION: The flows own the cross-stage rules so no single stage
has to trust another:
- Nothing reaches the ledger without an explicit approval
- Extraction failures are staged too, so the raw input is never lost
- Every step is audited under one correlation id
"""

import asyncio
from datetime import datetime
from pathlib import Path
from typing import Any, Optional, Union
from uuid import UUID

import structlog
from pydantic import BaseModel, Field

from ledger_intake.agents import ActionExtractionAgent, GeminiClient, LLMClient
from ledger_intake.audit import AuditLogger, create_correlation_id
from ledger_intake.config import Settings, get_settings
from ledger_intake.ledger import LedgerCommitter, LedgerInvariantViolation
from ledger_intake.models.action import (
    ActionEnvelope,
    ActionRequest,
    ActionSource,
    BatchApprovalResult,
    PendingAction,
    PendingStatus,
    ReviewOutcome,
    StageResult,
    utc_now,
)
from ledger_intake.models.ledger import CommitResult
from ledger_intake.review import ReviewGate
from ledger_intake.services.grounding import (
    CachedGroundingProvider,
    GroundingProvider,
    LedgerGroundingLoader,
)
from ledger_intake.services.statements import (
    TECHCOMBANK_DEBIT_CONFIG,
    BankStatementConfig,
    read_bank_statement,
)
from ledger_intake.services.storage import SQLiteStore
from ledger_intake.services.valuation import (
    CoinGeckoPriceProvider,
    HttpFXProvider,
    PriceProvider,
    RateProvider,
    ValuationResolver,
)
from ledger_intake.staging import PendingActionStager, make_batch_id
from ledger_intake.validation import ActionValidationError, ActionValidator


logger = structlog.get_logger(__name__)


class StatementIngestResult(BaseModel):
    """Outcome of staging one bank statement."""

    batch_id: str
    results: list[StageResult] = Field(default_factory=list)

    @property
    def staged_count(self) -> int:
        return sum(1 for r in self.results if not r.duplicate)

    @property
    def duplicate_count(self) -> int:
        return sum(1 for r in self.results if r.duplicate)


class BatchCommitResult(BaseModel):
    """Outcome of approving and committing a batch."""

    approval: BatchApprovalResult
    committed: list[CommitResult] = Field(default_factory=list)
    failed: dict[str, str] = Field(
        default_factory=dict,
        description="Pending action id -> commit error, for approved actions left uncommitted"
    )


class IngestionFlow:
    """
    Orchestrates ingestion.

    Flow:
    1. Grounding -> current accounts and tags
    2. Extract -> LLM proposes parameters (never raises)
    3. Validate -> typed action or None, confidence
    4. Stage -> signed, idempotent PendingAction

    Nothing here touches the ledger.
    """

    def __init__(
        self,
        extractor: ActionExtractionAgent,
        validator: ActionValidator,
        stager: PendingActionStager,
        grounding: GroundingProvider,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self._extractor = extractor
        self._validator = validator
        self._stager = stager
        self._grounding = grounding
        self._audit_logger = audit_logger

    async def ingest_text(
        self,
        message: str,
        meta: Optional[dict[str, Any]] = None,
        correlation_id: Optional[UUID] = None,
    ) -> StageResult:
        """Stage the action described by a chat message."""
        correlation_id = correlation_id or create_correlation_id()
        grounding = await self._grounding.get()
        request = await self._extractor.extract_text(message, grounding, meta=meta)
        return await self._validate_and_stage(request, None, correlation_id)

    async def ingest_image(
        self,
        image_bytes: bytes,
        mime_type: str,
        caption: Optional[str] = None,
        meta: Optional[dict[str, Any]] = None,
        correlation_id: Optional[UUID] = None,
    ) -> StageResult:
        """Stage the action shown on a receipt or transfer screenshot."""
        correlation_id = correlation_id or create_correlation_id()
        grounding = await self._grounding.get()
        request = await self._extractor.extract_image(
            image_bytes, mime_type, grounding, caption=caption, meta=meta
        )
        return await self._validate_and_stage(request, None, correlation_id)

    async def ingest_statement(
        self,
        path: Union[str, Path],
        source_name: Optional[str] = None,
        config: BankStatementConfig = TECHCOMBANK_DEBIT_CONFIG,
        processed_at: Optional[datetime] = None,
        correlation_id: Optional[UUID] = None,
    ) -> StatementIngestResult:
        """
        Stage every transaction row of a bank statement under one batch.

        The batch id is derived from (source_name, processed_at), so a retried
        ingestion with the same pair lands in the same batch and its rows are
        reported as duplicates.
        """
        correlation_id = correlation_id or create_correlation_id()
        source_name = source_name or Path(path).name
        batch_id = make_batch_id(source_name, processed_at or utc_now())

        rows = await asyncio.to_thread(read_bank_statement, path, config)
        grounding = await self._grounding.get()
        requests = await self._extractor.extract_statement_rows(rows, config, grounding)

        result = StatementIngestResult(batch_id=batch_id)
        for request in requests:
            result.results.append(
                await self._validate_and_stage(request, batch_id, correlation_id)
            )

        logger.info(
            "statement_ingested",
            batch_id=batch_id,
            source_name=source_name,
            rows=len(rows),
            staged=result.staged_count,
            duplicates=result.duplicate_count,
        )
        return result

    async def _validate_and_stage(
        self,
        request: ActionRequest,
        batch_id: Optional[str],
        correlation_id: UUID,
    ) -> StageResult:
        if self._audit_logger:
            if request.failed:
                await self._audit_logger.log_extraction_failed(
                    source=request.source.value,
                    reason=request.failure_reason or "unparsable",
                    correlation_id=correlation_id,
                )
            else:
                await self._audit_logger.log_action_extracted(
                    source=request.source.value,
                    verb=request.params.get("action") or request.params.get("verb"),
                    confidence=request.confidence,
                    correlation_id=correlation_id,
                )

        validation = self._validator.validate(request)
        if not validation.is_valid and self._audit_logger:
            await self._audit_logger.log_validation_failed(
                source=request.source.value,
                issues=[
                    {"field": i.field, "type": i.issue_type, "message": i.message}
                    for i in validation.issues
                ],
                correlation_id=correlation_id,
            )

        meta = {**request.meta, "validation": validation.to_meta()}
        if request.failure_reason:
            meta["failure_reason"] = request.failure_reason

        envelope = ActionEnvelope(
            source=request.source,
            batch_id=batch_id,
            raw_input=request.raw_input,
            raw_response=request.raw_response,
            action=validation.action,
            confidence=validation.confidence if validation.action is not None else 0.0,
            meta=meta,
        )
        return await self._stager.stage(envelope, correlation_id=correlation_id)


class ReviewFlow:
    """
    Orchestrates review and commit.

    CRITICAL BOUNDARIES:
    1. Approval goes through the review gate (compare-and-set)
    2. Commit happens only for approved actions and at most once
    3. A failed commit leaves the action approved with its error recorded;
       approving again retries the commit
    """

    def __init__(
        self,
        gate: ReviewGate,
        committer: LedgerCommitter,
        validator: ActionValidator,
        stager: PendingActionStager,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self._gate = gate
        self._committer = committer
        self._validator = validator
        self._stager = stager
        self._audit_logger = audit_logger

    async def create(
        self,
        params: dict[str, Any],
        raw_input: Optional[str] = None,
        source: ActionSource = ActionSource.TEXT,
        meta: Optional[dict[str, Any]] = None,
        correlation_id: Optional[UUID] = None,
    ) -> StageResult:
        """
        Stage a manually entered action.

        Raises:
            ActionValidationError: the parameters do not form a valid action.
        """
        validation = self._validator.validate_params(params, source=source)
        if validation.action is None:
            raise ActionValidationError("Manual action is invalid", validation.issues)

        envelope = ActionEnvelope(
            source=source,
            raw_input=raw_input or "manual entry",
            action=validation.action,
            confidence=validation.confidence,
            meta={**(meta or {}), "manual": True, "validation": validation.to_meta()},
        )
        return await self._stager.stage(envelope, correlation_id=correlation_id)

    async def get(self, pending_id: UUID) -> PendingAction:
        return await self._gate.get(pending_id)

    async def list(
        self,
        batch_id: Optional[str] = None,
        status: Optional[PendingStatus] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[PendingAction]:
        return await self._gate.list(batch_id=batch_id, status=status, limit=limit, offset=offset)

    async def approve(
        self,
        pending_id: UUID,
        correlation_id: Optional[UUID] = None,
    ) -> tuple[ReviewOutcome, Optional[CommitResult]]:
        """
        Approve and commit.

        Returns:
            (outcome, commit_result). commit_result is None when the action
            is rejected.

        Raises:
            NotFoundError, ActionValidationError: from the gate.
            LedgerInvariantViolation: approved but not committed.
        """
        correlation_id = correlation_id or create_correlation_id()
        outcome = await self._gate.approve(pending_id, correlation_id=correlation_id)
        if outcome.pending_action.status is not PendingStatus.APPROVED:
            return outcome, None

        commit = await self._committer.commit(outcome.pending_action, correlation_id=correlation_id)
        return outcome, commit

    async def retry_commit(
        self,
        pending_id: UUID,
        correlation_id: Optional[UUID] = None,
    ) -> CommitResult:
        """Commit an approved action whose earlier commit failed."""
        pending = await self._gate.get(pending_id)
        return await self._committer.commit(pending, correlation_id=correlation_id)

    async def reject(
        self,
        pending_id: UUID,
        reason: Optional[str] = None,
        correlation_id: Optional[UUID] = None,
    ) -> ReviewOutcome:
        return await self._gate.reject(pending_id, reason=reason, correlation_id=correlation_id)

    async def approve_batch(
        self,
        batch_id: str,
        threshold: float,
        correlation_id: Optional[UUID] = None,
    ) -> BatchCommitResult:
        """
        Bulk-approve a batch and commit what was approved, in row order.

        A commit failure on one action does not stop the others.
        """
        correlation_id = correlation_id or create_correlation_id()
        approval = await self._gate.approve_batch(batch_id, threshold, correlation_id=correlation_id)
        result = BatchCommitResult(approval=approval)

        for pending_id in approval.approved_ids:
            pending = await self._gate.get(pending_id)
            try:
                result.committed.append(
                    await self._committer.commit(pending, correlation_id=correlation_id)
                )
            except LedgerInvariantViolation as e:
                result.failed[str(pending_id)] = str(e)

        return result

    async def amend(
        self,
        pending_id: UUID,
        params: dict[str, Any],
        correlation_id: Optional[UUID] = None,
    ) -> PendingAction:
        """
        Replace the action of a pending record with manually corrected
        parameters.

        Raises:
            ActionValidationError: invalid parameters, or the record is no
                longer pending.
        """
        pending = await self._gate.get(pending_id)
        validation = self._validator.validate_params(params, source=pending.source)
        if validation.action is None:
            raise ActionValidationError("Amended action is invalid", validation.issues)
        return await self._gate.amend(
            pending_id,
            validation.action,
            confidence=validation.confidence,
            correlation_id=correlation_id,
        )


def create_app_components(
    settings: Optional[Settings] = None,
    llm_client: Optional[LLMClient] = None,
    fx_provider: Optional[RateProvider] = None,
    price_provider: Optional[PriceProvider] = None,
    grounding: Optional[GroundingProvider] = None,
    use_llm: bool = True,
) -> tuple[Optional[IngestionFlow], ReviewFlow, SQLiteStore]:
    """
    Factory function to create all application components.

    Args:
        settings: Defaults to get_settings().
        llm_client, fx_provider, price_provider, grounding: Overrides,
            mainly for tests.
        use_llm: Set to False to build only the review side (no Gemini
            key required); ingestion_flow is then None.

    Returns:
        (ingestion_flow, review_flow, store)
    """
    settings = settings or get_settings()
    ledger_settings = settings.ledger
    staging_settings = settings.staging
    fx_settings = settings.fx
    app_settings = settings.app

    store = SQLiteStore(
        settings.storage.database_path,
        busy_timeout_seconds=settings.storage.busy_timeout_seconds,
    )
    audit_logger = AuditLogger(store)

    validator = ActionValidator(ledger_settings)
    stager = PendingActionStager(store, staging_settings, audit_logger=audit_logger)
    resolver = ValuationResolver(
        store,
        fx_provider or HttpFXProvider(fx_settings),
        price_provider or CoinGeckoPriceProvider(fx_settings),
        audit_logger=audit_logger,
    )
    committer = LedgerCommitter(
        store,
        store,
        resolver,
        ledger_settings,
        audit_logger=audit_logger,
    )
    review_flow = ReviewFlow(
        gate=ReviewGate(store, audit_logger=audit_logger),
        committer=committer,
        validator=validator,
        stager=stager,
        audit_logger=audit_logger,
    )

    ingestion_flow = None
    if use_llm or llm_client is not None:
        grounding = grounding or CachedGroundingProvider(
            LedgerGroundingLoader(
                store,
                tags=app_settings.grounding_tags_list,
                extra_accounts=[
                    ledger_settings.default_spending_vault,
                    ledger_settings.default_income_vault,
                ],
            ),
            ttl_seconds=app_settings.grounding_ttl_seconds,
        )
        extractor = ActionExtractionAgent(
            llm_client or GeminiClient(settings.gemini),
            staging_settings,
        )
        ingestion_flow = IngestionFlow(
            extractor=extractor,
            validator=validator,
            stager=stager,
            grounding=grounding,
            audit_logger=audit_logger,
        )

    return ingestion_flow, review_flow, store
