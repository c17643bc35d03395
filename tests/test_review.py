"""Tests for the review gate."""

import asyncio
from decimal import Decimal
from uuid import uuid4

import pytest

from conftest import make_envelope, spend
from ledger_intake.models.action import PendingStatus, SpendAction
from ledger_intake.services.storage import NotFoundError
from ledger_intake.validation import ActionValidationError


class TestApproveReject:
    """Single-record transitions."""

    @pytest.mark.asyncio
    async def test_approve_pending(self, stager, gate):
        """pending -> approved."""
        staged = await stager.stage(make_envelope(spend()))
        outcome = await gate.approve(staged.pending_action.id)

        assert outcome.changed is True
        assert outcome.pending_action.status is PendingStatus.APPROVED
        assert outcome.pending_action.decided_at is not None

    @pytest.mark.asyncio
    async def test_reject_pending_keeps_record(self, stager, gate):
        """pending -> rejected, with the reason kept."""
        staged = await stager.stage(make_envelope(spend()))
        outcome = await gate.reject(staged.pending_action.id, reason="duplicate of bank row")

        assert outcome.changed is True
        record = await gate.get(staged.pending_action.id)
        assert record.status is PendingStatus.REJECTED
        assert record.rejection_reason == "duplicate of bank row"

    @pytest.mark.asyncio
    async def test_repeat_approve_is_noop(self, stager, gate):
        """Approving an approved record changes nothing."""
        staged = await stager.stage(make_envelope(spend()))
        first = await gate.approve(staged.pending_action.id)
        second = await gate.approve(staged.pending_action.id)

        assert second.changed is False
        assert second.pending_action.decided_at == first.pending_action.decided_at

    @pytest.mark.asyncio
    async def test_terminal_states_are_final(self, stager, gate):
        """A rejected record cannot be approved and vice versa."""
        rejected = await stager.stage(make_envelope(spend(), batch_id="r"))
        approved = await stager.stage(make_envelope(spend(), batch_id="a"))
        await gate.reject(rejected.pending_action.id)
        await gate.approve(approved.pending_action.id)

        outcome = await gate.approve(rejected.pending_action.id)
        assert outcome.changed is False
        assert outcome.pending_action.status is PendingStatus.REJECTED

        outcome = await gate.reject(approved.pending_action.id)
        assert outcome.changed is False
        assert outcome.pending_action.status is PendingStatus.APPROVED

    @pytest.mark.asyncio
    async def test_null_action_cannot_be_approved(self, stager, gate):
        """There is nothing to commit without an action."""
        staged = await stager.stage(make_envelope(None))
        with pytest.raises(ActionValidationError):
            await gate.approve(staged.pending_action.id)

        record = await gate.get(staged.pending_action.id)
        assert record.status is PendingStatus.PENDING

    @pytest.mark.asyncio
    async def test_null_action_can_be_rejected(self, stager, gate):
        """Failed extractions can be dismissed."""
        staged = await stager.stage(make_envelope(None))
        outcome = await gate.reject(staged.pending_action.id, reason="not a transaction")
        assert outcome.pending_action.status is PendingStatus.REJECTED

    @pytest.mark.asyncio
    async def test_concurrent_approvals_transition_once(self, stager, gate):
        """Two racing approvals produce one transition."""
        staged = await stager.stage(make_envelope(spend()))
        outcomes = await asyncio.gather(
            gate.approve(staged.pending_action.id),
            gate.approve(staged.pending_action.id),
        )
        assert sorted(o.changed for o in outcomes) == [False, True]

    @pytest.mark.asyncio
    async def test_unknown_id(self, gate):
        """Unknown ids raise NotFoundError."""
        with pytest.raises(NotFoundError):
            await gate.approve(uuid4())


class TestBatchApproval:
    """Bulk approval by confidence threshold."""

    @pytest.mark.asyncio
    async def test_threshold_splits_batch(self, stager, gate):
        """Members at or above the threshold are approved, the rest stay pending."""
        high = await stager.stage(make_envelope(spend("10000"), confidence=0.9, batch_id="b1"))
        edge = await stager.stage(make_envelope(spend("20000"), confidence=0.8, batch_id="b1"))
        low = await stager.stage(make_envelope(spend("30000"), confidence=0.3, batch_id="b1"))
        empty = await stager.stage(make_envelope(None, batch_id="b1", raw_input="row 4"))
        other = await stager.stage(make_envelope(spend("40000"), confidence=0.99, batch_id="b2"))

        result = await gate.approve_batch("b1", 0.8)

        assert set(result.approved_ids) == {high.pending_action.id, edge.pending_action.id}
        assert result.below_threshold_ids == [low.pending_action.id]
        assert result.needs_completion_ids == [empty.pending_action.id]
        assert result.approved_count == 2

        assert (await gate.get(low.pending_action.id)).status is PendingStatus.PENDING
        assert (await gate.get(other.pending_action.id)).status is PendingStatus.PENDING

    @pytest.mark.asyncio
    async def test_batch_approval_is_idempotent(self, stager, gate):
        """A second bulk approval approves nothing new."""
        await stager.stage(make_envelope(spend(), confidence=0.9, batch_id="b1"))
        await gate.approve_batch("b1", 0.8)
        again = await gate.approve_batch("b1", 0.8)
        assert again.approved_ids == []

    @pytest.mark.asyncio
    async def test_threshold_bounds(self, gate):
        """Thresholds outside [0, 1] are rejected."""
        with pytest.raises(ValueError):
            await gate.approve_batch("b1", 1.5)


class TestAmendAndList:
    """Manual completion and listing."""

    @pytest.mark.asyncio
    async def test_amend_completes_null_action(self, stager, gate):
        """A failed extraction becomes approvable after manual completion."""
        staged = await stager.stage(make_envelope(None, raw_input="blurry receipt"))
        action = SpendAction.model_validate(spend())

        amended = await gate.amend(staged.pending_action.id, action, confidence=1.0)

        assert amended.action == action
        assert amended.confidence == 1.0
        assert amended.meta["amendments"][0]["previous_action"] is None
        assert amended.signature == staged.pending_action.signature

        outcome = await gate.approve(staged.pending_action.id)
        assert outcome.changed is True

    @pytest.mark.asyncio
    async def test_amend_keeps_delivery_signature_traceable(self, stager, gate):
        """The amendment entry pairs the delivery signature with the payload it signed."""
        envelope = make_envelope(spend("1000"), batch_id="b1")
        staged = await stager.stage(envelope)
        original = staged.pending_action

        amended = await gate.amend(original.id, SpendAction.model_validate(spend("1500")))

        entry = amended.meta["amendments"][0]
        assert entry["delivery_signature"] == original.signature
        assert entry["previous_action"] == original.action.model_dump(mode="json")
        assert amended.action.amount == Decimal("1500")

        resent = await stager.stage(envelope)
        assert resent.duplicate is True
        assert resent.pending_action.id == original.id

    @pytest.mark.asyncio
    async def test_amend_after_decision_rejected(self, stager, gate):
        """Decided records are immutable."""
        staged = await stager.stage(make_envelope(spend()))
        await gate.reject(staged.pending_action.id)
        with pytest.raises(ActionValidationError):
            await gate.amend(staged.pending_action.id, SpendAction.model_validate(spend()))

    @pytest.mark.asyncio
    async def test_list_filters(self, stager, gate):
        """list() filters by batch and status."""
        a = await stager.stage(make_envelope(spend("1000"), batch_id="b1"))
        await stager.stage(make_envelope(spend("2000"), batch_id="b1"))
        await stager.stage(make_envelope(spend("3000"), batch_id="b2"))
        await gate.approve(a.pending_action.id)

        assert len(await gate.list(batch_id="b1")) == 2
        pending_b1 = await gate.list(batch_id="b1", status=PendingStatus.PENDING)
        assert len(pending_b1) == 1
        assert len(await gate.list(status=PendingStatus.APPROVED)) == 1
        assert len(await gate.list(limit=1)) == 1
