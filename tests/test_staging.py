"""Tests for signing and the pending-action stager."""

import asyncio
import json
from datetime import datetime, timezone

import pytest

from conftest import make_envelope, spend
from ledger_intake.models.action import PendingStatus
from ledger_intake.models.audit import AuditEventType
from ledger_intake.staging import (
    SIGNATURE_HEADER,
    SignatureMismatch,
    canonical_json,
    compute_signature,
    make_batch_id,
    verify_signature,
)


class TestSigning:
    """Tests for canonical JSON and HMAC signatures."""

    def test_canonical_json_ignores_key_order(self):
        """Insertion order does not change the bytes."""
        assert canonical_json({"b": 1, "a": "x"}) == canonical_json({"a": "x", "b": 1})
        assert canonical_json({"b": 1, "a": "x"}) == b'{"a":"x","b":1}'

    def test_canonical_json_keeps_unicode(self):
        """Non-ASCII text is encoded as UTF-8, not escaped."""
        assert canonical_json({"note": "Phở"}) == '{"note":"Phở"}'.encode("utf-8")

    def test_signature_is_hex_sha256(self):
        """Signatures are 64 hex characters."""
        signature = compute_signature("secret", b"body")
        assert len(signature) == 64
        int(signature, 16)

    def test_verify_accepts_matching_signature(self):
        """Case and surrounding whitespace do not matter."""
        signature = compute_signature("secret", b"body")
        verify_signature("secret", b"body", f" {signature.upper()} ")

    def test_verify_rejects_tampered_body(self):
        """A changed body fails verification."""
        signature = compute_signature("secret", b"body")
        with pytest.raises(SignatureMismatch):
            verify_signature("secret", b"body!", signature)

    def test_verify_rejects_missing_signature(self):
        """An absent signature fails verification."""
        with pytest.raises(SignatureMismatch, match="Missing"):
            verify_signature("secret", b"body", "")


class TestBatchId:
    """Tests for deterministic batch ids."""

    def test_same_inputs_same_id(self):
        """Retrying one upload lands in one batch."""
        at = datetime(2025, 11, 30, 12, 0, tzinfo=timezone.utc)
        assert make_batch_id("TCB Nov.xlsx", at) == make_batch_id("TCB Nov.xlsx", at)

    def test_different_inputs_differ(self):
        """Another file or time is another batch."""
        at = datetime(2025, 11, 30, 12, 0, tzinfo=timezone.utc)
        later = datetime(2025, 11, 30, 12, 0, 1, tzinfo=timezone.utc)
        assert make_batch_id("a.xlsx", at) != make_batch_id("b.xlsx", at)
        assert make_batch_id("a.xlsx", at) != make_batch_id("a.xlsx", later)

    def test_readable_prefix(self):
        """The id starts with a slug of the source name and the timestamp."""
        at = datetime(2025, 11, 30, 12, 0, tzinfo=timezone.utc)
        assert make_batch_id("TCB Nov.xlsx", at).startswith("tcb_nov_xlsx_20251130T120000_")


class TestStager:
    """Tests for signed, idempotent staging."""

    @pytest.mark.asyncio
    async def test_stage_creates_pending_record(self, stager, store):
        """A new envelope is stored in pending status with its signature."""
        envelope = make_envelope(spend())
        result = await stager.stage(envelope)

        assert result.duplicate is False
        stored = await store.get_pending_action(result.pending_action.id)
        assert stored.status is PendingStatus.PENDING
        assert stored.action == envelope.action
        assert stored.signature == stager.sign(envelope)[1]

    @pytest.mark.asyncio
    async def test_duplicate_delivery_returns_existing(self, stager, store):
        """The same envelope twice yields one record."""
        envelope = make_envelope(spend())
        first = await stager.stage(envelope)
        second = await stager.stage(envelope)

        assert second.duplicate is True
        assert second.pending_action.id == first.pending_action.id
        assert len(await store.list_pending_actions()) == 1

    @pytest.mark.asyncio
    async def test_concurrent_duplicates_store_once(self, stager, store):
        """Concurrent deliveries of one envelope still store one row."""
        envelope = make_envelope(spend(), batch_id="batch-1")
        results = await asyncio.gather(*(stager.stage(envelope) for _ in range(5)))

        assert len({r.pending_action.id for r in results}) == 1
        assert sum(1 for r in results if not r.duplicate) == 1
        assert len(await store.list_pending_actions(batch_id="batch-1")) == 1

    @pytest.mark.asyncio
    async def test_same_payload_in_other_batch_is_new(self, stager, store):
        """Idempotency is scoped to the batch."""
        await stager.stage(make_envelope(spend(), batch_id="a"))
        result = await stager.stage(make_envelope(spend(), batch_id="b"))
        assert result.duplicate is False

    @pytest.mark.asyncio
    async def test_null_action_is_staged(self, stager):
        """Failed extractions are kept for manual completion."""
        result = await stager.stage(make_envelope(None))
        assert result.pending_action.action is None
        assert result.pending_action.confidence == 0.0

    @pytest.mark.asyncio
    async def test_receive_signed_round_trip(self, stager, store):
        """An outbound delivery is accepted by the receiving side."""
        envelope = make_envelope(spend(note="Phở bò"))
        body, headers = stager.sign_outbound(envelope)

        result = await stager.receive_signed(body, headers[SIGNATURE_HEADER])

        assert result.duplicate is False
        assert result.pending_action.action.note == "Phở bò"
        assert headers["Content-Type"] == "application/json"

    @pytest.mark.asyncio
    async def test_receive_signed_redelivery_is_duplicate(self, stager):
        """At-least-once delivery does not double-stage."""
        body, signature = stager.sign(make_envelope(spend()))
        await stager.receive_signed(body, signature)
        again = await stager.receive_signed(body, signature)
        assert again.duplicate is True

    @pytest.mark.asyncio
    async def test_receive_signed_rejects_mismatch(self, stager, store):
        """A tampered body raises and stores nothing."""
        body, signature = stager.sign(make_envelope(spend()))
        payload = json.loads(body)
        payload["action"]["amount"] = "999999999"
        tampered = canonical_json(payload)

        with pytest.raises(SignatureMismatch):
            await stager.receive_signed(tampered, signature)

        assert await store.list_pending_actions() == []
        events = await store.get_recent_events()
        assert events[0].event_type is AuditEventType.SIGNATURE_REJECTED

    @pytest.mark.asyncio
    async def test_receive_signed_rejects_missing_signature(self, stager, store):
        """Unsigned deliveries are refused."""
        body, _ = stager.sign(make_envelope(spend()))
        with pytest.raises(SignatureMismatch):
            await stager.receive_signed(body, None)
        assert await store.list_pending_actions() == []
