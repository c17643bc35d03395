"""Tests for the action extraction agent with a scripted LLM."""

from datetime import date
from decimal import Decimal
from types import SimpleNamespace
from typing import Optional
from unittest.mock import AsyncMock

import google.generativeai as genai
import pytest

from ledger_intake.agents import (
    ENRICHED_ROW_CONFIDENCE,
    FALLBACK_ROW_CONFIDENCE,
    ActionExtractionAgent,
    GeminiClient,
    LLMError,
)
from ledger_intake.config import GeminiSettings
from ledger_intake.models.action import ActionSource
from ledger_intake.services.grounding import GroundingSnapshot
from ledger_intake.services.statements import TECHCOMBANK_DEBIT_CONFIG, BankStatementRow


GROUNDING = GroundingSnapshot(accounts=["Bank", "Cash"], tags=["Food", "Transport"])


def statement_row(n: int, debit: Optional[str] = None, credit: Optional[str] = None, remitter: str = "SHOP") -> BankStatementRow:
    return BankStatementRow(
        row_number=36 + n,
        date=date(2025, 11, 1 + n),
        remitter=remitter,
        details=f"payment {n}",
        transaction_no=f"FT{n:04d}",
        debit=Decimal(debit) if debit else None,
        credit=Decimal(credit) if credit else None,
    )


class TestSingleExtraction:
    """Text and image extraction."""

    @pytest.mark.asyncio
    async def test_text_extraction(self, extractor, llm):
        """A toon table becomes params; confidence is split out."""
        llm.generate.return_value = (
            "```toon\naction: spend\naccount: Bank\namount: 120k\ncurrency: VND\n"
            "date: 2025-01-01\ncounterparty: McDo\ntag: Food\nconfidence: 0.92\n```"
        )

        request = await extractor.extract_text("Lunch 120k at McDo from Bank", GROUNDING)

        assert request.failed is False
        assert request.source is ActionSource.TEXT
        assert request.params["amount"] == "120k"
        assert "confidence" not in request.params
        assert request.confidence == 0.92
        assert request.accounts == ["Bank", "Cash"]
        assert request.raw_input == "Lunch 120k at McDo from Bank"

    @pytest.mark.asyncio
    async def test_prompt_carries_grounding(self, extractor, llm):
        """Accounts and tags are part of the prompt."""
        llm.generate.return_value = "action: spend\namount: 1k"
        await extractor.extract_text("coffee 1k", GROUNDING)

        prompt = llm.generate.call_args.args[0]
        assert "accounts[2]: Bank,Cash" in prompt
        assert "tags[2]: Food,Transport" in prompt
        assert "coffee 1k" in prompt

    @pytest.mark.asyncio
    async def test_missing_confidence_uses_default(self, extractor, llm, staging_settings):
        """Without a confidence line the configured default applies."""
        llm.generate.return_value = "action: income\namount: 5tr"
        request = await extractor.extract_text("salary 5tr", GROUNDING)
        assert request.confidence == staging_settings.default_extraction_confidence

    @pytest.mark.asyncio
    async def test_unparsable_response(self, extractor, llm):
        """Prose instead of a table is a failed request with the response kept."""
        llm.generate.return_value = "I could not find a transaction in this message."

        request = await extractor.extract_text("hello", GROUNDING)

        assert request.failed is True
        assert request.confidence == 0.0
        assert request.raw_response == "I could not find a transaction in this message."
        assert request.failure_reason

    @pytest.mark.asyncio
    async def test_llm_error(self, extractor, llm):
        """A model failure does not escape the agent."""
        llm.generate.side_effect = LLMError("quota exceeded")

        request = await extractor.extract_text("Lunch 120k", GROUNDING)

        assert request.failed is True
        assert request.raw_response is None
        assert "quota" in request.failure_reason

    @pytest.mark.asyncio
    async def test_unexpected_llm_exception(self, extractor, llm):
        """Errors outside the client contract still become a failed request."""
        llm.generate.side_effect = RuntimeError("transport closed")

        request = await extractor.extract_text("Lunch 120k", GROUNDING)

        assert request.failed is True
        assert request.params is None
        assert request.confidence == 0.0
        assert request.raw_input == "Lunch 120k"
        assert "RuntimeError" in request.failure_reason

    @pytest.mark.asyncio
    async def test_image_extraction(self, extractor, llm):
        """The image goes to the model; only its hash is stored."""
        llm.generate.return_value = "action: spend\naccount: Cash\namount: 45000"

        request = await extractor.extract_image(b"\x89PNG fake", "image/png", GROUNDING, caption="grab")

        image = llm.generate.call_args.kwargs["image"]
        assert image.mime_type == "image/png"
        assert image.data == b"\x89PNG fake"
        assert request.source is ActionSource.IMAGE
        assert request.raw_input.startswith("grab\nimage:sha256:")
        assert request.meta["image_sha256"] in request.raw_input
        assert b"PNG" not in request.raw_input.encode()


class TestStatementRows:
    """Bulk enrichment of statement rows."""

    @pytest.mark.asyncio
    async def test_enriched_rows(self, extractor, llm):
        """Direction and amount come from the row; text comes from the model."""
        rows = [statement_row(0, debit="52000", remitter="PVOIL HA NOI CHXD"), statement_row(1, credit="5000000")]
        llm.generate.return_value = (
            "```toon\nrows[2]{idx,counterparty,tag,note,confidence}:\n"
            "  0,PVOIL Ha Noi,Transport,Fuel,0.9\n"
            "  1,ACME Corp,,Salary,\n```"
        )

        requests = await extractor.extract_statement_rows(rows, TECHCOMBANK_DEBIT_CONFIG, GROUNDING)

        assert [r.params["action"] for r in requests] == ["spend", "income"]
        assert requests[0].params["amount"] == "52000"
        assert requests[0].params["counterparty"] == "PVOIL Ha Noi"
        assert requests[0].params["tag"] == "Transport"
        assert requests[0].params["date"] == "2025-11-01"
        assert requests[0].confidence == 0.9
        assert requests[0].meta["bank_ref"] == "FT0000"
        assert requests[0].meta["enrichment"] == "llm"
        assert "tag" not in requests[1].params
        assert requests[1].confidence == ENRICHED_ROW_CONFIDENCE
        assert all(r.source is ActionSource.SPREADSHEET_ROW for r in requests)

    @pytest.mark.asyncio
    async def test_rows_are_chunked(self, extractor, llm):
        """Twelve rows take three model calls and keep their order."""
        rows = [statement_row(n, debit=str(1000 * (n + 1))) for n in range(12)]
        llm.generate.side_effect = LLMError("offline")

        requests = await extractor.extract_statement_rows(rows, TECHCOMBANK_DEBIT_CONFIG, GROUNDING)

        assert llm.generate.call_count == 3
        assert [r.meta["row_number"] for r in requests] == [row.row_number for row in rows]

    @pytest.mark.asyncio
    async def test_failed_chunk_falls_back(self, extractor, llm):
        """A row-count mismatch falls back to basic classification for that chunk."""
        rows = [statement_row(0, debit="52000"), statement_row(1, debit="10000")]
        llm.generate.return_value = "rows[2]{idx,counterparty,tag,note,confidence}:\n0,A,,x,0.9"

        requests = await extractor.extract_statement_rows(rows, TECHCOMBANK_DEBIT_CONFIG, GROUNDING)

        assert len(requests) == 2
        assert all(r.confidence == FALLBACK_ROW_CONFIDENCE for r in requests)
        assert all(r.meta["enrichment"] == "fallback" for r in requests)
        assert requests[0].params["counterparty"] == "SHOP"
        assert requests[0].params["note"] == "payment 0"

    @pytest.mark.asyncio
    async def test_unexpected_error_falls_back(self, extractor, llm):
        """Any enrichment error keeps every row with its basic classification."""
        rows = [statement_row(0, debit="52000"), statement_row(1, credit="10000")]
        llm.generate.side_effect = RuntimeError("connection reset")

        requests = await extractor.extract_statement_rows(rows, TECHCOMBANK_DEBIT_CONFIG, GROUNDING)

        assert [r.params["action"] for r in requests] == ["spend", "income"]
        assert all(r.confidence == FALLBACK_ROW_CONFIDENCE for r in requests)


class TestGeminiClient:
    """SDK errors are converted at the client boundary."""

    @staticmethod
    def client_raising(error: Exception) -> GeminiClient:
        client = GeminiClient(GeminiSettings(api_key="test-key"))
        client._model = SimpleNamespace(generate_content_async=AsyncMock(side_effect=error))
        return client

    @pytest.mark.asyncio
    async def test_blocked_prompt_becomes_llm_error(self):
        """A safety block is an LLMError, not an SDK exception."""
        client = self.client_raising(genai.types.BlockedPromptException("blocked"))

        with pytest.raises(LLMError, match="blocked"):
            await client.generate("Lunch 120k")

    @pytest.mark.asyncio
    async def test_blocked_receipt_is_staged_as_failed(self, staging_settings):
        """Through the agent, a blocked call yields a null-action request."""
        agent = ActionExtractionAgent(
            self.client_raising(genai.types.BlockedPromptException("blocked")), staging_settings
        )

        request = await agent.extract_text("Lunch 120k", GroundingSnapshot())

        assert request.params is None
        assert request.confidence == 0.0
        assert "blocked" in request.failure_reason
