"""
Action Extraction Agent

Turns informal input (a chat message, a receipt photo, bank statement rows)
into ActionRequests: PROPOSED key/value parameters plus the verbatim model
response.

CRITICAL BOUNDARIES:
- CAN: Propose a verb and parameters, biased by the grounding snapshot
- CAN: Clean up counterparty/tag/note text of statement rows
- CANNOT: Write to any store
- CANNOT: Decide amounts, dates or direction of statement rows - those
  are read deterministically from the row
- NEVER raises past its boundary: a model or parse failure becomes an
  ActionRequest with params=None and confidence 0, raw response kept

The LLM is a TRANSLATOR, not an ORACLE.
"""

import asyncio
import hashlib
from typing import Any, Optional

import structlog

from ledger_intake.agents.llm_client import ImagePart, LLMClient, LLMError
from ledger_intake.agents.table_parser import (
    TableParseError,
    parse_action_table,
    parse_row_table,
)
from ledger_intake.config.settings import StagingSettings
from ledger_intake.models.action import (
    ActionRequest,
    ActionSource,
    ActionVerb,
    known_params,
    required_params,
)
from ledger_intake.services.grounding import GroundingSnapshot
from ledger_intake.services.statements import BankStatementConfig, BankStatementRow


logger = structlog.get_logger(__name__)

ENRICHMENT_CHUNK_SIZE = 5
ENRICHMENT_COLUMNS = ["idx", "counterparty", "tag", "note", "confidence"]
# Confidence of an enriched row whose confidence cell was left blank
ENRICHED_ROW_CONFIDENCE = 0.7
# Confidence of a row classified without the model
FALLBACK_ROW_CONFIDENCE = 0.3


class ExtractionFailure(Exception):
    """The model output could not be turned into parameters."""

    def __init__(self, reason: str, raw_response: Optional[str] = None):
        self.reason = reason
        self.raw_response = raw_response
        super().__init__(reason)


def _parse_confidence(value: Any, default: float) -> float:
    if value is None or str(value).strip() == "":
        return default
    try:
        confidence = float(value)
    except (TypeError, ValueError):
        return default
    return min(max(confidence, 0.0), 1.0)


def _verb_catalog() -> str:
    lines = []
    for verb in ActionVerb:
        required = [p for p in required_params(verb) if p != "verb"]
        optional = [p for p in known_params(verb) if p not in required]
        lines.append(
            f"- {verb.value}: required {', '.join(required)}; optional {', '.join(optional)}"
        )
    return "\n".join(lines)


def _grounding_block(grounding: GroundingSnapshot) -> str:
    return "\n".join([
        "```toon",
        f"accounts[{len(grounding.accounts)}]: {','.join(grounding.accounts)}",
        f"tags[{len(grounding.tags)}]: {','.join(grounding.tags)}",
        "```",
    ])


class ActionExtractionAgent:
    """
    LLM-backed extraction of financial actions.

    The agent holds no state beyond its collaborators; concurrent calls are
    independent.
    """

    def __init__(self, llm: LLMClient, settings: StagingSettings):
        self._llm = llm
        self._default_confidence = settings.default_extraction_confidence

    # =========================================================================
    # SINGLE ACTIONS
    # =========================================================================

    def build_action_prompt(self, grounding: GroundingSnapshot, message: Optional[str]) -> str:
        """Prompt asking for exactly one action as a key: value table."""
        return f"""You are a precise financial parser for a personal ledger.

Extract ONE financial action from the input and output ONLY a fenced code block
labelled toon, containing "key: value" lines.

Verbs and parameters:
{_verb_catalog()}

Rules:
- First line is "action: <verb>" using one of the verbs above
- account, source_account, destination_account, investment_account and vault
  must come from the accounts list when possible
- tag must come from the tags list when present
- amount: write it as it appears (120k, 1.5tr, 52,000 and currency suffixes are fine)
- date as YYYY-MM-DD; leave it out if the input does not say
- Add "confidence: <0.0-1.0>" for how sure you are
- Leave out parameters you do not know; never invent them

Grounding:
{_grounding_block(grounding)}

Input:
{message or "(see image)"}

Output ONLY the toon code block."""

    async def extract_text(
        self,
        message: str,
        grounding: GroundingSnapshot,
        meta: Optional[dict[str, Any]] = None,
    ) -> ActionRequest:
        """Extract an action from a chat message."""
        prompt = self.build_action_prompt(grounding, message)
        return await self._extract_single(
            source=ActionSource.TEXT,
            raw_input=message,
            prompt=prompt,
            grounding=grounding,
            meta=meta,
        )

    async def extract_image(
        self,
        image_bytes: bytes,
        mime_type: str,
        grounding: GroundingSnapshot,
        caption: Optional[str] = None,
        meta: Optional[dict[str, Any]] = None,
    ) -> ActionRequest:
        """
        Extract an action from a receipt or transfer screenshot.

        The stored raw input is the caption plus a content hash of the image,
        never the image bytes.
        """
        digest = hashlib.sha256(image_bytes).hexdigest()
        image_ref = f"image:sha256:{digest}"
        raw_input = f"{caption}\n{image_ref}" if caption else image_ref

        prompt = self.build_action_prompt(grounding, caption)
        meta = {**(meta or {}), "image_sha256": digest, "mime_type": mime_type}
        return await self._extract_single(
            source=ActionSource.IMAGE,
            raw_input=raw_input,
            prompt=prompt,
            grounding=grounding,
            meta=meta,
            image=ImagePart(mime_type=mime_type, data=image_bytes),
        )

    async def _extract_single(
        self,
        source: ActionSource,
        raw_input: str,
        prompt: str,
        grounding: GroundingSnapshot,
        meta: Optional[dict[str, Any]],
        image: Optional[ImagePart] = None,
    ) -> ActionRequest:
        base = {
            "source": source,
            "raw_input": raw_input,
            "accounts": grounding.accounts,
            "tags": grounding.tags,
            "meta": dict(meta or {}),
        }

        raw_response = None
        try:
            raw_response = await self._llm.generate(prompt, image=image)
            params = self._parse_action(raw_response)
        except (LLMError, ExtractionFailure) as e:
            reason = e.reason if isinstance(e, ExtractionFailure) else str(e)
            logger.warning("extraction_failed", source=source.value, reason=reason)
            return ActionRequest(
                **base,
                raw_response=raw_response,
                params=None,
                confidence=0.0,
                failure_reason=reason,
            )
        except Exception as e:
            logger.error("extraction_crashed", source=source.value, error_type=type(e).__name__, error=str(e))
            return ActionRequest(
                **base,
                raw_response=raw_response,
                params=None,
                confidence=0.0,
                failure_reason=f"{type(e).__name__}: {e}",
            )

        confidence = _parse_confidence(params.pop("confidence", None), self._default_confidence)
        logger.info(
            "action_extracted",
            source=source.value,
            verb=params.get("action") or params.get("verb"),
            confidence=confidence,
        )
        return ActionRequest(
            **base,
            raw_response=raw_response,
            params=params,
            confidence=confidence,
        )

    @staticmethod
    def _parse_action(raw_response: str) -> dict[str, Any]:
        try:
            return parse_action_table(raw_response)
        except TableParseError as e:
            raise ExtractionFailure(str(e), raw_response) from e

    # =========================================================================
    # STATEMENT ROWS
    # =========================================================================

    def build_enrichment_prompt(
        self,
        rows: list[BankStatementRow],
        grounding: GroundingSnapshot,
    ) -> str:
        """Prompt asking the model to clean the text columns of up to a chunk of rows."""
        listing = "\n".join(f"[{idx}] {row.describe()}" for idx, row in enumerate(rows))
        return f"""You are a financial transaction analyzer for Vietnamese bank statements.
Clean up and categorize these {len(rows)} transactions.

{listing}

Available tags: {', '.join(grounding.tags) or 'None specified'}

Output ONLY a fenced toon code block with exactly this header and {len(rows)} rows in order:
```toon
rows[{len(rows)}]{{{','.join(ENRICHMENT_COLUMNS)}}}:
  0,clean counterparty,tag or empty,brief English note,0.9
```

Rules:
- counterparty is a clean, short name (e.g. "PVOIL HA NOI CHXD NGHIA TAN" -> "PVOIL Ha Noi")
- tag must be from the available tags or empty
- note is a brief English description (max 10 words); quote values containing commas
- confidence is how sure you are (0.0-1.0)"""

    async def extract_statement_rows(
        self,
        rows: list[BankStatementRow],
        statement_config: BankStatementConfig,
        grounding: GroundingSnapshot,
    ) -> list[ActionRequest]:
        """
        One ActionRequest per statement row, in row order.

        Rows are enriched in chunks; a chunk whose enrichment fails falls back
        to the basic classification, so every row always yields a request.
        """
        chunks = [
            rows[start:start + ENRICHMENT_CHUNK_SIZE]
            for start in range(0, len(rows), ENRICHMENT_CHUNK_SIZE)
        ]
        enriched = await asyncio.gather(*(
            self._enrich_chunk(chunk, statement_config, grounding) for chunk in chunks
        ))

        requests = [request for chunk_requests in enriched for request in chunk_requests]
        logger.info(
            "statement_rows_extracted",
            bank=statement_config.bank,
            rows=len(requests),
            fallback_rows=sum(1 for r in requests if r.meta.get("enrichment") == "fallback"),
        )
        return requests

    async def _enrich_chunk(
        self,
        chunk: list[BankStatementRow],
        config: BankStatementConfig,
        grounding: GroundingSnapshot,
    ) -> list[ActionRequest]:
        raw_response = None
        try:
            raw_response = await self._llm.generate(self.build_enrichment_prompt(chunk, grounding))
            table = parse_row_table(raw_response)
        except Exception as e:
            logger.warning(
                "statement_enrichment_failed",
                rows=len(chunk),
                error_type=type(e).__name__,
                error=str(e),
            )
            return [
                self._row_request(row, config, grounding, None, raw_response)
                for row in chunk
            ]

        by_index = {}
        for entry in table:
            try:
                by_index[int(entry.get("idx", ""))] = entry
            except ValueError:
                continue

        return [
            self._row_request(row, config, grounding, by_index.get(idx), raw_response)
            for idx, row in enumerate(chunk)
        ]

    def _row_request(
        self,
        row: BankStatementRow,
        config: BankStatementConfig,
        grounding: GroundingSnapshot,
        enrichment: Optional[dict[str, str]],
        raw_response: Optional[str],
    ) -> ActionRequest:
        params: dict[str, Any] = {
            "action": row.verb.value,
            "amount": str(row.amount),
            "currency": config.currency,
            "date": row.date.isoformat(),
            "account": config.account_name,
            "counterparty": row.remitter or None,
            "note": row.details or None,
        }

        if enrichment is not None:
            params["counterparty"] = enrichment.get("counterparty") or params["counterparty"]
            params["tag"] = enrichment.get("tag") or None
            params["note"] = enrichment.get("note") or params["note"]
            confidence = _parse_confidence(enrichment.get("confidence"), ENRICHED_ROW_CONFIDENCE)
            mode = "llm"
        else:
            confidence = FALLBACK_ROW_CONFIDENCE
            mode = "fallback"

        return ActionRequest(
            source=ActionSource.SPREADSHEET_ROW,
            raw_input=row.model_dump_json(),
            raw_response=raw_response,
            params={k: v for k, v in params.items() if v is not None},
            confidence=confidence,
            accounts=grounding.accounts,
            tags=grounding.tags,
            meta={
                "bank": config.bank,
                "bank_ref": row.transaction_no,
                "row_number": row.row_number,
                "enrichment": mode,
            },
        )
