"""AI agents package."""

from ledger_intake.agents.extraction_agent import (
    ENRICHED_ROW_CONFIDENCE,
    ENRICHMENT_CHUNK_SIZE,
    FALLBACK_ROW_CONFIDENCE,
    ActionExtractionAgent,
    ExtractionFailure,
)
from ledger_intake.agents.llm_client import GeminiClient, ImagePart, LLMClient, LLMError
from ledger_intake.agents.table_parser import (
    TableParseError,
    parse_action_table,
    parse_row_table,
)

__all__ = [
    "ActionExtractionAgent",
    "ENRICHED_ROW_CONFIDENCE",
    "ENRICHMENT_CHUNK_SIZE",
    "FALLBACK_ROW_CONFIDENCE",
    "ExtractionFailure",
    "GeminiClient",
    "ImagePart",
    "LLMClient",
    "LLMError",
    "TableParseError",
    "parse_action_table",
    "parse_row_table",
]
