"""Validation package."""

from ledger_intake.validation.normalize import (
    AmountError,
    DateParseError,
    parse_amount,
    parse_date,
)
from ledger_intake.validation.validator import (
    SCHEMA_FIT_PENALTY,
    ActionValidationError,
    ActionValidator,
)

__all__ = [
    "AmountError",
    "ActionValidationError",
    "ActionValidator",
    "DateParseError",
    "SCHEMA_FIT_PENALTY",
    "parse_amount",
    "parse_date",
]
