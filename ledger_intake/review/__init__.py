"""Review gate package."""

from ledger_intake.review.gate import ReviewGate

__all__ = ["ReviewGate"]
