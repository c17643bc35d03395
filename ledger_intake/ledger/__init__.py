"""Ledger committing package."""

from ledger_intake.ledger.committer import LedgerCommitter, LedgerInvariantViolation

__all__ = ["LedgerCommitter", "LedgerInvariantViolation"]
