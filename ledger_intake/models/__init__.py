"""
Data Models Package

This package contains all Pydantic models used in Ledger Intake.
All data flowing through the pipeline must conform to these schemas.
"""

from ledger_intake.models.action import (
    ACTION_MODELS,
    Action,
    ActionEnvelope,
    ActionRequest,
    ActionSource,
    ActionVerb,
    BatchApprovalResult,
    BorrowAction,
    IncomeAction,
    PendingAction,
    PendingStatus,
    RepayBorrowAction,
    ReviewOutcome,
    SpendAction,
    StageResult,
    StakeAction,
    TransferAction,
    UnstakeAction,
    ValidationIssue,
    ValidationResult,
    action_adapter,
    utc_now,
)
from ledger_intake.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
)
from ledger_intake.models.ledger import (
    CRYPTO_ASSETS,
    CommitResult,
    EntryKind,
    RateQuote,
    Transaction,
    Valuation,
    Vault,
    VaultEntry,
    VaultMovement,
    is_crypto,
    is_fiat,
)

__all__ = [
    # Action models
    "ACTION_MODELS",
    "Action",
    "ActionEnvelope",
    "ActionRequest",
    "ActionSource",
    "ActionVerb",
    "BatchApprovalResult",
    "BorrowAction",
    "IncomeAction",
    "PendingAction",
    "PendingStatus",
    "RepayBorrowAction",
    "ReviewOutcome",
    "SpendAction",
    "StageResult",
    "StakeAction",
    "TransferAction",
    "UnstakeAction",
    "ValidationIssue",
    "ValidationResult",
    "action_adapter",
    "utc_now",
    # Ledger models
    "CRYPTO_ASSETS",
    "CommitResult",
    "EntryKind",
    "RateQuote",
    "Transaction",
    "Valuation",
    "Vault",
    "VaultEntry",
    "VaultMovement",
    "is_crypto",
    "is_fiat",
    # Audit models
    "AuditEvent",
    "AuditEventBuilder",
    "AuditEventType",
    "AuditSeverity",
]
