"""
Action Models for Ledger Intake

These Pydantic models define the structure of everything between raw user
input and a reviewed ledger mutation:

1. ActionRequest   - ephemeral output of one extraction call
2. Action          - a tagged variant: verb + typed parameter set
3. ActionEnvelope  - the canonical, signable staging payload
4. PendingAction   - a staged envelope awaiting human review

DESIGN DECISION: The action taxonomy is CLOSED. Each verb is its own model
and the union is discriminated on `verb`. Adding a verb means adding a model
and registering it in ACTION_MODELS, never reading ad hoc string keys.
"""

import datetime as dt
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union
from uuid import UUID, uuid4

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    field_validator,
    model_validator,
)


def utc_now() -> datetime:
    """Timezone-aware UTC timestamp used for every persisted record."""
    return datetime.now(timezone.utc)


# =============================================================================
# ENUMS
# =============================================================================

class ActionSource(str, Enum):
    """Where a candidate action came from."""
    TEXT = "text"
    IMAGE = "image"
    SPREADSHEET_ROW = "spreadsheet_row"


class ActionVerb(str, Enum):
    """
    The closed set of ledger verbs.

    Anything the LLM emits outside this set is a validation failure.
    """
    SPEND = "spend"
    INCOME = "income"
    TRANSFER = "transfer"
    STAKE = "stake"
    UNSTAKE = "unstake"
    BORROW = "borrow"
    REPAY_BORROW = "repay_borrow"


class PendingStatus(str, Enum):
    """
    Review state of a staged action.

    CRITICAL: Only pending -> approved and pending -> rejected are legal.
    Both targets are terminal.
    """
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"

    @property
    def is_terminal(self) -> bool:
        return self is not PendingStatus.PENDING


# =============================================================================
# ACTION VARIANTS
# =============================================================================

class _ActionBase(BaseModel):
    """Parameters shared by every verb."""

    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid", frozen=True)

    amount: Decimal = Field(
        ...,
        ge=0,
        description="Quantity moved, in `currency` (or `asset` for stake/unstake)"
    )
    currency: str = Field(
        default="VND",
        min_length=3,
        max_length=5,
        description="ISO currency code or asset symbol of the amount"
    )
    date: dt.date = Field(
        ...,
        description="Day the event happened"
    )
    counterparty: Optional[str] = Field(default=None, max_length=200)
    tag: Optional[str] = Field(default=None, max_length=100)
    note: Optional[str] = Field(default=None, max_length=1000)
    fee: Decimal = Field(
        default=Decimal("0"),
        ge=0,
        description="Fee paid on top of the amount, same unit as the amount"
    )

    @field_validator('currency')
    @classmethod
    def normalize_currency(cls, v: str) -> str:
        return v.upper()

    @field_validator('amount', 'fee')
    @classmethod
    def must_be_finite(cls, v: Decimal) -> Decimal:
        if not v.is_finite():
            raise ValueError("must be a finite number")
        return v

    @property
    def unit(self) -> str:
        """The asset the vault balances move in."""
        return self.currency

    @property
    def action_verb(self) -> ActionVerb:
        return ActionVerb(self.verb)


class SpendAction(_ActionBase):
    """Money leaves the user's hands: routed to the spending vault as a withdraw."""

    verb: Literal["spend"] = "spend"
    account: str = Field(..., min_length=1, description="Account the payment came from")
    vault: Optional[str] = Field(default=None, description="Overrides the default spending vault")


class IncomeAction(_ActionBase):
    """Money arrives: routed to the income vault as a deposit."""

    verb: Literal["income"] = "income"
    account: str = Field(..., min_length=1, description="Account the money landed in")
    vault: Optional[str] = Field(default=None, description="Overrides the default income vault")

    @model_validator(mode='after')
    def fee_within_amount(self) -> 'IncomeAction':
        if self.fee > self.amount:
            raise ValueError("Fee cannot exceed the income amount")
        return self


class TransferAction(_ActionBase):
    """Internal movement between two of the user's own vaults."""

    verb: Literal["transfer"] = "transfer"
    source_account: str = Field(..., min_length=1)
    destination_account: str = Field(..., min_length=1)

    @model_validator(mode='after')
    def distinct_accounts(self) -> 'TransferAction':
        if self.source_account.lower() == self.destination_account.lower():
            raise ValueError("Transfer source and destination must differ")
        return self


class StakeAction(_ActionBase):
    """Move an asset from a holding vault into an investment vault."""

    verb: Literal["stake"] = "stake"
    asset: str = Field(..., min_length=2, max_length=10)
    source_account: str = Field(..., min_length=1)
    investment_account: str = Field(..., min_length=1)

    @field_validator('asset')
    @classmethod
    def normalize_asset(cls, v: str) -> str:
        return v.upper()

    @property
    def unit(self) -> str:
        return self.asset


class UnstakeAction(_ActionBase):
    """Move an asset out of an investment vault."""

    verb: Literal["unstake"] = "unstake"
    asset: str = Field(..., min_length=2, max_length=10)
    investment_account: str = Field(..., min_length=1)
    destination_account: str = Field(..., min_length=1)

    @field_validator('asset')
    @classmethod
    def normalize_asset(cls, v: str) -> str:
        return v.upper()

    @property
    def unit(self) -> str:
        return self.asset


class BorrowAction(_ActionBase):
    """Borrowed money arrives; the borrowings vault records the debt."""

    verb: Literal["borrow"] = "borrow"
    account: Optional[str] = Field(default=None, description="Vault the borrowed money lands in")


class RepayBorrowAction(_ActionBase):
    """Debt repaid; the borrowings vault is credited back."""

    verb: Literal["repay_borrow"] = "repay_borrow"
    account: Optional[str] = Field(default=None, description="Vault the repayment comes from")


Action = Annotated[
    Union[
        SpendAction,
        IncomeAction,
        TransferAction,
        StakeAction,
        UnstakeAction,
        BorrowAction,
        RepayBorrowAction,
    ],
    Field(discriminator="verb"),
]

ACTION_MODELS: dict[ActionVerb, type[_ActionBase]] = {
    ActionVerb.SPEND: SpendAction,
    ActionVerb.INCOME: IncomeAction,
    ActionVerb.TRANSFER: TransferAction,
    ActionVerb.STAKE: StakeAction,
    ActionVerb.UNSTAKE: UnstakeAction,
    ActionVerb.BORROW: BorrowAction,
    ActionVerb.REPAY_BORROW: RepayBorrowAction,
}

# Parameters that name a vault/account and are checked against grounding
ACCOUNT_FIELDS = (
    "account",
    "source_account",
    "destination_account",
    "investment_account",
    "vault",
)

action_adapter: TypeAdapter = TypeAdapter(Action)


def required_params(verb: ActionVerb) -> list[str]:
    """Parameters the verb cannot do without (date is handled separately)."""
    model = ACTION_MODELS[verb]
    return [
        name for name, info in model.model_fields.items()
        if info.is_required() and name != "date"
    ]


def known_params(verb: ActionVerb) -> list[str]:
    return [name for name in ACTION_MODELS[verb].model_fields if name != "verb"]


# =============================================================================
# EXTRACTION MODELS
# =============================================================================

class ActionRequest(BaseModel):
    """
    Output of a single extraction call.

    CRITICAL: This is PROPOSED data from an LLM, NOT verified.
    It is never persisted; the validator turns it into an envelope.
    """

    source: ActionSource
    raw_input: str = Field(
        ...,
        description="The user's text, an image reference, or the serialized spreadsheet row"
    )
    raw_response: Optional[str] = Field(
        default=None,
        description="LLM response text, preserved verbatim"
    )
    params: Optional[dict[str, Any]] = Field(
        default=None,
        description="key:value fields parsed from the LLM table, None on extraction failure"
    )
    confidence: float = Field(
        default=0.0,
        ge=0.0,
        le=1.0,
        description="Extraction confidence"
    )
    accounts: list[str] = Field(
        default_factory=list,
        description="Grounding accounts the extraction was biased with"
    )
    tags: list[str] = Field(
        default_factory=list,
        description="Grounding tags the extraction was biased with"
    )
    meta: dict[str, Any] = Field(default_factory=dict)
    failure_reason: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.params is None


# =============================================================================
# STAGING MODELS
# =============================================================================

ENVELOPE_FIELDS = frozenset({
    "source",
    "batch_id",
    "raw_input",
    "raw_response",
    "action",
    "confidence",
    "meta",
})


class ActionEnvelope(BaseModel):
    """
    The canonical payload that is signed, delivered and staged.

    Everything here is covered by the signature. Identity and review
    fields live on PendingAction only.
    """

    source: ActionSource
    batch_id: Optional[str] = Field(
        default=None,
        description="Groups actions from one bulk input"
    )
    raw_input: str
    raw_response: Optional[str] = None
    action: Optional[Action] = Field(
        default=None,
        description="None when extraction or validation failed; kept for manual completion"
    )
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    meta: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode='after')
    def null_action_has_zero_confidence(self) -> 'ActionEnvelope':
        if self.action is None and self.confidence != 0.0:
            raise ValueError("An envelope without an action must have confidence 0")
        return self

    def signing_payload(self) -> dict[str, Any]:
        """JSON-safe dict of exactly the signed fields."""
        return self.model_dump(mode="json", include=set(ENVELOPE_FIELDS))


class PendingAction(ActionEnvelope):
    """
    A staged action awaiting review.

    CRITICAL: Created only by the stager. Its status is mutated only by the
    review gate. Never deleted; terminal records are the audit trail.
    """

    id: UUID = Field(default_factory=uuid4)
    status: PendingStatus = PendingStatus.PENDING
    signature: str = Field(..., min_length=64, max_length=64)
    created_at: datetime = Field(default_factory=utc_now)
    decided_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None

    # Ledger outcome
    committed_transaction_id: Optional[UUID] = None
    commit_error: Optional[str] = Field(
        default=None,
        description="Last commit failure; the record stays approved until retried"
    )

    @property
    def is_committed(self) -> bool:
        return self.committed_transaction_id is not None

    @property
    def can_be_approved(self) -> bool:
        return self.status is PendingStatus.PENDING and self.action is not None

    def envelope(self) -> ActionEnvelope:
        return ActionEnvelope(
            source=self.source,
            batch_id=self.batch_id,
            raw_input=self.raw_input,
            raw_response=self.raw_response,
            action=self.action,
            confidence=self.confidence,
            meta=self.meta,
        )


class StageResult(BaseModel):
    """Outcome of a staging call. A duplicate delivery is a success."""

    pending_action: PendingAction
    duplicate: bool = False


class ReviewOutcome(BaseModel):
    """Outcome of approve/reject. changed=False means a no-op on a terminal record."""

    pending_action: PendingAction
    changed: bool


class BatchApprovalResult(BaseModel):
    """Outcome of a bulk approval."""

    batch_id: str
    threshold: float
    approved_ids: list[UUID] = Field(default_factory=list)
    below_threshold_ids: list[UUID] = Field(default_factory=list)
    needs_completion_ids: list[UUID] = Field(
        default_factory=list,
        description="Pending members with no action; they need manual entry"
    )

    @property
    def approved_count(self) -> int:
        return len(self.approved_ids)


# =============================================================================
# VALIDATION MODELS
# =============================================================================

class ValidationIssue(BaseModel):
    """A single validation issue found."""

    field: str = Field(
        ...,
        description="Field with the issue"
    )
    issue_type: str = Field(
        ...,
        description="Type of issue (e.g., 'missing', 'unknown_verb', 'invalid_amount')"
    )
    message: str = Field(
        ...,
        description="Human-readable description of the issue"
    )
    severity: str = Field(
        ...,
        pattern="^(error|warning|info)$",
        description="Issue severity"
    )
    suggested_fix: Optional[str] = Field(
        default=None,
        description="Suggested fix if available"
    )


class ValidationResult(BaseModel):
    """
    Result of validating one ActionRequest.

    `action` is set only when there are no error-level issues.
    """

    action: Optional[Action] = None
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    schema_fit: float = Field(default=0.0, ge=0.0, le=1.0)
    inferred_fields: list[str] = Field(
        default_factory=list,
        description="Fields that were defaulted or not matched against grounding"
    )
    issues: list[ValidationIssue] = Field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return self.action is not None and not self.has_errors

    @property
    def has_errors(self) -> bool:
        """Check if there are any error-level issues."""
        return any(issue.severity == "error" for issue in self.issues)

    @property
    def error_count(self) -> int:
        """Count error-level issues."""
        return sum(1 for issue in self.issues if issue.severity == "error")

    def to_meta(self) -> dict[str, Any]:
        """Provenance recorded on the staged action."""
        return {
            "valid": self.is_valid,
            "schema_fit": self.schema_fit,
            "inferred_fields": list(self.inferred_fields),
            "issues": [issue.model_dump() for issue in self.issues],
        }
