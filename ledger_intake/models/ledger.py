"""
Ledger Models for Ledger Intake

Transactions, vaults, vault entries and valuation data.

DESIGN DECISION: A Transaction is immutable once created. Corrections are
new (reversing) transactions, never in-place edits. Vault balances are kept
in asset units, so a late-resolved exchange rate never changes a balance.
"""

import datetime as dt
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ledger_intake.models.action import utc_now


# Symbols valued through a price lookup instead of an FX pair
CRYPTO_ASSETS = frozenset({
    "BTC", "ETH", "USDT", "USDC", "DAI", "BUSD", "PAXG", "XAU",
    "SOL", "ADA", "AVAX", "DOT", "MATIC", "ATOM", "NEAR", "ALGO",
    "BNB", "UNI", "LINK", "AAVE", "CRV", "SUSHI", "XRP", "LTC",
    "DOGE", "SHIB", "APT", "ARB", "OP",
})


def is_crypto(unit: str) -> bool:
    return unit.upper() in CRYPTO_ASSETS


def is_fiat(unit: str) -> bool:
    """Every unit that is not a known crypto asset is valued as a currency."""
    return not is_crypto(unit)


# =============================================================================
# VAULTS
# =============================================================================

class EntryKind(str, Enum):
    """Direction of a vault entry."""
    DEPOSIT = "deposit"
    WITHDRAW = "withdraw"


class VaultMovement(BaseModel):
    """
    One planned effect on a vault, before it is committed.

    The committer plans movements; storage applies them inside the same
    write transaction as the Transaction insert.
    """

    model_config = ConfigDict(frozen=True)

    vault: str = Field(..., min_length=1)
    asset: str = Field(..., min_length=2)
    kind: EntryKind
    amount: Decimal = Field(..., gt=0)
    usd_value: Optional[Decimal] = None
    allow_overdraft: bool = False

    @property
    def signed_amount(self) -> Decimal:
        return self.amount if self.kind is EntryKind.DEPOSIT else -self.amount


class VaultEntry(VaultMovement):
    """
    An append-only record of a committed movement.

    CRITICAL: For every (vault, asset), the running balance equals the
    signed sum of that vault's entries for the asset.
    """

    id: UUID = Field(default_factory=uuid4)
    transaction_id: UUID
    created_at: datetime = Field(default_factory=utc_now)


class Vault(BaseModel):
    """A named, balance-bearing account with a balance per asset."""

    name: str
    allow_overdraft: bool = False
    balances: dict[str, Decimal] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)

    def balance(self, asset: str) -> Decimal:
        return self.balances.get(asset.upper(), Decimal("0"))


# =============================================================================
# VALUATION
# =============================================================================

class RateQuote(BaseModel):
    """
    One cached conversion rate.

    Key: (from_currency, to_currency, rate_date, source). Append-only; a
    cached rate is never overwritten.
    """

    model_config = ConfigDict(frozen=True)

    from_currency: str
    to_currency: str
    rate_date: dt.date
    source: str
    rate: Decimal = Field(..., gt=0)
    fetched_at: datetime = Field(default_factory=utc_now)

    @field_validator('from_currency', 'to_currency')
    @classmethod
    def normalize_code(cls, v: str) -> str:
        return v.upper()


class Valuation(BaseModel):
    """
    Reference-currency valuation of one unit of an asset on a date.

    `price_local` is the price of one unit in `local_currency` (1 for fiat).
    Any field left None could not be resolved; `pending` is then True.
    """

    unit: str
    local_currency: str
    price_local: Optional[Decimal] = None
    fx_to_usd: Optional[Decimal] = None
    fx_to_vnd: Optional[Decimal] = None
    sources: list[str] = Field(default_factory=list)

    @property
    def pending(self) -> bool:
        return self.price_local is None or self.fx_to_usd is None or self.fx_to_vnd is None

    def local_amount(self, quantity: Decimal) -> Optional[Decimal]:
        if self.price_local is None:
            return None
        return quantity * self.price_local

    def usd_amount(self, quantity: Decimal) -> Optional[Decimal]:
        local = self.local_amount(quantity)
        if local is None or self.fx_to_usd is None:
            return None
        return local * self.fx_to_usd

    def vnd_amount(self, quantity: Decimal) -> Optional[Decimal]:
        local = self.local_amount(quantity)
        if local is None or self.fx_to_vnd is None:
            return None
        return local * self.fx_to_vnd


# =============================================================================
# TRANSACTIONS
# =============================================================================

class Transaction(BaseModel):
    """
    An immutable ledger record, created exactly once per approved action.

    CRITICAL: Created only by the ledger committer, together with its vault
    entries, in one write transaction.
    """

    model_config = ConfigDict(frozen=True)

    id: UUID = Field(default_factory=uuid4)
    pending_action_id: UUID

    date: dt.date
    type: str = Field(..., description="The action verb")
    asset: str
    account: Optional[str] = None
    destination_account: Optional[str] = None
    counterparty: Optional[str] = None
    tag: Optional[str] = None
    note: Optional[str] = None

    quantity: Decimal = Field(..., ge=0)
    price_local: Optional[Decimal] = None
    local_currency: str
    amount_local: Optional[Decimal] = None

    # Reference currencies; None until the rate is known
    fx_to_usd: Optional[Decimal] = None
    fx_to_vnd: Optional[Decimal] = None
    amount_usd: Optional[Decimal] = None
    amount_vnd: Optional[Decimal] = None

    fee_local: Optional[Decimal] = Decimal("0")
    fee_usd: Optional[Decimal] = None
    fee_vnd: Optional[Decimal] = None

    valuation_pending: bool = Field(
        default=False,
        description="True when some rate could not be resolved at commit time"
    )
    created_at: datetime = Field(default_factory=utc_now)


class CommitResult(BaseModel):
    """Outcome of committing one approved action."""

    transaction: Transaction
    entries: list[VaultEntry] = Field(default_factory=list)
    created: bool = Field(
        default=True,
        description="False when the action had already been committed"
    )
