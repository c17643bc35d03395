"""
Shared fixtures.

Test strategy:
1. Unit tests for individual components (parsers, validator, signing)
2. Integration tests for flows against a real SQLite file under tmp_path
3. No real API calls in tests (scripted LLM, in-memory rate providers)
"""

from datetime import date
from decimal import Decimal
from typing import Optional
from unittest.mock import AsyncMock

import pytest

from ledger_intake.agents import ActionExtractionAgent, LLMClient
from ledger_intake.audit import AuditLogger
from ledger_intake.config import FXSettings, LedgerSettings, StagingSettings
from ledger_intake.ledger import LedgerCommitter
from ledger_intake.models.action import ActionEnvelope, ActionSource, action_adapter
from ledger_intake.orchestrator import IngestionFlow, ReviewFlow
from ledger_intake.review import ReviewGate
from ledger_intake.services.grounding import StaticGroundingProvider
from ledger_intake.services.storage import SQLiteStore
from ledger_intake.services.valuation import (
    PriceProvider,
    ProviderUnavailable,
    RateProvider,
    ValuationResolver,
)
from ledger_intake.staging import PendingActionStager
from ledger_intake.validation import ActionValidator


TODAY = date(2025, 1, 15)


class FakeRateProvider(RateProvider):
    """In-memory FX rates; counts calls and can be switched off."""

    name = "fake-fx"

    def __init__(self, rates: Optional[dict[str, dict[str, Decimal]]] = None, available: bool = True):
        self.rates = rates if rates is not None else {
            "VND": {"USD": Decimal("0.00004"), "EUR": Decimal("0.000037")},
            "USD": {"VND": Decimal("25000"), "EUR": Decimal("0.92")},
            "EUR": {"USD": Decimal("1.08"), "VND": Decimal("27000")},
        }
        self.available = available
        self.calls: list[tuple[str, date]] = []

    async def get_rates(self, base: str, on_date: date) -> dict[str, Decimal]:
        self.calls.append((base, on_date))
        if not self.available:
            raise ProviderUnavailable(self.name, "offline")
        return dict(self.rates.get(base, {}))


class FakePriceProvider(PriceProvider):
    """In-memory USD prices."""

    name = "fake-price"

    def __init__(self, prices: Optional[dict[str, Decimal]] = None, available: bool = True):
        self.prices = prices if prices is not None else {"BTC": Decimal("42000"), "ETH": Decimal("2500")}
        self.available = available
        self.calls: list[tuple[str, date]] = []

    async def get_price(self, symbol: str, on_date: date) -> Decimal:
        self.calls.append((symbol, on_date))
        if not self.available or symbol not in self.prices:
            raise ProviderUnavailable(self.name, f"no price for {symbol}")
        return self.prices[symbol]


def make_envelope(
    params: Optional[dict] = None,
    confidence: float = 0.9,
    batch_id: Optional[str] = None,
    source: ActionSource = ActionSource.TEXT,
    raw_input: str = "test input",
    meta: Optional[dict] = None,
) -> ActionEnvelope:
    """Envelope around a typed action built from plain params (None for no action)."""
    action = action_adapter.validate_python(params) if params is not None else None
    return ActionEnvelope(
        source=source,
        batch_id=batch_id,
        raw_input=raw_input,
        action=action,
        confidence=confidence if action is not None else 0.0,
        meta=meta or {},
    )


def spend(amount: str = "120000", vault: Optional[str] = None, **extra) -> dict:
    params = {
        "verb": "spend",
        "amount": amount,
        "currency": "VND",
        "date": "2025-01-01",
        "account": "Bank",
        "counterparty": "McDo",
    }
    if vault:
        params["vault"] = vault
    params.update(extra)
    return params


def income(amount: str = "1000000", vault: Optional[str] = None, **extra) -> dict:
    params = {
        "verb": "income",
        "amount": amount,
        "currency": "VND",
        "date": "2025-01-01",
        "account": "Bank",
    }
    if vault:
        params["vault"] = vault
    params.update(extra)
    return params


@pytest.fixture
def ledger_settings() -> LedgerSettings:
    return LedgerSettings(
        default_spending_vault="Spend",
        default_income_vault="Income",
        borrowings_vault="Borrowings",
        overdraft_vaults="Borrowings",
        default_currency="VND",
        timezone="Asia/Ho_Chi_Minh",
    )


@pytest.fixture
def staging_settings() -> StagingSettings:
    return StagingSettings(signing_secret="test-signing-secret", default_extraction_confidence=0.9)


@pytest.fixture
def fx_settings() -> FXSettings:
    return FXSettings(
        base_url="https://fx.test/v4/latest",
        price_base_url="https://prices.test/api/v3",
        timeout_seconds=5,
    )


@pytest.fixture
def store(tmp_path) -> SQLiteStore:
    return SQLiteStore(tmp_path / "ledger.db")


@pytest.fixture
def audit_logger(store) -> AuditLogger:
    return AuditLogger(store)


@pytest.fixture
def validator(ledger_settings) -> ActionValidator:
    return ActionValidator(ledger_settings, today=lambda: TODAY)


@pytest.fixture
def stager(store, staging_settings, audit_logger) -> PendingActionStager:
    return PendingActionStager(store, staging_settings, audit_logger=audit_logger)


@pytest.fixture
def gate(store, audit_logger) -> ReviewGate:
    return ReviewGate(store, audit_logger=audit_logger)


@pytest.fixture
def fx_provider() -> FakeRateProvider:
    return FakeRateProvider()


@pytest.fixture
def price_provider() -> FakePriceProvider:
    return FakePriceProvider()


@pytest.fixture
def resolver(store, fx_provider, price_provider) -> ValuationResolver:
    return ValuationResolver(store, fx_provider, price_provider)


@pytest.fixture
def committer(store, resolver, ledger_settings, audit_logger) -> LedgerCommitter:
    return LedgerCommitter(store, store, resolver, ledger_settings, audit_logger=audit_logger)


@pytest.fixture
def llm() -> AsyncMock:
    return AsyncMock(spec=LLMClient)


@pytest.fixture
def grounding() -> StaticGroundingProvider:
    return StaticGroundingProvider(
        accounts=["Bank", "Cash", "Spend", "Income", "Binance", "Savings"],
        tags=["Food", "Transport", "Salary", "Rent"],
    )


@pytest.fixture
def extractor(llm, staging_settings) -> ActionExtractionAgent:
    return ActionExtractionAgent(llm, staging_settings)


@pytest.fixture
def ingestion_flow(extractor, validator, stager, grounding, audit_logger) -> IngestionFlow:
    return IngestionFlow(
        extractor=extractor,
        validator=validator,
        stager=stager,
        grounding=grounding,
        audit_logger=audit_logger,
    )


@pytest.fixture
def review_flow(gate, committer, validator, stager, audit_logger) -> ReviewFlow:
    return ReviewFlow(
        gate=gate,
        committer=committer,
        validator=validator,
        stager=stager,
        audit_logger=audit_logger,
    )
