"""Valuation: rate providers and the cached resolver."""

from ledger_intake.services.valuation.providers import (
    COINGECKO_IDS,
    CoinGeckoPriceProvider,
    HttpFXProvider,
    PriceProvider,
    ProviderUnavailable,
    RateProvider,
)
from ledger_intake.services.valuation.resolver import REFERENCE_CURRENCIES, ValuationResolver

__all__ = [
    "COINGECKO_IDS",
    "CoinGeckoPriceProvider",
    "HttpFXProvider",
    "PriceProvider",
    "ProviderUnavailable",
    "REFERENCE_CURRENCIES",
    "RateProvider",
    "ValuationResolver",
]
