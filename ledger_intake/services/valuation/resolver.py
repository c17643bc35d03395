"""
Valuation Resolver

Turns (unit, date) into a Valuation: the local price of one unit plus the
rates into the reference currencies (USD and VND).

Lookup order for every rate:
1. The rate cache (any source, exact pair and date)
2. The external provider, whose answer is written to the cache before use

DESIGN DECISION: Resolution never fails. A provider outage leaves the
affected fields as None and the Valuation reports `pending`; the committer
still records the transaction and flags it. There are no retries here - a
late rate only ever lands in the cache for later lookups.
"""

from datetime import date
from decimal import Decimal
from typing import Iterable, Optional

import structlog

from ledger_intake.audit import AuditLogger
from ledger_intake.models.ledger import RateQuote, Valuation, is_fiat
from ledger_intake.services.storage import RateCacheStorage
from ledger_intake.services.valuation.providers import (
    PriceProvider,
    ProviderUnavailable,
    RateProvider,
)


logger = structlog.get_logger(__name__)

REFERENCE_CURRENCIES = ("USD", "VND")
ONE = Decimal("1")


class ValuationResolver:
    """Resolves asset valuations through the rate cache and providers."""

    def __init__(
        self,
        cache: RateCacheStorage,
        fx_provider: RateProvider,
        price_provider: PriceProvider,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self._cache = cache
        self._fx = fx_provider
        self._prices = price_provider
        self._audit_logger = audit_logger

    async def resolve(self, unit: str, on_date: date) -> Valuation:
        """Valuation of one `unit` on `on_date`. Never raises for provider failures."""
        unit = unit.upper()
        if is_fiat(unit):
            return await self._resolve_fiat(unit, on_date)
        return await self._resolve_priced(unit, on_date)

    async def _resolve_fiat(self, unit: str, on_date: date) -> Valuation:
        rates = await self.fx_rates(unit, REFERENCE_CURRENCIES, on_date)
        return Valuation(
            unit=unit,
            local_currency=unit,
            price_local=ONE,
            fx_to_usd=rates["USD"],
            fx_to_vnd=rates["VND"],
            sources=[self._fx.name],
        )

    async def _resolve_priced(self, unit: str, on_date: date) -> Valuation:
        price = await self.usd_price(unit, on_date)
        rates = await self.fx_rates("USD", ("VND",), on_date)
        return Valuation(
            unit=unit,
            local_currency="USD",
            price_local=price,
            fx_to_usd=ONE,
            fx_to_vnd=rates["VND"],
            sources=[self._prices.name, self._fx.name],
        )

    async def fx_rates(
        self,
        base: str,
        targets: Iterable[str],
        on_date: date,
    ) -> dict[str, Optional[Decimal]]:
        """
        Rates from `base` into each target, None where unresolvable.

        At most one provider call covers every cache miss.
        """
        base = base.upper()
        result: dict[str, Optional[Decimal]] = {}
        missing = []

        for target in targets:
            target = target.upper()
            if target == base:
                result[target] = ONE
                continue
            cached = await self._cache.get_rate(base, target, on_date)
            if cached is not None:
                result[target] = cached.rate
            else:
                result[target] = None
                missing.append(target)

        if not missing:
            return result

        try:
            fetched = await self._fx.get_rates(base, on_date)
        except ProviderUnavailable as e:
            await self._provider_failed(self._fx.name, str(e), base=base, on_date=on_date)
            return result

        for target in missing:
            rate = fetched.get(target)
            if rate is None:
                logger.warning("fx_rate_missing", base=base, target=target, on_date=on_date.isoformat())
                continue
            stored = await self._cache.put_rate(RateQuote(
                from_currency=base,
                to_currency=target,
                rate_date=on_date,
                source=self._fx.name,
                rate=rate,
            ))
            result[target] = stored.rate

        return result

    async def usd_price(self, symbol: str, on_date: date) -> Optional[Decimal]:
        """USD price of one unit of a non-fiat asset, None where unresolvable."""
        symbol = symbol.upper()
        cached = await self._cache.get_rate(symbol, "USD", on_date)
        if cached is not None:
            return cached.rate

        try:
            price = await self._prices.get_price(symbol, on_date)
        except ProviderUnavailable as e:
            await self._provider_failed(self._prices.name, str(e), base=symbol, on_date=on_date)
            return None

        stored = await self._cache.put_rate(RateQuote(
            from_currency=symbol,
            to_currency="USD",
            rate_date=on_date,
            source=self._prices.name,
            rate=price,
        ))
        return stored.rate

    async def _provider_failed(self, provider: str, message: str, base: str, on_date: date) -> None:
        logger.warning(
            "rate_provider_unavailable",
            provider=provider,
            base=base,
            on_date=on_date.isoformat(),
            error=message,
        )
        if self._audit_logger:
            await self._audit_logger.log_external_service_error(
                service=provider,
                error_message=message,
            )
