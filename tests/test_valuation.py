"""Tests for rate providers and the valuation resolver."""

from datetime import date
from decimal import Decimal

import httpx
import pytest
from pydantic import SecretStr

from conftest import FakePriceProvider, FakeRateProvider
from ledger_intake.audit import AuditLogger
from ledger_intake.models.audit import AuditEventType
from ledger_intake.models.ledger import RateQuote
from ledger_intake.services.valuation import (
    CoinGeckoPriceProvider,
    HttpFXProvider,
    ProviderUnavailable,
    ValuationResolver,
)


ON = date(2025, 1, 1)


class TestResolver:
    """Cache-first resolution with graceful provider failure."""

    @pytest.mark.asyncio
    async def test_fiat_valuation(self, resolver):
        """VND values at 1 local unit with both reference rates."""
        valuation = await resolver.resolve("vnd", ON)

        assert valuation.unit == "VND"
        assert valuation.local_currency == "VND"
        assert valuation.price_local == Decimal("1")
        assert valuation.fx_to_vnd == Decimal("1")
        assert valuation.fx_to_usd == Decimal("0.00004")
        assert valuation.pending is False
        assert valuation.usd_amount(Decimal("120000")) == Decimal("4.80000")

    @pytest.mark.asyncio
    async def test_reference_currency_identity(self, resolver, fx_provider):
        """USD to USD needs no lookup."""
        rates = await resolver.fx_rates("USD", ["USD"], ON)
        assert rates == {"USD": Decimal("1")}
        assert fx_provider.calls == []

    @pytest.mark.asyncio
    async def test_provider_answer_is_cached(self, resolver, fx_provider, store):
        """The second lookup is served from the cache."""
        await resolver.resolve("EUR", ON)
        await resolver.resolve("EUR", ON)

        assert fx_provider.calls == [("EUR", ON)]
        cached = await store.get_rate("EUR", "USD", ON)
        assert cached.rate == Decimal("1.08")
        assert cached.source == "fake-fx"

    @pytest.mark.asyncio
    async def test_cached_rate_wins_over_provider(self, resolver, fx_provider, store):
        """A cached rate is never refetched."""
        await store.put_rate(RateQuote(
            from_currency="EUR", to_currency="USD", rate_date=ON, source="manual", rate=Decimal("1.10"),
        ))
        await store.put_rate(RateQuote(
            from_currency="EUR", to_currency="VND", rate_date=ON, source="manual", rate=Decimal("27500"),
        ))

        valuation = await resolver.resolve("EUR", ON)

        assert valuation.fx_to_usd == Decimal("1.10")
        assert fx_provider.calls == []

    @pytest.mark.asyncio
    async def test_one_provider_call_for_all_misses(self, resolver, fx_provider):
        """Both missing targets come from one fetch."""
        await resolver.fx_rates("EUR", ["USD", "VND"], ON)
        assert len(fx_provider.calls) == 1

    @pytest.mark.asyncio
    async def test_provider_outage_leaves_valuation_pending(self, store):
        """An unreachable provider yields None fields, not an exception."""
        audit_logger = AuditLogger(store)
        resolver = ValuationResolver(
            store, FakeRateProvider(available=False), FakePriceProvider(), audit_logger=audit_logger
        )

        valuation = await resolver.resolve("EUR", ON)

        assert valuation.pending is True
        assert valuation.fx_to_usd is None
        assert valuation.usd_amount(Decimal("10")) is None
        assert valuation.local_amount(Decimal("10")) == Decimal("10")

        events = await store.get_recent_events()
        assert events[0].event_type is AuditEventType.EXTERNAL_SERVICE_ERROR

    @pytest.mark.asyncio
    async def test_missing_target_rate_stays_none(self, store):
        """A provider answer without the target leaves that rate unresolved."""
        resolver = ValuationResolver(
            store, FakeRateProvider(rates={"EUR": {"USD": Decimal("1.08")}}), FakePriceProvider()
        )
        rates = await resolver.fx_rates("EUR", ["USD", "VND"], ON)
        assert rates == {"USD": Decimal("1.08"), "VND": None}

    @pytest.mark.asyncio
    async def test_crypto_valued_in_usd(self, resolver):
        """Crypto is priced in USD and converted to VND."""
        valuation = await resolver.resolve("ETH", ON)

        assert valuation.local_currency == "USD"
        assert valuation.price_local == Decimal("2500")
        assert valuation.fx_to_usd == Decimal("1")
        assert valuation.fx_to_vnd == Decimal("25000")
        assert valuation.vnd_amount(Decimal("0.5")) == Decimal("31250000.0")
        assert valuation.sources == ["fake-price", "fake-fx"]

    @pytest.mark.asyncio
    async def test_any_non_crypto_unit_is_valued_as_currency(self, store):
        """Currencies outside the common set still go through FX, not the price source."""
        fx_provider = FakeRateProvider(rates={"IDR": {"USD": Decimal("0.000062"), "VND": Decimal("1.6")}})
        price_provider = FakePriceProvider()
        resolver = ValuationResolver(store, fx_provider, price_provider)

        valuation = await resolver.resolve("idr", ON)

        assert valuation.local_currency == "IDR"
        assert valuation.price_local == Decimal("1")
        assert valuation.fx_to_usd == Decimal("0.000062")
        assert valuation.fx_to_vnd == Decimal("1.6")
        assert valuation.pending is False
        assert fx_provider.calls == [("IDR", ON)]
        assert price_provider.calls == []

    @pytest.mark.asyncio
    async def test_unpriced_crypto_pending(self, resolver):
        """A crypto asset the price source does not know stays pending."""
        valuation = await resolver.resolve("SOL", ON)
        assert valuation.price_local is None
        assert valuation.pending is True


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestHttpFXProvider:
    """exchangerate-api client against a mocked transport."""

    @pytest.mark.asyncio
    async def test_parses_rates(self, fx_settings):
        """Rates are read from the `rates` object as Decimals."""
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(str(request.url))
            return httpx.Response(200, json={"base": "USD", "rates": {"VND": 25000, "EUR": 0.92, "BAD": "x"}})

        async with _client(handler) as client:
            provider = HttpFXProvider(fx_settings, client=client)
            rates = await provider.get_rates("usd", ON)

        assert seen == ["https://fx.test/v4/latest/USD"]
        assert rates == {"VND": Decimal("25000"), "EUR": Decimal("0.92")}

    @pytest.mark.asyncio
    async def test_keyed_endpoint_shape(self, fx_settings):
        """The keyed endpoint answers with conversion_rates."""
        settings = fx_settings.model_copy(update={"api_key": SecretStr("k123")})
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request.url.path)
            return httpx.Response(200, json={"conversion_rates": {"USD": 1, "VND": 25000}})

        async with _client(handler) as client:
            provider = HttpFXProvider(settings, client=client)
            rates = await provider.get_rates("USD", ON)

        assert seen == ["/v6/k123/latest/USD"]
        assert rates["VND"] == Decimal("25000")

    @pytest.mark.asyncio
    async def test_http_error_is_unavailable(self, fx_settings):
        """A 5xx maps to ProviderUnavailable."""
        async with _client(lambda request: httpx.Response(503)) as client:
            provider = HttpFXProvider(fx_settings, client=client)
            with pytest.raises(ProviderUnavailable):
                await provider.get_rates("USD", ON)

    @pytest.mark.asyncio
    async def test_malformed_payload_is_unavailable(self, fx_settings):
        """Non-JSON and rate-less payloads map to ProviderUnavailable."""
        async with _client(lambda request: httpx.Response(200, text="<html>")) as client:
            with pytest.raises(ProviderUnavailable):
                await HttpFXProvider(fx_settings, client=client).get_rates("USD", ON)

        async with _client(lambda request: httpx.Response(200, json={"result": "error"})) as client:
            with pytest.raises(ProviderUnavailable):
                await HttpFXProvider(fx_settings, client=client).get_rates("USD", ON)


class TestCoinGeckoPriceProvider:
    """CoinGecko history client against a mocked transport."""

    @pytest.mark.asyncio
    async def test_historical_price(self, fx_settings):
        """The history endpoint is called with a day-first date."""
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"market_data": {"current_price": {"usd": 42123.5}}})

        async with _client(handler) as client:
            provider = CoinGeckoPriceProvider(fx_settings, client=client)
            price = await provider.get_price("btc", ON)

        assert price == Decimal("42123.5")
        assert seen[0].url.path == "/api/v3/coins/bitcoin/history"
        assert seen[0].url.params["date"] == "01-01-2025"

    @pytest.mark.asyncio
    async def test_gold_token_alias(self, fx_settings):
        """XAU is priced through PAX Gold."""
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request.url.path)
            return httpx.Response(200, json={"market_data": {"current_price": {"usd": 2650}}})

        async with _client(handler) as client:
            await CoinGeckoPriceProvider(fx_settings, client=client).get_price("XAU", ON)

        assert seen == ["/api/v3/coins/pax-gold/history"]

    @pytest.mark.asyncio
    async def test_unknown_symbol(self, fx_settings):
        """Unmapped symbols fail without a request."""
        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("no request expected")

        async with _client(handler) as client:
            with pytest.raises(ProviderUnavailable, match="no price mapping"):
                await CoinGeckoPriceProvider(fx_settings, client=client).get_price("XYZ", ON)

    @pytest.mark.asyncio
    async def test_missing_market_data(self, fx_settings):
        """Dates before listing come back without market data."""
        async with _client(lambda request: httpx.Response(200, json={"id": "bitcoin"})) as client:
            with pytest.raises(ProviderUnavailable, match="no USD price"):
                await CoinGeckoPriceProvider(fx_settings, client=client).get_price("BTC", ON)
