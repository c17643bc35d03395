"""
External rate providers for valuation.

Two kinds of lookup:
- FX rates between fiat currencies (exchangerate-api style JSON)
- USD prices of crypto and commodity-backed tokens (CoinGecko history API)

DESIGN DECISION: Providers raise ProviderUnavailable for every failure mode
(network error, timeout, bad status, malformed payload). The resolver treats
them all the same way: leave the rate unresolved and flag the transaction,
so a provider outage never blocks a commit.
"""

from abc import ABC, abstractmethod
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

import httpx
import structlog

from ledger_intake.config.settings import FXSettings


logger = structlog.get_logger(__name__)


class ProviderUnavailable(Exception):
    """A rate or price could not be obtained from the external provider."""

    def __init__(self, provider: str, message: str):
        self.provider = provider
        super().__init__(f"{provider}: {message}")


def _to_decimal(value: Any) -> Optional[Decimal]:
    if value is None or isinstance(value, bool):
        return None
    try:
        result = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    if not result.is_finite() or result <= 0:
        return None
    return result


class _HttpProvider:
    """Shared lazy httpx client handling."""

    name = "http"

    def __init__(self, timeout_seconds: float, client: Optional[httpx.AsyncClient] = None):
        self._timeout = timeout_seconds
        self._client = client
        self._owns_client = client is None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self._timeout))
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def _get_json(self, url: str, params: Optional[dict[str, str]] = None) -> dict[str, Any]:
        client = await self._get_client()
        try:
            response = await client.get(url, params=params)
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPError as e:
            raise ProviderUnavailable(self.name, f"request failed: {e}") from e
        except ValueError as e:
            raise ProviderUnavailable(self.name, "response is not JSON") from e

        if not isinstance(payload, dict):
            raise ProviderUnavailable(self.name, "unexpected response format")
        return payload


class RateProvider(ABC):
    """Source of fiat FX rates."""

    name: str = "fx"

    @abstractmethod
    async def get_rates(self, base: str, on_date: date) -> dict[str, Decimal]:
        """
        Rates from one unit of `base` to other currencies.

        Raises:
            ProviderUnavailable: the provider could not be reached or answered
                with something unusable.
        """
        pass


class PriceProvider(ABC):
    """Source of USD prices for non-fiat assets."""

    name: str = "price"

    @abstractmethod
    async def get_price(self, symbol: str, on_date: date) -> Decimal:
        """
        USD price of one unit of `symbol` on a date.

        Raises:
            ProviderUnavailable: unknown symbol, or the provider failed.
        """
        pass


class HttpFXProvider(_HttpProvider, RateProvider):
    """
    exchangerate-api.com client.

    Without an API key the open v4 endpoint is used; it only serves latest
    rates, which are then cached under the requested date.
    """

    name = "exchangerate-api"

    def __init__(self, settings: FXSettings, client: Optional[httpx.AsyncClient] = None):
        super().__init__(settings.timeout_seconds, client)
        self._base_url = settings.base_url.rstrip("/")
        self._api_key = settings.api_key.get_secret_value() if settings.api_key else None

    def _url(self, base: str) -> str:
        if self._api_key:
            return f"https://v6.exchangerate-api.com/v6/{self._api_key}/latest/{base}"
        return f"{self._base_url}/{base}"

    async def get_rates(self, base: str, on_date: date) -> dict[str, Decimal]:
        base = base.upper()
        payload = await self._get_json(self._url(base))

        # v4 answers {"rates": ...}, v6 answers {"conversion_rates": ...}
        raw_rates = payload.get("rates") or payload.get("conversion_rates")
        if not isinstance(raw_rates, dict) or not raw_rates:
            raise ProviderUnavailable(self.name, f"no rates in response for {base}")

        rates = {}
        for code, value in raw_rates.items():
            rate = _to_decimal(value)
            if rate is not None:
                rates[str(code).upper()] = rate

        logger.debug("fx_rates_fetched", base=base, on_date=on_date.isoformat(), count=len(rates))
        return rates


# Ticker -> CoinGecko coin id
COINGECKO_IDS = {
    "BTC": "bitcoin",
    "ETH": "ethereum",
    "USDT": "tether",
    "USDC": "usd-coin",
    "DAI": "dai",
    "BUSD": "binance-usd",
    "PAXG": "pax-gold",
    "XAU": "pax-gold",
    "SOL": "solana",
    "ADA": "cardano",
    "AVAX": "avalanche-2",
    "DOT": "polkadot",
    "MATIC": "matic-network",
    "ATOM": "cosmos",
    "NEAR": "near",
    "ALGO": "algorand",
    "BNB": "binancecoin",
    "UNI": "uniswap",
    "LINK": "chainlink",
    "AAVE": "aave",
    "CRV": "curve-dao-token",
    "SUSHI": "sushi",
    "XRP": "ripple",
    "LTC": "litecoin",
    "DOGE": "dogecoin",
    "SHIB": "shiba-inu",
    "APT": "aptos",
    "ARB": "arbitrum",
    "OP": "optimism",
}


class CoinGeckoPriceProvider(_HttpProvider, PriceProvider):
    """Historical USD prices from the CoinGecko public API."""

    name = "coingecko"

    def __init__(self, settings: FXSettings, client: Optional[httpx.AsyncClient] = None):
        super().__init__(settings.timeout_seconds, client)
        self._base_url = settings.price_base_url.rstrip("/")

    async def get_price(self, symbol: str, on_date: date) -> Decimal:
        symbol = symbol.upper()
        coin_id = COINGECKO_IDS.get(symbol)
        if coin_id is None:
            raise ProviderUnavailable(self.name, f"no price mapping for {symbol}")

        payload = await self._get_json(
            f"{self._base_url}/coins/{coin_id}/history",
            params={"date": on_date.strftime("%d-%m-%Y"), "localization": "false"},
        )

        market_data = payload.get("market_data") or {}
        price = _to_decimal((market_data.get("current_price") or {}).get("usd"))
        if price is None:
            raise ProviderUnavailable(
                self.name, f"no USD price for {symbol} on {on_date.isoformat()}"
            )

        logger.debug("price_fetched", symbol=symbol, on_date=on_date.isoformat(), usd=str(price))
        return price
