import logging
from functools import partial
from typing import Protocol

import httpx

from ..config import Settings
from ..errors import TransientStoreError
from ..retry import EXTERNAL_RETRY, RetryPolicy, with_retry

logger = logging.getLogger(__name__)


class PriceProvider(Protocol):
    async def get_prices(self, tickers: list[str]) -> dict[str, float]:
        ...


class StaticPriceProvider:
    def __init__(self, prices: dict[str, float]) -> None:
        self.prices = dict(prices)

    async def get_prices(self, tickers: list[str]) -> dict[str, float]:
        return {ticker: self.prices[ticker] for ticker in tickers if ticker in self.prices}


class FinnhubPriceProvider:
    """Last traded price from a Finnhub-compatible ``/quote`` endpoint."""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://finnhub.io/api/v1",
        timeout: float = 10.0,
        retry: RetryPolicy = EXTERNAL_RETRY,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.retry = retry
        self.transport = transport

    async def _quote(self, client: httpx.AsyncClient, ticker: str) -> float | None:
        response = await client.get(f"{self.base_url}/quote", params={"symbol": ticker, "token": self.api_key})
        response.raise_for_status()
        price = response.json().get("c")
        return float(price) if price else None

    async def get_prices(self, tickers: list[str]) -> dict[str, float]:
        prices: dict[str, float] = {}
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            for ticker in tickers:
                try:
                    price = await with_retry(partial(self._quote, client, ticker), self.retry, name=f"quote {ticker}")
                except (httpx.HTTPError, TransientStoreError, ValueError) as exc:
                    logger.warning("price lookup for %s failed: %s", ticker, exc)
                    continue
                if price is not None:
                    prices[ticker] = price
        return prices


def get_price_provider(config: Settings) -> PriceProvider | None:
    if not config.price_api_key:
        return None
    return FinnhubPriceProvider(config.price_api_key, config.price_api_url)
