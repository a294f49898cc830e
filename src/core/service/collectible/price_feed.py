import time
from typing import Optional

import httpx

from src.core.http_client import HTTPClientConfig
from src.core.logger.logger import get_logger
from src.infra.config.settings import get_settings

logger = get_logger(__name__)
settings = get_settings()


class EthUsdPriceFeed:
    """ETH/USD spot price from a public feed, used only to decorate gas estimates."""

    def __init__(
        self,
        url: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        cache_seconds: float = 60.0,
    ):
        self.url = url if url is not None else settings.ETH_USD_PRICE_URL
        self._client = client
        self._owns_client = client is None
        self.cache_seconds = cache_seconds
        self._cached: Optional[float] = None
        self._cached_at = 0.0

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(**HTTPClientConfig.create_client_config("price_feed"))
        return self._client

    async def get_eth_usd(self) -> Optional[float]:
        """Latest price, or None when the feed is unavailable"""
        if not self.url:
            return None
        if self._cached is not None and time.monotonic() - self._cached_at < self.cache_seconds:
            return self._cached

        try:
            response = await self._get_client().get(self.url)
            response.raise_for_status()
            price = float(response.json()["ethereum"]["usd"])
        except (httpx.HTTPError, KeyError, TypeError, ValueError) as e:
            logger.warning("ETH/USD price unavailable", extra={"url": self.url, "error": str(e)})
            return None

        self._cached = price
        self._cached_at = time.monotonic()
        return price

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
