"""Tests for the ETH/USD price feed."""

import httpx
import pytest

from src.core.service.collectible.price_feed import EthUsdPriceFeed

URL = "https://prices.test/simple/price?ids=ethereum&vs_currencies=usd"


def _feed(handler):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return EthUsdPriceFeed(url=URL, client=client)


@pytest.mark.asyncio
class TestEthUsdPriceFeed:

    async def test_returns_price(self):
        feed = _feed(lambda request: httpx.Response(200, json={"ethereum": {"usd": 2500.5}}))

        assert await feed.get_eth_usd() == 2500.5

    async def test_price_is_cached(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, json={"ethereum": {"usd": 2000}})

        feed = _feed(handler)
        await feed.get_eth_usd()
        await feed.get_eth_usd()

        assert len(calls) == 1

    async def test_http_error_returns_none(self):
        feed = _feed(lambda request: httpx.Response(502))

        assert await feed.get_eth_usd() is None

    async def test_unexpected_payload_returns_none(self):
        feed = _feed(lambda request: httpx.Response(200, json={"bitcoin": {"usd": 1}}))

        assert await feed.get_eth_usd() is None

    async def test_disabled_without_url(self):
        assert await EthUsdPriceFeed(url="").get_eth_usd() is None
