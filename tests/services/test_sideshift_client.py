import aiohttp
import pytest

from services.sideshift_client import SideShiftClient, map_asset_to_sideshift_coin


class FakeResponse:
    def __init__(self, status, payload):
        self.status = status
        self._payload = payload

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    async def json(self):
        return self._payload

    async def text(self):
        return str(self._payload)


class FakeSession:
    def __init__(self, responses):
        self.responses = list(responses)
        self.requests = []

    def request(self, method, url, json=None, headers=None, timeout=None):
        self.requests.append({"method": method, "url": url, "json": json, "headers": headers})
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def test_coin_mapping():
    assert map_asset_to_sideshift_coin("weth") == "eth"
    assert map_asset_to_sideshift_coin("USDC") == "usdcarbitrum"
    assert map_asset_to_sideshift_coin("FRAX") == "frax"


@pytest.mark.asyncio
async def test_get_quote_sends_affiliate_and_secret():
    session = FakeSession([FakeResponse(200, {
        "id": "quote-1",
        "depositCoin": "usdcarbitrum",
        "settleCoin": "eth",
        "depositAmount": "1000",
        "settleAmount": "0.41",
        "rate": "0.00041",
        "expiresAt": "2024-06-01T00:15:00Z",
    })])
    client = SideShiftClient(session, api_key="secret", affiliate_id="aff-1", base_url="https://sideshift.test/v2/")

    quote = await client.get_quote("USDC", "WETH", "1000")

    assert quote.id == "quote-1"
    assert quote.settle_amount == "0.41"
    request = session.requests[0]
    assert request["method"] == "POST"
    assert request["url"] == "https://sideshift.test/v2/quotes"
    assert request["json"] == {
        "depositCoin": "usdcarbitrum",
        "settleCoin": "eth",
        "depositAmount": "1000",
        "affiliateId": "aff-1",
    }
    assert request["headers"]["x-sideshift-secret"] == "secret"


@pytest.mark.asyncio
async def test_create_order_and_status():
    order_payload = {
        "id": "shift-1",
        "depositAddress": {"address": "0xdeposit", "memo": None},
        "depositCoin": "usdcarbitrum",
        "settleCoin": "eth",
        "depositAmount": 1000,
        "settleAmount": "0.41",
        "settleAddress": "0xwallet",
        "status": "waiting",
    }
    session = FakeSession([FakeResponse(201, order_payload), FakeResponse(200, dict(order_payload, status="settled"))])
    client = SideShiftClient(session)

    order = await client.create_order("quote-1", "0xwallet")
    status = await client.get_order_status("shift-1")

    assert order.deposit_address == "0xdeposit"
    assert order.deposit_amount == "1000"
    assert status.status == "settled"
    assert session.requests[0]["json"]["quoteId"] == "quote-1"
    assert session.requests[1]["method"] == "GET"
    assert session.requests[1]["url"].endswith("/shifts/shift-1")
    assert "x-sideshift-secret" not in session.requests[1]["headers"]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response",
    [
        FakeResponse(400, {"error": {"message": "Amount too low"}}),
        FakeResponse(200, {"no_id": True}),
        aiohttp.ClientConnectionError("connection refused"),
    ],
)
async def test_failures_return_none(response):
    client = SideShiftClient(FakeSession([response]))

    assert await client.get_quote("USDC", "ETH", "5") is None
