import pytest

from services.defillama_client import DefiLlamaClient, parse_pool


def raw_pool(pool_id, symbol, apy, tvl, il_risk="no", project="aave-v3"):
    return {
        "pool": pool_id,
        "chain": "Ethereum",
        "project": project,
        "symbol": symbol,
        "tvlUsd": tvl,
        "apy": apy,
        "apyBase": apy,
        "apyReward": None,
        "ilRisk": il_risk,
        "exposure": "single",
    }


@pytest.mark.asyncio
async def test_fetch_top_yields_filters_and_sorts(monkeypatch):
    calls = []

    async def fake_get(url, session, retries=3, timeout=30):
        calls.append(url)
        return {
            "status": "success",
            "data": [
                raw_pool("low-tvl", "USDC", 15.0, 500_000),
                raw_pool("mid", "USDC", 6.0, 20_000_000),
                raw_pool("top", "WETH", 9.0, 8_000_000, il_risk="yes"),
                raw_pool("broken", "DAI", 4000.0, 90_000_000),
                raw_pool("zero", "DAI", 0.0, 90_000_000),
                {"pool": "missing-fields"},
            ],
        }

    monkeypatch.setattr("services.defillama_client.api_get", fake_get)
    client = DefiLlamaClient(session=None)

    pools = await client.fetch_top_yields(min_tvl_usd=1_000_000, limit=50)

    assert [p.pool_id for p in pools] == ["top", "mid"]
    assert pools[0].il_risk == "yes"
    assert pools[0].project == "aave-v3"

    # Served from the cache on the second call.
    limited = await client.fetch_top_yields(min_tvl_usd=1_000_000, limit=1)
    assert [p.pool_id for p in limited] == ["top"]
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_fetch_top_yields_returns_empty_on_failure(monkeypatch):
    async def fake_get(url, session, retries=3, timeout=30):
        return None

    monkeypatch.setattr("services.defillama_client.api_get", fake_get)

    assert await DefiLlamaClient(session=None).fetch_top_yields() == []


@pytest.mark.asyncio
async def test_fetch_top_yields_swallows_unexpected_errors(monkeypatch):
    async def fake_get(url, session, retries=3, timeout=30):
        raise RuntimeError("connection reset")

    monkeypatch.setattr("services.defillama_client.api_get", fake_get)

    assert await DefiLlamaClient(session=None).fetch_top_yields() == []


def test_parse_pool_normalises_il_risk():
    assert parse_pool(raw_pool("a", "USDC", 5.0, 1e7, il_risk=None)).il_risk == "unknown"
    assert parse_pool(raw_pool("a", "USDC", 5.0, 1e7, il_risk="YES")).il_risk == "yes"
    assert parse_pool({"pool": "a", "symbol": "USDC"}) is None
