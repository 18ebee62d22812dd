import pytest

from services.gemini_client import GeminiClient


class DummySession:
    async def post(self):
        raise NotImplementedError


def make_client():
    client = GeminiClient(DummySession(), api_key="fake")
    client._rate_limit_delay = 0
    return client


def candidate(text):
    return {"candidates": [{"content": {"parts": [{"text": text}]}}]}


@pytest.mark.asyncio
async def test_generate_json_parses_object_and_requests_json_output(monkeypatch):
    client = make_client()
    captured = {}

    async def fake_post(url, session, json_data, headers=None):
        captured["body"] = json_data
        captured["headers"] = headers
        return candidate('{"recommendations": []}')

    monkeypatch.setattr("services.gemini_client.api_post", fake_post)

    result = await client.generate_json("Suggest moves")

    assert result == {"recommendations": []}
    assert captured["body"]["generationConfig"]["responseMimeType"] == "application/json"
    assert captured["body"]["contents"][0]["parts"][0]["text"] == "Suggest moves"
    assert captured["headers"]["x-goog-api-key"] == "fake"


@pytest.mark.asyncio
async def test_generate_json_strips_code_fences(monkeypatch):
    client = make_client()

    async def fake_post(url, session, json_data, headers=None):
        return candidate('```json\n{"recommendations": [{"asset": "USDC"}]}\n```')

    monkeypatch.setattr("services.gemini_client.api_post", fake_post)

    result = await client.generate_json("prompt")

    assert result == {"recommendations": [{"asset": "USDC"}]}


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response",
    [
        None,
        {"candidates": []},
        candidate("not json at all"),
        candidate("[1, 2, 3]"),
    ],
)
async def test_generate_json_returns_none_for_unusable_output(monkeypatch, response):
    client = make_client()

    async def fake_post(url, session, json_data, headers=None):
        return response

    monkeypatch.setattr("services.gemini_client.api_post", fake_post)

    assert await client.generate_json("prompt") is None


@pytest.mark.asyncio
async def test_generate_json_without_key_skips_request(monkeypatch):
    client = GeminiClient(DummySession(), api_key="")

    async def fake_post(url, session, json_data, headers=None):
        raise AssertionError("should not be called")

    monkeypatch.setattr("services.gemini_client.api_post", fake_post)

    assert await client.generate_json("prompt") is None
