import json

import httpx
import pytest

from orchestrator.errors import ConfigurationError, TransportError
from orchestrator.llm_client import AnthropicClient


def _client(handler) -> AnthropicClient:
    return AnthropicClient(
        api_key="test-key",
        base_url="https://llm.test",
        model="test-model",
        transport=httpx.MockTransport(handler),
    )


@pytest.mark.asyncio
async def test_complete_posts_messages_and_joins_text() -> None:
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["headers"] = request.headers
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "model": "test-model",
                "stop_reason": "end_turn",
                "content": [
                    {"type": "text", "text": "Hello "},
                    {"type": "tool_use", "id": "x"},
                    {"type": "text", "text": "world"},
                ],
                "usage": {"input_tokens": 12, "output_tokens": 3},
            },
        )

    client = _client(handler)
    response = await client.complete("system prompt", [{"role": "user", "content": "hi"}])
    await client.aclose()

    assert response.text == "Hello world"
    assert response.usage.total_tokens == 15
    assert response.stop_reason == "end_turn"
    assert seen["url"] == "https://llm.test/v1/messages"
    assert seen["headers"]["x-api-key"] == "test-key"
    assert seen["headers"]["anthropic-version"] == "2023-06-01"
    assert seen["body"]["system"] == "system prompt"
    assert seen["body"]["model"] == "test-model"
    assert seen["body"]["messages"] == [{"role": "user", "content": "hi"}]


@pytest.mark.asyncio
async def test_http_error_becomes_transport_error() -> None:
    client = _client(lambda request: httpx.Response(529, text="overloaded"))
    with pytest.raises(TransportError, match="529"):
        await client.complete("s", [{"role": "user", "content": "hi"}])
    await client.aclose()


@pytest.mark.asyncio
async def test_connection_error_becomes_transport_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    client = _client(handler)
    with pytest.raises(TransportError, match="request failed"):
        await client.complete("s", [{"role": "user", "content": "hi"}])
    await client.aclose()


@pytest.mark.asyncio
async def test_empty_content_is_rejected() -> None:
    client = _client(lambda request: httpx.Response(200, json={"content": []}))
    with pytest.raises(TransportError, match="no text content"):
        await client.complete("s", [{"role": "user", "content": "hi"}])
    await client.aclose()


def test_api_key_is_required() -> None:
    with pytest.raises(ConfigurationError):
        AnthropicClient(api_key="")
