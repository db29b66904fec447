"""Async client for the Anthropic Messages API."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol

import httpx

from .errors import ConfigurationError, TransportError

if TYPE_CHECKING:
    from .config import Settings
    from .history import ChatMessage


@dataclass(frozen=True)
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass(frozen=True)
class LLMResponse:
    text: str
    usage: TokenUsage = field(default_factory=TokenUsage)
    model: str | None = None
    stop_reason: str | None = None


class LanguageModel(Protocol):
    """Anything that turns (system, messages) into response text."""

    async def complete(self, system: str, messages: list[ChatMessage]) -> LLMResponse: ...


def _extract_text(content: list[dict[str, Any]]) -> str:
    texts: list[str] = []
    for block in content:
        if block.get("type") == "text" and isinstance(block.get("text"), str):
            texts.append(block["text"])
    return "".join(texts).strip()


class AnthropicClient:
    """Minimal client for the Messages endpoint."""

    def __init__(
        self,
        *,
        api_key: str | None,
        base_url: str = "https://api.anthropic.com",
        model: str = "claude-sonnet-4-5-20250929",
        max_tokens: int = 4096,
        temperature: float = 0.7,
        anthropic_version: str = "2023-06-01",
        timeout_seconds: float = 300.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not api_key:
            raise ConfigurationError(
                "ANTHROPIC_API_KEY or CLAUDE_API_KEY environment variable is required"
            )
        self.model = model
        self._max_tokens = max_tokens
        self._temperature = temperature
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout_seconds),
            headers={
                "x-api-key": api_key,
                "anthropic-version": anthropic_version,
                "content-type": "application/json",
            },
            transport=transport,
        )

    @classmethod
    def from_settings(cls, settings: Settings, *, model: str | None = None) -> AnthropicClient:
        return cls(
            api_key=settings.anthropic_api_key,
            base_url=settings.anthropic_api_url,
            model=model or settings.model,
            max_tokens=settings.max_tokens,
            temperature=settings.temperature,
            anthropic_version=settings.anthropic_version,
            timeout_seconds=settings.agent_timeout,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, *, body: Any | None = None) -> httpx.Response:
        try:
            resp = await self._client.request(method, path, json=body)
            resp.raise_for_status()
            return resp
        except httpx.RequestError as e:
            raise TransportError(f"Anthropic request failed ({method} {path}): {e}") from e
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            text = e.response.text
            raise TransportError(f"Anthropic API error {status} ({method} {path}): {text}") from e

    async def complete(self, system: str, messages: list[ChatMessage]) -> LLMResponse:
        body = {
            "model": self.model,
            "max_tokens": self._max_tokens,
            "temperature": self._temperature,
            "system": system,
            "messages": list(messages),
        }
        resp = await self._request("POST", "/v1/messages", body=body)
        try:
            data = resp.json()
        except ValueError as e:
            raise TransportError(f"Anthropic API returned non-JSON body: {e}") from e

        content = data.get("content") if isinstance(data, dict) else None
        if not isinstance(content, list):
            raise TransportError("Unexpected response type from Anthropic API")
        text = _extract_text(content)
        if not text:
            raise TransportError("Anthropic API response contained no text content")

        usage = data.get("usage") if isinstance(data.get("usage"), dict) else {}
        return LLMResponse(
            text=text,
            usage=TokenUsage(
                input_tokens=int(usage.get("input_tokens") or 0),
                output_tokens=int(usage.get("output_tokens") or 0),
            ),
            model=data.get("model"),
            stop_reason=data.get("stop_reason"),
        )
