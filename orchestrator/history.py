"""Conversation history per (agent, issue) key."""

from __future__ import annotations

import asyncio
import json
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import TYPE_CHECKING, Literal, TypedDict

if TYPE_CHECKING:
    from redis.asyncio import Redis

# Lists at or below this length are sent verbatim.
COMPACT_AFTER = 4


class ChatMessage(TypedDict):
    role: Literal["user", "assistant"]
    content: str


def history_key(agent: str, issue_number: int | None) -> str:
    return f"{agent}-{issue_number if issue_number is not None else 'default'}"


def compact_messages(messages: list[ChatMessage]) -> list[ChatMessage]:
    """Keep the first message and the last two, summarizing what lies between."""
    if len(messages) <= COMPACT_AFTER:
        return messages
    elided = len(messages) - 3
    summary: ChatMessage = {
        "role": "user",
        "content": (
            f"[Context Summary: {elided} previous exchanges covered specification analysis, "
            "test planning, and implementation details. Key decisions documented in spec file.]"
        ),
    }
    return [messages[0], summary, *messages[-2:]]


class HistoryStore(ABC):
    """Storage for conversation history.

    Single operations are atomic. Concurrent read-modify-write cycles on the
    same key must be serialized by the caller.
    """

    @abstractmethod
    async def load(self, key: str) -> list[ChatMessage]: ...

    @abstractmethod
    async def save(self, key: str, messages: list[ChatMessage]) -> None: ...

    @abstractmethod
    async def delete(self, key: str) -> bool: ...

    @abstractmethod
    async def clear(self, prefix: str) -> int:
        """Delete every key starting with prefix; return how many were removed."""

    async def clear_agent(self, agent: str, issue_number: int | None = None) -> int:
        if issue_number is not None:
            return int(await self.delete(history_key(agent, issue_number)))
        return await self.clear(f"{agent}-")


class InMemoryHistoryStore(HistoryStore):
    def __init__(self) -> None:
        self._data: dict[str, list[ChatMessage]] = {}
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def load(self, key: str) -> list[ChatMessage]:
        async with self._locks[key]:
            return [dict(m) for m in self._data.get(key, [])]  # type: ignore[misc]

    async def save(self, key: str, messages: list[ChatMessage]) -> None:
        async with self._locks[key]:
            self._data[key] = [dict(m) for m in messages]  # type: ignore[misc]

    async def delete(self, key: str) -> bool:
        async with self._locks[key]:
            return self._data.pop(key, None) is not None

    async def clear(self, prefix: str) -> int:
        keys = [k for k in self._data if k.startswith(prefix)]
        for key in keys:
            async with self._locks[key]:
                self._data.pop(key, None)
        return len(keys)

    def keys(self) -> list[str]:
        return sorted(self._data)


class RedisHistoryStore(HistoryStore):
    """History kept as one JSON document per key in Redis."""

    def __init__(
        self, redis: Redis, *, namespace: str = "history", ttl_seconds: int | None = None
    ) -> None:
        self._redis = redis
        self._namespace = namespace
        self._ttl = ttl_seconds

    def _key(self, key: str) -> str:
        return f"{self._namespace}:{key}"

    async def load(self, key: str) -> list[ChatMessage]:
        raw = await self._redis.get(self._key(key))
        if not raw:
            return []
        return json.loads(raw)

    async def save(self, key: str, messages: list[ChatMessage]) -> None:
        await self._redis.set(self._key(key), json.dumps(messages), ex=self._ttl)

    async def delete(self, key: str) -> bool:
        return bool(await self._redis.delete(self._key(key)))

    async def clear(self, prefix: str) -> int:
        removed = 0
        async for redis_key in self._redis.scan_iter(match=f"{self._key(prefix)}*"):
            removed += await self._redis.delete(redis_key)
        return removed


def create_history_store(
    backend: str, *, redis_url: str | None = None, ttl_seconds: int | None = None
) -> HistoryStore:
    if backend == "memory":
        return InMemoryHistoryStore()
    if backend == "redis":
        from .redis_client import get_redis_client

        return RedisHistoryStore(get_redis_client(redis_url), ttl_seconds=ttl_seconds)
    raise ValueError(f"Unknown history backend: {backend}")
