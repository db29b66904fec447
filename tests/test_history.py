import pytest

from orchestrator.history import (
    InMemoryHistoryStore,
    RedisHistoryStore,
    compact_messages,
    create_history_store,
    history_key,
)
from orchestrator.redis_client import get_redis_client


def _messages(n: int) -> list[dict[str, str]]:
    return [
        {"role": "user" if i % 2 == 0 else "assistant", "content": f"message {i}"}
        for i in range(n)
    ]


def test_short_histories_are_untouched() -> None:
    for n in range(5):
        messages = _messages(n)
        assert compact_messages(messages) == messages


def test_long_history_keeps_first_and_last_two() -> None:
    messages = _messages(9)
    compacted = compact_messages(messages)

    assert len(compacted) == 4
    assert compacted[0] == messages[0]
    assert compacted[2:] == messages[-2:]
    assert compacted[1]["role"] == "user"
    assert compacted[1]["content"].startswith("[Context Summary: 6 previous exchanges")


def test_history_key() -> None:
    assert history_key("spec", 42) == "spec-42"
    assert history_key("qa", None) == "qa-default"


@pytest.mark.asyncio
async def test_in_memory_store_returns_copies() -> None:
    store = InMemoryHistoryStore()
    await store.save("spec-1", _messages(2))

    loaded = await store.load("spec-1")
    loaded.append({"role": "user", "content": "extra"})

    assert len(await store.load("spec-1")) == 2
    assert await store.load("spec-2") == []


@pytest.mark.asyncio
async def test_clear_agent_by_issue_and_prefix() -> None:
    store = InMemoryHistoryStore()
    for key in ("spec-1", "spec-2", "specx-1", "impl-1"):
        await store.save(key, _messages(1))

    assert await store.clear_agent("spec", 1) == 1
    assert store.keys() == ["impl-1", "spec-2", "specx-1"]

    assert await store.clear_agent("spec") == 1
    assert store.keys() == ["impl-1", "specx-1"]


def test_unknown_backend_is_rejected() -> None:
    with pytest.raises(ValueError):
        create_history_store("sqlite")


def test_redis_backend_shares_pool_per_url(mock_redis_url) -> None:
    first = get_redis_client(mock_redis_url)
    second = get_redis_client(mock_redis_url)
    assert first.connection_pool is second.connection_pool

    store = create_history_store("redis", redis_url=mock_redis_url, ttl_seconds=60)
    assert isinstance(store, RedisHistoryStore)
