"""Tests for saved chat parameters."""

from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from kbchat.models.chat import ChatConfig
from kbchat.services.config_store import (
    InMemoryChatConfigStore,
    RedisChatConfigStore,
    config_key,
    create_config_store,
)


def test_config_key():
    assert config_key("kb-1") == "chatConfig_kb-1"


def test_create_config_store(settings):
    assert isinstance(create_config_store(settings), InMemoryChatConfigStore)


@pytest.mark.asyncio
async def test_in_memory_store_round_trip():
    store = InMemoryChatConfigStore()

    assert await store.get("kb-1") is None
    assert await store.load("kb-1") == ChatConfig()

    config = ChatConfig(temperature=0.0, max_tokens=100, use_custom_config=True, api_key="sk-1")
    await store.save("kb-1", config)

    assert await store.load("kb-1") == config
    assert await store.load("kb-2") == ChatConfig()
    assert await store.ping()


@pytest.fixture
def mock_redis():
    """Mock async Redis client."""
    client = AsyncMock()
    client.get.return_value = None
    client.set.return_value = True
    client.ping.return_value = True
    return client


@pytest.mark.asyncio
async def test_redis_store_get_and_save(settings, mock_redis):
    """Test JSON values under the per-KB key."""
    store = RedisChatConfigStore(settings, client=mock_redis)
    config = ChatConfig(temperature=0.3, system_prompt="Short.")

    await store.save("kb-1", config)

    key, value = mock_redis.set.call_args.args
    assert key == "chatConfig_kb-1"

    mock_redis.get.return_value = value
    assert await store.get("kb-1") == config
    mock_redis.get.assert_called_with("chatConfig_kb-1")


@pytest.mark.asyncio
async def test_redis_store_load_falls_back_to_defaults(settings, mock_redis):
    """Test unreadable or unavailable entries."""
    store = RedisChatConfigStore(settings, client=mock_redis)

    mock_redis.get.return_value = "{not json"
    assert await store.load("kb-1") == ChatConfig()

    mock_redis.get.side_effect = RedisConnectionError("down")
    assert await store.load("kb-1") == ChatConfig()


@pytest.mark.asyncio
async def test_redis_store_ping(settings, mock_redis):
    store = RedisChatConfigStore(settings, client=mock_redis)
    assert await store.ping()

    mock_redis.ping.side_effect = RedisConnectionError("down")
    assert not await store.ping()


@pytest.mark.asyncio
async def test_redis_store_close(settings, mock_redis):
    store = RedisChatConfigStore(settings, client=mock_redis)
    await store.close()
    mock_redis.aclose.assert_awaited_once()
