"""
Saved chat parameters, keyed by knowledge base
"""
import json
from typing import Dict, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError
import structlog

from kbchat.models.chat import ChatConfig
from kbchat.services.config import Settings

logger = structlog.get_logger()


def config_key(kb_id: str) -> str:
    return f"chatConfig_{kb_id}"


class ChatConfigStore:
    """Interface for chat-config storage"""

    async def get(self, kb_id: str) -> Optional[ChatConfig]:
        raise NotImplementedError

    async def save(self, kb_id: str, config: ChatConfig) -> ChatConfig:
        raise NotImplementedError

    async def load(self, kb_id: str) -> ChatConfig:
        """Stored config or defaults; unreadable entries fall back to defaults"""
        try:
            config = await self.get(kb_id)
        except (ValueError, RedisError) as e:
            logger.error("Failed to load chat config", kb_id=kb_id, error=str(e))
            return ChatConfig()
        return config or ChatConfig()

    async def ping(self) -> bool:
        return True

    async def close(self):
        pass


class InMemoryChatConfigStore(ChatConfigStore):
    """Process-local store"""

    def __init__(self):
        self._items: Dict[str, str] = {}

    async def get(self, kb_id: str) -> Optional[ChatConfig]:
        raw = self._items.get(config_key(kb_id))
        if raw is None:
            return None
        return ChatConfig.model_validate_json(raw)

    async def save(self, kb_id: str, config: ChatConfig) -> ChatConfig:
        self._items[config_key(kb_id)] = config.model_dump_json()
        return config


class RedisChatConfigStore(ChatConfigStore):
    """Redis-backed store, JSON values"""

    def __init__(self, settings: Settings, client: Optional[aioredis.Redis] = None):
        self.settings = settings
        self.redis_client = client or aioredis.from_url(
            settings.REDIS_URL,
            encoding="utf-8",
            decode_responses=True,
        )

    async def get(self, kb_id: str) -> Optional[ChatConfig]:
        raw = await self.redis_client.get(config_key(kb_id))
        if raw is None:
            return None
        return ChatConfig.model_validate(json.loads(raw))

    async def save(self, kb_id: str, config: ChatConfig) -> ChatConfig:
        await self.redis_client.set(config_key(kb_id), config.model_dump_json())
        logger.info("Chat config saved", kb_id=kb_id)
        return config

    async def ping(self) -> bool:
        """Test Redis connection"""
        try:
            await self.redis_client.ping()
            return True
        except RedisError:
            return False

    async def close(self):
        """Close Redis connection"""
        await self.redis_client.aclose()
        logger.info("Redis connection closed")


def create_config_store(settings: Settings) -> ChatConfigStore:
    if settings.CHAT_CONFIG_BACKEND == "redis":
        return RedisChatConfigStore(settings)
    return InMemoryChatConfigStore()
