"""
Knowledge-base lookup against the backend listing endpoint
"""
from typing import List, Optional

import structlog
from pydantic import ValidationError

from kbchat.models.knowledge_base import ApiEnvelope, KnowledgeBase, KnowledgeBasePage
from kbchat.services.config import Settings
from kbchat.services.errors import KnowledgeBaseLookupError
from kbchat.services.relay import TransportRelay

logger = structlog.get_logger()


class KnowledgeBaseClient:
    """Reads knowledge-base metadata from the backend"""

    def __init__(self, relay: TransportRelay, settings: Settings):
        self.relay = relay
        self.settings = settings

    async def list(self, kb_name: str = "", page_size: int = 100, page_num: int = 1) -> List[KnowledgeBase]:
        status, body = await self.relay.request_json(
            "POST",
            self.settings.backend_url(self.settings.KNOWLEDGE_BASE_LIST_PATH),
            payload={"kb_name": kb_name, "page_size": page_size, "page_num": page_num},
        )
        if body is None:
            raise KnowledgeBaseLookupError(f"knowledge base listing returned no JSON (status {status})")

        try:
            envelope = ApiEnvelope[KnowledgeBasePage].model_validate(body)
        except ValidationError as e:
            raise KnowledgeBaseLookupError(f"unexpected knowledge base listing: {e}") from e

        if envelope.code != 200:
            raise KnowledgeBaseLookupError(envelope.msg or "knowledge base listing failed", envelope.code)
        return envelope.data.items if envelope.data else []

    async def get(self, kb_id: str) -> Optional[KnowledgeBase]:
        """Knowledge base whose id matches, or None"""
        for kb in await self.list():
            if kb.id == kb_id:
                return kb
        logger.info("Knowledge base not listed", kb_id=kb_id)
        return None
