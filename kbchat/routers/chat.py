"""
Chat endpoints: streamed turns over SSE and saved chat parameters
"""
import asyncio
import json
from typing import AsyncGenerator, Dict
from uuid import uuid4

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request
from sse_starlette.sse import EventSourceResponse

from kbchat.models.chat import ChatConfig, ChatTurnBody, ChatTurnRequest
from kbchat.services.chat_stream import ChatStreamService
from kbchat.services.config import Settings
from kbchat.services.config_store import ChatConfigStore
from kbchat.services.errors import KnowledgeBaseLookupError, KnowledgeBaseNotFound, TransportError
from kbchat.services.knowledge_base import KnowledgeBaseClient
from kbchat.services.session import ChatSessionController

logger = structlog.get_logger()

router = APIRouter(tags=["chat"])


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_chat_service(request: Request) -> ChatStreamService:
    return request.app.state.chat_service


def get_knowledge_base_client(request: Request) -> KnowledgeBaseClient:
    return request.app.state.knowledge_base_client


def get_config_store(request: Request) -> ChatConfigStore:
    return request.app.state.config_store


def forwarded_auth_headers(request: Request) -> Dict[str, str]:
    """Caller-supplied credentials that override the default token"""
    headers = {}
    for name in ("authorization", "x-token"):
        value = request.headers.get(name)
        if value:
            headers[name] = value
    return headers


def create_sse_message(data: Dict) -> str:
    """EventSourceResponse adds the "data: " prefix"""
    return json.dumps(data, ensure_ascii=False)


async def verify_knowledge_base(kb_id: str, client: KnowledgeBaseClient) -> None:
    try:
        kb = await client.get(kb_id)
    except (TransportError, KnowledgeBaseLookupError) as e:
        # Backend listing unavailable; let the turn go ahead
        logger.warning("Knowledge base lookup failed", kb_id=kb_id, error=str(e))
        return
    if kb is None:
        raise KnowledgeBaseNotFound(kb_id)


@router.post("/chat/turn")
async def chat_turn(
    body: ChatTurnBody,
    req: Request,
    settings: Settings = Depends(get_settings),
    chat_service: ChatStreamService = Depends(get_chat_service),
    kb_client: KnowledgeBaseClient = Depends(get_knowledge_base_client),
    config_store: ChatConfigStore = Depends(get_config_store),
) -> EventSourceResponse:
    """
    Run one chat turn and stream its events.

    Each event is a JSON object tagged by "type": delta, thinking, answer,
    done or error. A final "message" event carries the turn record.
    """
    request_id = str(uuid4())
    if not body.message.strip():
        raise HTTPException(status_code=422, detail="message must not be empty")

    if settings.VERIFY_KNOWLEDGE_BASE:
        await verify_knowledge_base(body.kb_id, kb_client)

    saved = await config_store.load(body.kb_id)
    turn_request = ChatTurnRequest.from_body(body, saved)
    headers = forwarded_auth_headers(req)

    logger.info(
        "Chat turn received",
        request_id=request_id,
        kb_id=body.kb_id,
        message_length=len(body.message),
        history_length=len(body.history)
    )

    controller = ChatSessionController(chat_service, settings)

    async def generate_response() -> AsyncGenerator[str, None]:
        """Generate SSE stream"""
        try:
            async for event in controller.stream(turn_request, headers):
                yield create_sse_message({"id": request_id, **event.model_dump(mode="json")})

            message = controller.current
            yield create_sse_message({
                "id": request_id,
                "type": "message",
                "phase": controller.phase.value,
                "message": message.model_dump(mode="json") if message else None,
            })

        except asyncio.CancelledError:
            logger.warning("Chat stream cancelled", request_id=request_id)
            await controller.cancel()
            raise

        except Exception as e:
            logger.error(
                "Chat turn failed",
                request_id=request_id,
                error=str(e),
                exc_info=True
            )
            yield create_sse_message({
                "id": request_id,
                "type": "error",
                "error": settings.ERROR_MESSAGE,
            })

    return EventSourceResponse(
        generate_response(),
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",  # Disable nginx buffering
            "X-Request-ID": request_id
        }
    )


@router.get("/chat/config/{kb_id}", response_model=ChatConfig)
async def get_chat_config(
    kb_id: str,
    config_store: ChatConfigStore = Depends(get_config_store),
) -> ChatConfig:
    return await config_store.load(kb_id)


@router.put("/chat/config/{kb_id}", response_model=ChatConfig)
async def save_chat_config(
    kb_id: str,
    config: ChatConfig,
    config_store: ChatConfigStore = Depends(get_config_store),
) -> ChatConfig:
    return await config_store.save(kb_id, config)
