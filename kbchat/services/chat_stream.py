"""
Chat turn stream: upstream request -> SSE frames -> think/answer events
"""
import asyncio
import time
from contextlib import aclosing
from typing import AsyncGenerator, AsyncIterator, Dict, List, Mapping, Optional
from uuid import uuid4

import structlog

from kbchat.models.chat import (
    ChatTurnRequest,
    DeltaEvent,
    DoneEvent,
    FailedEvent,
    TurnEvent,
)
from kbchat.services.config import Settings
from kbchat.services.errors import StreamCancelled, TransportError, UpstreamStatusError
from kbchat.services.relay import RelayedResponse, TransportRelay
from kbchat.services.splitter import ThinkAnswerSplitter
from kbchat.services.sse import iter_deltas
from kbchat.utils.metrics import track_first_token

logger = structlog.get_logger()


class TurnStream:
    """
    One chat turn as a cancellable async sequence of tagged events.

    Iterate it once. Ends with a DoneEvent or a FailedEvent, or ends
    silently after cancel().
    """

    def __init__(
        self,
        service: "ChatStreamService",
        request: ChatTurnRequest,
        headers: Optional[Mapping[str, str]] = None,
    ):
        self.turn_id = uuid4().hex
        self._service = service
        self._request = request
        self._headers = headers
        self._cancel_event = asyncio.Event()
        self._response: Optional[RelayedResponse] = None
        self._started = False

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    async def cancel(self) -> None:
        """Abort the upstream request; pending reads return promptly"""
        if self.cancelled:
            return
        self._cancel_event.set()
        if self._response is not None:
            await self._response.cancel()
        logger.info("Turn cancelled", turn_id=self.turn_id)

    def __aiter__(self) -> AsyncIterator[TurnEvent]:
        if self._started:
            raise RuntimeError("TurnStream can only be iterated once")
        self._started = True
        return self._events()

    async def _events(self) -> AsyncGenerator[TurnEvent, None]:
        settings = self._service.settings
        splitter = ThinkAnswerSplitter(carry_over=settings.THINK_CARRY_OVER)
        start_time = time.time()
        first_delta = True

        try:
            self._response = await self._service.open(
                self._request, self._headers, self._cancel_event
            )
            if not self._response.is_success:
                body = await self._response.aread_text()
                raise UpstreamStatusError(self._response.status_code, body)

            lines = self._response.aiter_lines()
            async with aclosing(lines), aclosing(iter_deltas(lines)) as deltas:
                async for raw in deltas:
                    if self.cancelled:
                        return
                    if raw.done:
                        break
                    if first_delta:
                        first_delta = False
                        track_first_token(time.time() - start_time)
                        logger.info(
                            "First token received",
                            turn_id=self.turn_id,
                            time_to_first_token=time.time() - start_time
                        )

                    updates = splitter.feed(raw.content)
                    yield DeltaEvent(content=raw.content, has_thinking=splitter.has_thinking)
                    for update in updates:
                        yield update

            if self.cancelled:
                return

            for update in splitter.flush():
                yield update
            yield DoneEvent(
                answer=splitter.final_answer(),
                thinking=splitter.thinking,
                has_thinking=splitter.has_thinking,
            )

        except StreamCancelled:
            return

        except UpstreamStatusError as e:
            if self.cancelled:
                return
            logger.error(
                "Upstream returned error status",
                turn_id=self.turn_id,
                status=e.status_code,
                body=e.body[:200]
            )
            yield FailedEvent(
                error=str(e),
                kind="upstream_status",
                status_code=e.status_code,
                detail=e.body or None,
            )

        except TransportError as e:
            if self.cancelled:
                return
            logger.error("Turn transport failed", turn_id=self.turn_id, kind=e.kind, error=str(e))
            yield FailedEvent(error=str(e), kind=e.kind)

        finally:
            if self._response is not None:
                await self._response.aclose()


class ChatStreamService:
    """Builds upstream chat requests and opens turn streams"""

    def __init__(self, relay: TransportRelay, settings: Settings):
        self.relay = relay
        self.settings = settings

    def build_messages(self, request: ChatTurnRequest) -> List[Dict[str, str]]:
        """System prompt, prior history, then the current user message"""
        messages = [{
            "role": "system",
            "content": request.system_prompt or self.settings.system_prompt_for(request.kb_id),
        }]
        for msg in request.history:
            messages.append({"role": msg.role.value, "content": msg.content})
        messages.append({"role": "user", "content": request.message})
        return messages

    def build_payload(self, request: ChatTurnRequest) -> Dict:
        payload = {
            "messages": self.build_messages(request),
            "stream": True,
            "temperature": (
                request.temperature if request.temperature is not None
                else self.settings.DEFAULT_TEMPERATURE
            ),
            "max_tokens": request.max_tokens or self.settings.DEFAULT_MAX_TOKENS,
            "doc_knowledge_base_id": request.kb_id,
            "limit_result": self.settings.LIMIT_RESULT,
        }
        # Forwarded verbatim; the backend decides how to use them
        if request.use_custom_config and request.base_url:
            payload["base_url"] = request.base_url
        if request.use_custom_config and request.api_key:
            payload["api_key"] = request.api_key
        return payload

    async def open(
        self,
        request: ChatTurnRequest,
        headers: Optional[Mapping[str, str]] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> RelayedResponse:
        """Open the upstream streaming completion"""
        payload = self.build_payload(request)
        logger.info(
            "Opening chat completion stream",
            kb_id=request.kb_id,
            history_length=len(request.history),
            custom_config=bool(request.use_custom_config and (request.base_url or request.api_key)),
        )
        return await self.relay.open(
            "POST",
            self.settings.backend_url(self.settings.CHAT_COMPLETIONS_PATH),
            headers=self.relay.build_headers(headers, content_type="application/json"),
            json=payload,
            cancel_event=cancel_event,
        )

    def open_turn(
        self,
        request: ChatTurnRequest,
        headers: Optional[Mapping[str, str]] = None,
    ) -> TurnStream:
        return TurnStream(self, request, headers)
