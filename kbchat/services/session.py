"""
Chat session controller: drives one turn at a time and keeps the message list
"""
import asyncio
from contextlib import aclosing
from enum import Enum
from typing import AsyncGenerator, List, Mapping, Optional

import structlog

from kbchat.models.chat import (
    AnswerUpdate,
    ChatMessage,
    ChatTurnRequest,
    DeltaEvent,
    DoneEvent,
    FailedEvent,
    HistoryMessage,
    MessageRole,
    ThinkingUpdate,
    TurnEvent,
)
from kbchat.services.chat_stream import ChatStreamService, TurnStream
from kbchat.services.config import Settings
from kbchat.services.errors import KBChatError
from kbchat.utils.metrics import track_turn

logger = structlog.get_logger()


class TurnPhase(str, Enum):
    IDLE = "idle"
    PREPARING = "preparing"
    SEARCHING = "searching"
    WAITING = "waiting"  # grace period over, no data yet
    THINKING = "thinking"
    ANSWERING = "answering"
    COMPLETE = "complete"
    ERROR = "error"
    CANCELLED = "cancelled"


class ChatSessionController:
    """
    Owns the message list of one chat session and runs its turns.

    At most one turn is in flight; a submission while busy is ignored.
    The assistant message of a turn is created lazily on the first delta,
    so pure retrieval latency never shows an empty bubble.
    """

    def __init__(
        self,
        chat_service: ChatStreamService,
        settings: Settings,
        messages: Optional[List[ChatMessage]] = None,
    ):
        self._chat = chat_service
        self.settings = settings
        self.messages: List[ChatMessage] = list(messages or [])
        self.phase = TurnPhase.IDLE
        self.loading = False
        self.searching = False
        self.busy = False
        self.current: Optional[ChatMessage] = None
        self._turn: Optional[TurnStream] = None
        self._grace_timer: Optional[asyncio.TimerHandle] = None

    def build_request(self, kb_id: str, message: str, **params) -> ChatTurnRequest:
        """Turn request with the session's messages as history"""
        history = [
            HistoryMessage(role=msg.role, content=msg.content)
            for msg in self.messages
        ]
        return ChatTurnRequest(kb_id=kb_id, message=message, history=history, **params)

    async def send(
        self,
        request: ChatTurnRequest,
        headers: Optional[Mapping[str, str]] = None,
    ) -> Optional[ChatMessage]:
        """Run a whole turn; returns the assistant message, or None if ignored"""
        if not self._accepts(request):
            return None
        async with aclosing(self.stream(request, headers)) as events:
            async for _ in events:
                pass
        return self.current

    async def stream(
        self,
        request: ChatTurnRequest,
        headers: Optional[Mapping[str, str]] = None,
    ) -> AsyncGenerator[TurnEvent, None]:
        """Run a turn, yielding each event after it has been applied"""
        if not self._accepts(request):
            return

        self.busy = True
        self.phase = TurnPhase.PREPARING
        self.current = None
        self.messages.append(ChatMessage(role=MessageRole.USER, content=request.message))

        turn = self._chat.open_turn(request, headers)
        self._turn = turn
        self._enter_searching()
        log = logger.bind(turn_id=turn.turn_id, kb_id=request.kb_id)
        log.info("Turn started", message_length=len(request.message))

        events = turn.__aiter__()
        try:
            async for event in events:
                if turn.cancelled:
                    break
                self._apply(event)
                yield event
        except KBChatError as e:
            log.error("Turn failed", error=str(e))
            self._apply(FailedEvent(error=str(e), kind="internal"))
        except asyncio.CancelledError:
            log.warning("Turn task cancelled")
            await self._abort(turn)
            raise
        finally:
            await events.aclose()
            self._finish(turn)

    async def cancel(self) -> None:
        """
        Abort the turn in flight.

        Flags are cleared before anything is awaited; the message list is
        not touched again for this turn.
        """
        turn = self._turn
        if turn is None:
            return
        self._clear_transient()
        self.phase = TurnPhase.CANCELLED
        await turn.cancel()

    def _accepts(self, request: ChatTurnRequest) -> bool:
        if not request.message.strip():
            logger.warning("Ignoring empty message")
            return False
        if self.busy:
            logger.warning("Turn already in flight, submission ignored")
            track_turn("rejected")
            return False
        return True

    async def _abort(self, turn: TurnStream) -> None:
        self._clear_transient()
        self.phase = TurnPhase.CANCELLED
        await turn.cancel()

    def _enter_searching(self) -> None:
        self.phase = TurnPhase.SEARCHING
        self.searching = True
        self.loading = False
        loop = asyncio.get_running_loop()
        self._grace_timer = loop.call_later(
            self.settings.SEARCHING_GRACE_PERIOD, self._on_grace_expired
        )

    def _on_grace_expired(self) -> None:
        self._grace_timer = None
        if self.current is not None or not self.busy:
            return
        self.searching = False
        self.loading = True
        self.phase = TurnPhase.WAITING
        logger.info("No data yet, waiting for model")

    def _cancel_grace_timer(self) -> None:
        if self._grace_timer is not None:
            self._grace_timer.cancel()
            self._grace_timer = None

    def _clear_transient(self) -> None:
        self._cancel_grace_timer()
        self.searching = False
        self.loading = False

    def _ensure_message(self) -> ChatMessage:
        if self.current is None:
            self._clear_transient()
            self.current = ChatMessage(role=MessageRole.ASSISTANT, thinking="")
            self.messages.append(self.current)
            self.phase = TurnPhase.ANSWERING
        return self.current

    def _apply(self, event: TurnEvent) -> None:
        if isinstance(event, DeltaEvent):
            message = self._ensure_message()
            if event.has_thinking:
                message.has_thinking = True

        elif isinstance(event, ThinkingUpdate):
            message = self._ensure_message()
            message.has_thinking = True
            message.thinking = event.thinking
            self.phase = TurnPhase.THINKING

        elif isinstance(event, AnswerUpdate):
            message = self._ensure_message()
            message.content = event.answer
            self.phase = TurnPhase.ANSWERING

        elif isinstance(event, DoneEvent):
            self._clear_transient()
            if self.current is not None:
                self.current.content = event.answer
                self.current.thinking = event.thinking
                self.current.has_thinking = self.current.has_thinking or event.has_thinking
                self.current.is_thinking_complete = True
            self.phase = TurnPhase.COMPLETE

        elif isinstance(event, FailedEvent):
            self._fail(event)

    def _fail(self, event: FailedEvent) -> None:
        self._clear_transient()
        self.phase = TurnPhase.ERROR
        error = {"error": event.error, "kind": event.kind}
        if event.status_code is not None:
            error["status_code"] = event.status_code
        if event.detail:
            error["detail"] = event.detail

        if self.current is None:
            self.current = ChatMessage(
                role=MessageRole.ASSISTANT,
                content=self.settings.ERROR_MESSAGE,
                metadata=error,
            )
            self.messages.append(self.current)
        else:
            self.current.content = self.settings.ERROR_MESSAGE
            self.current.metadata.update(error)

    def _finish(self, turn: TurnStream) -> None:
        self._clear_transient()
        if turn.cancelled:
            self.phase = TurnPhase.CANCELLED
            outcome = "cancelled"
        elif self.phase is TurnPhase.COMPLETE:
            outcome = "complete"
        elif self.phase is TurnPhase.ERROR:
            outcome = "error"
        else:
            self.phase = TurnPhase.CANCELLED
            outcome = "cancelled"
        self.busy = False
        self._turn = None
        track_turn(outcome, turn.turn_id)
