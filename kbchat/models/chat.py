"""
Data models for chat functionality
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class HistoryMessage(BaseModel):
    """Prior message forwarded to the model"""
    role: MessageRole
    content: str


class ChatConfig(BaseModel):
    """Saved chat parameters for one knowledge base"""
    temperature: float = Field(default=0.5, ge=0.0, le=2.0)
    max_tokens: int = Field(default=2048, gt=0)
    base_url: str = ""
    api_key: str = ""
    use_custom_config: bool = False
    system_prompt: str = ""


class ChatTurnBody(BaseModel):
    """Chat turn request body"""
    kb_id: str = Field(..., min_length=1)
    message: str = Field(..., min_length=1)
    history: List[HistoryMessage] = Field(default_factory=list)
    temperature: Optional[float] = Field(default=None, ge=0.0, le=2.0)
    max_tokens: Optional[int] = Field(default=None, gt=0)
    system_prompt: Optional[str] = None
    use_custom_config: Optional[bool] = None
    base_url: Optional[str] = None
    api_key: Optional[str] = None


class ChatTurnRequest(BaseModel):
    """Immutable input to one chat turn"""
    model_config = ConfigDict(frozen=True)

    kb_id: str
    message: str
    history: List[HistoryMessage] = Field(default_factory=list)
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    system_prompt: Optional[str] = None
    use_custom_config: bool = False
    base_url: Optional[str] = None
    api_key: Optional[str] = None

    @classmethod
    def from_body(cls, body: ChatTurnBody, saved: ChatConfig) -> "ChatTurnRequest":
        """Fill fields the caller left out from the saved chat config"""
        use_custom = body.use_custom_config
        if use_custom is None:
            use_custom = saved.use_custom_config
        return cls(
            kb_id=body.kb_id,
            message=body.message,
            history=body.history,
            temperature=body.temperature if body.temperature is not None else saved.temperature,
            max_tokens=body.max_tokens if body.max_tokens is not None else saved.max_tokens,
            system_prompt=body.system_prompt or saved.system_prompt or None,
            use_custom_config=use_custom,
            base_url=body.base_url or saved.base_url or None,
            api_key=body.api_key or saved.api_key or None,
        )


class ChatSource(BaseModel):
    """Source document cited by an answer"""
    doc_id: str
    doc_name: str
    content: str = ""
    score: float = 0.0
    page: Optional[int] = None
    chunk_index: Optional[int] = None


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class ChatMessage(BaseModel):
    """Persisted turn record"""
    id: str = Field(default_factory=lambda: uuid4().hex)
    role: MessageRole
    content: str = ""
    timestamp: str = Field(default_factory=_now)
    sources: List[ChatSource] = Field(default_factory=list)
    thinking: Optional[str] = None
    has_thinking: bool = False
    is_thinking_complete: bool = False
    metadata: Dict[str, Any] = Field(default_factory=dict)


# Turn events, tagged by "type"

class DeltaEvent(BaseModel):
    """Raw text of one upstream delta"""
    type: Literal["delta"] = "delta"
    content: str
    has_thinking: bool = False


class ThinkingUpdate(BaseModel):
    """Thinking text so far"""
    type: Literal["thinking"] = "thinking"
    thinking: str


class AnswerUpdate(BaseModel):
    """Answer text so far"""
    type: Literal["answer"] = "answer"
    answer: str


class DoneEvent(BaseModel):
    """Stream finished; answer is the tag-stripped final text"""
    type: Literal["done"] = "done"
    answer: str
    thinking: str = ""
    has_thinking: bool = False


class FailedEvent(BaseModel):
    """Turn failed"""
    type: Literal["error"] = "error"
    error: str
    kind: str = "transport"
    status_code: Optional[int] = None
    detail: Optional[str] = None


TurnEvent = Annotated[
    Union[DeltaEvent, ThinkingUpdate, AnswerUpdate, DoneEvent, FailedEvent],
    Field(discriminator="type"),
]

SplitterUpdate = Union[ThinkingUpdate, AnswerUpdate]
