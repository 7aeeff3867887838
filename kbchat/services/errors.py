"""
Error taxonomy for the chat pipeline
"""
from typing import Optional


class KBChatError(Exception):
    """Base class for errors raised by the chat BFF"""


class TransportError(KBChatError):
    """Connection refused, timed out or aborted while talking to the backend"""

    def __init__(self, message: str, kind: str = "connect"):
        super().__init__(message)
        self.kind = kind


class UpstreamStatusError(KBChatError):
    """Backend answered with a non-2xx status"""

    def __init__(self, status_code: int, body: str = ""):
        super().__init__(f"HTTP error! status: {status_code}")
        self.status_code = status_code
        self.body = body


class DecodeError(KBChatError):
    """A single SSE frame could not be decoded"""


class StreamCancelled(KBChatError):
    """Cancellation won the race against a pending relay operation"""


class KnowledgeBaseNotFound(KBChatError):
    """The requested knowledge base does not exist"""

    def __init__(self, kb_id: str):
        super().__init__(f"knowledge base not found: {kb_id}")
        self.kb_id = kb_id


class KnowledgeBaseLookupError(KBChatError):
    """The knowledge-base listing returned an error envelope"""

    def __init__(self, message: str, code: Optional[int] = None):
        super().__init__(message)
        self.code = code
