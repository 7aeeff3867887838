"""Pytest fixtures for kbchat tests."""

import asyncio
import json
import os
from typing import List, Optional

import httpx
import pytest
from fastapi.testclient import TestClient

# Set test environment
os.environ["ENVIRONMENT"] = "test"
os.environ["LOG_LEVEL"] = "WARNING"
os.environ["API_BASE_URL"] = "http://backend.test"
os.environ["TRAINING_API_BASE_URL"] = "http://training.test"
os.environ["DEFAULT_TOKEN"] = "default-token"
os.environ["CHAT_CONFIG_BACKEND"] = "memory"
os.environ["OTEL_ENABLED"] = "false"

from kbchat.services.chat_stream import ChatStreamService  # noqa: E402
from kbchat.services.config import Settings  # noqa: E402
from kbchat.services.knowledge_base import KnowledgeBaseClient  # noqa: E402
from kbchat.services.relay import TransportRelay  # noqa: E402

DONE_FRAME = b"data: [DONE]\n\n"


def sse_frame(content: str) -> bytes:
    """One OpenAI-style streaming chunk carrying ``content``"""
    chunk = {"choices": [{"index": 0, "delta": {"content": content}}]}
    return f"data: {json.dumps(chunk, ensure_ascii=False)}\n\n".encode("utf-8")


class ScriptedStream(httpx.AsyncByteStream):
    """Response body that yields fixed chunks, optionally pausing on an event."""

    def __init__(
        self,
        chunks: List[bytes],
        hold=None,
        hold_at: Optional[int] = None,
        error: Optional[Exception] = None,
        delay: float = 0.0,
    ):
        self.chunks = list(chunks)
        self.delay = delay
        self.hold = hold
        self.hold_at = len(self.chunks) if hold_at is None else hold_at
        self.error = error
        self.yielded = 0
        self.closed = False

    async def __aiter__(self):
        for index, chunk in enumerate(self.chunks):
            if self.hold is not None and index == self.hold_at:
                await self.hold.wait()
            if self.delay and index:
                await asyncio.sleep(self.delay)
            self.yielded += 1
            yield chunk
        if self.hold is not None and self.hold_at >= len(self.chunks):
            await self.hold.wait()
        if self.error is not None:
            raise self.error

    async def aclose(self):
        self.closed = True


class Upstream:
    """Scripted backend: records every request and answers by path."""

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.streams: List[ScriptedStream] = []
        self.chat_chunks = [sse_frame("Hello"), sse_frame(" world"), DONE_FRAME]
        self.chat_status = 200
        self.hold = None
        self.hold_at = None
        self.stream_error = None
        self.chunk_delay = 0.0
        self.header_delay = 0.0
        self.error = None
        self.knowledge_bases = [{"id": "kb-1", "kb_name": "Docs"}]
        self.json_status = 200
        self.json_body = {"code": 200, "msg": "success", "data": []}

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.header_delay:
            await asyncio.sleep(self.header_delay)
        if self.error is not None:
            raise self.error

        path = request.url.path
        if path.endswith("list_knowledge_base"):
            return httpx.Response(200, json={
                "code": 200,
                "msg": "success",
                "data": {
                    "items": self.knowledge_bases,
                    "total": len(self.knowledge_bases),
                    "page": 1,
                    "page_size": 100,
                    "total_pages": 1,
                },
            })
        if path.endswith("chat/completions"):
            stream = ScriptedStream(
                self.chat_chunks, self.hold, self.hold_at, self.stream_error, self.chunk_delay
            )
            self.streams.append(stream)
            return httpx.Response(
                self.chat_status,
                headers={"content-type": "text/event-stream"},
                stream=stream,
            )
        return httpx.Response(self.json_status, json=self.json_body)

    @property
    def chat_requests(self) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.path.endswith("chat/completions")]


@pytest.fixture(autouse=True)
def reset_sse_app_status():
    """sse-starlette keeps a module-level exit event bound to the first loop."""
    from sse_starlette.sse import AppStatus

    if hasattr(AppStatus, "should_exit_event"):
        AppStatus.should_exit_event = None
    yield


@pytest.fixture
def settings():
    """Settings from the test environment."""
    return Settings()


@pytest.fixture
def upstream():
    """Scripted backend."""
    return Upstream()


@pytest.fixture
def relay(settings, upstream):
    """Transport relay wired to the scripted backend."""
    return TransportRelay(settings, transport=httpx.MockTransport(upstream.handler))


@pytest.fixture
def chat_service(relay, settings):
    """Chat stream service over the scripted backend."""
    return ChatStreamService(relay, settings)


@pytest.fixture
def test_client(upstream):
    """Create test client for FastAPI app, backend replaced by the scripted one."""
    from kbchat.main import app

    with TestClient(app) as client:
        app_settings = app.state.settings
        relay = TransportRelay(app_settings, transport=httpx.MockTransport(upstream.handler))
        app.state.relay = relay
        app.state.chat_service = ChatStreamService(relay, app_settings)
        app.state.knowledge_base_client = KnowledgeBaseClient(relay, app_settings)
        yield client


def read_sse_events(body: str) -> List[dict]:
    """JSON payloads of the data lines in an SSE body"""
    events = []
    for line in body.splitlines():
        if line.startswith("data:"):
            events.append(json.loads(line[len("data:"):].strip()))
    return events
