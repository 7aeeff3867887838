"""Tests for knowledge-base lookup."""

import json

import httpx
import pytest

from kbchat.services.errors import KnowledgeBaseLookupError, TransportError
from kbchat.services.knowledge_base import KnowledgeBaseClient


@pytest.fixture
def kb_client(relay, settings):
    return KnowledgeBaseClient(relay, settings)


@pytest.mark.asyncio
async def test_list_knowledge_bases(kb_client, upstream):
    """Test decoding the paginated envelope."""
    upstream.knowledge_bases = [
        {"id": "kb-1", "kb_name": "Docs", "doc_count": 3, "unknown_field": "x"},
        {"id": "kb-2", "kb_name": "FAQ"},
    ]

    items = await kb_client.list()

    assert [kb.kb_name for kb in items] == ["Docs", "FAQ"]
    assert items[0].doc_count == 3
    request = upstream.requests[0]
    assert request.url.path == "/api/v1/knowledge_base/list_knowledge_base"
    assert json.loads(request.content) == {"kb_name": "", "page_size": 100, "page_num": 1}


@pytest.mark.asyncio
async def test_get_by_id(kb_client, upstream):
    assert (await kb_client.get("kb-1")).kb_name == "Docs"
    assert await kb_client.get("kb-404") is None


@pytest.mark.asyncio
async def test_error_envelope(settings):
    """Test that a non-200 code in the envelope is an error."""
    from kbchat.services.relay import TransportRelay

    def handler(request):
        return httpx.Response(200, json={"code": 401, "msg": "token expired", "data": None})

    client = KnowledgeBaseClient(TransportRelay(settings, transport=httpx.MockTransport(handler)), settings)

    with pytest.raises(KnowledgeBaseLookupError) as exc_info:
        await client.list()

    assert exc_info.value.code == 401
    assert "token expired" in str(exc_info.value)


@pytest.mark.asyncio
async def test_non_json_listing(settings):
    from kbchat.services.relay import TransportRelay

    def handler(request):
        return httpx.Response(502, text="<html>bad gateway</html>")

    client = KnowledgeBaseClient(TransportRelay(settings, transport=httpx.MockTransport(handler)), settings)

    with pytest.raises(KnowledgeBaseLookupError):
        await client.list()


@pytest.mark.asyncio
async def test_listing_unreachable(kb_client, upstream):
    upstream.error = httpx.ConnectError("connection refused")

    with pytest.raises(TransportError):
        await kb_client.list()
