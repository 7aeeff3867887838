"""
Reverse proxy to the backend; chat completions are streamed through untouched
"""
import json
from contextlib import aclosing
from typing import AsyncGenerator, Optional, Tuple

import structlog
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from starlette.background import BackgroundTask
from starlette.responses import Response, StreamingResponse

from kbchat.routers.chat import forwarded_auth_headers, get_settings
from kbchat.services.config import Settings
from kbchat.services.errors import TransportError
from kbchat.services.relay import RelayedResponse, TransportRelay
from kbchat.utils.metrics import proxy_requests

logger = structlog.get_logger()

router = APIRouter(tags=["proxy"])

TRAINING_PREFIX = "api/v1/unified_training/"
TRAINING_ROUTES = ("start_training", "tasks", "stop_training", "datasets", "gpu/status", "training_logs")
STREAM_ROUTE = "chat/completions"

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, PUT, DELETE, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Authorization, x-token",
}


def get_relay(request: Request) -> TransportRelay:
    return request.app.state.relay


def resolve_target(path: str, settings: Settings) -> Tuple[str, str]:
    """(target name, base URL) for a proxied path"""
    if path.startswith(TRAINING_PREFIX) and any(route in path for route in TRAINING_ROUTES):
        return "training", settings.TRAINING_API_BASE_URL
    return "api", settings.API_BASE_URL


def is_stream_path(path: str) -> bool:
    return STREAM_ROUTE in path


def extract_custom_config(body: bytes) -> Tuple[Optional[str], Optional[str]]:
    """(base_url, api_key) from a chat request body; the body itself is forwarded as is"""
    try:
        data = json.loads(body)
    except ValueError:
        return None, None
    if not isinstance(data, dict):
        return None, None
    return data.get("base_url") or None, data.get("api_key") or None


async def relay_body(relayed: RelayedResponse, path: str) -> AsyncGenerator[bytes, None]:
    try:
        async with aclosing(relayed.aiter_bytes()) as chunks:
            async for chunk in chunks:
                yield chunk
    except TransportError as e:
        logger.error("Stream error", path=path, error=str(e))
        raise


@router.api_route("/api/proxy/{path:path}", methods=["GET", "POST", "PUT", "DELETE"])
async def proxy(
    path: str,
    request: Request,
    settings: Settings = Depends(get_settings),
    relay: TransportRelay = Depends(get_relay),
) -> Response:
    """Forward a request to the backend"""
    target, base_url = resolve_target(path, settings)
    url = settings.backend_url(path, base_url)
    if request.url.query:
        url = f"{url}?{request.url.query}"

    method = request.method
    content_type = request.headers.get("content-type", "")
    is_form = "multipart/form-data" in content_type or "application/x-www-form-urlencoded" in content_type
    body = None
    custom_base_url = custom_api_key = None

    if method not in ("GET", "DELETE"):
        body = await request.body() or None
        if body and not is_form and is_stream_path(path):
            custom_base_url, custom_api_key = extract_custom_config(body)

    headers = relay.build_headers(forwarded_auth_headers(request), token=custom_api_key)
    if body:
        headers["Content-Type"] = content_type if is_form else "application/json"

    if settings.ENABLE_API_LOGS:
        logger.info(
            "Proxying request",
            method=method,
            url=url,
            content_type=content_type,
            form=is_form,
            custom_base_url=custom_base_url,
            has_custom_api_key=bool(custom_api_key)
        )

    try:
        relayed = await relay.open(method, url, headers=headers, content=body)
    except TransportError as e:
        logger.error("Proxy error", url=url, error=str(e))
        proxy_requests.labels(target=target, status="error").inc()
        return JSONResponse(
            status_code=500,
            content={"error": "Proxy request failed", "details": str(e)}
        )

    proxy_requests.labels(target=target, status=str(relayed.status_code)).inc()

    if is_stream_path(path):
        return StreamingResponse(
            relay_body(relayed, path),
            status_code=relayed.status_code,
            media_type="text/event-stream",
            headers={
                **CORS_HEADERS,
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",
            },
            background=BackgroundTask(relayed.aclose),
        )

    try:
        content = b"".join([chunk async for chunk in relayed.aiter_bytes()])
    except TransportError as e:
        logger.error("Proxy error", url=url, error=str(e))
        return JSONResponse(
            status_code=500,
            content={"error": "Proxy request failed", "details": str(e)}
        )

    return Response(
        content=content,
        status_code=relayed.status_code,
        headers=CORS_HEADERS,
        media_type="application/json",
    )


@router.options("/api/proxy/{path:path}")
async def proxy_preflight(path: str) -> Response:
    """Handle CORS preflight"""
    return Response(
        status_code=200,
        headers={**CORS_HEADERS, "Access-Control-Max-Age": "86400"},
    )
