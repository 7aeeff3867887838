"""
Transport relay: outbound HTTP to the backend, body relayed as raw bytes or lines
"""
import asyncio
import json
from contextlib import aclosing
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Mapping, Optional, Tuple

import httpx
import structlog

from kbchat.services.config import Settings
from kbchat.services.errors import StreamCancelled, TransportError
from kbchat.utils.metrics import relay_errors
from kbchat.utils.telemetry import get_tracer

logger = structlog.get_logger()

CredentialProvider = Callable[[], Optional[str]]

_EOF = object()


def static_credentials(token: Optional[str]) -> CredentialProvider:
    """Credential provider that always returns the same token"""
    return lambda: token or None


def header_timeout(limit: float) -> httpx.Timeout:
    """Connect and write bounded by ``limit``; body reads unbounded once headers arrive"""
    return httpx.Timeout(limit, read=None)


async def _next_item(iterator: AsyncIterator):
    try:
        return await iterator.__anext__()
    except StopAsyncIteration:
        return _EOF


async def race_cancel(
    awaitable: Awaitable,
    cancel_event: Optional[asyncio.Event],
    waiter: Optional[asyncio.Future] = None,
):
    """
    Await ``awaitable`` unless ``cancel_event`` fires first.

    The losing operation is cancelled and awaited so nothing is left pending.
    ``waiter`` is a shared ``cancel_event.wait()`` future owned by the caller;
    without one a waiter is created and torn down per call.
    Raises StreamCancelled when the event wins.
    """
    if cancel_event is None:
        return await awaitable
    if cancel_event.is_set():
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        raise StreamCancelled()

    owns_waiter = waiter is None
    if owns_waiter:
        waiter = asyncio.ensure_future(cancel_event.wait())
    task = asyncio.ensure_future(awaitable)
    try:
        done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        pending = [task] if not task.done() else []
        if owns_waiter and not waiter.done():
            pending.append(waiter)
        for future in pending:
            future.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
    if task in done:
        return task.result()
    raise StreamCancelled()


def _transport_error(exc: Exception) -> TransportError:
    if isinstance(exc, (httpx.TimeoutException, asyncio.TimeoutError)):
        kind = "timeout"
    elif isinstance(exc, httpx.ConnectError):
        kind = "connect"
    elif isinstance(exc, (httpx.ReadError, httpx.RemoteProtocolError, httpx.StreamError)):
        kind = "read"
    else:
        kind = "protocol"
    relay_errors.labels(kind=kind).inc()
    return TransportError(f"{type(exc).__name__}: {exc}", kind=kind)


class RelayedResponse:
    """Upstream status, headers and a cancellable body stream"""

    def __init__(self, response: httpx.Response, cancel_event: Optional[asyncio.Event] = None):
        self._response = response
        self._cancel_event = cancel_event or asyncio.Event()
        self._reading = False

    @property
    def status_code(self) -> int:
        return self._response.status_code

    @property
    def reason_phrase(self) -> str:
        return self._response.reason_phrase

    @property
    def headers(self) -> httpx.Headers:
        return self._response.headers

    @property
    def is_success(self) -> bool:
        return self._response.is_success

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    @property
    def closed(self) -> bool:
        return self._response.is_closed

    def aiter_bytes(self) -> AsyncIterator[bytes]:
        """Body chunks as they arrive, untouched"""
        return self._relay(self._response.aiter_bytes())

    def aiter_lines(self) -> AsyncIterator[str]:
        """Body decoded as text and split into lines, without line endings"""
        return self._relay(self._response.aiter_lines())

    async def _relay(self, iterator: AsyncIterator) -> AsyncIterator:
        """
        Yield non-empty items from ``iterator``.

        A cancel makes the pending read return at once and the iteration ends
        like a normal close. Transport failures raise TransportError.
        """
        self._reading = True
        waiter = asyncio.ensure_future(self._cancel_event.wait())
        try:
            while True:
                try:
                    item = await race_cancel(_next_item(iterator), self._cancel_event, waiter)
                except StreamCancelled:
                    return
                except (httpx.HTTPError, httpx.StreamError) as e:
                    if self.cancelled:
                        return
                    raise _transport_error(e) from e
                if item is _EOF:
                    return
                if item:
                    yield item
        finally:
            waiter.cancel()
            await asyncio.gather(waiter, return_exceptions=True)
            self._reading = False
            await self._response.aclose()

    async def aread_text(self, limit: int = 4096) -> str:
        """Best-effort read of an error body"""
        parts = []
        size = 0
        try:
            async with aclosing(self.aiter_bytes()) as chunks:
                async for chunk in chunks:
                    parts.append(chunk)
                    size += len(chunk)
                    if size >= limit:
                        break
        except TransportError as e:
            logger.warning("Error body truncated", error=str(e))
        return b"".join(parts)[:limit].decode("utf-8", errors="replace")

    async def cancel(self) -> None:
        """Abort the stream; never raises"""
        self._cancel_event.set()
        if not self._reading:
            await self.aclose()

    async def aclose(self) -> None:
        if not self._response.is_closed:
            await self._response.aclose()


class TransportRelay:
    """Opens streaming requests against the backend"""

    def __init__(
        self,
        settings: Settings,
        credential_provider: Optional[CredentialProvider] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings
        self.credential_provider = credential_provider or static_credentials(settings.DEFAULT_TOKEN)
        self.http_client = httpx.AsyncClient(
            timeout=header_timeout(settings.API_TIMEOUT),
            transport=transport,
        )
        self._tracer = get_tracer()

    def build_headers(
        self,
        overrides: Optional[Mapping[str, str]] = None,
        token: Optional[str] = None,
        content_type: Optional[str] = None,
    ) -> Dict[str, str]:
        """
        Authorization and x-token from ``token`` or the credential provider,
        then any Authorization / x-token the caller supplied.
        """
        headers: Dict[str, str] = {}
        token = token or self.credential_provider()
        if token:
            headers["Authorization"] = f"Bearer {token}"
            headers["x-token"] = token
        if content_type:
            headers["Content-Type"] = content_type

        for key, value in (overrides or {}).items():
            lowered = key.lower()
            if lowered == "authorization" and value:
                headers["Authorization"] = value
            elif lowered == "x-token" and value:
                headers["x-token"] = value
        return headers

    async def open(
        self,
        method: str,
        url: str,
        headers: Optional[Mapping[str, str]] = None,
        content: Optional[bytes] = None,
        json: Optional[dict] = None,
        params: Optional[Mapping[str, str]] = None,
        timeout: Optional[float] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> RelayedResponse:
        """
        Send the request and return once response headers arrive.

        ``timeout`` (default API_TIMEOUT) bounds connecting and waiting for
        the headers only; a streamed body may pause for any length of time.
        Non-2xx statuses are returned, not raised.
        """
        if cancel_event is not None and cancel_event.is_set():
            raise StreamCancelled()

        limit = timeout if timeout is not None else self.settings.API_TIMEOUT
        request = self.http_client.build_request(
            method,
            url,
            headers=headers,
            content=content,
            json=json,
            params=params,
            timeout=header_timeout(limit),
        )
        with self._tracer.start_as_current_span("relay.open") as span:
            span.set_attribute("http.method", method)
            span.set_attribute("http.url", str(request.url))
            try:
                response = await race_cancel(
                    asyncio.wait_for(self.http_client.send(request, stream=True), limit),
                    cancel_event,
                )
            except (httpx.HTTPError, asyncio.TimeoutError) as e:
                logger.error("Relay request failed", url=str(request.url), error=str(e))
                raise _transport_error(e) from e
            span.set_attribute("http.status_code", response.status_code)

        if self.settings.ENABLE_API_LOGS:
            logger.info("Relay response", url=str(request.url), status=response.status_code)
        return RelayedResponse(response, cancel_event)

    async def request_json(
        self,
        method: str,
        url: str,
        payload: Optional[dict] = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> Tuple[int, Any]:
        """Buffered request; returns (status_code, decoded JSON or None)"""
        relayed = await self.open(method, url, headers=self.build_headers(headers), json=payload)
        try:
            body = b"".join([chunk async for chunk in relayed.aiter_bytes()])
        finally:
            await relayed.aclose()
        try:
            return relayed.status_code, json.loads(body)
        except ValueError:
            return relayed.status_code, None

    async def close(self):
        """Clean up resources"""
        await self.http_client.aclose()
