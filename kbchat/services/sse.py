"""
SSE frame decoder for OpenAI-compatible chat completion streams
"""
import json
from dataclasses import dataclass
from typing import AsyncIterable, AsyncIterator, Optional

import structlog

from kbchat.services.errors import DecodeError
from kbchat.utils.metrics import frames_skipped

logger = structlog.get_logger()

DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"


@dataclass(frozen=True)
class RawDelta:
    """Text from one data frame, or the terminal marker"""
    content: str = ""
    done: bool = False


TERMINAL = RawDelta(done=True)


def extract_content(payload: str) -> Optional[str]:
    """
    Pull choices[0].delta.content out of one JSON payload.

    Returns None when the frame carries no text. Raises DecodeError when the
    payload is not JSON.
    """
    try:
        chunk = json.loads(payload)
    except json.JSONDecodeError as e:
        raise DecodeError(f"malformed frame: {payload[:80]!r}") from e

    if not isinstance(chunk, dict):
        return None
    choices = chunk.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return None
    delta = choices[0].get("delta")
    if not isinstance(delta, dict):
        return None
    content = delta.get("content")
    if isinstance(content, str) and content:
        return content
    return None


class SSEFrameDecoder:
    """
    Line in, RawDelta out.

    Lines come already decoded and split, e.g. from httpx ``aiter_lines``.
    After the [DONE] sentinel nothing more is produced.
    """

    def __init__(self):
        self.done = False
        self.skipped = 0

    def feed_line(self, line: str) -> Optional[RawDelta]:
        if self.done:
            return None
        return self._parse_line(line)

    def _parse_line(self, line: str) -> Optional[RawDelta]:
        line = line.rstrip("\r\n")
        if not line.startswith(DATA_PREFIX):
            return None

        payload = line[len(DATA_PREFIX):].strip()
        if payload == DONE_SENTINEL:
            self.done = True
            return TERMINAL

        try:
            content = extract_content(payload)
        except DecodeError as e:
            # Heartbeats and comments from some providers land here
            self.skipped += 1
            frames_skipped.inc()
            logger.debug("Skipping SSE frame", error=str(e))
            return None

        if content is None:
            return None
        return RawDelta(content=content)


async def iter_deltas(lines: AsyncIterable[str]) -> AsyncIterator[RawDelta]:
    """
    Decode SSE lines into RawDelta values.

    Ends after the terminal marker, or when the lines run out. Closing the
    line source is up to the caller.
    """
    decoder = SSEFrameDecoder()
    async for line in lines:
        delta = decoder.feed_line(line)
        if delta is not None:
            yield delta
        if decoder.done:
            return
