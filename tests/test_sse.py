"""Tests for the SSE frame decoder."""

from contextlib import aclosing

import pytest

from kbchat.services.errors import DecodeError
from kbchat.services.sse import RawDelta, SSEFrameDecoder, TERMINAL, extract_content, iter_deltas

from conftest import DONE_FRAME, sse_frame


def frame_lines(*frames: bytes):
    return b"".join(frames).decode("utf-8").splitlines()


def decode(decoder, lines):
    deltas = []
    for line in lines:
        delta = decoder.feed_line(line)
        if delta is not None:
            deltas.append(delta)
    return deltas


async def relayed_deltas(relay, upstream, chunks):
    upstream.chat_chunks = chunks
    relayed = await relay.open("POST", "http://backend.test/api/v1/chat/completions")
    async with aclosing(relayed.aiter_lines()) as lines:
        return [delta async for delta in iter_deltas(lines)]


def test_extract_content():
    """Test pulling delta text out of a chunk payload."""
    assert extract_content('{"choices":[{"delta":{"content":"hi"}}]}') == "hi"
    assert extract_content('{"choices":[{"delta":{"role":"assistant"}}]}') is None
    assert extract_content('{"choices":[{"delta":{"content":""}}]}') is None
    assert extract_content('{"choices":[]}') is None
    assert extract_content('{"id":"x"}') is None
    assert extract_content("[1, 2]") is None

    with pytest.raises(DecodeError):
        extract_content("not json")


def test_sentinel_terminates_stream():
    """Test that nothing is produced after [DONE], even if more lines arrive."""
    decoder = SSEFrameDecoder()

    deltas = decode(decoder, frame_lines(sse_frame("hi"), DONE_FRAME, sse_frame("late")))

    assert deltas == [RawDelta(content="hi"), TERMINAL]
    assert decoder.done
    assert decoder.feed_line(frame_lines(sse_frame("later still"))[0]) is None


def test_malformed_frame_is_skipped():
    """Test that a non-JSON data line is dropped and the next frame survives."""
    decoder = SSEFrameDecoder()

    deltas = decode(decoder, ["data: {not json", ""] + frame_lines(sse_frame("ok")))

    assert deltas == [RawDelta(content="ok")]
    assert decoder.skipped == 1


def test_frames_without_text_produce_nothing():
    """Test role-only and empty-content chunks."""
    decoder = SSEFrameDecoder()

    deltas = decode(decoder, [
        'data: {"choices":[{"delta":{"role":"assistant"}}]}',
        'data: {"choices":[{"delta":{"content":""}}]}',
    ])

    assert deltas == []
    assert decoder.skipped == 0


def test_non_data_lines_are_ignored():
    """Test comments, event names and blank lines."""
    decoder = SSEFrameDecoder()

    deltas = decode(decoder, [": keep-alive", "", "event: message"] + frame_lines(sse_frame("x")))

    assert deltas == [RawDelta(content="x")]


def test_trailing_carriage_return_is_tolerated():
    decoder = SSEFrameDecoder()

    assert decoder.feed_line('data: {"choices":[{"delta":{"content":"a"}}]}\r') == RawDelta(content="a")
    assert decoder.feed_line("data: [DONE]\r") == TERMINAL


@pytest.mark.asyncio
async def test_iter_deltas_stops_reading_after_done():
    """Test that the line source is not read past the sentinel."""
    consumed = []

    async def lines():
        for line in frame_lines(sse_frame("a"), sse_frame("b"), DONE_FRAME, sse_frame("c")):
            consumed.append(line)
            yield line

    deltas = [delta async for delta in iter_deltas(lines())]

    assert deltas == [RawDelta(content="a"), RawDelta(content="b"), TERMINAL]
    assert consumed[-1] == "data: [DONE]"


@pytest.mark.asyncio
async def test_utf8_character_split_across_reads(relay, upstream):
    """Test a multi-byte character straddling two network reads."""
    frame = sse_frame("你好")
    cut = frame.index("你".encode("utf-8")) + 1

    deltas = await relayed_deltas(relay, upstream, [frame[:cut], frame[cut:], DONE_FRAME])

    assert deltas == [RawDelta(content="你好"), TERMINAL]


@pytest.mark.asyncio
async def test_frame_split_across_reads(relay, upstream):
    frame = sse_frame("split")

    deltas = await relayed_deltas(relay, upstream, [frame[:12], frame[12:]])

    assert deltas == [RawDelta(content="split")]


@pytest.mark.asyncio
async def test_crlf_line_endings(relay, upstream):
    """Test frames terminated with CRLF."""
    deltas = await relayed_deltas(relay, upstream, [
        b'data: {"choices":[{"delta":{"content":"a"}}]}\r\n\r\ndata: [DONE]\r\n\r\n'
    ])

    assert deltas == [RawDelta(content="a"), TERMINAL]


@pytest.mark.asyncio
async def test_unterminated_last_line(relay, upstream):
    """Test the last frame when the stream ends without a newline."""
    deltas = await relayed_deltas(relay, upstream, [sse_frame("tail").rstrip(b"\n")])

    assert deltas == [RawDelta(content="tail")]
