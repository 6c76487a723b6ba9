import httpx
import pytest

from nano_info.errors import ApiRequestError, StreamReadError
from nano_info.streaming import (
    SseEvent,
    decode_chunks,
    ensure_success,
    parse_events,
    read_response_text,
)


async def _aiter(chunks):
    for chunk in chunks:
        yield chunk


class _ChunkedStream(httpx.AsyncByteStream):
    def __init__(self, chunks):
        self._chunks = chunks

    async def __aiter__(self):
        for chunk in self._chunks:
            yield chunk


class _SyncOnlyStream(httpx.SyncByteStream):
    def __iter__(self):
        yield b"data: {}\n"


class _DroppedStream(httpx.AsyncByteStream):
    async def __aiter__(self):
        yield b"event: result\n"
        raise httpx.ReadError("connection reset by peer")


@pytest.mark.asyncio
async def test_decode_chunks_keeps_multibyte_character_split_across_chunks():
    original = "héllo wörld ✓"
    encoded = original.encode("utf-8")
    # Byte 2 falls inside the two-byte encoding of "é".
    text = await decode_chunks(_aiter([encoded[:2], encoded[2:]]))

    assert text == original
    assert "�" not in text


@pytest.mark.asyncio
async def test_decode_chunks_handles_every_split_of_a_three_byte_character():
    original = "a✓b"
    encoded = original.encode("utf-8")
    for offset in range(1, len(encoded)):
        text = await decode_chunks(_aiter([encoded[:offset], b"", encoded[offset:]]))
        assert text == original


@pytest.mark.asyncio
async def test_read_response_text_concatenates_stream_in_order():
    response = httpx.Response(200, stream=_ChunkedStream([b"event: result\n", b"data: {\"a\"", b":1}\n"]))

    text = await read_response_text(response)

    assert text == 'event: result\ndata: {"a":1}\n'


@pytest.mark.asyncio
async def test_read_response_text_rejects_response_without_async_stream():
    response = httpx.Response(200, stream=_SyncOnlyStream())

    with pytest.raises(StreamReadError) as excinfo:
        await read_response_text(response)

    assert str(excinfo.value) == "cannot read response stream"


@pytest.mark.asyncio
async def test_ensure_success_embeds_status_and_body():
    response = httpx.Response(500, stream=_ChunkedStream([b"rate ", b"limited"]))

    with pytest.raises(ApiRequestError) as excinfo:
        await ensure_success(response)

    assert excinfo.value.status_code == 500
    assert str(excinfo.value) == "API request failed: 500 - rate limited"


@pytest.mark.asyncio
async def test_ensure_success_passes_2xx_through_unread():
    response = httpx.Response(204, stream=_ChunkedStream([]))

    await ensure_success(response)


def test_parse_events_tags_data_with_current_event_name():
    events = list(parse_events('event: result\ndata: {"a":1}\n'))

    assert events == [SseEvent(name="result", data='{"a":1}')]


def test_parse_events_defaults_to_unnamed_event():
    events = list(parse_events("data: one\n\ndata: two\n"))

    assert [event.name for event in events] == ["", ""]
    assert [event.data for event in events] == ["one", "two"]


def test_parse_events_keeps_data_untrimmed_and_yields_done():
    events = list(parse_events("event:  message \ndata:  padded \ndata: [DONE]\n"))

    assert events[0] == SseEvent(name="message", data=" padded ")
    assert events[1].is_done
    assert events[1].name == "message"


def test_parse_events_ignores_other_fields():
    events = list(parse_events(": keep-alive\nid: 7\nretry: 100\ndata:nospace\n"))

    assert events == []


@pytest.mark.asyncio
async def test_read_response_text_reports_connection_dropped_mid_body():
    response = httpx.Response(200, stream=_DroppedStream())

    with pytest.raises(StreamReadError) as excinfo:
        await read_response_text(response)

    assert str(excinfo.value) == "cannot read response stream"
    assert isinstance(excinfo.value.__cause__, httpx.ReadError)


@pytest.mark.asyncio
async def test_ensure_success_tolerates_dropped_error_body():
    response = httpx.Response(503, stream=_DroppedStream())

    with pytest.raises(ApiRequestError) as excinfo:
        await ensure_success(response)

    assert str(excinfo.value) == "API request failed: 503 - "
