"""Response-body decoding and SSE event scanning.

The whole body is decoded into one text buffer before any parsing happens;
nothing here renders partial results, so the SSE scan runs once over the
completed transcript.
"""

import codecs
import logging
from dataclasses import dataclass
from typing import AsyncIterable, Iterator

import httpx

from .errors import ApiRequestError, StreamReadError

logger = logging.getLogger(__name__)
if not logger.handlers:
    logger.addHandler(logging.NullHandler())

SSE_DONE = "[DONE]"


@dataclass(frozen=True)
class SseEvent:
    # Empty name means the default (unnamed) event.
    name: str
    data: str

    @property
    def is_done(self) -> bool:
        return self.data.strip() == SSE_DONE


async def decode_chunks(chunks: AsyncIterable[bytes]) -> str:
    """Decode a byte stream chunk by chunk into a single string.

    A stateful UTF-8 decoder carries partial code points across chunk
    boundaries; it is flushed once after the last chunk.
    """
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    parts = []
    chunk_count = 0
    async for chunk in chunks:
        if not chunk:
            continue
        chunk_count += 1
        parts.append(decoder.decode(chunk))
    parts.append(decoder.decode(b"", final=True))
    text = "".join(parts)
    logger.debug("Decoded %d chunk(s) into %d characters", chunk_count, len(text))
    return text


async def ensure_success(response: httpx.Response) -> None:
    """Raise ApiRequestError for non-2xx responses, embedding the body text."""
    if response.is_success:
        return
    try:
        await response.aread()
        body = response.text
    except (httpx.TransportError, httpx.StreamError, RuntimeError) as exc:
        logger.debug("Could not read error body for status %s: %s", response.status_code, exc)
        body = ""
    raise ApiRequestError(response.status_code, body)


async def read_response_text(response: httpx.Response) -> str:
    """Read a successful streamed response body to completion."""
    stream = getattr(response, "stream", None)
    if not isinstance(stream, httpx.AsyncByteStream):
        raise StreamReadError()
    try:
        return await decode_chunks(response.aiter_bytes())
    except (httpx.TransportError, httpx.StreamError) as exc:
        logger.error("Response stream unreadable: %s", exc)
        raise StreamReadError() from exc


def parse_events(text: str) -> Iterator[SseEvent]:
    """Yield one SseEvent per ``data: `` line, tagged with the current event name.

    ``[DONE]`` sentinels are yielded like any other payload.
    """
    current_event = ""
    for line in text.split("\n"):
        if line.startswith("event: "):
            current_event = line[7:].strip()
        elif line.startswith("data: "):
            yield SseEvent(name=current_event, data=line[6:])
