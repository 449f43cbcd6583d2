"""Frame readers for streamed provider responses.

Both readers consume an async iterator of raw body chunks and yield
frame payloads (JSON text) as soon as a complete frame is buffered.
Chunks may split a frame, or a UTF-8 sequence, at any byte.
"""

from __future__ import annotations

import codecs
import json
from collections.abc import AsyncIterator

from puppet.errors import DecodeError

DONE = "[DONE]"
DATA_PREFIX = "data:"


def _payload(segment: str) -> str:
    if not segment.startswith(DATA_PREFIX):
        raise DecodeError(f"unexpected sse message, buffer={segment}")
    payload = segment[len(DATA_PREFIX):]
    if payload.startswith(" "):
        payload = payload[1:]
    return payload


async def iter_sse_frames(chunks: AsyncIterator[bytes]) -> AsyncIterator[str]:
    """Split a ``data: <json>\\n\\n`` stream into payloads.

    Stops at the ``[DONE]`` sentinel without reading further.  A segment
    that does not start with ``data:`` is fatal.
    """
    decoder = codecs.getincrementaldecoder("utf-8")()
    buffer = ""
    async for chunk in chunks:
        buffer += decoder.decode(chunk)
        buffer = buffer.replace("\r\n", "\n")
        while (index := buffer.find("\n\n")) != -1:
            segment, buffer = buffer[:index], buffer[index + 2:]
            if not segment.strip():
                continue
            payload = _payload(segment)
            if payload == DONE:
                return
            yield payload

    # the server may close without the trailing blank line
    buffer += decoder.decode(b"", final=True)
    segment = buffer.strip()
    if segment:
        payload = _payload(segment)
        if payload != DONE:
            yield payload


async def iter_json_array_frames(
    chunks: AsyncIterator[bytes],
) -> AsyncIterator[str]:
    """Split an incrementally streamed top-level JSON array into elements.

    Each element is preceded by ``[`` (the first) or ``,`` (the rest).
    After every chunk the reader strips that leading character and tries
    to parse what is buffered; an element is emitted only once it parses.
    """
    decoder = codecs.getincrementaldecoder("utf-8")()
    json_decoder = json.JSONDecoder()
    buffer = ""
    async for chunk in chunks:
        buffer += decoder.decode(chunk)
        while True:
            text = buffer.lstrip()
            if not text:
                buffer = ""
                break
            lead = text[0]
            if lead == "]":
                if text[1:].strip():
                    raise DecodeError(f"unexpected data after array end, buffer={text}")
                buffer = ""
                break
            if lead not in "[,":
                raise DecodeError(f"unexpected array stream, buffer={text}")
            body = text[1:].lstrip()
            if body.startswith("]"):
                # empty array
                buffer = body
                continue
            try:
                _, end = json_decoder.raw_decode(body)
            except json.JSONDecodeError:
                buffer = text
                break
            yield body[:end]
            buffer = body[end:]

    buffer += decoder.decode(b"", final=True)
    if buffer.strip():
        raise DecodeError(f"response ended with incomplete frame, buffer={buffer.strip()}")
