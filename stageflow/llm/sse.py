"""Incremental decoder for SSE-framed streaming chat completions.

OpenAI-compatible endpoints answer `stream: true` requests with a body like::

    data: {"choices":[{"delta":{"content":"Hel"}}]}

    data: {"choices":[{"delta":{"content":"lo"}}]}

    data: [DONE]

Chunks delivered by the HTTP client may split events (and multi-byte
characters) anywhere, so the decoder keeps a text buffer and a stateful
UTF-8 decoder across calls.
"""

from __future__ import annotations

import codecs
import json
import logging
from typing import AsyncIterable, AsyncIterator, Iterable, Iterator


logger = logging.getLogger(__name__)

EVENT_DELIMITER = "\n\n"
DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"


class SSEDecoder:
    """Turns raw byte chunks into text fragments.

    Malformed events are dropped without raising. Whatever is still in the
    buffer when the stream ends is discarded.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def feed(self, chunk: bytes) -> list[str]:
        """Decode one chunk and return the fragments of every completed event."""
        self._buffer += self._decoder.decode(chunk)
        self._buffer = self._buffer.replace("\r\n", "\n")
        *events, self._buffer = self._buffer.split(EVENT_DELIMITER)

        fragments = []
        for event in events:
            fragment = parse_event(event)
            if fragment:
                fragments.append(fragment)
        return fragments


def parse_event(event: str) -> str | None:
    """Extract the delta content from one complete event, or None."""
    if not event.startswith(DATA_PREFIX):
        return None
    payload = event[len(DATA_PREFIX):].strip()
    if not payload or payload == DONE_SENTINEL:
        return None

    try:
        data = json.loads(payload)
    except (ValueError, RecursionError):
        logger.debug(f"Dropping malformed event: {payload[:80]!r}")
        return None

    if not isinstance(data, dict):
        return None
    choices = data.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return None
    delta = choices[0].get("delta")
    if not isinstance(delta, dict):
        return None
    content = delta.get("content")
    return content if isinstance(content, str) and content else None


def iter_fragments(chunks: Iterable[bytes]) -> Iterator[str]:
    """Synchronous variant of `aiter_fragments`."""
    decoder = SSEDecoder()
    for chunk in chunks:
        yield from decoder.feed(chunk)


async def aiter_fragments(chunks: AsyncIterable[bytes]) -> AsyncIterator[str]:
    """Yield text fragments as the byte stream delivers complete events."""
    decoder = SSEDecoder()
    async for chunk in chunks:
        for fragment in decoder.feed(chunk):
            yield fragment
