"""Incremental decoder for chat-completion SSE streams.

The decoder is a pure state machine over received bytes: it buffers
partial lines, keeps only ``data: `` lines, stops at the ``[DONE]``
sentinel and accumulates the text of every content delta. A data line
that does not parse is dropped and the stream carries on.

pump_stream() drives the decoder from an async byte iterator and is the
single place increments are emitted (with the optional typing delay and
cancellation checks). simulate_stream() replays finished replies through
the same kind of emission for cache hits.
"""

from __future__ import annotations

import asyncio
import codecs
import logging
from collections.abc import AsyncIterable, Awaitable, Callable, Sequence
from dataclasses import dataclass

from pydantic import ValidationError

from retort.cancel import CancelToken
from retort.errors import StreamParseError
from retort.schemas import StreamChunk

logger = logging.getLogger(__name__)

DATA_PREFIX = "data: "
DONE_SENTINEL = "[DONE]"

TextHandler = Callable[[str], Awaitable[None]]


@dataclass
class SSEEvent:
    """A decoded data line: a content increment or the end sentinel."""

    type: str  # "delta" or "done"
    text: str = ""


def parse_sse_line(line: str) -> SSEEvent | None:
    """Decode one complete line.

    Returns None for lines that carry nothing (comments, event: lines,
    chunks without content). Raises StreamParseError for a data line whose
    payload is not a valid chunk.
    """
    if not line.startswith(DATA_PREFIX):
        return None

    payload = line[len(DATA_PREFIX):].strip()
    if payload == DONE_SENTINEL:
        return SSEEvent(type="done")

    try:
        chunk = StreamChunk.model_validate_json(payload)
    except ValidationError as e:
        raise StreamParseError(line) from e

    text = chunk.content
    if not text:
        return None
    return SSEEvent(type="delta", text=text)


class StreamDecoder:
    """Byte-stream to content-delta state machine.

    feed() may be called with arbitrary byte slices: multi-byte UTF-8
    characters and lines split across network reads are reassembled.
    """

    def __init__(self) -> None:
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._parts: list[str] = []
        self.done = False
        self.discarded = 0

    @property
    def text(self) -> str:
        """Everything accumulated so far."""
        return "".join(self._parts)

    def feed(self, data: bytes | str) -> list[str]:
        """Consume received data, return the content deltas it completed."""
        if self.done:
            return []
        if isinstance(data, bytes):
            data = self._utf8.decode(data)
        self._buffer += data
        *lines, self._buffer = self._buffer.split("\n")
        return self._process(lines)

    def flush(self) -> list[str]:
        """Process a trailing line left without a newline when the stream closes."""
        if self.done:
            return []
        tail = self._buffer + self._utf8.decode(b"", final=True)
        self._buffer = ""
        return self._process([tail])

    def _process(self, lines: list[str]) -> list[str]:
        deltas: list[str] = []
        for raw in lines:
            line = raw.rstrip("\r")
            try:
                event = parse_sse_line(line)
            except StreamParseError as e:
                self.discarded += 1
                logger.debug("Discarding malformed SSE line: %s", e.line[:100])
                continue
            if event is None:
                continue
            if event.type == "done":
                self.done = True
                break
            self._parts.append(event.text)
            deltas.append(event.text)
        return deltas


async def _emit(
    text: str,
    on_message: TextHandler,
    delay: float,
    cancel: CancelToken | None,
) -> None:
    if cancel is not None:
        cancel.raise_if_cancelled()
    await on_message(text)
    if delay > 0:
        await asyncio.sleep(delay)


async def pump_stream(
    chunks: AsyncIterable[bytes],
    on_message: TextHandler,
    *,
    delay: float = 0.0,
    cancel: CancelToken | None = None,
) -> str:
    """Read an SSE byte stream to the end and return the accumulated text.

    Ends on the sentinel, or when the stream closes without one. Raises
    GenerationCancelled if ``cancel`` fires before a read or an emission.
    """
    decoder = StreamDecoder()
    async for chunk in chunks:
        for delta in decoder.feed(chunk):
            await _emit(delta, on_message, delay, cancel)
        if decoder.done:
            break
        if cancel is not None:
            cancel.raise_if_cancelled()
    else:
        for delta in decoder.flush():
            await _emit(delta, on_message, delay, cancel)
        if not decoder.done:
            logger.info("Stream closed without %s, finalizing", DONE_SENTINEL)

    if decoder.discarded:
        logger.warning("Dropped %d malformed SSE line(s)", decoder.discarded)
    return decoder.text


async def simulate_stream(
    replies: Sequence[str],
    on_message: TextHandler,
    *,
    char_delay: float = 0.0,
    reply_gap: float = 0.0,
    cancel: CancelToken | None = None,
) -> str:
    """Replay finished replies one character at a time.

    Replies are separated by a newline increment after a ``reply_gap``
    pause, so the concatenated increments equal the returned text.
    """
    for i, reply in enumerate(replies):
        if i:
            if reply_gap > 0:
                await asyncio.sleep(reply_gap)
            await _emit("\n", on_message, 0.0, cancel)
        for char in reply:
            await _emit(char, on_message, char_delay, cancel)
    return "\n".join(replies)
