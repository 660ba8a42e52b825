"""
sse_decoder.py - Server-Sent Events line decoding for the chat stream

Decodes `data:` frames from async byte streams (httpx response.aiter_bytes()).
Handles: UTF-8 sequences split across chunks, lines split across chunks,
non-data SSE fields, and the `[DONE]` terminator.

The RAG worker emits one JSON payload per `data: ` line, so frames are
line-oriented: a blank line is not needed to dispatch a frame.
"""

import codecs
import logging
from dataclasses import dataclass
from typing import AsyncGenerator, AsyncIterable, List, Optional

logger = logging.getLogger("justdeen.sse_decoder")

DATA_PREFIX = "data: "
DONE_SENTINEL = "[DONE]"


@dataclass(frozen=True)
class SSEFrame:
    """A single `data:` frame. `is_done` marks the `[DONE]` sentinel."""
    data: str
    is_done: bool = False


class Utf8ChunkDecoder:
    """Turns arbitrary byte chunks into text.

    A multi-byte sequence cut by a chunk boundary is held back until the
    next chunk completes it. Bytes that can never form valid UTF-8 are
    replaced with U+FFFD.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def decode(self, chunk: bytes) -> str:
        return self._decoder.decode(chunk, final=False)

    def finish(self) -> None:
        """End of stream. A trailing incomplete sequence is dropped."""
        pending, _ = self._decoder.getstate()
        if pending:
            logger.debug("Dropping %d byte(s) of truncated UTF-8 at stream end", len(pending))
        self._decoder.reset()


class LineReassembler:
    """Buffers text fragments and hands back complete `\\n`-terminated lines."""

    def __init__(self) -> None:
        self._buffer = ""

    def feed(self, text: str) -> List[str]:
        self._buffer += text
        if "\n" not in self._buffer:
            return []
        *lines, self._buffer = self._buffer.split("\n")
        return lines

    @property
    def pending(self) -> str:
        return self._buffer

    def finish(self) -> str:
        """Drop and return whatever unterminated text is left."""
        remainder, self._buffer = self._buffer, ""
        return remainder


def parse_sse_line(line: str) -> Optional[SSEFrame]:
    """Return the frame carried by `line`, or None for non-data lines.

    Blank lines, comments and other SSE fields (event:, id:, retry:) are
    ignored, as is a data line whose payload is empty.
    """
    if not line.startswith(DATA_PREFIX):
        return None

    payload = line[len(DATA_PREFIX):].strip()
    if not payload:
        return None
    if payload == DONE_SENTINEL:
        return SSEFrame(data=payload, is_done=True)
    return SSEFrame(data=payload)


async def sse_decode(stream: AsyncIterable[bytes]) -> AsyncGenerator[SSEFrame, None]:
    """Decode data frames from an async byte stream.

    Yields SSEFrame objects as complete lines arrive. Decoding stops right
    after the `[DONE]` frame: bytes still in flight are not read.
    An unterminated final line is discarded at stream end.
    """
    decoder = Utf8ChunkDecoder()
    lines = LineReassembler()

    async for chunk in stream:
        if not chunk:
            continue
        for line in lines.feed(decoder.decode(chunk)):
            frame = parse_sse_line(line)
            if frame is None:
                continue
            yield frame
            if frame.is_done:
                return

    decoder.finish()
    remainder = lines.finish()
    if remainder.strip():
        logger.debug("Discarding unterminated trailing line (%d chars)", len(remainder))
