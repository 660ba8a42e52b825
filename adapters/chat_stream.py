"""Chat stream pipeline and sink dispatch.

iter_chat_events() runs bytes -> text -> lines -> frames -> events and stops
after the first terminal event. StreamDispatcher fans those events out to a
StreamSink and owns the per-request state machine:

    IDLE -> STREAMING -> DONE | ERRORED

DONE and ERRORED are terminal; nothing reaches the sink after either.
"""

from __future__ import annotations

import enum
import logging
from contextlib import aclosing
from dataclasses import dataclass
from typing import AsyncGenerator, AsyncIterable, Callable, Optional, Protocol, Sequence

from chat_events import (
    ChatEvent,
    Citation,
    DoneEvent,
    ErrorEvent,
    FrameDecodeError,
    SourcesEvent,
    TokenEvent,
    decode_chat_events,
    is_terminal,
)
from sse_decoder import sse_decode

logger = logging.getLogger("justdeen.chat_stream")


class StreamState(str, enum.Enum):
    IDLE = "IDLE"
    STREAMING = "STREAMING"
    DONE = "DONE"
    ERRORED = "ERRORED"


class StreamSink(Protocol):
    def on_token(self, token: str) -> None: ...

    def on_sources(self, sources: Sequence[Citation]) -> None: ...

    def on_complete(self) -> None: ...

    def on_error(self, message: str) -> None: ...


def _noop(*_args) -> None:
    return None


@dataclass
class CallbackSink:
    """StreamSink built from plain callables. Missing callbacks do nothing."""

    on_token: Callable[[str], None] = _noop
    on_sources: Callable[[Sequence[Citation]], None] = _noop
    on_complete: Callable[[], None] = _noop
    on_error: Callable[[str], None] = _noop


async def iter_chat_events(stream: AsyncIterable[bytes]) -> AsyncGenerator[ChatEvent, None]:
    """Decode chat events from an SSE byte stream.

    Malformed frames are logged and skipped. The generator ends after the
    first DoneEvent or ErrorEvent; if the stream runs out without one, a
    DoneEvent is yielded so the caller is never left waiting.
    """
    async with aclosing(sse_decode(stream)) as frames:
        async for frame in frames:
            if frame.is_done:
                yield DoneEvent()
                return

            try:
                events = decode_chat_events(frame.data)
            except FrameDecodeError as e:
                logger.warning("Skipping malformed frame: %s (payload=%.200s)", e, frame.data)
                continue

            for event in events:
                yield event
                if is_terminal(event):
                    return

    logger.debug("Stream ended without completion marker, treating as done")
    yield DoneEvent()


class StreamDispatcher:
    """Delivers events to one sink, at most one terminal callback per stream."""

    def __init__(self, sink: StreamSink) -> None:
        self._sink = sink
        self._state = StreamState.IDLE

    @property
    def state(self) -> StreamState:
        return self._state

    @property
    def finished(self) -> bool:
        return self._state in (StreamState.DONE, StreamState.ERRORED)

    def begin(self) -> None:
        """Response headers accepted, body readable."""
        if self._state == StreamState.IDLE:
            self._state = StreamState.STREAMING

    def dispatch(self, event: ChatEvent) -> None:
        if self.finished:
            logger.debug("Dropping %s after terminal state %s", type(event).__name__, self._state.value)
            return

        if isinstance(event, ErrorEvent):
            self._state = StreamState.ERRORED
            self._sink.on_error(event.message)
        elif isinstance(event, DoneEvent):
            self._state = StreamState.DONE
            self._sink.on_complete()
        elif isinstance(event, TokenEvent):
            self.begin()
            self._sink.on_token(event.text)
        elif isinstance(event, SourcesEvent):
            self.begin()
            self._sink.on_sources(list(event.citations))

    def fail(self, message: str) -> None:
        self.dispatch(ErrorEvent(message=message))


async def dispatch_events(
    events: AsyncIterable[ChatEvent],
    sink: StreamSink,
    dispatcher: Optional[StreamDispatcher] = None,
) -> StreamState:
    """Drive an event stream into a sink. Returns the final state."""
    dispatcher = dispatcher or StreamDispatcher(sink)
    async for event in events:
        dispatcher.dispatch(event)
        if dispatcher.finished:
            break
    return dispatcher.state
