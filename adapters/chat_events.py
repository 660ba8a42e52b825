"""Chat wire types and frame decoding for the JustDeen RAG stream.

Each SSE payload is a JSON object with optional fields
`{response, sources, done, error, message}`. One object may carry several
signals; decode_chat_events() turns it into typed events in the fixed
priority order error, token, sources, done.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

logger = logging.getLogger("justdeen.chat_events")

ROLES = ("user", "assistant", "system")
CITATION_TYPES = ("quran", "hadith", "dua")

UNKNOWN_SERVER_ERROR = "Unknown error from server"


class FrameDecodeError(ValueError):
    """A payload that is not a decodable chat event object."""


# ── Data model ────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Message:
    role: str
    content: str

    def to_dict(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True)
class Citation:
    """A retrieved Quran verse, Hadith or Dua attached to an answer."""

    type: str
    reference: str
    text: str
    score: Optional[float] = None

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "Citation":
        score = raw.get("score")
        if isinstance(score, bool) or not isinstance(score, (int, float)):
            score = None
        citation_type = str(raw.get("type", ""))
        if citation_type not in CITATION_TYPES:
            logger.debug("Citation with unrecognised type %r", citation_type)
        return cls(
            type=citation_type,
            reference=str(raw.get("reference", "")),
            text=str(raw.get("text", "")),
            score=float(score) if score is not None else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "type": self.type,
            "reference": self.reference,
            "text": self.text,
        }
        if self.score is not None:
            data["score"] = self.score
        return data


@dataclass(frozen=True)
class TokenEvent:
    text: str


@dataclass(frozen=True)
class SourcesEvent:
    citations: Tuple[Citation, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class DoneEvent:
    pass


@dataclass(frozen=True)
class ErrorEvent:
    message: str


ChatEvent = Union[TokenEvent, SourcesEvent, DoneEvent, ErrorEvent]


def is_terminal(event: ChatEvent) -> bool:
    return isinstance(event, (DoneEvent, ErrorEvent))


# ── Decoding ──────────────────────────────────────────────────────────


def decode_chat_events(payload: str) -> List[ChatEvent]:
    """Decode one SSE payload into the events it carries.

    Raises FrameDecodeError if the payload is not a JSON object.
    """
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as e:
        raise FrameDecodeError(f"Invalid JSON payload: {e}") from e

    if not isinstance(data, dict):
        raise FrameDecodeError(f"Payload is {type(data).__name__}, expected object")

    return events_from_object(data)


def events_from_object(data: Dict[str, Any]) -> List[ChatEvent]:
    """Map a decoded chat object to events. An error hides everything else."""
    if data.get("error"):
        return [ErrorEvent(message=error_message(data) or UNKNOWN_SERVER_ERROR)]

    events: List[ChatEvent] = []

    text = data.get("response")
    if isinstance(text, str) and text:
        events.append(TokenEvent(text=text))

    sources = data.get("sources")
    if isinstance(sources, list) and sources:
        citations = _parse_citations(sources)
        if citations:
            events.append(SourcesEvent(citations=citations))

    if data.get("done"):
        events.append(DoneEvent())

    return events


def error_message(data: Dict[str, Any]) -> Optional[str]:
    """Server-provided error text: `message`, else a string `error`."""
    message = data.get("message")
    if isinstance(message, str) and message:
        return message
    error = data.get("error")
    if isinstance(error, str) and error:
        return error
    return None


def _parse_citations(raw_sources: List[Any]) -> Tuple[Citation, ...]:
    citations = []
    for item in raw_sources:
        if not isinstance(item, dict):
            logger.warning("Skipping malformed citation: %s", type(item).__name__)
            continue
        citations.append(Citation.from_dict(item))
    return tuple(citations)
