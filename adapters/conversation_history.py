"""Conversation history payload for /api/chat.

The caller keeps the full list of chat bubbles, including UI-only entries
(the fixed welcome message, a "thinking" bubble for the answer in flight).
Only real user turns and real assistant answers are sent to the worker.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Sequence

from chat_events import ROLES, Message

# Reserved id of the synthetic greeting shown when a conversation opens.
WELCOME_MESSAGE_ID = "welcome"


@dataclass(frozen=True)
class UiTurn:
    """One chat bubble as the caller holds it."""

    id: str
    role: str
    content: str
    is_placeholder: bool = False


def is_sendable(turn: UiTurn) -> bool:
    if turn.id == WELCOME_MESSAGE_ID or turn.is_placeholder:
        return False
    return turn.role in ROLES


def build_conversation_history(
    turns: Sequence[UiTurn],
    max_messages: Optional[int] = None,
) -> List[Message]:
    """Filter the caller's turns down to the history sent with a request.

    Order is preserved. The caller appends the new user turn before calling,
    so it is the last entry. With `max_messages`, only the most recent
    entries are kept.
    """
    history = [Message(role=t.role, content=t.content) for t in turns if is_sendable(t)]
    if max_messages is not None and max_messages >= 0 and len(history) > max_messages:
        history = history[len(history) - max_messages:]
    return history
