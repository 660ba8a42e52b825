"""Chat session identity for one conversation.

A session is created on the worker the first time the user sends a message
in a fresh conversation and reused for every later turn. Failing to create
one never blocks the turn: the answer still streams, it just is not saved
to a server-side conversation.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from rag_client import ChatClientError, RagChatClient

logger = logging.getLogger("justdeen.chat_session")

DEFAULT_TITLE_MAX_CHARS = 50


@dataclass
class ChatSession:
    chat_id: Optional[str] = None


def make_title(message: str, max_chars: int = DEFAULT_TITLE_MAX_CHARS) -> str:
    """Short human-readable title from the opening message."""
    return message.strip()[:max_chars]


class SessionManager:
    """Owns the ChatSession handle of one conversation."""

    def __init__(
        self,
        client: RagChatClient,
        user_id: str,
        chat_id: Optional[str] = None,
        title_max_chars: int = DEFAULT_TITLE_MAX_CHARS,
    ) -> None:
        self._client = client
        self._user_id = user_id
        self._title_max_chars = title_max_chars
        self.session = ChatSession(chat_id=chat_id or None)

    @property
    def chat_id(self) -> Optional[str]:
        return self.session.chat_id

    async def ensure_session(
        self,
        turn_count: int,
        existing_chat_id: Optional[str],
        first_message: str,
        auth_token: str,
    ) -> Optional[str]:
        """Return the chat id for this turn, creating a session if needed.

        `turn_count` is the number of user turns sent before this one. An
        existing id is returned as is. A session is only created for the
        first turn; None means the turn goes ahead without one.
        """
        if existing_chat_id:
            self.session.chat_id = existing_chat_id
            return existing_chat_id

        if turn_count > 0:
            return None

        title = make_title(first_message, self._title_max_chars)
        try:
            chat_id = await self._client.create_chat_session(auth_token, self._user_id, title)
        except ChatClientError as e:
            logger.warning("Chat session creation failed, continuing without one: %s", e)
            return None

        logger.debug("Created chat session %s", chat_id)
        self.session.chat_id = chat_id
        return chat_id

    def reset(self) -> None:
        """Forget the session, e.g. when the user starts a new conversation."""
        self.session = ChatSession()
