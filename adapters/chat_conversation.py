"""One conversation screen: session handle plus one chat turn at a time."""

from __future__ import annotations

import logging
from typing import Optional, Sequence

from chat_session import SessionManager
from chat_stream import StreamSink, StreamState
from conversation_history import UiTurn, build_conversation_history, is_sendable
from config_loader import ChatSettings
from rag_client import ChatClientError, RagChatClient

logger = logging.getLogger("justdeen.chat_conversation")


class ConversationBusyError(RuntimeError):
    """A turn was sent while the previous one was still streaming."""


class ChatConversation:
    def __init__(
        self,
        client: RagChatClient,
        user_id: str,
        chat_id: Optional[str] = None,
        history_max_messages: Optional[int] = None,
        title_max_chars: int = 50,
    ) -> None:
        self._client = client
        self._user_id = user_id
        self._history_max_messages = history_max_messages
        self._sessions = SessionManager(client, user_id, chat_id, title_max_chars)
        self._streaming = False

    @classmethod
    def from_settings(
        cls, client: RagChatClient, settings: ChatSettings, chat_id: Optional[str] = None,
    ) -> "ChatConversation":
        return cls(
            client,
            settings.user_id,
            chat_id=chat_id,
            history_max_messages=settings.history_max_messages,
            title_max_chars=settings.title_max_chars,
        )

    @property
    def chat_id(self) -> Optional[str]:
        return self._sessions.chat_id

    @property
    def is_streaming(self) -> bool:
        return self._streaming

    async def send(self, turns: Sequence[UiTurn], auth_token: str, sink: StreamSink) -> StreamState:
        """Run one chat turn.

        `turns` is the caller's list with the new user turn already appended
        as its last entry. Raises ConversationBusyError if a turn is already
        streaming and ValueError if the last turn is not a user message.
        """
        if self._streaming:
            raise ConversationBusyError("Previous chat turn is still streaming")
        if not turns or turns[-1].role != "user" or not turns[-1].content.strip():
            raise ValueError("Last turn must be a non-empty user message")

        user_turn = turns[-1]
        prior_user_turns = sum(1 for t in turns[:-1] if t.role == "user" and is_sendable(t))

        self._streaming = True
        try:
            chat_id = await self._sessions.ensure_session(
                prior_user_turns, self._sessions.chat_id, user_turn.content, auth_token,
            )
            history = build_conversation_history(turns, self._history_max_messages)
            state = await self._client.send_chat_message(
                user_turn.content, history, auth_token, self._user_id, chat_id, sink,
            )
        finally:
            self._streaming = False

        logger.debug("Chat turn finished in state %s (chat_id=%s)", state.value, chat_id)
        return state

    async def generate_title(self, auth_token: str) -> Optional[str]:
        """Ask the worker to title the current session. None without a session."""
        if not self.chat_id:
            return None
        try:
            return await self._client.generate_chat_title(auth_token, self.chat_id)
        except ChatClientError as e:
            logger.warning("Title generation failed for chat %s: %s", self.chat_id, e)
            return None

    def start_new(self) -> None:
        """Drop the current session so the next turn opens a fresh one."""
        if self._streaming:
            raise ConversationBusyError("Cannot reset while a chat turn is streaming")
        self._sessions.reset()
