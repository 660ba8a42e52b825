"""
rag_client.py - Async HTTP client for the JustDeen RAG chat worker

Streaming endpoint:
  POST /api/chat                     SSE stream of chat events

Request/response endpoints:
  POST /api/chats/new                create a chat session
  GET  /api/chats?user_id=...        list a user's chats
  POST /api/chats/{id}/generate-title
  POST /api/users/me                 register / update the signed-in user
  POST /api/feedback                 thumbs up / down on an answer

Every call carries `Authorization: Bearer <token>`. The token is opaque
here; acquiring and refreshing it is the caller's job.
"""

from __future__ import annotations

import logging
from contextlib import aclosing
from typing import Any, AsyncGenerator, Callable, Dict, List, Optional, Sequence

import httpx

from chat_events import (
    ChatEvent,
    DoneEvent,
    ErrorEvent,
    Message,
    error_message,
    events_from_object,
    is_terminal,
)
from chat_stream import StreamDispatcher, StreamSink, StreamState, dispatch_events, iter_chat_events
from config_loader import ChatSettings, redact_headers

logger = logging.getLogger("justdeen.rag_client")

CHAT_PATH = "/api/chat"
NEW_CHAT_PATH = "/api/chats/new"
CHATS_PATH = "/api/chats"
GENERATE_TITLE_PATH = "/api/chats/{chat_id}/generate-title"
USER_PATH = "/api/users/me"
FEEDBACK_PATH = "/api/feedback"

NETWORK_ERROR_MESSAGE = "Network error occurred"
TIMEOUT_MESSAGE = "Request timed out"
BLOCKED_MESSAGE = "Message was blocked by the server"

FEEDBACK_TYPES = ("thumbs_up", "thumbs_down")

RETRYABLE_STATUS = {429, 500, 502, 503, 504}


# === Error Classes ===

class ChatClientError(Exception):
    """Structured error with code, status_code, retryable flag."""

    def __init__(
        self,
        code: str,
        message: str,
        status_code: Optional[int] = None,
        retryable: bool = False,
    ):
        super().__init__(message)
        self.code = code
        self.status_code = status_code
        self.retryable = retryable

    def to_dict(self) -> dict:
        return {
            "error": "ChatClientError",
            "code": self.code,
            "message": str(self),
            "status_code": self.status_code,
            "retryable": self.retryable,
        }


# === Request Building ===

def build_chat_request(
    message: str,
    conversation_history: Sequence[Message],
    user_id: str,
    chat_id: Optional[str] = None,
) -> dict:
    """Build the /api/chat request body. `chat_id` is omitted when unset."""
    body: Dict[str, Any] = {
        "message": message,
        "conversationHistory": [m.to_dict() for m in conversation_history],
        "user_id": user_id,
    }
    if chat_id:
        body["chat_id"] = chat_id
    return body


def auth_headers(auth_token: str, json_body: bool = True) -> Dict[str, str]:
    headers = {"Authorization": f"Bearer {auth_token}"}
    if json_body:
        headers["Content-Type"] = "application/json"
    return headers


def _safe_error_body(response: httpx.Response) -> str:
    """Server-provided error message, else `HTTP <status>: <reason>`."""
    fallback = f"HTTP {response.status_code}: {response.reason_phrase}"
    try:
        data = response.json()
    except ValueError:
        return fallback
    if isinstance(data, dict):
        return error_message(data) or fallback
    return fallback


def _json_response_events(response: httpx.Response) -> List[ChatEvent]:
    """Events for a 2xx body sent as plain JSON instead of an SSE stream."""
    try:
        data = response.json()
    except ValueError:
        logger.warning("Ignoring undecodable JSON chat response: %.200s", response.text)
        return [DoneEvent()]

    if not isinstance(data, dict):
        logger.warning("Ignoring non-object JSON chat response: %s", type(data).__name__)
        return [DoneEvent()]

    if data.get("blocked") and not data.get("error"):
        return [ErrorEvent(message=error_message(data) or BLOCKED_MESSAGE)]

    events = events_from_object(data)
    if not events or not is_terminal(events[-1]):
        events.append(DoneEvent())
    return events


# === Client ===

class RagChatClient:
    """Client for one RAG worker deployment.

    Pass `transport` (e.g. httpx.MockTransport) or a ready `http_client` to
    replace the network; a passed-in http_client is not closed by aclose().
    """

    def __init__(
        self,
        base_url: str,
        *,
        connect_timeout_ms: int = 5000,
        read_timeout_ms: int = 60000,
        api_timeout_ms: int = 10000,
        http_client: Optional[httpx.AsyncClient] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._stream_timeout = httpx.Timeout(
            connect=connect_timeout_ms / 1000.0,
            read=read_timeout_ms / 1000.0,
            write=30.0,
            pool=connect_timeout_ms / 1000.0,
        )
        self._api_timeout = httpx.Timeout(api_timeout_ms / 1000.0)
        self._owns_http = http_client is None
        self._http = http_client or httpx.AsyncClient(base_url=self.base_url, transport=transport)

    @classmethod
    def from_settings(
        cls,
        settings: ChatSettings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "RagChatClient":
        return cls(
            settings.base_url,
            connect_timeout_ms=settings.connect_timeout_ms,
            read_timeout_ms=settings.read_timeout_ms,
            api_timeout_ms=settings.api_timeout_ms,
            transport=transport,
        )

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    async def __aenter__(self) -> "RagChatClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    # ── Streaming chat ────────────────────────────────────────────────

    async def stream_chat(
        self,
        message: str,
        conversation_history: Sequence[Message],
        auth_token: str,
        user_id: str,
        chat_id: Optional[str] = None,
    ) -> AsyncGenerator[ChatEvent, None]:
        """Send one chat turn and yield its events.

        The last event is always a DoneEvent or an ErrorEvent. Request-level
        failures arrive as an ErrorEvent, never as an exception. Cancelling
        the consuming task closes the response without further events.
        """
        body = build_chat_request(message, conversation_history, user_id, chat_id)
        async with aclosing(self._chat_events(body, auth_token)) as events:
            async for event in events:
                yield event

    async def send_chat_message(
        self,
        message: str,
        conversation_history: Sequence[Message],
        auth_token: str,
        user_id: str,
        chat_id: Optional[str],
        sink: StreamSink,
    ) -> StreamState:
        """Send one chat turn, delivering its events to `sink`.

        Returns the terminal state (DONE or ERRORED).
        """
        body = build_chat_request(message, conversation_history, user_id, chat_id)
        dispatcher = StreamDispatcher(sink)
        async with aclosing(self._chat_events(body, auth_token, on_open=dispatcher.begin)) as events:
            return await dispatch_events(events, sink, dispatcher)

    async def _chat_events(
        self,
        body: dict,
        auth_token: str,
        on_open: Optional[Callable[[], None]] = None,
    ) -> AsyncGenerator[ChatEvent, None]:
        headers = auth_headers(auth_token)
        logger.debug(
            "POST %s%s headers=%s history=%d chat_id=%s",
            self.base_url, CHAT_PATH, redact_headers(headers),
            len(body["conversationHistory"]), body.get("chat_id"),
        )

        try:
            async with self._http.stream(
                "POST", CHAT_PATH, json=body, headers=headers, timeout=self._stream_timeout,
            ) as response:
                if not response.is_success:
                    await response.aread()
                    message = _safe_error_body(response)
                    logger.warning("Chat request rejected: HTTP %d: %s", response.status_code, message)
                    yield ErrorEvent(message=message)
                    return

                content_type = response.headers.get("content-type", "")
                if "application/json" in content_type:
                    await response.aread()
                    for event in _json_response_events(response):
                        yield event
                    return

                if on_open is not None:
                    on_open()

                async with aclosing(iter_chat_events(response.aiter_bytes())) as events:
                    async for event in events:
                        yield event

        except httpx.TimeoutException as e:
            logger.warning("Chat request timed out: %s", e)
            yield ErrorEvent(message=TIMEOUT_MESSAGE)
        except httpx.TransportError as e:
            logger.warning("Chat request failed: %s: %s", type(e).__name__, e)
            yield ErrorEvent(message=NETWORK_ERROR_MESSAGE)
        except httpx.RequestError as e:
            # Body decoding, redirect loops
            logger.warning("Chat response unusable: %s: %s", type(e).__name__, e)
            yield ErrorEvent(message=NETWORK_ERROR_MESSAGE)

    # ── Request/response endpoints ────────────────────────────────────

    async def create_chat_session(
        self, auth_token: str, user_id: str, title: Optional[str] = None,
    ) -> str:
        """Create a chat session and return its id."""
        payload: Dict[str, Any] = {"user_id": user_id}
        if title is not None:
            payload["title"] = title
        data = await self._request_json("POST", NEW_CHAT_PATH, auth_token, json=payload)

        chat_id = data.get("id") if isinstance(data, dict) else None
        if not chat_id:
            raise ChatClientError(
                code="invalid_response",
                message="Chat session response has no id",
            )
        return str(chat_id)

    async def get_chat_history(self, auth_token: str, user_id: str) -> List[dict]:
        data = await self._request_json(
            "GET", CHATS_PATH, auth_token, params={"user_id": user_id}, json_body=False,
        )
        if not isinstance(data, dict):
            return []
        return data.get("chats") or []

    async def generate_chat_title(self, auth_token: str, chat_id: str) -> Optional[str]:
        data = await self._request_json(
            "POST", GENERATE_TITLE_PATH.format(chat_id=chat_id), auth_token, json_body=False,
        )
        if not isinstance(data, dict):
            return None
        return data.get("title") or None

    async def register_user(
        self,
        auth_token: str,
        user_id: str,
        email: Optional[str] = None,
        name: Optional[str] = None,
    ) -> dict:
        """Make sure the user exists server-side before they chat."""
        payload: Dict[str, Any] = {"id": user_id}
        if email:
            payload["email"] = email
        if name:
            payload["name"] = name
        data = await self._request_json("POST", USER_PATH, auth_token, json=payload)
        return data if isinstance(data, dict) else {}

    async def submit_feedback(
        self,
        auth_token: str,
        message_id: str,
        chat_id: str,
        feedback_type: str,
        reasons: Optional[List[str]] = None,
        comment: Optional[str] = None,
    ) -> None:
        if feedback_type not in FEEDBACK_TYPES:
            raise ValueError(
                f"feedback_type must be one of {', '.join(FEEDBACK_TYPES)}, got {feedback_type!r}"
            )
        payload = {
            "message_id": message_id,
            "chat_id": chat_id,
            "feedback_type": feedback_type,
            "reasons": reasons or [],
            "comment": comment or "",
        }
        await self._request_json("POST", FEEDBACK_PATH, auth_token, json=payload, expect_json=False)

    async def _request_json(
        self,
        method: str,
        path: str,
        auth_token: str,
        json: Optional[dict] = None,
        params: Optional[dict] = None,
        json_body: bool = True,
        expect_json: bool = True,
    ) -> Any:
        headers = auth_headers(auth_token, json_body=json_body)
        logger.debug("%s %s%s headers=%s", method, self.base_url, path, redact_headers(headers))

        try:
            response = await self._http.request(
                method, path, json=json, params=params, headers=headers, timeout=self._api_timeout,
            )
        except httpx.TimeoutException as e:
            raise ChatClientError(
                code="network_error",
                message=f"Request timed out: {e}",
                retryable=True,
            ) from e
        except httpx.TransportError as e:
            raise ChatClientError(
                code="network_error",
                message=f"Connection failed: {e}",
                retryable=True,
            ) from e
        except httpx.RequestError as e:
            raise ChatClientError(
                code="network_error",
                message=f"Request failed: {type(e).__name__}: {e}",
            ) from e

        if not response.is_success:
            raise ChatClientError(
                code="http_error",
                message=_safe_error_body(response),
                status_code=response.status_code,
                retryable=response.status_code in RETRYABLE_STATUS,
            )

        if not expect_json:
            return None

        try:
            return response.json()
        except ValueError as e:
            raise ChatClientError(
                code="invalid_response",
                message=f"Non-JSON response body: {response.text[:200]}",
                status_code=response.status_code,
            ) from e
