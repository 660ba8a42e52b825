#!/usr/bin/env python3
"""
justdeen_chat.py - Ask the JustDeen RAG worker one question from a terminal

Usage: python3 justdeen_chat.py "<question>" [--config path] [--chat-id id] [--verbose]

The bearer token and user id come from the config file or from
JUSTDEEN_ACCESS_TOKEN / JUSTDEEN_USER_ID.

Exit codes:
  0 = success
  1 = server returned an error (HTTP rejection or error frame)
  2 = network/timeout error
  4 = invalid usage or config
"""

import asyncio
import logging
import os
import sys
from typing import List, Optional, Sequence

import httpx

from chat_conversation import ChatConversation
from chat_events import Citation
from chat_stream import StreamState
from config_loader import ChatSettings, load_config, redact_string, settings_from_config
from conversation_history import UiTurn
from rag_client import NETWORK_ERROR_MESSAGE, TIMEOUT_MESSAGE, RagChatClient

USAGE = 'Usage: python3 justdeen_chat.py "<question>" [--config path] [--chat-id id] [--verbose]'


class TerminalSink:
    """Prints tokens as they stream, citations once the answer is done."""

    def __init__(self, out=None, err=None) -> None:
        self.out = out or sys.stdout
        self.err = err or sys.stderr
        self.citations: List[Citation] = []
        self.error: Optional[str] = None

    def on_token(self, token: str) -> None:
        self.out.write(token)
        self.out.flush()

    def on_sources(self, sources: Sequence[Citation]) -> None:
        self.citations = list(sources)

    def on_complete(self) -> None:
        self.out.write("\n")
        if self.citations:
            self.out.write("\n--- Sources ---\n")
            for citation in self.citations:
                self.out.write(f"[{citation.type}] {citation.reference}\n")
        self.out.flush()

    def on_error(self, message: str) -> None:
        self.error = message
        print(f"\nERROR: {redact_string(message)}", file=self.err)


async def run_chat(
    question: str,
    settings: ChatSettings,
    chat_id: Optional[str] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    sink: Optional[TerminalSink] = None,
) -> int:
    """Send one question and stream the answer. Returns the exit code."""
    sink = sink or TerminalSink()
    turns = [UiTurn(id="cli-1", role="user", content=question)]

    async with RagChatClient.from_settings(settings, transport=transport) as client:
        conversation = ChatConversation.from_settings(client, settings, chat_id=chat_id)
        state = await conversation.send(turns, settings.auth_token, sink)

    if state == StreamState.DONE:
        return 0
    if sink.error in (NETWORK_ERROR_MESSAGE, TIMEOUT_MESSAGE):
        return 2
    return 1


def main(argv: Optional[List[str]] = None) -> int:
    args = list(sys.argv[1:] if argv is None else argv)

    if not args or args[0] in ("-h", "--help"):
        print(USAGE, file=sys.stderr)
        return 4

    config_path = None
    if "--config" in args:
        idx = args.index("--config")
        if idx + 1 >= len(args):
            print("ERROR: --config requires a path argument", file=sys.stderr)
            return 4
        config_path = args[idx + 1]
        del args[idx:idx + 2]

    chat_id = None
    if "--chat-id" in args:
        idx = args.index("--chat-id")
        if idx + 1 >= len(args):
            print("ERROR: --chat-id requires an argument", file=sys.stderr)
            return 4
        chat_id = args[idx + 1]
        del args[idx:idx + 2]

    verbose = "--verbose" in args
    args = [a for a in args if a != "--verbose"]

    if len(args) != 1 or not args[0].strip():
        print(USAGE, file=sys.stderr)
        return 4
    question = args[0]

    overrides = {}
    if os.environ.get("JUSTDEEN_ACCESS_TOKEN"):
        overrides["auth"] = {"token": os.environ["JUSTDEEN_ACCESS_TOKEN"]}
    if os.environ.get("JUSTDEEN_USER_ID"):
        overrides.setdefault("auth", {})["user_id"] = os.environ["JUSTDEEN_USER_ID"]

    try:
        settings = settings_from_config(load_config(config_path, overrides))
    except (ValueError, OSError) as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 4

    if not settings.auth_token or not settings.user_id:
        print("ERROR: auth token and user id are required (config auth.token / auth.user_id)", file=sys.stderr)
        return 4

    logging.basicConfig(
        level=logging.DEBUG if verbose or settings.debug else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    try:
        return asyncio.run(run_chat(question, settings, chat_id=chat_id))
    except KeyboardInterrupt:
        print("\nInterrupted", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
