"""Interactive terminal chat against the completion service. /reset clears history, /exit quits."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import TextIO

import httpx

from chatbridge.config import get_config
from chatbridge.core.errors import BridgeError
from chatbridge.core.events import Role, StreamCompleted, TextDelta, Turn
from chatbridge.core.logging_config import setup_logging
from chatbridge.core.relay import ERROR_REPLY, NO_ANSWER_REPLY
from chatbridge.memory.short_term import ConversationWindow
from chatbridge.models.codex import CompletionClient
from chatbridge.models.credentials import CodexCredentials

logger = logging.getLogger(__name__)

CLI_CONVERSATION_KEY = "cli"
PROMPT = "you> "


class ChatSession:
    """One REPL conversation: bounded history plus streamed printing of each answer."""

    def __init__(
        self,
        completion: CompletionClient,
        *,
        model: str | None = None,
        web_search: bool = False,
        max_history: int = 20,
        out: TextIO | None = None,
    ) -> None:
        self._completion = completion
        self._model = model
        self._web_search = web_search
        self.history = ConversationWindow(max_history)
        self._out = out or sys.stdout

    def reset(self) -> None:
        self.history.clear(CLI_CONVERSATION_KEY)

    async def ask(self, question: str) -> str:
        turns = [*self.history.get_turns(CLI_CONVERSATION_KEY), Turn(role=Role.USER, content=question)]
        printed = ""
        final = ""
        async for event in self._completion.stream(turns, model=self._model, web_search=self._web_search):
            if isinstance(event, TextDelta):
                self._out.write(event.delta)
                self._out.flush()
                printed = event.text
            elif isinstance(event, StreamCompleted):
                final = event.text
        answer = final or printed.strip() or NO_ANSWER_REPLY
        if not printed:
            self._out.write(answer)
        self._out.write("\n")
        self._out.flush()
        # History only records exchanges that produced an answer
        self.history.append(CLI_CONVERSATION_KEY, Role.USER, question)
        self.history.append(CLI_CONVERSATION_KEY, Role.ASSISTANT, answer)
        return answer


async def repl(session: ChatSession, read_line=input) -> None:
    while True:
        try:
            line = await asyncio.to_thread(read_line, PROMPT)
        except EOFError:
            return
        text = line.strip()
        if not text:
            continue
        if text == "/exit":
            return
        if text == "/reset":
            session.reset()
            print("(history cleared)")
            continue
        try:
            await session.ask(text)
        except (BridgeError, httpx.HTTPError) as e:
            logger.error("completion failed: %s", e)
            print(ERROR_REPLY)


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="chatbridge-cli", description="Chat with the completion service.")
    parser.add_argument("--config", default=None, help="path to a YAML config file")
    parser.add_argument("--model", default=None, help="model to request (defaults to codex.model)")
    parser.add_argument("--web-search", action="store_true", help="enable the web_search tool")
    return parser.parse_args(argv)


async def _run(args: argparse.Namespace) -> int:
    config = get_config(args.config)
    codex = config.codex
    try:
        credentials = CodexCredentials(
            codex.refresh_token, refresh_endpoint=codex.refresh_endpoint, client_id=codex.client_id
        )
    except BridgeError as e:
        logger.error("%s", e)
        return 1
    completion = CompletionClient(
        credentials,
        endpoint=codex.endpoint,
        default_model=codex.model,
        system_prompt=codex.resolve_system_prompt(),
        timeout=codex.request_timeout,
    )
    session = ChatSession(
        completion,
        model=args.model,
        web_search=args.web_search,
        max_history=config.conversation.max_history,
    )
    print("Type /reset to clear history, /exit to quit.")
    try:
        await repl(session)
    finally:
        await completion.close()
        await credentials.close()
    return 0


def main(argv: list[str] | None = None) -> None:
    args = _parse_args(argv)
    # Keep the terminal readable: only warnings and errors, plain key=value
    setup_logging(level="WARNING", use_json=False)
    try:
        exit_code = asyncio.run(_run(args))
    except KeyboardInterrupt:
        exit_code = 0
    if exit_code:
        sys.exit(exit_code)


if __name__ == "__main__":
    main()
