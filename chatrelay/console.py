"""Terminal chat front end for a running relay.

Commands: `/retry` resubmits the last failed turn, `/clear` starts over, `/quit` exits.
"""

from __future__ import annotations

import argparse
import asyncio
import sys

import httpx

from .client import ChatClient, ChatState

PROMPT = "you> "


class _TerminalView:
    """Print assistant fragments as they are appended."""

    def __init__(self, out=None) -> None:
        self._out = out if out is not None else sys.stdout
        self._printed = 0

    def begin_turn(self) -> None:
        self._printed = 0

    def update(self, state: ChatState) -> None:
        if not state.messages:
            return
        last = state.messages[-1]
        if last.role != "assistant" or last.error:
            return
        if self._printed == 0 and last.content:
            self._out.write("assistant> ")
        self._out.write(last.content[self._printed:])
        self._out.flush()
        self._printed = len(last.content)


async def _read_line(prompt: str) -> str | None:
    try:
        return await asyncio.to_thread(input, prompt)
    except EOFError:
        return None


async def run_console(url: str, timeout: float, *, http_client: httpx.AsyncClient | None = None) -> int:
    view = _TerminalView()
    client = ChatClient(url, timeout=timeout, http_client=http_client, on_update=view.update)
    try:
        while True:
            line = await _read_line(PROMPT)
            if line is None or line.strip() == "/quit":
                return 0
            command = line.strip()
            if command == "/clear":
                client.clear()
                print("(conversation cleared)")
                continue
            if command == "/retry":
                if not client.retry_last():
                    print("(nothing to retry)")
                    continue
                print(f"(retrying: {client.state.input})")
                line = None

            view.begin_turn()
            reply = await client.submit(line)
            if reply is None:
                continue
            if reply.error:
                print(f"! {client.state.error}", file=sys.stderr)
                print(reply.content)
            else:
                print()
    finally:
        await client.aclose()


def main() -> None:
    parser = argparse.ArgumentParser(description="Chat with a chatrelay server from the terminal")
    parser.add_argument("--url", default="http://127.0.0.1:8080", help="Relay base URL")
    parser.add_argument("--timeout", type=float, default=120.0, help="Per-turn read timeout in seconds")
    args = parser.parse_args()
    try:
        raise SystemExit(asyncio.run(run_console(args.url, args.timeout)))
    except KeyboardInterrupt:
        raise SystemExit(130)


if __name__ == "__main__":
    main()
