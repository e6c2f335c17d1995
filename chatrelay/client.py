"""Client side of the relay: conversation state plus incremental stream consumption.

`ChatClient` keeps the in-memory conversation the way a chat page does: the user
turn is appended right away, an empty assistant message appears as soon as the
relay answers, and fragments are appended to it as they arrive.
"""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterable, Callable, Literal

import httpx

from .events import DONE_MARKER, EventLineBuffer

LOG = logging.getLogger(__name__)

Role = Literal["user", "assistant"]


class StreamError(Exception):
    """A relay turn failed; the message is shown to the user."""


@dataclass
class Message:
    role: Role
    content: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    error: bool = False

    def to_wire(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass
class ChatState:
    messages: list[Message] = field(default_factory=list)
    input: str = ""
    error: str | None = None
    is_loading: bool = False
    is_streaming: bool = False


def failure_text(message: str) -> str:
    return f"Sorry, I encountered an error: {message}. Please try again."


def _handle_payload(payload: str, on_content: Callable[[str], None]) -> bool:
    """Apply one event payload; return true on the terminal marker."""
    if payload == DONE_MARKER:
        return True
    try:
        parsed = json.loads(payload)
    except json.JSONDecodeError as exc:
        raise StreamError(f"Malformed event from server: {exc.msg}") from exc
    if not isinstance(parsed, dict):
        raise StreamError("Malformed event from server")
    if parsed.get("error"):
        raise StreamError(str(parsed["error"]))
    content = parsed.get("content")
    if isinstance(content, str) and content:
        on_content(content)
    return False


async def consume_event_stream(chunks: AsyncIterable[bytes], on_content: Callable[[str], None]) -> None:
    """Read a relay event stream until `[DONE]`.

    Lines split across reads are reassembled before parsing, so a JSON failure on a
    complete line is a real error. An `error` payload, a malformed line, or the byte
    stream ending without the terminal marker raise `StreamError`.
    """
    buffer = EventLineBuffer()
    async for chunk in chunks:
        for payload in buffer.feed(chunk):
            if _handle_payload(payload, on_content):
                return
    for payload in buffer.flush():
        if _handle_payload(payload, on_content):
            return
    raise StreamError("Stream ended before completion")


async def _error_from_response(response: httpx.Response) -> str:
    """Extract `{"error": ...}` from a failed relay response, else `HTTP <status>`."""
    await response.aread()
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and body.get("error"):
        return str(body["error"])
    return f"HTTP {response.status_code}"


class ChatClient:
    """Submit turns to a relay and track the resulting conversation."""

    def __init__(
        self,
        base_url: str,
        *,
        endpoint: str = "/api/chat",
        timeout: float = 120.0,
        http_client: httpx.AsyncClient | None = None,
        on_update: Callable[[ChatState], None] | None = None,
    ) -> None:
        self.state = ChatState()
        self.endpoint = endpoint
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(base_url=base_url, timeout=httpx.Timeout(timeout, connect=10.0))
        self._on_update = on_update

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    def _notify(self) -> None:
        if self._on_update is not None:
            self._on_update(self.state)

    def _append_to(self, message: Message) -> Callable[[str], None]:
        def append(text: str) -> None:
            message.content += text
            self._notify()

        return append

    async def submit(self, text: str | None = None) -> Message | None:
        """Send one user turn and stream the reply into the conversation.

        Returns the assistant message that ended the turn (the streamed reply or the
        synthetic error message), or None when nothing was submitted.
        """
        text = (self.state.input if text is None else text).strip()
        if not text or self.state.is_loading:
            return None

        state = self.state
        user_message = Message(role="user", content=text)
        state.messages.append(user_message)
        state.input = ""
        state.is_loading = True
        state.is_streaming = True
        state.error = None
        self._notify()
        history = [msg.to_wire() for msg in state.messages]
        assistant: Message | None = None

        try:
            async with self._http.stream("POST", self.endpoint, json={"messages": history}) as response:
                if response.is_error:
                    raise StreamError(await _error_from_response(response))

                assistant = Message(role="assistant", content="")
                state.messages.append(assistant)
                self._notify()
                await consume_event_stream(response.aiter_bytes(), self._append_to(assistant))
                return assistant
        except Exception as exc:
            message = str(exc) or exc.__class__.__name__
            LOG.debug("chat turn failed: %s", message)
            state.error = message
            # The failure notice takes the place of the in-progress reply, keeping
            # the failed turn to exactly two messages.
            if assistant is not None and assistant in state.messages:
                state.messages.remove(assistant)
            failed = Message(role="assistant", content=failure_text(message), error=True)
            state.messages.append(failed)
            return failed
        finally:
            state.is_loading = False
            state.is_streaming = False
            self._notify()

    def retry_last(self) -> bool:
        """Drop the last user turn and its reply, restoring the user text as input.

        Applies only when the second-to-last message is a user turn.
        """
        messages = self.state.messages
        if len(messages) < 2 or messages[-2].role != "user":
            return False
        self.state.input = messages[-2].content
        del messages[-2:]
        self.state.error = None
        self._notify()
        return True

    def clear(self) -> None:
        self.state.messages.clear()
        self.state.error = None
        self._notify()

    def snapshot(self) -> list[dict[str, Any]]:
        """Plain-data view of the conversation for rendering or logging."""
        return [
            {
                "id": msg.id,
                "role": msg.role,
                "content": msg.content,
                "created_at": msg.created_at.isoformat(),
                "error": msg.error,
            }
            for msg in self.state.messages
        ]
