"""Line-delimited event stream format shared by the relay and its clients.

Every event is one `data: <payload>` line followed by a blank line. Payloads are
JSON objects (`{"content": ...}` or `{"error": ...}`) except for the literal
terminal marker `[DONE]`.
"""

from __future__ import annotations

import codecs
import json
from typing import Any

DATA_PREFIX = "data: "
DONE_MARKER = "[DONE]"


def sse_data(payload: dict[str, Any]) -> bytes:
    """Encode one `data:` event."""
    return f"{DATA_PREFIX}{json.dumps(payload, ensure_ascii=False)}\n\n".encode("utf-8")


def content_event(text: str) -> bytes:
    return sse_data({"content": text})


def error_event(message: str) -> bytes:
    return sse_data({"error": message})


def done_event() -> bytes:
    return f"{DATA_PREFIX}{DONE_MARKER}\n\n".encode("utf-8")


class EventLineBuffer:
    """Reassemble event lines from arbitrarily split byte chunks.

    Reads rarely line up with event boundaries: a chunk may end in the middle of a
    line or even inside a multi-byte UTF-8 sequence. Incomplete tails are kept until
    the next `feed()` so callers only ever see whole payloads.
    """

    def __init__(self, prefix: str = DATA_PREFIX) -> None:
        self._prefix = prefix
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending = ""

    def feed(self, chunk: bytes) -> list[str]:
        """Consume bytes and return payloads of every completed prefixed line."""
        self._pending += self._decoder.decode(chunk)
        *lines, self._pending = self._pending.split("\n")
        return [payload for payload in map(self._payload, lines) if payload is not None]

    def flush(self) -> list[str]:
        """Return the payload of a trailing line that never got its newline."""
        tail = self._pending + self._decoder.decode(b"", final=True)
        self._pending = ""
        payload = self._payload(tail)
        return [payload] if payload is not None else []

    def _payload(self, line: str) -> str | None:
        line = line.rstrip("\r")
        if not line.startswith(self._prefix):
            return None
        return line[len(self._prefix):]
