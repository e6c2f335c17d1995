"""Async client for the Gemini `generativelanguage` REST API.

The shapes mirror the chat-style SDK surface the relay needs:

    model = await client.get_model("gemini-1.5-flash", generation)
    chat = model.start_chat(history)
    stream = await chat.send_message_stream("hello")
    async for text in stream:
        ...
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import time
from typing import Any, AsyncGenerator, AsyncIterator, Callable

import httpx

from .config import GenerationConfig, RelayConfig
from .logging_utils import to_bounded_json

LOG = logging.getLogger(__name__)

_MODEL_PREFIX = "models/"


class UpstreamError(Exception):
    """Non-success answer from the upstream provider.

    The message embeds the numeric code and the provider status so that callers
    matching on error text and callers reading `status_code` see the same facts.
    """

    def __init__(self, message: str, *, status_code: int | None = None, status: str | None = None) -> None:
        self.status_code = status_code
        self.status = status
        self.detail = message
        prefix = " ".join(str(part) for part in (status_code, status) if part)
        super().__init__(f"[{prefix}] {message}" if prefix else message)

    @classmethod
    def from_response(cls, response: httpx.Response) -> "UpstreamError":
        """Build an error from a Google-style `{"error": {...}}` body."""
        try:
            body = response.json()
        except ValueError:
            body = None
        error = body.get("error") if isinstance(body, dict) else None
        if not isinstance(error, dict):
            text = response.text.strip() or response.reason_phrase
            return cls(text, status_code=response.status_code)
        return cls.from_error_object(error, fallback_code=response.status_code)

    @classmethod
    def from_error_object(cls, error: dict[str, Any], *, fallback_code: int | None = None) -> "UpstreamError":
        message = str(error.get("message") or "upstream request failed")
        reasons = [
            str(detail["reason"])
            for detail in error.get("details") or []
            if isinstance(detail, dict) and detail.get("reason")
        ]
        if reasons:
            message = f"{message} ({', '.join(reasons)})"
        code = error.get("code")
        return cls(
            message,
            status_code=code if isinstance(code, int) else fallback_code,
            status=str(error["status"]) if error.get("status") else None,
        )


def normalize_model_name(name: str) -> str:
    """Strip the optional `models/` resource prefix."""
    name = name.strip()
    if name.startswith(_MODEL_PREFIX):
        name = name[len(_MODEL_PREFIX):]
    if not name or "/" in name:
        raise ValueError(f"invalid model name: {name!r}")
    return name


def to_upstream_turn(role: str, content: str) -> dict[str, Any]:
    """Convert one `{role, content}` message into a Gemini `Content` object."""
    return {"role": "user" if role == "user" else "model", "parts": [{"text": content}]}


def fragment_text(event: dict[str, Any]) -> str:
    """Concatenate the text parts of the first candidate of one stream event."""
    candidates = event.get("candidates")
    if not isinstance(candidates, list) or not candidates:
        return ""
    first = candidates[0] if isinstance(candidates[0], dict) else {}
    parts = (first.get("content") or {}).get("parts") or []
    return "".join(str(part["text"]) for part in parts if isinstance(part, dict) and "text" in part)


class MessageStream:
    """Finite, single-pass async iterator over text fragments of one reply."""

    def __init__(self, response: httpx.Response, *, model: str, on_complete: Callable[[str], None] | None = None) -> None:
        self.model = model
        self._response = response
        self._on_complete = on_complete
        self._iterator: AsyncGenerator[str, None] | None = None
        self._closed = False

    def __aiter__(self) -> AsyncIterator[str]:
        if self._iterator is not None:
            raise RuntimeError("message stream can only be iterated once")
        self._iterator = self._iterate()
        return self._iterator

    async def _iterate(self) -> AsyncIterator[str]:
        started = time.monotonic()
        parts: list[str] = []
        try:
            async for line in self._response.aiter_lines():
                if not line.startswith("data:"):
                    continue
                data = line[5:].strip()
                if not data:
                    continue
                try:
                    event = json.loads(data)
                except json.JSONDecodeError:
                    LOG.debug("skipping non-JSON upstream stream line model=%s line=%s", self.model, data[:200])
                    continue
                if not isinstance(event, dict):
                    continue
                if isinstance(event.get("error"), dict):
                    raise UpstreamError.from_error_object(event["error"])
                text = fragment_text(event)
                parts.append(text)
                yield text
            if self._on_complete is not None:
                self._on_complete("".join(parts))
            LOG.debug(
                "upstream stream finished model=%s elapsed=%.3fs fragments=%s",
                self.model,
                time.monotonic() - started,
                len(parts),
            )
        finally:
            await self._release_response()

    async def aclose(self) -> None:
        """Stop iteration and release the upstream response; safe to call repeatedly."""
        iterator = self._iterator
        if iterator is not None and not iterator.ag_running:
            await iterator.aclose()
        await self._release_response()

    async def _release_response(self) -> None:
        if self._closed:
            return
        self._closed = True
        with contextlib.suppress(httpx.HTTPError):
            await asyncio.shield(self._response.aclose())


class ChatSession:
    """Conversation with one model, seeded with prior turns."""

    def __init__(self, model: "GenerativeModel", history: list[dict[str, Any]]) -> None:
        self.model = model
        self.history = [to_upstream_turn(str(turn.get("role")), str(turn.get("content"))) for turn in history]

    async def send_message_stream(self, prompt: str) -> MessageStream:
        """Submit `prompt` and return the opened reply stream.

        Raises `UpstreamError` before any fragment is produced when the provider
        rejects the request.
        """
        user_turn = to_upstream_turn("user", prompt)
        payload = {
            "contents": [*self.history, user_turn],
            "generationConfig": self.model.generation.to_upstream(),
        }

        def remember(reply: str) -> None:
            self.history.extend([user_turn, to_upstream_turn("model", reply)])

        response = await self.model.client.open_stream(self.model.name, payload)
        return MessageStream(response, model=self.model.name, on_complete=remember)


class GenerativeModel:
    """An initialized model handle bound to a client and sampling parameters."""

    def __init__(self, client: "GeminiClient", name: str, generation: GenerationConfig, info: dict[str, Any]) -> None:
        self.client = client
        self.name = name
        self.generation = generation
        self.info = info

    def start_chat(self, history: list[dict[str, Any]] | None = None) -> ChatSession:
        return ChatSession(self, list(history or []))


class GeminiClient:
    """Thin async HTTP client for the upstream model API."""

    def __init__(self, cfg: RelayConfig, *, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.cfg = cfg
        self._timeout = httpx.Timeout(
            connect=cfg.upstream_connect_timeout_seconds,
            read=cfg.upstream_read_timeout_seconds,
            write=30.0,
            pool=10.0,
        )
        self._client = httpx.AsyncClient(
            base_url=cfg.upstream_base_url.rstrip("/") + "/",
            timeout=self._timeout,
            transport=transport,
        )

    async def close(self) -> None:
        """Close underlying HTTP resources."""
        await self._client.aclose()

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.cfg.upstream_api_key:
            headers["x-goog-api-key"] = self.cfg.upstream_api_key
        return headers

    async def get_model(self, name: str, generation: GenerationConfig | None = None) -> GenerativeModel:
        """Initialize a model handle.

        With `verify_models` enabled the model resource is fetched so that unknown or
        inaccessible models fail here rather than on the first prompt.
        """
        model_name = normalize_model_name(name)
        info: dict[str, Any] = {"name": f"{_MODEL_PREFIX}{model_name}"}
        if self.cfg.verify_models:
            LOG.debug("fetching upstream model resource model=%s", model_name)
            response = await self._client.get(f"{_MODEL_PREFIX}{model_name}", headers=self._headers())
            if response.is_error:
                raise UpstreamError.from_response(response)
            info = response.json()
        return GenerativeModel(self, model_name, generation or self.cfg.generation or GenerationConfig(), info)

    async def open_stream(self, model_name: str, payload: dict[str, Any]) -> httpx.Response:
        """Open a `streamGenerateContent` SSE response, raising on non-success status."""
        LOG.debug(
            "upstream stream start model=%s payload=%s",
            model_name,
            to_bounded_json(payload),
        )
        request = self._client.build_request(
            "POST",
            f"{_MODEL_PREFIX}{model_name}:streamGenerateContent",
            params={"alt": "sse"},
            headers=self._headers(),
            json=payload,
        )
        response = await self._client.send(request, stream=True)
        if response.is_error:
            try:
                await response.aread()
                raise UpstreamError.from_response(response)
            finally:
                await response.aclose()
        return response
