"""Streaming relay: conversation in, upstream token stream out as `data:` events."""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from typing import Any, AsyncGenerator, AsyncIterator, Protocol

from fastapi.responses import JSONResponse, Response, StreamingResponse

from .config import RelayConfig
from .events import content_event, done_event, error_event
from .logging_utils import to_bounded_json
from .upstream import GeminiClient, UpstreamError

LOG = logging.getLogger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}
SELECTED_MODEL_HEADER = "X-Upstream-Model"
STREAM_FAILED_MESSAGE = "Streaming failed"

# Checked in order against the error text; the first match wins.
_ERROR_TEXT_RULES: tuple[tuple[tuple[str, ...], int, str], ...] = (
    (("API_KEY", "401"), 401, "Invalid API key"),
    (("RATE_LIMIT", "429"), 429, "Rate limit exceeded. Please try again later."),
    (("not found", "404"), 404, "Model not available. Please check your API configuration."),
    (("PERMISSION_DENIED", "403"), 403, "Permission denied. Please check your API key permissions."),
)
_STATUS_MESSAGES = {status: message for _, status, message in _ERROR_TEXT_RULES}


class RelayError(Exception):
    """Request failure with a client-facing message and HTTP status."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class InvalidRequest(RelayError):
    status_code = 400


class MissingCredential(RelayError):
    status_code = 500


class NoAvailableModel(RelayError):
    status_code = 503


class TextStream(Protocol):
    def __aiter__(self) -> AsyncIterator[str]: ...

    async def aclose(self) -> None: ...


@dataclass
class RelayStream:
    """An upstream reply stream together with the model serving it."""

    model: str
    stream: TextStream


def status_for_error(exc: BaseException) -> tuple[int, str]:
    """Map an unexpected pre-stream failure to an HTTP status and message.

    Typed upstream status codes are used when they are one of the known ones,
    otherwise the error text is matched against known upstream substrings.
    """
    if isinstance(exc, UpstreamError) and exc.status_code in _STATUS_MESSAGES:
        return exc.status_code, _STATUS_MESSAGES[exc.status_code]
    text = str(exc)
    for needles, status, message in _ERROR_TEXT_RULES:
        if any(needle in text for needle in needles):
            return status, message
    return 500, "Internal server error"


def error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status_code)


def parse_json_body(raw_body: bytes) -> Any:
    try:
        return json.loads(raw_body)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise InvalidRequest("Invalid JSON body") from exc


def parse_conversation(payload: Any) -> list[dict[str, str]]:
    """Validate the request payload and return its `{role, content}` turns in order."""
    messages = payload.get("messages") if isinstance(payload, dict) else None
    if not isinstance(messages, list) or not messages:
        raise InvalidRequest("Invalid messages format")

    conversation: list[dict[str, str]] = []
    for msg in messages:
        if not isinstance(msg, dict) or not isinstance(msg.get("content"), str):
            raise InvalidRequest("Invalid messages format")
        role = "user" if msg.get("role") == "user" else "assistant"
        conversation.append({"role": role, "content": msg["content"]})
    return conversation


async def relay_events(stream: TextStream, *, model: str = "-") -> AsyncGenerator[bytes, None]:
    """Re-emit upstream fragments as events and finish with `[DONE]`.

    Headers are already sent once this runs, so an upstream failure becomes one
    in-band error event and the stream ends.
    """
    started = time.monotonic()
    fragments = 0
    try:
        async for text in stream:
            if not text:
                continue
            fragments += 1
            yield content_event(text)
    except Exception:
        LOG.exception("Streaming error model=%s fragments=%s", model, fragments)
        yield error_event(STREAM_FAILED_MESSAGE)
        return
    finally:
        await stream.aclose()
    LOG.debug(
        "relay stream done model=%s elapsed=%.3fs fragments=%s",
        model,
        time.monotonic() - started,
        fragments,
    )
    yield done_event()


class RelayService:
    """Runtime container for the upstream client and the relay request flow."""

    def __init__(self, cfg: RelayConfig, client: Any | None = None) -> None:
        self.cfg = cfg
        self.client = client if client is not None else GeminiClient(cfg)
        self._retired_clients: list[Any] = []
        # Requests in progress per upstream client, keyed by id().
        self._leases: dict[int, int] = {}

    def _acquire(self) -> Any:
        client = self.client
        self._leases[id(client)] = self._leases.get(id(client), 0) + 1
        return client

    async def _release(self, client: Any) -> None:
        remaining = self._leases.get(id(client), 1) - 1
        if remaining:
            self._leases[id(client)] = remaining
            return
        self._leases.pop(id(client), None)
        if any(retired is client for retired in self._retired_clients):
            self._retired_clients = [retired for retired in self._retired_clients if retired is not client]
            await client.close()
            LOG.debug("closed retired upstream client after last request finished")

    async def reload(self, new_cfg: RelayConfig) -> None:
        """Swap configuration and upstream client.

        The previous client is closed right away when idle. Otherwise it keeps serving
        the requests already using it and is closed when the last of them finishes.
        """
        previous = self.client
        self.client = GeminiClient(new_cfg)
        self.cfg = new_cfg
        if self._leases.get(id(previous)):
            self._retired_clients.append(previous)
        else:
            await previous.close()

    async def close(self) -> None:
        """Shut down current and retired upstream clients."""
        for client in [*self._retired_clients, self.client]:
            await client.close()
        self._retired_clients.clear()
        self._leases.clear()

    def _require_credential(self) -> None:
        if not self.cfg.upstream_api_key:
            raise MissingCredential("Google API key not configured")

    async def select_model(self, client: Any | None = None) -> tuple[str, Any]:
        """Return the first candidate model that initializes successfully."""
        client = client if client is not None else self.client
        last_error: Exception | None = None
        for name in self.cfg.candidate_models:
            try:
                model = await client.get_model(name, self.cfg.generation)
            except Exception as exc:
                last_error = exc
                LOG.warning("Failed to initialize model %s: %s", name, exc)
                continue
            LOG.info("Selected upstream model model=%s", name)
            return name, model

        LOG.error("All models failed to initialize: %s", last_error)
        raise NoAvailableModel("No available models")

    async def open_stream(self, messages: list[dict[str, str]], client: Any | None = None) -> RelayStream:
        """Replay history into a new chat and submit the newest turn as prompt."""
        name, model = await self.select_model(client)
        history, current = messages[:-1], messages[-1]
        chat = model.start_chat(history)
        stream = await chat.send_message_stream(current["content"])
        return RelayStream(model=name, stream=stream)

    async def _relay_and_release(self, opened: RelayStream, client: Any) -> AsyncIterator[bytes]:
        try:
            async for event in relay_events(opened.stream, model=opened.model):
                yield event
        finally:
            await self._release(client)

    async def handle_chat(self, raw_body: bytes, *, client_host: str | None = None) -> Response:
        """Serve one relay request.

        Anything failing before streaming starts yields a single JSON error response.
        """
        client = self._acquire()
        try:
            payload = parse_json_body(raw_body)
            LOG.debug(
                "incoming chat request client=%s payload=%s",
                client_host,
                to_bounded_json(payload),
            )
            self._require_credential()
            messages = parse_conversation(payload)
            opened = await self.open_stream(messages, client)
        except RelayError as exc:
            await self._release(client)
            LOG.warning("chat request rejected status=%s error=%s", exc.status_code, exc.message)
            return error_response(exc.status_code, exc.message)
        except Exception as exc:
            await self._release(client)
            LOG.exception("Chat API error")
            status_code, message = status_for_error(exc)
            return error_response(status_code, message)

        headers = dict(SSE_HEADERS)
        if self.cfg.expose_selected_model:
            headers[SELECTED_MODEL_HEADER] = opened.model
        return StreamingResponse(
            self._relay_and_release(opened, client),
            media_type="text/event-stream",
            headers=headers,
        )
