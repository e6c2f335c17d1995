import asyncio
import json

import httpx
import pytest

from chatrelay.client import ChatClient, Message, StreamError, consume_event_stream


async def _chunks(*parts: bytes):
    for part in parts:
        yield part


def _stream_response(*parts: bytes, status_code: int = 200) -> httpx.Response:
    return httpx.Response(status_code, headers={"content-type": "text/event-stream"}, content=_chunks(*parts))


def _run_turn(handler, *, text: str = "hello", client_setup=None):
    sent: list[dict] = []

    def record(request: httpx.Request) -> httpx.Response:
        sent.append(json.loads(request.content))
        return handler(request)

    async def run():
        http = httpx.AsyncClient(base_url="http://relay.test", transport=httpx.MockTransport(record))
        client = ChatClient("http://relay.test", http_client=http)
        if client_setup is not None:
            client_setup(client)
        try:
            reply = await client.submit(text)
        finally:
            await http.aclose()
        return client, reply

    client, reply = asyncio.run(run())
    return client, reply, sent


def test_two_fragments_produce_one_assistant_message() -> None:
    client, reply, sent = _run_turn(
        lambda _req: _stream_response(b'data: {"content":"Hi"}\n\ndata: {"content":" there"}\n\ndata: [DONE]\n\n')
    )

    assert [(m.role, m.content) for m in client.state.messages] == [("user", "hello"), ("assistant", "Hi there")]
    assert reply.error is False
    assert client.state.error is None
    assert client.state.is_loading is False
    assert sent == [{"messages": [{"role": "user", "content": "hello"}]}]


def test_lines_split_across_reads_are_reassembled() -> None:
    client, reply, _ = _run_turn(
        lambda _req: _stream_response(
            b'data: {"cont',
            b'ent":"Hi"}\n',
            b'\ndata: {"content":" th',
            b'ere"}\n\ndata: [DO',
            b"NE]\n\n",
        )
    )

    assert reply.content == "Hi there"
    assert client.state.error is None


def test_error_event_fails_turn_with_synthetic_message() -> None:
    client, reply, _ = _run_turn(lambda _req: _stream_response(b'data: {"error":"boom"}\n\n'))

    assert client.state.error is not None and "boom" in client.state.error
    assert reply.error is True
    assert reply.content == "Sorry, I encountered an error: boom. Please try again."
    assert [m.role for m in client.state.messages] == ["user", "assistant"]
    assert client.state.messages[-1] is reply


def test_rate_limited_response_surfaces_message_without_retrying() -> None:
    calls: list[int] = []

    def handler(_req: httpx.Request) -> httpx.Response:
        calls.append(1)
        return httpx.Response(429, json={"error": "Rate limit exceeded. Please try again later."})

    client, reply, _ = _run_turn(handler)

    assert calls == [1]
    assert client.state.error == "Rate limit exceeded. Please try again later."
    assert reply.error is True
    assert "Rate limit exceeded" in reply.content


def test_error_status_without_json_body_uses_status_text() -> None:
    client, _, _ = _run_turn(lambda _req: httpx.Response(502, text="bad gateway"))
    assert client.state.error == "HTTP 502"


def test_stream_ending_without_done_marker_is_a_failure() -> None:
    client, reply, _ = _run_turn(lambda _req: _stream_response(b'data: {"content":"partial"}\n\n'))

    assert reply.error is True
    assert client.state.error == "Stream ended before completion"
    assert [m.content for m in client.state.messages if not m.error] == ["hello"]


def test_malformed_complete_line_is_a_failure() -> None:
    client, reply, _ = _run_turn(lambda _req: _stream_response(b"data: {oops}\n\ndata: [DONE]\n\n"))

    assert reply.error is True
    assert client.state.error.startswith("Malformed event from server")


def test_transport_error_is_a_failure() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client, reply, _ = _run_turn(handler)

    assert reply.error is True
    assert client.state.error == "connection refused"


def test_full_history_is_posted_in_order() -> None:
    def setup(client: ChatClient) -> None:
        client.state.messages.extend(
            [Message(role="user", content="first"), Message(role="assistant", content="answer")]
        )

    _, _, sent = _run_turn(lambda _req: _stream_response(b"data: [DONE]\n\n"), text="second", client_setup=setup)

    assert sent[0]["messages"] == [
        {"role": "user", "content": "first"},
        {"role": "assistant", "content": "answer"},
        {"role": "user", "content": "second"},
    ]


def test_blank_input_and_busy_client_submit_nothing() -> None:
    calls: list[int] = []

    def handler(_req: httpx.Request) -> httpx.Response:
        calls.append(1)
        return _stream_response(b"data: [DONE]\n\n")

    async def run():
        http = httpx.AsyncClient(base_url="http://relay.test", transport=httpx.MockTransport(handler))
        client = ChatClient("http://relay.test", http_client=http)
        try:
            assert await client.submit("   ") is None
            client.state.is_loading = True
            assert await client.submit("hello") is None
        finally:
            await http.aclose()
        return client

    client = asyncio.run(run())
    assert calls == []
    assert client.state.messages == []


def test_empty_assistant_message_appears_before_content() -> None:
    seen: list[list[tuple[str, str]]] = []

    async def run():
        http = httpx.AsyncClient(
            base_url="http://relay.test",
            transport=httpx.MockTransport(
                lambda _req: _stream_response(b'data: {"content":"Hi"}\n\n', b"data: [DONE]\n\n")
            ),
        )
        client = ChatClient(
            "http://relay.test",
            http_client=http,
            on_update=lambda state: seen.append([(m.role, m.content) for m in state.messages]),
        )
        try:
            await client.submit("hello")
        finally:
            await http.aclose()

    asyncio.run(run())
    assert [("user", "hello"), ("assistant", "")] in seen
    assert seen.index([("user", "hello"), ("assistant", "")]) < seen.index([("user", "hello"), ("assistant", "Hi")])


def test_retry_last_restores_input_and_drops_failed_turn() -> None:
    client = ChatClient("http://relay.test")
    client.state.messages.extend(
        [Message(role="user", content="hello"), Message(role="assistant", content="failed", error=True)]
    )
    client.state.error = "boom"

    assert client.retry_last() is True
    assert client.state.messages == []
    assert client.state.input == "hello"
    assert client.state.error is None
    asyncio.run(client.aclose())


def test_retry_last_requires_user_turn_before_reply() -> None:
    client = ChatClient("http://relay.test")
    client.state.messages.append(Message(role="assistant", content="x"))
    assert client.retry_last() is False
    assert len(client.state.messages) == 1
    asyncio.run(client.aclose())


def test_clear_discards_conversation_and_error() -> None:
    client = ChatClient("http://relay.test")
    client.state.messages.append(Message(role="user", content="hello"))
    client.state.error = "boom"

    client.clear()

    assert client.state.messages == []
    assert client.state.error is None
    asyncio.run(client.aclose())


def test_consume_event_stream_stops_at_done_marker() -> None:
    received: list[str] = []

    asyncio.run(
        consume_event_stream(
            _chunks(b'data: {"content":"a"}\n\ndata: [DONE]\n\ndata: {"content":"ignored"}\n\n'),
            received.append,
        )
    )
    assert received == ["a"]


def test_consume_event_stream_accepts_unterminated_done_marker() -> None:
    received: list[str] = []
    asyncio.run(consume_event_stream(_chunks(b'data: {"content":"a"}\n\ndata: [DONE]'), received.append))
    assert received == ["a"]


def test_consume_event_stream_raises_on_error_payload() -> None:
    with pytest.raises(StreamError, match="boom"):
        asyncio.run(consume_event_stream(_chunks(b'data: {"error":"boom"}\n\n'), lambda _text: None))


def test_unexpected_exception_still_fails_the_turn() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise RuntimeError("response body already consumed")

    client, reply, _ = _run_turn(handler)

    assert reply.error is True
    assert client.state.error == "response body already consumed"
    assert [(m.role, m.error) for m in client.state.messages] == [("user", False), ("assistant", True)]
    assert client.state.is_loading is False
    assert client.state.is_streaming is False


def test_cancellation_is_not_turned_into_a_failed_turn() -> None:
    seen: list[ChatClient] = []

    def handler(request: httpx.Request) -> httpx.Response:
        raise asyncio.CancelledError()

    with pytest.raises(asyncio.CancelledError):
        _run_turn(handler, client_setup=seen.append)

    client = seen[0]
    assert [m.role for m in client.state.messages] == ["user"]
    assert client.state.is_loading is False
