import asyncio
import json

import httpx

from chatrelay import console


def _script(monkeypatch, lines: list[str | None]) -> None:
    pending = list(lines)

    async def fake_read_line(prompt: str) -> str | None:
        return pending.pop(0) if pending else None

    monkeypatch.setattr(console, "_read_line", fake_read_line)


def _run(handler) -> tuple[int, list[dict]]:
    sent: list[dict] = []

    def record(request: httpx.Request) -> httpx.Response:
        sent.append(json.loads(request.content))
        return handler(len(sent))

    async def run():
        http = httpx.AsyncClient(base_url="http://relay.test", transport=httpx.MockTransport(record))
        try:
            return await console.run_console("http://relay.test", 5.0, http_client=http)
        finally:
            await http.aclose()

    return asyncio.run(run()), sent


def _reply(attempt: int) -> httpx.Response:
    if attempt == 1:
        return httpx.Response(500, json={"error": "boom"})
    return httpx.Response(
        200,
        headers={"content-type": "text/event-stream"},
        content=b'data: {"content":"Hi"}\n\ndata: [DONE]\n\n',
    )


def test_retry_resubmits_failed_input_and_clear_starts_over(monkeypatch, capsys) -> None:
    _script(monkeypatch, ["hello", "/retry", "/clear", "again", "/quit"])

    code, sent = _run(_reply)
    out, err = capsys.readouterr()

    assert code == 0
    assert sent == [
        {"messages": [{"role": "user", "content": "hello"}]},
        {"messages": [{"role": "user", "content": "hello"}]},
        {"messages": [{"role": "user", "content": "again"}]},
    ]
    assert "! boom" in err
    assert "Sorry, I encountered an error: boom. Please try again." in out
    assert "(retrying: hello)" in out
    assert "(conversation cleared)" in out
    assert out.count("assistant> Hi") == 2


def test_retry_without_failed_turn_and_eof_exit(monkeypatch, capsys) -> None:
    _script(monkeypatch, ["/retry", None])

    code, sent = _run(_reply)
    out, _ = capsys.readouterr()

    assert code == 0
    assert sent == []
    assert "(nothing to retry)" in out


def test_quit_exits_before_any_request(monkeypatch) -> None:
    _script(monkeypatch, ["  /quit  ", "hello"])

    code, sent = _run(_reply)

    assert code == 0
    assert sent == []
