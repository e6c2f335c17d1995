"""Mock of the upstream model API for local runs.

    uvicorn examples.mock_upstream_server:app --port 10000
    CHATRELAY_UPSTREAM_BASE_URL=http://127.0.0.1:10000/v1beta GOOGLE_API_KEY=dummy chatrelay-server

Only `demo-model` exists; ask for "fail" to get a mid-stream error.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse

app = FastAPI(title="mock-upstream")

KNOWN_MODELS = {"demo-model"}


def _error(code: int, status: str, message: str) -> JSONResponse:
    return JSONResponse({"error": {"code": code, "message": message, "status": status}}, status_code=code)


@app.get("/v1beta/models/{name}")
async def get_model(name: str) -> JSONResponse:
    if name not in KNOWN_MODELS:
        return _error(404, "NOT_FOUND", f"models/{name} is not found for API version v1beta")
    return JSONResponse({"name": f"models/{name}", "displayName": name})


@app.post("/v1beta/models/{target}")
async def stream_generate_content(target: str, request: Request):
    name, _, method = target.partition(":")
    if method != "streamGenerateContent" or name not in KNOWN_MODELS:
        return _error(404, "NOT_FOUND", f"models/{target} is not found")
    if not request.headers.get("x-goog-api-key"):
        return _error(403, "PERMISSION_DENIED", "Method doesn't allow unregistered callers")

    payload = await request.json()
    contents: list[dict[str, Any]] = payload.get("contents") or []
    prompt = "".join(part.get("text", "") for part in (contents[-1].get("parts") or [])) if contents else ""
    words = f"You said: {prompt} (turn {len(contents) // 2 + 1})".split(" ")

    async def gen():
        for index, word in enumerate(words):
            text = word if index == 0 else f" {word}"
            chunk = {"candidates": [{"content": {"role": "model", "parts": [{"text": text}]}}]}
            yield f"data: {json.dumps(chunk)}\r\n\r\n"
            await asyncio.sleep(0.05)
            if "fail" in prompt.lower() and index == 1:
                raise RuntimeError("simulated upstream failure")

    return StreamingResponse(gen(), media_type="text/event-stream")
