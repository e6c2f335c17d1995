"""HTTP application for the chatrelay service.

Exposes the streaming chat relay at `POST /api/chat` and a health probe.
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import os
import sys
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from urllib.parse import urlparse

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import ValidationError

from .config import DEFAULT_CONFIG_PATH, RelayConfig, load_config
from .config_reload import ConfigWatcher
from .logging_utils import setup_logging
from .relay import RelayService

LOG = logging.getLogger(__name__)


def _service_bind_addr(service_base_url: str) -> tuple[str, int]:
    """Parse bind host/port from service_base_url."""
    parsed = urlparse(service_base_url)
    if not parsed.hostname or parsed.port is None:
        raise ValueError("service_base_url must include host and port, e.g. http://127.0.0.1:8080")
    return parsed.hostname, parsed.port


def create_app(config_path: str | None = None, *, cfg: RelayConfig | None = None, service: RelayService | None = None) -> FastAPI:
    """Create and configure the FastAPI application instance.

    `cfg` and `service` are injectable for tests; otherwise both are built from the
    configuration file and environment.
    """
    cfg = cfg or load_config(config_path)
    setup_logging(cfg.logging)
    service = service or RelayService(cfg)

    config_file = Path(config_path or os.getenv("CHATRELAY_CONFIG") or DEFAULT_CONFIG_PATH)

    async def apply_config(path: Path) -> None:
        new_cfg = load_config(str(path))
        setup_logging(new_cfg.logging)
        await service.reload(new_cfg)

    watcher = ConfigWatcher(config_file, apply_config)

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        """Application startup/shutdown lifecycle."""
        watch_task = asyncio.create_task(watcher.run_forever())
        try:
            yield
        finally:
            watch_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await watch_task
            await service.close()

    app = FastAPI(title="chatrelay", version="0.1.0", lifespan=lifespan)
    app.state.relay = service
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cfg.cors_allow_origins,
        allow_methods=["POST"],
        allow_headers=["Content-Type"],
        expose_headers=["X-Upstream-Model"],
    )

    @app.get("/healthz")
    async def healthz() -> JSONResponse:
        """Report configured candidates and whether a credential is present."""
        return JSONResponse(
            {
                "service": "chatrelay",
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "candidate_models": list(service.cfg.candidate_models),
                "credential_configured": bool(service.cfg.upstream_api_key),
            }
        )

    @app.post("/api/chat")
    async def api_chat(request: Request) -> Response:
        """Relay one conversation to the upstream model and stream the reply."""
        raw_body = await request.body()
        client_host = getattr(getattr(request, "client", None), "host", None)
        return await service.handle_chat(raw_body, client_host=client_host)

    return app


def main() -> None:
    """CLI entry point that validates configuration and runs uvicorn."""

    def fail(message: str, exit_code: int = 2) -> None:
        """Print startup error and terminate process."""
        print(f"ERROR: {message}", file=sys.stderr)
        raise SystemExit(exit_code)

    parser = argparse.ArgumentParser(description="chatrelay streaming chat relay")
    parser.add_argument("--config", default=None, help="Path to config YAML")
    args = parser.parse_args()

    import uvicorn

    try:
        cfg = load_config(args.config)
    except ValidationError as exc:
        fail(f"Invalid configuration: {exc}")
    except (OSError, ValueError) as exc:
        fail(f"Failed to load configuration: {exc}")

    try:
        app = create_app(args.config, cfg=cfg)
    except (OSError, ValueError, RuntimeError) as exc:
        fail(f"Failed to create app: {exc}")

    if not cfg.upstream_api_key:
        # Requests get a configuration error until a key is set.
        LOG.warning("No upstream API key configured (set GOOGLE_API_KEY or CHATRELAY_UPSTREAM_API_KEY)")

    host, port = _service_bind_addr(cfg.service_base_url)
    try:
        uvicorn.run(app, host=host, port=port)
    except OSError as exc:
        fail(f"Server failed to start: {exc}", exit_code=1)


if __name__ == "__main__":
    main()
