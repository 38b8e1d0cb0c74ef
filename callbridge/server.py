"""HTTP/WebSocket server for callbridge.

Provides a FastAPI application that receives telephony webhooks, accepts the
media sockets the telephony provider opens per call, and exposes health and
status endpoints. All call handling is delegated to :class:`CallBridge`.
"""

from __future__ import annotations

import json
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

import uvicorn
from fastapi import BackgroundTasks, FastAPI, Request, WebSocket
from fastapi.responses import JSONResponse, PlainTextResponse
from loguru import logger

from callbridge import __version__
from callbridge.bridge import CallBridge
from callbridge.config import BridgeConfig, load_config
from callbridge.transports.websocket import FastAPIWebSocketTransport

SERVICE_NAME = "callbridge"


def create_app(
    config: BridgeConfig | dict | str | None = None,
    bridge: CallBridge | None = None,
) -> FastAPI:
    """Create the FastAPI application.

    Args:
        config: Bridge configuration (YAML path, dict, or BridgeConfig).
            Ignored when ``bridge`` is given.
        bridge: A pre-built bridge, e.g. one with custom event handlers.

    Returns:
        A FastAPI application instance. The bridge is available as
        ``app.state.bridge``.
    """
    bridge = bridge or CallBridge(config)
    bridge_config = bridge.config

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            f"callbridge {__version__} serving {bridge_config.telephony.provider} "
            f"calls on {bridge_config.server.host}:{bridge_config.server.port}"
        )
        yield
        logger.info(f"Shutting down, {bridge.sessions.active_count} call(s) still active")
        await bridge.shutdown()

    app = FastAPI(
        title="callbridge",
        description="Bridge between telephony calls and realtime speech-AI sessions",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.bridge = bridge

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start = time.monotonic()
        response = await call_next(request)
        elapsed_ms = (time.monotonic() - start) * 1000
        logger.info(
            f"{request.method} {request.url.path} -> {response.status_code} "
            f"({elapsed_ms:.1f}ms)"
        )
        return response

    @app.get("/health")
    async def health():
        return JSONResponse({
            "status": "healthy",
            "service": SERVICE_NAME,
            "active_calls": bridge.sessions.active_count,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        })

    @app.get("/status")
    async def status():
        return JSONResponse({
            "provider": bridge_config.telephony.provider,
            "public_url": bridge_config.server.public_url,
            "model": bridge_config.ai.model,
            "active_calls": bridge.sessions.active_count,
            "sessions": [s.snapshot() for s in bridge.sessions.all_sessions],
        })

    @app.post(bridge_config.server.webhook_path)
    async def webhook(request: Request, background_tasks: BackgroundTasks):
        raw = await request.body()
        try:
            body: Any = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError):
            logger.warning(f"Ignoring webhook with invalid JSON body ({len(raw)} bytes)")
            body = None

        # Always acknowledge, the provider retries otherwise
        if isinstance(body, dict):
            background_tasks.add_task(bridge.handle_webhook, body)
        return PlainTextResponse("OK")

    @app.websocket(bridge_config.server.media_path)
    async def media_stream(websocket: WebSocket):
        await websocket.accept()
        transport = FastAPIWebSocketTransport(websocket)
        call_id = transport.query_params.get("call_id")
        logger.info(f"Media WebSocket connected: {websocket.client} call_id={call_id}")
        try:
            await bridge.handle_media_connection(transport, call_id)
        except Exception as e:
            logger.error(f"Media WebSocket handler error: {e}")
            await transport.disconnect()

    return app


def run_server(config: BridgeConfig | dict | str | None = None, host: str | None = None, port: int | None = None):
    """Run the callbridge server with uvicorn.

    Args:
        config: Bridge configuration.
        host: Override the listen host.
        port: Override the listen port.
    """
    bridge_config = load_config(config)
    app = create_app(bridge_config)

    uvicorn.run(
        app,
        host=host or bridge_config.server.host,
        port=port or bridge_config.server.port,
        log_level=bridge_config.logging.level.lower(),
    )
