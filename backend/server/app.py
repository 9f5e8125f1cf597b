"""
FastAPI app factory.

Responsibilities:
- Create and configure FastAPI app
- Set up middleware
- Construct the per-process registry, relay runtime and upstream engine
- Run the inactivity janitor for the app's lifetime
- Register routes
"""

from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from openai import AsyncOpenAI

from adapters.upstream.base import UpstreamEngine
from adapters.upstream.openai_realtime import OpenAIRealtimeEngine
from config import AppConfig
from observability.logger import log_event, set_log_level
from relay.conversation import ConversationRegistry
from relay.runtime import RelayRuntime
from server.routes import register_routes


def create_app(
    config: Optional[AppConfig] = None,
    engine: Optional[UpstreamEngine] = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    config and engine are injectable so tests can run without a network.
    """
    config = config or AppConfig.load_from_env()
    set_log_level(config.log_level)

    registry = ConversationRegistry()
    relay = RelayRuntime(config=config.delivery, registry=registry)
    relay.attach_engine(engine or build_upstream_engine(config, relay))

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        janitor = asyncio.create_task(_janitor(relay, config))
        app.state.ready = True
        log_event({
            "event_type": "SERVER_STARTED",
            "env": config.env,
            "delivery": config.delivery.snapshot(),
        })
        try:
            yield
        finally:
            app.state.ready = False
            janitor.cancel()
            try:
                await janitor
            except asyncio.CancelledError:
                pass
            await app.state.relay.shutdown()
            log_event({"event_type": "SERVER_STOPPED"})

    app = FastAPI(title="Voice Relay API", lifespan=lifespan)

    app.state.config = config
    app.state.registry = registry
    app.state.relay = relay
    app.state.ready = False
    app.state.started_at = time.monotonic()

    # Middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(config.cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Routes
    register_routes(app)

    return app


def build_upstream_engine(config: AppConfig, relay: RelayRuntime) -> UpstreamEngine:
    """Build the realtime engine selected by configuration."""
    if config.upstream_provider.lower() != "openai":
        raise RuntimeError(f"unsupported UPSTREAM_PROVIDER: {config.upstream_provider}")
    if not config.openai_api_key:
        raise RuntimeError("OPENAI_API_KEY environment variable not set")

    # One client per process
    client = AsyncOpenAI(api_key=config.openai_api_key)
    return OpenAIRealtimeEngine(
        client=client,
        sink=relay,
        model=config.realtime_model,
        voice=config.realtime_voice,
        instructions=config.realtime_instructions,
        server_vad=config.realtime_server_vad,
    )


async def _janitor(relay: RelayRuntime, config: AppConfig) -> None:
    """End idle conversations every sweep interval."""
    while True:
        await asyncio.sleep(config.conversation_sweep_interval_s)
        try:
            expired = await relay.sweep_inactive(config.conversation_idle_timeout_s)
        except Exception as exc:  # pylint: disable=broad-exception-caught
            log_event({
                "event_type": "JANITOR_ERROR",
                "level": "error",
                "exception": type(exc).__name__,
                "message": str(exc),
            })
            continue
        if expired:
            log_event({
                "event_type": "CONVERSATIONS_EXPIRED",
                "count": len(expired),
                "session_ids": expired,
            })
