"""
Route registration for the voice relay API.

Responsibilities:
- Define HTTP and WebSocket endpoints
- Health checks (live, ready, detailed) and the session directory
- Wire gateway to WebSocket lifecycle
- Pull dependencies from app.state
"""

from __future__ import annotations

import platform
import time
from typing import Any

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse

from observability.logger import log_event
from relay.protocols import DeliveryTransportError
from session.gateway import GatewayResult, SessionGateway
from session.transport import WebSocketTransport


def register_routes(app: FastAPI) -> None:
    """Register all routes on the FastAPI app."""
    @app.get("/health")
    async def health() -> dict[str, str]:  # pyright: ignore[reportUnusedFunction]
        return {"status": "ok"}

    @app.get("/health/live")
    async def live() -> dict[str, Any]:  # pyright: ignore[reportUnusedFunction]
        return {"status": "alive", "timestamp": _now_ms()}

    @app.get("/health/ready")
    async def ready() -> JSONResponse:  # pyright: ignore[reportUnusedFunction]
        if not app.state.ready or not app.state.relay.has_engine:
            return JSONResponse(
                status_code=503,
                content={"status": "not_ready", "reason": "relay not started"},
            )
        return JSONResponse(content={"status": "ready", "timestamp": _now_ms()})

    @app.get("/health/detailed")
    async def detailed() -> dict[str, Any]:  # pyright: ignore[reportUnusedFunction]
        config = app.state.config
        return {
            "status": "healthy",
            "timestamp": _now_ms(),
            "server": {
                "uptime_s": round(time.monotonic() - app.state.started_at, 3),
                "env": config.env,
                "python": platform.python_version(),
            },
            "upstream": {
                "provider": config.upstream_provider,
                "model": config.realtime_model,
                "configured": app.state.relay.has_engine,
            },
            "sessions": app.state.registry.statistics(),
            "delivery": config.delivery.snapshot(),
        }

    @app.get("/status")
    async def status() -> dict[str, Any]:  # pyright: ignore[reportUnusedFunction]
        return {
            **app.state.relay.status(),
            "delivery": app.state.config.delivery.snapshot(),
        }

    # Session directory
    @app.get("/sessions")
    async def list_sessions() -> dict[str, Any]:  # pyright: ignore[reportUnusedFunction]
        sessions = app.state.registry.summaries()
        return {"count": len(sessions), "sessions": sessions}

    @app.get("/sessions/stats/summary")
    async def session_stats() -> dict[str, Any]:  # pyright: ignore[reportUnusedFunction]
        return {"statistics": app.state.registry.statistics()}

    @app.get("/sessions/{session_id}")
    async def get_session(session_id: str) -> dict[str, Any]:  # pyright: ignore[reportUnusedFunction]
        info = app.state.relay.session_info(session_id)
        if info is None:
            raise HTTPException(status_code=404, detail="Session not found")
        return {"session": info}

    @app.get("/sessions/{session_id}/export")
    async def export_session(session_id: str) -> dict[str, Any]:  # pyright: ignore[reportUnusedFunction]
        registry = app.state.registry
        state = registry.get(session_id)
        if state is None:
            raise HTTPException(status_code=404, detail="Session not found")
        return {"data": state.export(registry.now(), _now_ms())}

    @app.delete("/sessions/{session_id}")
    async def end_session(session_id: str) -> dict[str, Any]:  # pyright: ignore[reportUnusedFunction]
        ended = await app.state.relay.end_conversation(session_id, reason="api")
        if not ended:
            raise HTTPException(status_code=404, detail="Session not found")
        return {"sessionId": session_id, "ended": True}

    @app.websocket("/ws")
    async def websocket_endpoint(ws: WebSocket) -> None:  # pyright: ignore[reportUnusedFunction]
        await ws.accept()

        transport = WebSocketTransport(ws)
        gateway = SessionGateway(relay=app.state.relay, transport=transport)

        try:
            while True:
                msg = await ws.receive()

                if msg["type"] == "websocket.disconnect":
                    raise WebSocketDisconnect()

                if msg.get("text") is not None:
                    result = await gateway.on_json_message(msg["text"])
                    await _flush_gateway_result(transport, result)

                elif msg.get("bytes") is not None:
                    result = await gateway.on_binary_message(msg["bytes"])
                    await _flush_gateway_result(transport, result)

        except (WebSocketDisconnect, DeliveryTransportError):
            transport.mark_closed()
            await gateway.on_ws_disconnect(reason="client_disconnect")

        except Exception as exc:  # pylint: disable=broad-exception-caught
            log_event({
                "event_type": "WS_FATAL_ERROR",
                "level": "error",
                "session_id": gateway.conversation_id,
                "exception": type(exc).__name__,
                "message": str(exc),
            })
            transport.mark_closed()
            await gateway.on_ws_disconnect(reason="server_error")


async def _flush_gateway_result(
    transport: WebSocketTransport,
    result: GatewayResult,
) -> None:
    for event, data in result.outbound:
        await transport.send_event(event, data)


def _now_ms() -> int:
    return time.time_ns() // 1_000_000
