"""
Session gateway.

Responsibilities:
- One gateway per WebSocket connection, at most one conversation at a time
- Decode inbound client frames and route them to the relay runtime
- Answer request/response events (ping, get-session-info, errors) through
  GatewayResult so the route flushes them in order
- End the conversation when the socket goes away

NOT responsible for:
- Accumulation, scheduling, lanes or interruption (relay runtime)
- Socket I/O (route + WebSocketTransport)
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Mapping, Optional
from uuid import uuid4

from observability.logger import log_event
from protocol.messages import (
    ClientEvent,
    InboundEvent,
    InboundMessage,
    ProtocolError,
    decode_audio,
    decode_inbound,
    optional_str,
    require_str,
)
from relay.enums.interrupt_source import InterruptSource
from relay.protocols import ClientTransport
from relay.runtime import RelayRuntime


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------

def _now_ms() -> int:
    return time.time_ns() // 1_000_000


def _new_conversation_id() -> str:
    return f"conv_{uuid4().hex[:12]}"


# ------------------------------------------------------------------
# Gateway result
# ------------------------------------------------------------------

OutboundMessage = tuple[ClientEvent, Mapping[str, Any]]


@dataclass(frozen=True)
class GatewayResult:
    """
    Return value for gateway boundary methods.

    outbound:
        Direct replies to the sender, in order. Audio and other
        asynchronous events go through the transport instead.
    """
    outbound: tuple[OutboundMessage, ...] = ()


# ------------------------------------------------------------------
# SessionGateway
# ------------------------------------------------------------------

class SessionGateway:
    """
    One gateway == one client connection.

    The conversation id is created on start-conversation and dropped on
    end-conversation or disconnect.
    """

    def __init__(self, *, relay: RelayRuntime, transport: ClientTransport) -> None:
        self._relay = relay
        self._transport = transport
        self.conversation_id: Optional[str] = None

    # ------------------------------------------------------------------
    # Boundary
    # ------------------------------------------------------------------

    async def on_json_message(self, payload: str) -> GatewayResult:
        """Route one inbound text frame."""
        try:
            msg = decode_inbound(payload)
            return await self._route(msg)
        except ProtocolError as exc:
            log_event({
                "event_type": "CLIENT_PROTOCOL_ERROR",
                "level": "warning",
                "session_id": self.conversation_id,
                "code": exc.code,
                "error": str(exc),
                "payload_preview": payload[:100],
            })
            return self._error(exc.code, str(exc))

    async def on_binary_message(self, payload: bytes) -> GatewayResult:
        log_event({
            "event_type": "BINARY_FRAME_REJECTED",
            "level": "warning",
            "session_id": self.conversation_id,
            "payload_len": len(payload),
        })
        return self._error("unsupported-frame", "binary frames are not supported")

    async def on_ws_disconnect(self, reason: str | None = None) -> None:
        cid = self.conversation_id
        if cid is None:
            log_event({
                "event_type": "WS_DISCONNECT_WITHOUT_SESSION",
                "reason": reason,
            })
            return
        self.conversation_id = None
        await self._relay.end_conversation(cid, reason=reason or "disconnect")

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------

    async def _route(self, msg: InboundMessage) -> GatewayResult:
        event = msg.event

        if event is InboundEvent.PING:
            return GatewayResult(outbound=((ClientEvent.PONG, {"timestamp": _now_ms()}),))

        if event is InboundEvent.START_CONVERSATION:
            return await self._start(msg)

        cid = self.conversation_id
        if cid is None:
            log_event({
                "event_type": "MESSAGE_WITHOUT_SESSION",
                "level": "warning",
                "event": event.value,
            })
            return self._error("no-conversation", "start-conversation first")

        if event is InboundEvent.AUDIO_CHUNK:
            pcm = decode_audio(msg)
            if pcm:
                await self._relay.send_audio(cid, pcm)
            if msg.data.get("isLastChunk") is True:
                await self._relay.end_user_turn(cid)

        elif event is InboundEvent.TEXT_INPUT:
            await self._relay.send_text(cid, require_str(msg, "text"))

        elif event is InboundEvent.STOP_SPEAKING:
            transcription = optional_str(msg, "transcription")
            if transcription:
                await self._relay.send_text(cid, transcription)
            else:
                await self._relay.end_user_turn(cid)

        elif event is InboundEvent.INTERRUPT:
            await self._relay.interrupt(cid, source=InterruptSource.USER)

        elif event is InboundEvent.END_CONVERSATION:
            self.conversation_id = None
            await self._relay.end_conversation(cid, reason="client")
            return GatewayResult(outbound=((ClientEvent.SESSION_STATUS, {
                "sessionId": cid,
                "status": "ended",
                "timestamp": _now_ms(),
            }),))

        elif event is InboundEvent.GET_SESSION_INFO:
            info = self._relay.session_info(cid)
            if info is None:
                return self._error("no-conversation", f"unknown conversation {cid}")
            return GatewayResult(outbound=((ClientEvent.SESSION_INFO, info),))

        return GatewayResult()

    async def _start(self, msg: InboundMessage) -> GatewayResult:
        previous = self.conversation_id
        if previous is not None:
            await self._relay.end_conversation(previous, reason="restarted")

        cid = _new_conversation_id()
        self.conversation_id = cid
        voice = optional_str(msg, "voice")
        await self._relay.start_conversation(cid, self._transport, voice=voice)

        return GatewayResult(outbound=((ClientEvent.SESSION_STATUS, {
            "sessionId": cid,
            "status": "started",
            "voice": voice,
            "timestamp": _now_ms(),
        }),))

    def _error(self, code: str, message: str) -> GatewayResult:
        return GatewayResult(outbound=((ClientEvent.ERROR, {
            "sessionId": self.conversation_id,
            "code": code,
            "message": message,
            "timestamp": _now_ms(),
        }),))
