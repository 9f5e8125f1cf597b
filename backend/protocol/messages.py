# backend/protocol/messages.py
"""
JSON message envelope for the client WebSocket.

Every message in either direction is one text frame:

    {"event": "<name>", "data": {...}}

Client -> Server (InboundEvent):
    start-conversation   {voice?, userId?}
    audio-chunk          {audioData: base64 PCM16, chunkIndex?, isLastChunk?}
    text-input           {text}
    stop-speaking        {transcription?}
    interrupt            {}
    end-conversation     {}
    ping                 {}
    get-session-info     {}

Server -> Client (ClientEvent):
    audio-chunk          {sessionId, chunkIndex, totalChunks, isLastChunk,
                          audioData, laneId, turnId, ...}
    audio-complete       {sessionId, totalChunks, turnId}
    text-response, interruption*, session-status, session-info, pong, error

Usage example:

    msg = decode_inbound(raw_text)
    if msg.event is InboundEvent.TEXT_INPUT:
        text = require_str(msg, "text")

    frame = encode_outbound(ClientEvent.PONG, {"timestamp": now_ms})
"""

from __future__ import annotations

import base64
import binascii
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping


# -------------------------
# Event names
# -------------------------

class InboundEvent(str, Enum):
    """Events a client may send."""
    START_CONVERSATION = "start-conversation"
    AUDIO_CHUNK = "audio-chunk"
    TEXT_INPUT = "text-input"
    STOP_SPEAKING = "stop-speaking"
    INTERRUPT = "interrupt"
    END_CONVERSATION = "end-conversation"
    PING = "ping"
    GET_SESSION_INFO = "get-session-info"


class ClientEvent(str, Enum):
    """Events the server emits to a client."""
    AUDIO_CHUNK = "audio-chunk"
    AUDIO_COMPLETE = "audio-complete"
    TEXT_RESPONSE = "text-response"
    INTERRUPTION = "interruption"
    INTERRUPTION_CONFIRMED = "interruption-confirmed"
    INTERRUPTION_SUCCESSFUL = "interruption-successful"
    INTERRUPTION_PARTIAL = "interruption-partial"
    INTERRUPTION_HANDLED = "interruption-handled"
    SESSION_STATUS = "session-status"
    SESSION_INFO = "session-info"
    PONG = "pong"
    ERROR = "error"


# -------------------------
# Exceptions
# -------------------------

class ProtocolError(Exception):
    """Base class for client message protocol errors."""

    code: str = "protocol-error"


class MalformedMessage(ProtocolError):
    """
    Raised when a text frame is not a JSON object with an "event" string.

    The frame is dropped and the client receives an `error` event.
    """

    code = "malformed-message"


class UnknownEvent(ProtocolError):
    """Raised when "event" names something the server does not handle."""

    code = "unknown-event"


class InvalidPayload(ProtocolError):
    """
    Raised when a known event carries missing or ill-typed fields
    (e.g. audioData that is not valid base64).
    """

    code = "invalid-payload"


# -------------------------
# Inbound
# -------------------------

@dataclass(frozen=True)
class InboundMessage:
    """Validated client message."""
    event: InboundEvent
    data: Mapping[str, Any] = field(default_factory=dict)


def decode_inbound(raw: str | bytes) -> InboundMessage:
    """
    Parse one client text frame.

    Raises:
        MalformedMessage, UnknownEvent
    """
    try:
        obj = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise MalformedMessage(f"invalid JSON: {exc}") from exc

    if not isinstance(obj, dict):
        raise MalformedMessage("message must be a JSON object")

    name = obj.get("event")
    if not isinstance(name, str):
        raise MalformedMessage('missing "event" string')

    try:
        event = InboundEvent(name)
    except ValueError as exc:
        raise UnknownEvent(f"unknown event: {name}") from exc

    data = obj.get("data")
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise MalformedMessage('"data" must be an object')

    return InboundMessage(event=event, data=data)


def require_str(msg: InboundMessage, key: str) -> str:
    """Return a non-empty string field or raise InvalidPayload."""
    value = msg.data.get(key)
    if not isinstance(value, str) or not value.strip():
        raise InvalidPayload(f'{msg.event.value}: "{key}" must be a non-empty string')
    return value


def optional_str(msg: InboundMessage, key: str) -> str | None:
    value = msg.data.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise InvalidPayload(f'{msg.event.value}: "{key}" must be a string')
    return value.strip() or None


def decode_audio(msg: InboundMessage, key: str = "audioData") -> bytes:
    """
    Decode a base64 audio field.

    Raises:
        InvalidPayload if missing or not valid base64.
    """
    value = msg.data.get(key)
    if not isinstance(value, str):
        raise InvalidPayload(f'{msg.event.value}: "{key}" must be a base64 string')
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise InvalidPayload(f'{msg.event.value}: "{key}" is not valid base64') from exc


# -------------------------
# Outbound
# -------------------------

def encode_audio(payload: bytes) -> str:
    return base64.b64encode(payload).decode("ascii")


def encode_outbound(event: ClientEvent, data: Mapping[str, Any]) -> str:
    """Serialize one server -> client frame."""
    return json.dumps({"event": event.value, "data": dict(data)}, separators=(",", ":"))
