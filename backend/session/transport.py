"""
WebSocket client transport.

Adapts a FastAPI WebSocket to the relay's ClientTransport protocol.
Delivery lanes write concurrently; a lock keeps every frame whole.
"""

from __future__ import annotations

import asyncio
from typing import Any, Mapping

from fastapi import WebSocket

from protocol.messages import ClientEvent, encode_outbound
from relay.protocols import DeliveryTransportError


class WebSocketTransport:
    """One per client connection."""

    def __init__(self, ws: WebSocket) -> None:
        self._ws = ws
        self._lock = asyncio.Lock()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def mark_closed(self) -> None:
        self._closed = True

    async def send_event(self, event: ClientEvent, data: Mapping[str, Any]) -> None:
        if self._closed:
            raise DeliveryTransportError(f"{event.value}: connection closed")

        frame = encode_outbound(event, data)
        async with self._lock:
            try:
                await self._ws.send_text(frame)
            except Exception as exc:  # pylint: disable=broad-exception-caught
                raise DeliveryTransportError(
                    f"{event.value}: {type(exc).__name__}: {exc}"
                ) from exc
