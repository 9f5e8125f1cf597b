"""
Relay boundary contracts.

This module contains:
- Narrow Protocols (capabilities, not implementations)
- The transport error type that implementations must raise
- Zero relay logic
"""

from __future__ import annotations

from typing import Any, Mapping, Optional, Protocol, runtime_checkable

from protocol.messages import ClientEvent


class DeliveryTransportError(Exception):
    """
    Raised by a ClientTransport when a send fails.

    Delivery lanes recover by switching to sequential delivery for the rest
    of the response; other senders log and continue.
    """


# ---------------------------------------------------------------------
# Client side
# ---------------------------------------------------------------------

@runtime_checkable
class ClientTransport(Protocol):
    """
    Outbound channel to one client connection.

    Contract:
    - send_event() writes exactly one event or raises DeliveryTransportError
    - Concurrent callers are allowed; the implementation serializes writes
    """

    async def send_event(self, event: ClientEvent, data: Mapping[str, Any]) -> None: ...


# ---------------------------------------------------------------------
# Upstream side
# ---------------------------------------------------------------------

@runtime_checkable
class UpstreamEventSink(Protocol):
    """
    Receiver for upstream engine callbacks.

    Implemented by the relay runtime and injected into the engine at
    construction. Callbacks may arrive in any order and at any time;
    the receiver filters stale ones.
    """

    async def on_fragment(self, conversation_id: str, turn_id: str, audio: bytes) -> None: ...

    async def on_text_ready(
        self,
        conversation_id: str,
        text: str,
        *,
        turn_id: Optional[str] = None,
    ) -> None: ...

    async def on_interrupted(self, conversation_id: str) -> None: ...

    async def on_disconnected(self, conversation_id: str, reason: str) -> None: ...
