"""
Upstream conversational engine contract.

This module defines the *interface only*: no fragment accumulation, no
chunking, no interruption bookkeeping lives here.

Key invariants:
- The engine reports everything through an injected UpstreamEventSink
  (on_fragment / on_text_ready / on_interrupted / on_disconnected).
- Turn ids are owned by the engine; the relay treats them as opaque.
- Generations are owned by the relay. Engines never see them.
- Unavailability is signalled by raising UpstreamDisconnectedError from
  the imperative calls, or by on_disconnected() for drops mid-stream.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional


class UpstreamDisconnectedError(Exception):
    """
    Raised when the engine cannot be reached or the connection dropped.

    The relay recovers by resetting the conversation to IDLE and speaking a
    short apology instead of hanging.
    """


class UpstreamEngine(ABC):
    """
    Abstract interface for a streaming speech-to-speech engine.

    Implementations are responsible for:
    - One logical upstream session per conversation id
    - Forwarding user text/audio input
    - Emitting audio fragments (raw PCM or containers) per turn
    - Best-effort cancellation of the in-progress response

    Non-responsibilities:
    - No decisions about response completeness (idle timer lives in the relay)
    - No client transport
    """

    @abstractmethod
    async def open(self, conversation_id: str, *, voice: Optional[str] = None) -> None:
        """
        Open (or reuse) the upstream session for a conversation.

        Raises:
            UpstreamDisconnectedError if the session cannot be established.
        """
        raise NotImplementedError

    @abstractmethod
    async def send_text(self, conversation_id: str, text: str) -> None:
        """Send a user text turn and request a response."""
        raise NotImplementedError

    @abstractmethod
    async def send_audio(self, conversation_id: str, pcm: bytes) -> None:
        """Append user PCM16 audio to the upstream input buffer."""
        raise NotImplementedError

    @abstractmethod
    async def commit_audio(self, conversation_id: str) -> None:
        """Mark the end of the user's spoken turn."""
        raise NotImplementedError

    @abstractmethod
    async def interrupt(self, conversation_id: str) -> None:
        """
        Ask the engine to stop the in-progress response.

        Contract:
        - Idempotent; a no-op when nothing is in progress.
        - May raise UpstreamDisconnectedError; the relay reports a partial
          interruption but never blocks its local clearing on this call.
        """
        raise NotImplementedError

    @abstractmethod
    async def close(self, conversation_id: str) -> None:
        """Close the conversation's upstream session (idempotent, never raises)."""
        raise NotImplementedError

    async def shutdown(self) -> None:
        """Close every session. Default: nothing to do."""
        return None
