"""
OpenAI Realtime upstream engine.

One realtime WebSocket session per conversation, opened through the
AsyncOpenAI client. Server events are mapped onto the relay's sink:

    response.audio.delta / response.output_audio.delta
        -> on_fragment(conversation_id, response_id, WAV-wrapped PCM16)
    response.audio_transcript.done / response.output_audio_transcript.done
    response.text.done / response.output_text.done
        -> on_text_ready(conversation_id, text, turn_id=response_id)
    input_audio_buffer.speech_started (while a response is in progress)
        -> on_interrupted(conversation_id)
    connection loss
        -> on_disconnected(conversation_id, reason), then bounded reconnect

Audio fragments are wrapped in a container so the accumulator always knows
their format (PCM16 24kHz mono).
"""

from __future__ import annotations

import asyncio
import base64
from dataclasses import dataclass, field
from typing import Any, Optional

from openai import AsyncOpenAI

from adapters.upstream.base import UpstreamDisconnectedError, UpstreamEngine
from adapters.upstream.reconnect import (
    ReconnectAttempt,
    get_reconnect_delay_ms,
    next_attempt,
    reset_attempt,
    should_reconnect,
)
from audio.wav import wrap
from constants import UPSTREAM_PCM_FORMAT, PcmFormat
from observability.logger import log_event
from relay.protocols import UpstreamEventSink


_AUDIO_DELTA_EVENTS = frozenset({
    "response.audio.delta",
    "response.output_audio.delta",
})
_TRANSCRIPT_DONE_EVENTS = frozenset({
    "response.audio_transcript.done",
    "response.output_audio_transcript.done",
})
_TEXT_DONE_EVENTS = frozenset({
    "response.text.done",
    "response.output_text.done",
})


@dataclass
class _RealtimeSession:
    conversation_id: str
    voice: str
    connected: asyncio.Future[None]
    connection: Any = None
    task: Optional[asyncio.Task[None]] = None
    responding: set[str] = field(default_factory=set)
    closing: bool = False


class OpenAIRealtimeEngine(UpstreamEngine):
    """
    Realtime speech-to-speech engine backed by the OpenAI Realtime API.

    The client is injected (created once per process in the app factory).
    """

    def __init__(
        self,
        *,
        client: AsyncOpenAI,
        sink: UpstreamEventSink,
        model: str,
        voice: str,
        instructions: str,
        server_vad: bool = True,
        pcm_format: PcmFormat = UPSTREAM_PCM_FORMAT,
    ) -> None:
        self._client = client
        self._sink = sink
        self._model = model
        self._default_voice = voice
        self._instructions = instructions
        self._server_vad = server_vad
        self._format = pcm_format

        self._sessions: dict[str, _RealtimeSession] = {}

    # ------------------------------------------------------------------
    # UpstreamEngine
    # ------------------------------------------------------------------

    async def open(self, conversation_id: str, *, voice: Optional[str] = None) -> None:
        session = self._sessions.get(conversation_id)
        if session is not None and session.task is not None and not session.task.done():
            await self._await_connected(session)
            return

        session = _RealtimeSession(
            conversation_id=conversation_id,
            voice=voice or self._default_voice,
            connected=asyncio.get_running_loop().create_future(),
        )
        self._sessions[conversation_id] = session
        session.task = asyncio.create_task(self._run(session))

        await self._await_connected(session)

    async def send_text(self, conversation_id: str, text: str) -> None:
        connection = await self._require_connection(conversation_id)
        try:
            await connection.conversation.item.create(item={
                "type": "message",
                "role": "user",
                "content": [{"type": "input_text", "text": text}],
            })
            await connection.response.create()
        except Exception as exc:  # pylint: disable=broad-exception-caught
            raise UpstreamDisconnectedError(f"send_text failed: {exc}") from exc

    async def send_audio(self, conversation_id: str, pcm: bytes) -> None:
        connection = await self._require_connection(conversation_id)
        try:
            await connection.input_audio_buffer.append(
                audio=base64.b64encode(pcm).decode("ascii")
            )
        except Exception as exc:  # pylint: disable=broad-exception-caught
            raise UpstreamDisconnectedError(f"send_audio failed: {exc}") from exc

    async def commit_audio(self, conversation_id: str) -> None:
        connection = await self._require_connection(conversation_id)
        if self._server_vad:
            # Server-side VAD commits and starts responses on its own
            return
        try:
            await connection.input_audio_buffer.commit()
            await connection.response.create()
        except Exception as exc:  # pylint: disable=broad-exception-caught
            raise UpstreamDisconnectedError(f"commit_audio failed: {exc}") from exc

    async def interrupt(self, conversation_id: str) -> None:
        session = self._sessions.get(conversation_id)
        if session is None or session.connection is None:
            raise UpstreamDisconnectedError("no upstream session")
        if not session.responding:
            return
        try:
            await session.connection.response.cancel()
        except Exception as exc:  # pylint: disable=broad-exception-caught
            raise UpstreamDisconnectedError(f"response.cancel failed: {exc}") from exc

    async def close(self, conversation_id: str) -> None:
        session = self._sessions.pop(conversation_id, None)
        if session is None:
            return
        session.closing = True
        task = session.task
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def shutdown(self) -> None:
        for conversation_id in list(self._sessions):
            await self.close(conversation_id)

    # ------------------------------------------------------------------
    # Session loop
    # ------------------------------------------------------------------

    def _session_config(self, voice: str) -> dict[str, Any]:
        return {
            "modalities": ["audio", "text"],
            "voice": voice,
            "instructions": self._instructions,
            "input_audio_format": "pcm16",
            "output_audio_format": "pcm16",
            "turn_detection": {"type": "server_vad"} if self._server_vad else None,
        }

    async def _run(self, session: _RealtimeSession) -> None:
        """Connect, pump server events, reconnect with backoff on loss."""
        cid = session.conversation_id
        attempt: ReconnectAttempt = reset_attempt()

        while not session.closing:
            try:
                async with self._client.beta.realtime.connect(model=self._model) as connection:
                    await connection.session.update(session=self._session_config(session.voice))
                    session.connection = connection
                    attempt = reset_attempt()
                    if not session.connected.done():
                        session.connected.set_result(None)
                    log_event({
                        "event_type": "UPSTREAM_CONNECTED",
                        "session_id": cid,
                        "model": self._model,
                    })

                    async for event in connection:
                        await self._dispatch(session, event)

                reason = "connection_closed"

            except asyncio.CancelledError:
                session.connection = None
                if not session.connected.done():
                    # close() during open(): release anyone waiting on the connect
                    session.connected.set_exception(UpstreamDisconnectedError("closed"))
                raise

            except Exception as exc:  # pylint: disable=broad-exception-caught
                reason = f"{type(exc).__name__}: {exc}"

            session.connection = None
            session.responding.clear()
            if session.closing:
                if not session.connected.done():
                    session.connected.set_exception(UpstreamDisconnectedError("closed"))
                return

            log_event({
                "event_type": "UPSTREAM_DISCONNECTED",
                "level": "warning",
                "session_id": cid,
                "reason": reason,
                "attempt": attempt.attempt,
            })

            if not session.connected.done():
                # Initial connect failed; the caller of open() gets the error
                session.connected.set_exception(UpstreamDisconnectedError(reason))
                self._sessions.pop(cid, None)
                return

            await self._notify(self._sink.on_disconnected(cid, reason), cid, "on_disconnected")

            if not should_reconnect(attempt):
                log_event({
                    "event_type": "UPSTREAM_RECONNECT_EXHAUSTED",
                    "level": "error",
                    "session_id": cid,
                })
                return

            await asyncio.sleep(get_reconnect_delay_ms(attempt) / 1000.0)
            attempt = next_attempt(attempt)

    async def _dispatch(self, session: _RealtimeSession, event: Any) -> None:
        """Map one server event onto the sink."""
        cid = session.conversation_id
        etype = getattr(event, "type", "")

        if etype == "response.created":
            session.responding.add(event.response.id)

        elif etype == "response.done":
            session.responding.discard(event.response.id)

        elif etype in _AUDIO_DELTA_EVENTS:
            pcm = base64.b64decode(event.delta)
            if not pcm:
                return
            fragment = wrap(
                pcm,
                sample_rate_hz=self._format.sample_rate_hz,
                channels=self._format.channels,
                bits_per_sample=self._format.bits_per_sample,
            )
            await self._notify(
                self._sink.on_fragment(cid, event.response_id, fragment), cid, "on_fragment"
            )

        elif etype in _TRANSCRIPT_DONE_EVENTS:
            if event.transcript:
                await self._notify(
                    self._sink.on_text_ready(
                        cid, event.transcript, turn_id=getattr(event, "response_id", None)
                    ),
                    cid,
                    "on_text_ready",
                )

        elif etype in _TEXT_DONE_EVENTS:
            if event.text:
                await self._notify(
                    self._sink.on_text_ready(
                        cid, event.text, turn_id=getattr(event, "response_id", None)
                    ),
                    cid,
                    "on_text_ready",
                )

        elif etype == "input_audio_buffer.speech_started":
            if session.responding:
                await self._notify(self._sink.on_interrupted(cid), cid, "on_interrupted")

        elif etype == "error":
            error = getattr(event, "error", None)
            log_event({
                "event_type": "UPSTREAM_ERROR_EVENT",
                "level": "warning",
                "session_id": cid,
                "code": getattr(error, "code", None),
                "message": getattr(error, "message", None),
            })

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _await_connected(self, session: _RealtimeSession) -> None:
        try:
            await asyncio.shield(session.connected)
        except UpstreamDisconnectedError:
            raise
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # pylint: disable=broad-exception-caught
            raise UpstreamDisconnectedError(str(exc)) from exc

    async def _require_connection(self, conversation_id: str) -> Any:
        """Return a live connection, reopening the session once if needed."""
        session = self._sessions.get(conversation_id)
        if session is None or session.task is None or session.task.done():
            voice = session.voice if session is not None else None
            await self.open(conversation_id, voice=voice)
            session = self._sessions.get(conversation_id)

        if session is None or session.connection is None:
            raise UpstreamDisconnectedError("upstream session not connected")
        return session.connection

    @staticmethod
    async def _notify(call: Any, conversation_id: str, name: str) -> None:
        """Await a sink callback; a failing sink must not kill the session loop."""
        try:
            await call
        except Exception as exc:  # pylint: disable=broad-exception-caught
            log_event({
                "event_type": "UPSTREAM_SINK_ERROR",
                "level": "error",
                "session_id": conversation_id,
                "callback": name,
                "exception": type(exc).__name__,
                "message": str(exc),
            })
