# pylint: disable=missing-module-docstring,missing-function-docstring,protected-access

import asyncio
import base64
from types import SimpleNamespace
from typing import Any, Optional

import pytest

from adapters.upstream.base import UpstreamDisconnectedError
from adapters.upstream.openai_realtime import OpenAIRealtimeEngine, _RealtimeSession
from audio.wav import unwrap


class RecordingSink:
    def __init__(self) -> None:
        self.calls: list[tuple[str, tuple[Any, ...]]] = []
        self.text_turns: list[Optional[str]] = []

    async def on_fragment(self, conversation_id: str, turn_id: str, audio: bytes) -> None:
        self.calls.append(("fragment", (conversation_id, turn_id, audio)))

    async def on_text_ready(
        self, conversation_id: str, text: str, *, turn_id: Optional[str] = None
    ) -> None:
        self.calls.append(("text", (conversation_id, text)))
        self.text_turns.append(turn_id)

    async def on_interrupted(self, conversation_id: str) -> None:
        self.calls.append(("interrupted", (conversation_id,)))

    async def on_disconnected(self, conversation_id: str, reason: str) -> None:
        self.calls.append(("disconnected", (conversation_id, reason)))


class FakeResponseApi:
    def __init__(self) -> None:
        self.cancelled = 0

    async def cancel(self) -> None:
        self.cancelled += 1


def make_engine(sink: RecordingSink, client: Any = None) -> OpenAIRealtimeEngine:
    return OpenAIRealtimeEngine(
        client=client or SimpleNamespace(),
        sink=sink,
        model="gpt-4o-realtime-preview",
        voice="alloy",
        instructions="be brief",
    )


def make_session() -> _RealtimeSession:
    return _RealtimeSession(
        conversation_id="c1",
        voice="alloy",
        connected=asyncio.get_running_loop().create_future(),
    )


def event(etype: str, **fields: Any) -> SimpleNamespace:
    return SimpleNamespace(type=etype, **fields)


@pytest.mark.asyncio
async def test_audio_delta_becomes_wrapped_fragment():
    sink = RecordingSink()
    engine = make_engine(sink)
    session = make_session()
    pcm = b"\x01\x00" * 240

    await engine._dispatch(session, event(
        "response.audio.delta",
        response_id="resp_1",
        delta=base64.b64encode(pcm).decode(),
    ))

    kind, (cid, turn_id, audio) = sink.calls[0]
    assert (kind, cid, turn_id) == ("fragment", "c1", "resp_1")
    header, samples = unwrap(audio)
    assert samples == pcm
    assert header.sample_rate_hz == 24_000


@pytest.mark.asyncio
async def test_ga_event_names_are_handled():
    sink = RecordingSink()
    engine = make_engine(sink)
    session = make_session()

    await engine._dispatch(session, event(
        "response.output_audio.delta",
        response_id="r",
        delta=base64.b64encode(b"\x00\x00").decode(),
    ))
    await engine._dispatch(session, event(
        "response.output_audio_transcript.done", response_id="r", transcript="Hello there."
    ))

    assert [c[0] for c in sink.calls] == ["fragment", "text"]
    assert sink.calls[1][1] == ("c1", "Hello there.")
    assert sink.text_turns == ["r"]


@pytest.mark.asyncio
async def test_speech_started_interrupts_only_while_responding():
    sink = RecordingSink()
    engine = make_engine(sink)
    session = make_session()

    await engine._dispatch(session, event("input_audio_buffer.speech_started"))
    assert sink.calls == []

    await engine._dispatch(session, event("response.created", response=SimpleNamespace(id="r1")))
    await engine._dispatch(session, event("input_audio_buffer.speech_started"))
    assert sink.calls == [("interrupted", ("c1",))]

    await engine._dispatch(session, event("response.done", response=SimpleNamespace(id="r1")))
    assert session.responding == set()


@pytest.mark.asyncio
async def test_error_event_is_logged_not_raised(captured_logs):
    sink = RecordingSink()
    engine = make_engine(sink)

    await engine._dispatch(make_session(), event(
        "error", error=SimpleNamespace(code="rate_limit", message="slow down")
    ))

    assert sink.calls == []
    logged = [r for r in captured_logs if r["event_type"] == "UPSTREAM_ERROR_EVENT"]
    assert logged[0]["code"] == "rate_limit"


@pytest.mark.asyncio
async def test_interrupt_cancels_active_response():
    engine = make_engine(RecordingSink())
    session = make_session()
    api = FakeResponseApi()
    session.connection = SimpleNamespace(response=api)
    engine._sessions["c1"] = session

    await engine.interrupt("c1")
    assert api.cancelled == 0

    session.responding.add("r1")
    await engine.interrupt("c1")
    assert api.cancelled == 1


@pytest.mark.asyncio
async def test_interrupt_without_session_raises():
    engine = make_engine(RecordingSink())
    with pytest.raises(UpstreamDisconnectedError):
        await engine.interrupt("missing")


@pytest.mark.asyncio
async def test_failing_sink_does_not_escape(captured_logs):
    class BrokenSink(RecordingSink):
        async def on_text_ready(
            self, conversation_id: str, text: str, *, turn_id: Optional[str] = None
        ) -> None:
            raise RuntimeError("boom")

    engine = make_engine(BrokenSink())
    await engine._dispatch(make_session(), event("response.text.done", text="hi"))

    assert [r for r in captured_logs if r["event_type"] == "UPSTREAM_SINK_ERROR"]


class HangingConnect:
    """Realtime connect that never completes its handshake."""

    async def __aenter__(self) -> Any:
        await asyncio.Event().wait()

    async def __aexit__(self, *exc_info: Any) -> bool:
        return False


@pytest.mark.asyncio
async def test_close_during_open_releases_waiters():
    client = SimpleNamespace(
        beta=SimpleNamespace(realtime=SimpleNamespace(connect=lambda model: HangingConnect()))
    )
    engine = make_engine(RecordingSink(), client=client)

    first = asyncio.create_task(engine.open("c1"))
    await asyncio.sleep(0.01)
    second = asyncio.create_task(engine.open("c1"))
    await asyncio.sleep(0.01)

    await engine.close("c1")

    for waiter in (first, second):
        with pytest.raises(UpstreamDisconnectedError):
            await asyncio.wait_for(waiter, timeout=1.0)
