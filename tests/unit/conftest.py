# pylint: disable=missing-module-docstring,missing-function-docstring

from __future__ import annotations

import asyncio
import json
from typing import Any, Callable, Mapping, Optional

import pytest

from adapters.upstream.base import UpstreamDisconnectedError, UpstreamEngine
from config import DeliveryConfig
from observability import logger
from protocol.messages import ClientEvent
from relay.protocols import DeliveryTransportError


# ---------------------------------------------------------------------
# Log capture
# ---------------------------------------------------------------------

@pytest.fixture(autouse=True)
def captured_logs(monkeypatch: pytest.MonkeyPatch) -> list[dict[str, Any]]:
    """Every test writes logs here instead of stdout, debug level included."""
    records: list[dict[str, Any]] = []

    def fake_print(line: str) -> None:
        records.append(json.loads(line))

    monkeypatch.setattr(logger, "_print", fake_print)
    monkeypatch.setattr(logger, "_min_level", logger._LEVELS["DEBUG"])  # pylint: disable=protected-access
    return records


def events_of(records: list[dict[str, Any]], event_type: str) -> list[dict[str, Any]]:
    return [r for r in records if r.get("event_type") == event_type]


# ---------------------------------------------------------------------
# Client transport
# ---------------------------------------------------------------------

class FakeTransport:
    """
    Records every event. Optionally fails chosen audio-chunk indices once,
    or fails everything after `fail_all_after` successful sends.
    """

    def __init__(
        self,
        *,
        fail_chunks_once: tuple[int, ...] = (),
        fail_all_after: Optional[int] = None,
        on_send: Optional[Callable[[ClientEvent, Mapping[str, Any]], None]] = None,
    ) -> None:
        self.sent: list[tuple[ClientEvent, dict[str, Any]]] = []
        self._fail_once = set(fail_chunks_once)
        self._fail_all_after = fail_all_after
        self._on_send = on_send
        self.failures = 0

    async def send_event(self, event: ClientEvent, data: Mapping[str, Any]) -> None:
        if self._fail_all_after is not None and len(self.sent) >= self._fail_all_after:
            self.failures += 1
            raise DeliveryTransportError("socket gone")
        if event is ClientEvent.AUDIO_CHUNK and data["chunkIndex"] in self._fail_once:
            self._fail_once.discard(data["chunkIndex"])
            self.failures += 1
            raise DeliveryTransportError("write failed")

        self.sent.append((event, dict(data)))
        if self._on_send is not None:
            self._on_send(event, data)
        await asyncio.sleep(0)

    def of(self, event: ClientEvent) -> list[dict[str, Any]]:
        return [data for ev, data in self.sent if ev is event]

    def names(self) -> list[str]:
        return [ev.value for ev, _ in self.sent]


# ---------------------------------------------------------------------
# Upstream engine
# ---------------------------------------------------------------------

class FakeEngine(UpstreamEngine):
    """In-memory engine: records calls, optionally raises on each call."""

    def __init__(
        self,
        *,
        fail_open: bool = False,
        fail_send: bool = False,
        fail_interrupt: bool = False,
    ) -> None:
        self.fail_open = fail_open
        self.fail_send = fail_send
        self.fail_interrupt = fail_interrupt

        self.opened: list[str] = []
        self.closed: list[str] = []
        self.texts: list[tuple[str, str]] = []
        self.audio: list[tuple[str, bytes]] = []
        self.commits: list[str] = []
        self.interrupts: list[str] = []
        self.shut_down = False

    async def open(self, conversation_id: str, *, voice: Optional[str] = None) -> None:
        if self.fail_open:
            raise UpstreamDisconnectedError("connect refused")
        self.opened.append(conversation_id)

    async def send_text(self, conversation_id: str, text: str) -> None:
        if self.fail_send:
            raise UpstreamDisconnectedError("send failed")
        self.texts.append((conversation_id, text))

    async def send_audio(self, conversation_id: str, pcm: bytes) -> None:
        if self.fail_send:
            raise UpstreamDisconnectedError("send failed")
        self.audio.append((conversation_id, pcm))

    async def commit_audio(self, conversation_id: str) -> None:
        if self.fail_send:
            raise UpstreamDisconnectedError("send failed")
        self.commits.append(conversation_id)

    async def interrupt(self, conversation_id: str) -> None:
        if self.fail_interrupt:
            raise UpstreamDisconnectedError("cancel failed")
        self.interrupts.append(conversation_id)

    async def close(self, conversation_id: str) -> None:
        self.closed.append(conversation_id)

    async def shutdown(self) -> None:
        self.shut_down = True


# ---------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------

def fast_config(**overrides: Any) -> DeliveryConfig:
    """Delivery tuning with short timers so async tests finish quickly."""
    values: dict[str, Any] = {
        "idle_timeout_ms": 30,
        "force_completion_ceiling_ms": 1_000,
        "inter_unit_delay_ms": 1,
        "inter_lane_delay_ms": 1,
        "sequential_delay_ms": 1,
        "interrupt_clear_delay_ms": 50,
    }
    values.update(overrides)
    return DeliveryConfig(**values)


async def wait_until(predicate: Callable[[], bool], timeout_s: float = 2.0) -> bool:
    """Poll until predicate() is true or the timeout expires."""
    deadline = asyncio.get_running_loop().time() + timeout_s
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            return False
        await asyncio.sleep(0.005)
    return True


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def engine() -> FakeEngine:
    return FakeEngine()
