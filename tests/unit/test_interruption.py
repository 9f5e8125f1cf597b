# pylint: disable=missing-module-docstring,missing-function-docstring

import asyncio

import pytest

from audio.fragments import AudioFragment
from conftest import FakeTransport, fast_config
from protocol.messages import ClientEvent
from relay.accumulator import ResponseAccumulator, merge_pending
from relay.conversation import ConversationRegistry
from relay.enums.interrupt_source import InterruptSource
from relay.enums.phase import Phase
from relay.interruption import InterruptionController
from relay.lanes import DeliveryLanes
from relay.models import PendingResponse
from relay.scheduler import ChunkScheduler


class Rig:
    def __init__(self, **config_overrides):
        self.config = fast_config(**config_overrides)
        self.registry = ConversationRegistry()
        self.transport = FakeTransport()
        self.completed = []

        async def on_complete(response):
            self.completed.append(response)

        self.accumulator = ResponseAccumulator(
            config=self.config,
            current_generation=self.registry.current_generation,
            is_delivering=lambda _cid: False,
            on_complete=on_complete,
        )
        self.scheduler = ChunkScheduler(config=self.config)
        self.lanes = DeliveryLanes(config=self.config, is_current=self.registry.is_current)
        self.controller = InterruptionController(
            config=self.config,
            registry=self.registry,
            accumulator=self.accumulator,
            scheduler=self.scheduler,
            lanes=self.lanes,
        )
        self.state = self.registry.create("c1", transport=self.transport)

    async def start_accumulating(self, turn_id: str = "t1") -> None:
        await self.accumulator.on_fragment(
            "c1", turn_id, b"\x01\x00" * 100, generation=self.state.generation
        )
        self.state.active_turn_id = turn_id
        self.state.move_to(Phase.ACCUMULATING)


@pytest.mark.asyncio
async def test_user_interrupt_clears_and_acknowledges():
    rig = Rig(idle_timeout_ms=500)
    await rig.start_accumulating()
    forwarded = []

    async def forward(cid: str) -> None:
        forwarded.append(cid)

    outcome = await rig.controller.interrupt("c1", source=InterruptSource.USER, forward=forward)

    assert outcome is not None
    assert outcome.generation == 1
    assert outcome.discarded == 1
    assert outcome.entered_interrupted
    assert outcome.upstream_ok is True
    assert forwarded == ["c1"]

    assert rig.state.phase is Phase.INTERRUPTED
    assert rig.state.is_interrupted
    assert rig.state.interrupted_turn_id == "t1"
    assert rig.state.interruptions == 1
    assert not rig.accumulator.has_active("c1")
    assert not rig.accumulator.has_timer("c1")

    assert rig.transport.names() == [
        "interruption-confirmed",
        "interruption-successful",
        "interruption-handled",
    ]
    assert rig.transport.of(ClientEvent.INTERRUPTION_HANDLED)[0]["status"] == "complete"

    # The pending response never completes
    await asyncio.sleep(0.05)
    assert rig.completed == []


@pytest.mark.asyncio
async def test_upstream_failure_still_clears_locally():
    rig = Rig()
    await rig.start_accumulating()

    async def forward(_cid: str) -> None:
        raise RuntimeError("socket closed")

    outcome = await rig.controller.interrupt("c1", source=InterruptSource.USER, forward=forward)

    assert outcome is not None
    assert outcome.upstream_ok is False
    assert "socket closed" in (outcome.upstream_error or "")
    assert rig.state.phase is Phase.INTERRUPTED
    assert rig.transport.names() == [
        "interruption-confirmed",
        "interruption-partial",
        "interruption-handled",
    ]
    assert rig.transport.of(ClientEvent.INTERRUPTION_HANDLED)[0]["status"] == "partial"


@pytest.mark.asyncio
async def test_upstream_interrupt_sends_single_notice():
    rig = Rig()
    await rig.start_accumulating()

    outcome = await rig.controller.interrupt("c1", source=InterruptSource.UPSTREAM)

    assert outcome is not None
    assert outcome.upstream_ok is None
    assert rig.transport.names() == ["interruption"]
    assert rig.transport.of(ClientEvent.INTERRUPTION)[0]["source"] == "upstream"


@pytest.mark.asyncio
async def test_interrupt_while_idle_bumps_generation_without_phase_change():
    rig = Rig()

    outcome = await rig.controller.interrupt("c1", source=InterruptSource.USER)

    assert outcome is not None
    assert not outcome.entered_interrupted
    assert rig.state.phase is Phase.IDLE
    assert rig.state.generation == 1
    assert "interruption-handled" in rig.transport.names()


@pytest.mark.asyncio
async def test_interrupted_flag_auto_clears():
    rig = Rig(interrupt_clear_delay_ms=30)
    await rig.start_accumulating()

    await rig.controller.interrupt("c1", source=InterruptSource.USER)
    assert rig.state.phase is Phase.INTERRUPTED

    await asyncio.sleep(0.1)
    assert rig.state.phase is Phase.IDLE
    assert not rig.state.is_interrupted
    # Turn id stays remembered so late fragments are still dropped
    assert rig.state.interrupted_turn_id == "t1"


@pytest.mark.asyncio
async def test_resume_leaves_interrupted_early():
    rig = Rig(interrupt_clear_delay_ms=5_000)
    await rig.start_accumulating()
    await rig.controller.interrupt("c1", source=InterruptSource.USER)

    assert rig.controller.resume("c1") is True
    assert rig.state.phase is Phase.IDLE
    assert rig.controller.resume("c1") is False
    await rig.controller.shutdown()


@pytest.mark.asyncio
async def test_reset_pipeline_drops_parked_plan():
    rig = Rig()
    await rig.start_accumulating()

    pending = PendingResponse("c1", "t0", 0, 0.0, 0.0)
    pending.append(AudioFragment(data=b"\x00\x00" * 48_000, arrived_at=0.0, ts_ms=0))
    planned = merge_pending(pending)
    assert planned is not None
    units = rig.scheduler.schedule(planned)

    generation, discarded = rig.controller.reset_pipeline("c1")

    assert generation == 1
    assert discarded == 1 + len(units)
    assert not rig.scheduler.has_pending("c1")


@pytest.mark.asyncio
async def test_unknown_conversation_returns_none():
    rig = Rig()
    assert await rig.controller.interrupt("nope", source=InterruptSource.USER) is None
