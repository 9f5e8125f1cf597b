"""
Relay runtime.

One RelayRuntime per process. It wires the accumulator, scheduler, lanes and
interruption controller around an injected ConversationRegistry, implements
the UpstreamEventSink the engine reports into, and exposes the client-facing
operations the session gateway calls.

Responsibilities:
- Phase transitions (IDLE -> ACCUMULATING -> DELIVERING -> IDLE)
- One delivery task per conversation; responses delivered in turn order
- Dropping fragments of an interrupted turn
- Recovery from upstream loss (local reset + fallback response)
- Conversation lifecycle (start, end, inactivity sweep, shutdown)

Non-responsibilities:
- NO WebSocket handling (session gateway)
- NO sizing / pacing policy (scheduler / lanes)
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Mapping, Optional

from adapters.upstream.base import UpstreamDisconnectedError, UpstreamEngine
from config import DeliveryConfig
from observability.logger import log_event
from protocol.messages import ClientEvent
from relay.accumulator import ResponseAccumulator
from relay.conversation import ConversationRegistry, ConversationState
from relay.enums.interrupt_source import InterruptSource
from relay.enums.phase import Phase
from relay.fallback import fallback_response, fallback_text
from relay.interruption import InterruptionController, InterruptOutcome
from relay.lanes import DeliveryLanes
from relay.models import CompleteResponse
from relay.protocols import ClientTransport, DeliveryTransportError
from relay.scheduler import ChunkScheduler


def _now_ms() -> int:
    return time.time_ns() // 1_000_000


class RelayRuntime:
    """
    Per-process relay core.

    The engine is attached after construction because it needs this runtime
    as its event sink.
    """

    def __init__(
        self,
        *,
        config: DeliveryConfig,
        registry: ConversationRegistry,
        engine: Optional[UpstreamEngine] = None,
    ) -> None:
        self._config = config
        self._registry = registry
        self._engine = engine

        self._scheduler = ChunkScheduler(config=config)
        self._lanes = DeliveryLanes(config=config, is_current=registry.is_current)
        self._accumulator = ResponseAccumulator(
            config=config,
            current_generation=registry.current_generation,
            is_delivering=self.is_delivering,
            on_complete=self._start_delivery,
            on_dropped=self._settle,
        )
        self._interruptions = InterruptionController(
            config=config,
            registry=registry,
            accumulator=self._accumulator,
            scheduler=self._scheduler,
            lanes=self._lanes,
        )

        self._deliveries: dict[str, asyncio.Task[None]] = {}

    # ------------------------------------------------------------------
    # Wiring
    # ------------------------------------------------------------------

    def attach_engine(self, engine: UpstreamEngine) -> None:
        self._engine = engine

    @property
    def has_engine(self) -> bool:
        return self._engine is not None

    @property
    def registry(self) -> ConversationRegistry:
        return self._registry

    @property
    def accumulator(self) -> ResponseAccumulator:
        return self._accumulator

    @property
    def config(self) -> DeliveryConfig:
        return self._config

    def is_delivering(self, conversation_id: str) -> bool:
        task = self._deliveries.get(conversation_id)
        return task is not None and not task.done()

    # ------------------------------------------------------------------
    # Client-facing operations
    # ------------------------------------------------------------------

    async def start_conversation(
        self,
        conversation_id: str,
        transport: ClientTransport,
        *,
        voice: Optional[str] = None,
    ) -> ConversationState:
        """
        Register the conversation and open its upstream session.

        An unreachable engine is logged, not raised: the first input will
        get the fallback response.
        """
        state = self._registry.create(conversation_id, transport=transport, voice=voice)
        log_event({
            "event_type": "CONVERSATION_STARTED",
            "session_id": conversation_id,
            "voice": voice,
        })

        if self._engine is not None:
            try:
                await self._engine.open(conversation_id, voice=voice)
            except UpstreamDisconnectedError as exc:
                log_event({
                    "event_type": "UPSTREAM_UNAVAILABLE",
                    "level": "warning",
                    "session_id": conversation_id,
                    "error": str(exc),
                })
        return state

    async def send_text(self, conversation_id: str, text: str) -> bool:
        """Start a text turn. Returns False if the fallback was used instead."""
        state = self._begin_turn(conversation_id)
        if state is None:
            return False
        state.last_user_text = text
        state.add_to_history("user", text, _now_ms())

        try:
            await self._require_engine().send_text(conversation_id, text)
        except UpstreamDisconnectedError as exc:
            await self._fallback(state, reason=str(exc))
            return False
        return True

    async def send_audio(self, conversation_id: str, pcm: bytes) -> bool:
        """Stream user audio upstream. Failures are logged; the turn end reports them."""
        state = self._registry.get(conversation_id)
        if state is None:
            return False
        state.touch(self._registry.now())

        try:
            await self._require_engine().send_audio(conversation_id, pcm)
        except UpstreamDisconnectedError as exc:
            log_event({
                "event_type": "UPSTREAM_SEND_FAILED",
                "level": "warning",
                "session_id": conversation_id,
                "what": "audio",
                "error": str(exc),
            })
            return False
        return True

    async def end_user_turn(self, conversation_id: str) -> bool:
        """The user stopped speaking; ask the engine to respond."""
        state = self._begin_turn(conversation_id)
        if state is None:
            return False
        state.last_user_text = None

        try:
            await self._require_engine().commit_audio(conversation_id)
        except UpstreamDisconnectedError as exc:
            await self._fallback(state, reason=str(exc))
            return False
        return True

    async def interrupt(
        self,
        conversation_id: str,
        *,
        source: InterruptSource = InterruptSource.USER,
    ) -> Optional[InterruptOutcome]:
        forward = None
        if source is InterruptSource.USER and self._engine is not None:
            forward = self._engine.interrupt
        return await self._interruptions.interrupt(
            conversation_id,
            source=source,
            forward=forward,
        )

    async def end_conversation(self, conversation_id: str, *, reason: str = "client") -> bool:
        """Tear down all per-conversation state. Idempotent."""
        state = self._registry.get(conversation_id)
        if state is None:
            return False

        self._interruptions.reset_pipeline(conversation_id)
        self._interruptions.forget(conversation_id)
        self._accumulator.forget(conversation_id)
        now = self._registry.now()
        stats = state.snapshot(now)
        self._registry.end(conversation_id)

        if self._engine is not None:
            await self._engine.close(conversation_id)

        log_event({
            "event_type": "CONVERSATION_ENDED",
            "session_id": conversation_id,
            "reason": reason,
            "stats": stats,
        })
        return True

    async def sweep_inactive(self, max_idle_s: float) -> list[str]:
        """End conversations idle for longer than max_idle_s."""
        expired = self._registry.inactive_ids(max_idle_s)
        for conversation_id in expired:
            await self.end_conversation(conversation_id, reason="inactivity")
        return expired

    def session_info(self, conversation_id: str) -> Optional[dict[str, Any]]:
        state = self._registry.get(conversation_id)
        if state is None:
            return None
        info = state.snapshot(self._registry.now())
        info["queuedResponses"] = self._accumulator.queue_depth(conversation_id)
        info["delivering"] = self.is_delivering(conversation_id)
        return info

    def status(self) -> dict[str, Any]:
        return {
            **self._registry.statistics(),
            "active_deliveries": sum(1 for cid in self._deliveries if self.is_delivering(cid)),
            "lane_count": self._config.lane_count,
        }

    async def shutdown(self) -> None:
        """End every conversation and wait for background tasks."""
        for state in self._registry:
            await self.end_conversation(state.conversation_id, reason="shutdown")

        await self._accumulator.shutdown()
        await self._interruptions.shutdown()

        tasks = list(self._deliveries.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._deliveries.clear()

        if self._engine is not None:
            await self._engine.shutdown()

    # ------------------------------------------------------------------
    # UpstreamEventSink
    # ------------------------------------------------------------------

    async def on_fragment(self, conversation_id: str, turn_id: str, audio: bytes) -> None:
        state = self._registry.get(conversation_id)
        if state is None:
            log_event({
                "event_type": "FRAGMENT_UNKNOWN_SESSION",
                "level": "debug",
                "session_id": conversation_id,
                "turn_id": turn_id,
            })
            return

        if turn_id == state.interrupted_turn_id:
            log_event({
                "event_type": "FRAGMENT_DROPPED_INTERRUPTED",
                "level": "debug",
                "session_id": conversation_id,
                "turn_id": turn_id,
                "bytes": len(audio),
            })
            return

        if state.phase is Phase.INTERRUPTED and audio:
            # The next response started inside the clear window
            self._interruptions.resume(conversation_id)
            log_event({
                "event_type": "INTERRUPT_RESUMED_BY_NEW_TURN",
                "session_id": conversation_id,
                "turn_id": turn_id,
                "generation": state.generation,
            })

        accepted = await self._accumulator.on_fragment(
            conversation_id,
            turn_id,
            audio,
            generation=state.generation,
        )
        if not accepted:
            return

        state.active_turn_id = turn_id
        state.touch(self._registry.now())
        if state.phase is Phase.IDLE and self._accumulator.has_active(conversation_id):
            state.move_to(Phase.ACCUMULATING)

    async def on_text_ready(
        self,
        conversation_id: str,
        text: str,
        *,
        turn_id: Optional[str] = None,
    ) -> None:
        state = self._registry.get(conversation_id)
        if state is None or not text.strip():
            return
        if turn_id is not None and turn_id == state.interrupted_turn_id:
            log_event({
                "event_type": "TEXT_DROPPED_INTERRUPTED",
                "level": "debug",
                "session_id": conversation_id,
                "turn_id": turn_id,
            })
            return

        state.add_to_history("assistant", text, _now_ms())
        await self._send(state, ClientEvent.TEXT_RESPONSE, {
            "sessionId": conversation_id,
            "text": text,
            "timestamp": _now_ms(),
        })

    async def on_interrupted(self, conversation_id: str) -> None:
        await self._interruptions.interrupt(conversation_id, source=InterruptSource.UPSTREAM)

    async def on_disconnected(self, conversation_id: str, reason: str) -> None:
        state = self._registry.get(conversation_id)
        if state is None:
            return

        in_flight = state.phase in (Phase.ACCUMULATING, Phase.DELIVERING)
        generation, discarded = self._interruptions.reset_pipeline(conversation_id)
        self._interruptions.forget(conversation_id)
        state.move_to(Phase.IDLE)

        log_event({
            "event_type": "UPSTREAM_LOST_MID_RESPONSE" if in_flight else "UPSTREAM_LOST_IDLE",
            "level": "warning",
            "session_id": conversation_id,
            "reason": reason,
            "generation": generation,
            "discarded": discarded,
        })

        if in_flight:
            await self._fallback(state, reason=reason)

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    async def _start_delivery(self, response: CompleteResponse) -> None:
        """Accumulator hand-off: plan units and start the delivery task."""
        cid = response.conversation_id
        state = self._registry.get(cid)
        if state is None or not self._registry.is_current(cid, response.generation):
            return

        units = self._scheduler.schedule(response)
        if not units:
            self._scheduler.clear(cid)
            return

        if not state.move_to(Phase.DELIVERING):
            self._scheduler.clear(cid)
            return

        self._deliveries[cid] = asyncio.create_task(self._deliver(cid, response.generation))

    async def _deliver(self, conversation_id: str, generation: int) -> None:
        current = asyncio.current_task()
        try:
            units = self._scheduler.take(conversation_id)
            state = self._registry.get(conversation_id)
            if (
                units
                and state is not None
                and state.transport is not None
                and self._registry.is_current(conversation_id, generation)
            ):
                report = await self._lanes.deliver(units, state.transport)
                if report.completed:
                    state.responses_delivered += 1

        except Exception as exc:  # pylint: disable=broad-exception-caught
            log_event({
                "event_type": "DELIVERY_TASK_ERROR",
                "level": "error",
                "session_id": conversation_id,
                "generation": generation,
                "exception": type(exc).__name__,
                "message": str(exc),
            })

        finally:
            if self._deliveries.get(conversation_id) is current:
                self._deliveries.pop(conversation_id, None)

        await self._advance(conversation_id)

    async def _advance(self, conversation_id: str) -> None:
        """After a delivery ends: start the next queued response or settle the phase."""
        state = self._registry.get(conversation_id)
        if state is None or self.is_delivering(conversation_id):
            return

        while True:
            nxt = self._accumulator.take_next(conversation_id)
            if nxt is None:
                break
            await self._start_delivery(nxt)
            if self.is_delivering(conversation_id):
                return

        if state.phase is Phase.DELIVERING:
            if self._accumulator.has_active(conversation_id):
                state.move_to(Phase.ACCUMULATING)
            else:
                state.move_to(Phase.IDLE)

    def _settle(self, conversation_id: str) -> None:
        """A completion was dropped: leave ACCUMULATING if nothing else is pending."""
        state = self._registry.get(conversation_id)
        if (
            state is None
            or state.phase is not Phase.ACCUMULATING
            or self.is_delivering(conversation_id)
            or self._accumulator.has_active(conversation_id)
        ):
            return
        state.move_to(Phase.IDLE)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _begin_turn(self, conversation_id: str) -> Optional[ConversationState]:
        state = self._registry.get(conversation_id)
        if state is None:
            log_event({
                "event_type": "TURN_UNKNOWN_SESSION",
                "level": "warning",
                "session_id": conversation_id,
            })
            return None

        self._interruptions.resume(conversation_id)
        state.turn_count += 1
        state.touch(self._registry.now())
        return state

    def _require_engine(self) -> UpstreamEngine:
        if self._engine is None:
            raise UpstreamDisconnectedError("no upstream engine configured")
        return self._engine

    async def _fallback(self, state: ConversationState, *, reason: str) -> None:
        """Apology text + placeholder tone, delivered in turn order."""
        cid = state.conversation_id
        text = fallback_text(state.last_user_text)
        state.add_to_history("assistant", text, _now_ms())

        log_event({
            "event_type": "UPSTREAM_FALLBACK_RESPONSE",
            "level": "warning",
            "session_id": cid,
            "reason": reason,
        })

        await self._send(state, ClientEvent.TEXT_RESPONSE, {
            "sessionId": cid,
            "text": text,
            "isFallback": True,
            "timestamp": _now_ms(),
        })
        await self._accumulator.submit(fallback_response(cid, generation=state.generation))

    async def _send(
        self,
        state: ConversationState,
        event: ClientEvent,
        data: Mapping[str, Any],
    ) -> None:
        if state.transport is None:
            return
        try:
            await state.transport.send_event(event, data)
        except DeliveryTransportError as exc:
            log_event({
                "event_type": "CLIENT_SEND_FAILED",
                "level": "warning",
                "session_id": state.conversation_id,
                "event": event.value,
                "error": str(exc),
            })
