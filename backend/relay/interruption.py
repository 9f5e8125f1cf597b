"""
Interruption controller.

Responsibilities:
- Bump the conversation's generation (invalidates every stale continuation)
- Clear accumulator state, the scheduler's parked plan and active lanes
- Move the conversation to INTERRUPTED and arm the auto-clear timer
- Forward the interruption upstream (best effort, user-initiated only)
- Acknowledge to the client, even when the upstream call fails

Non-responsibilities:
- NO fragment intake or delivery
- NO upstream retries
- NO decision about when to interrupt

Local clearing runs without yielding to the event loop, so no fragment,
timer or lane step can interleave with it.
"""

from __future__ import annotations

import asyncio
import time
from asyncio import Task
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping, Optional

from config import DeliveryConfig
from observability.logger import log_event
from observability.metrics import timed
from protocol.messages import ClientEvent
from relay.accumulator import ResponseAccumulator
from relay.conversation import ConversationRegistry, ConversationState
from relay.enums.interrupt_source import InterruptSource
from relay.enums.phase import Phase
from relay.lanes import DeliveryLanes
from relay.protocols import DeliveryTransportError
from relay.scheduler import ChunkScheduler


ForwardInterruptFn = Callable[[str], Awaitable[None]]


def _now_ms() -> int:
    return time.time_ns() // 1_000_000


# ---------------------------------------------------------------------
# Result
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class InterruptOutcome:
    """
    What interrupt() did.

    upstream_ok is None when nothing was forwarded (upstream-originated
    interrupts, or no forwarder).
    """
    conversation_id: str
    source: InterruptSource
    generation: int
    discarded: int
    entered_interrupted: bool
    upstream_ok: Optional[bool] = None
    upstream_error: Optional[str] = None


# ---------------------------------------------------------------------
# Controller
# ---------------------------------------------------------------------

class InterruptionController:
    """
    Cross-cutting reset of one conversation's response pipeline.

    One auto-clear timer per conversation; re-interrupting replaces it.
    """

    def __init__(
        self,
        *,
        config: DeliveryConfig,
        registry: ConversationRegistry,
        accumulator: ResponseAccumulator,
        scheduler: ChunkScheduler,
        lanes: DeliveryLanes,
    ) -> None:
        self._config = config
        self._registry = registry
        self._accumulator = accumulator
        self._scheduler = scheduler
        self._lanes = lanes

        self._clear_timers: dict[str, Task[None]] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def interrupt(
        self,
        conversation_id: str,
        *,
        source: InterruptSource,
        forward: Optional[ForwardInterruptFn] = None,
    ) -> Optional[InterruptOutcome]:
        """
        Interrupt the conversation's current response.

        Returns None for unknown conversations.
        """
        state = self._registry.get(conversation_id)
        if state is None:
            log_event({
                "event_type": "INTERRUPT_UNKNOWN_SESSION",
                "level": "warning",
                "session_id": conversation_id,
                "source": source.value,
            })
            return None

        # --- local, synchronous ---
        previous_phase = state.phase
        with timed("interrupt_local_clear", session_id=conversation_id):
            generation, discarded = self.reset_pipeline(conversation_id)

            entered = previous_phase in (Phase.ACCUMULATING, Phase.DELIVERING)
            if entered:
                state.interrupted_turn_id = state.active_turn_id
                state.move_to(Phase.INTERRUPTED)
                self._arm_clear_timer(conversation_id, generation)
            state.interruptions += 1
            state.touch(self._registry.now())

        log_event({
            "event_type": "INTERRUPT_APPLIED",
            "session_id": conversation_id,
            "source": source.value,
            "generation": generation,
            "previous_phase": previous_phase.value,
            "interrupted_turn_id": state.interrupted_turn_id if entered else None,
            "discarded": discarded,
        })

        # --- acknowledgements / upstream ---
        if source is InterruptSource.UPSTREAM:
            await self._send(state, ClientEvent.INTERRUPTION, {
                "sessionId": conversation_id,
                "source": source.value,
                "timestamp": _now_ms(),
            })
            return InterruptOutcome(
                conversation_id=conversation_id,
                source=source,
                generation=generation,
                discarded=discarded,
                entered_interrupted=entered,
            )

        await self._send(state, ClientEvent.INTERRUPTION_CONFIRMED, {
            "sessionId": conversation_id,
            "timestamp": _now_ms(),
        })

        upstream_ok: Optional[bool] = None
        upstream_error: Optional[str] = None
        if forward is not None:
            try:
                await forward(conversation_id)
                upstream_ok = True
            except Exception as exc:  # pylint: disable=broad-exception-caught
                upstream_ok = False
                upstream_error = f"{type(exc).__name__}: {exc}"
                log_event({
                    "event_type": "INTERRUPT_UPSTREAM_FAILED",
                    "level": "warning",
                    "session_id": conversation_id,
                    "generation": generation,
                    "error": upstream_error,
                })

        if upstream_ok is False:
            await self._send(state, ClientEvent.INTERRUPTION_PARTIAL, {
                "sessionId": conversation_id,
                "message": "Local playback stopped; upstream interrupt failed",
                "error": upstream_error,
                "timestamp": _now_ms(),
            })
        else:
            await self._send(state, ClientEvent.INTERRUPTION_SUCCESSFUL, {
                "sessionId": conversation_id,
                "timestamp": _now_ms(),
            })

        await self._send(state, ClientEvent.INTERRUPTION_HANDLED, {
            "sessionId": conversation_id,
            "status": "partial" if upstream_ok is False else "complete",
            "timestamp": _now_ms(),
        })

        return InterruptOutcome(
            conversation_id=conversation_id,
            source=source,
            generation=generation,
            discarded=discarded,
            entered_interrupted=entered,
            upstream_ok=upstream_ok,
            upstream_error=upstream_error,
        )

    def reset_pipeline(self, conversation_id: str) -> tuple[int, int]:
        """
        Bump the generation and clear accumulator, scheduler and lanes.

        Synchronous. Also used on upstream disconnect and conversation end.
        Returns (new_generation, discarded_count).
        """
        generation = self._registry.bump_generation(conversation_id)
        discarded = self._accumulator.clear(conversation_id)
        discarded += self._scheduler.clear(conversation_id)
        self._lanes.halt(conversation_id)
        return generation, discarded

    def resume(self, conversation_id: str) -> bool:
        """
        Leave INTERRUPTED early because a new user turn started.

        Returns True if the conversation was interrupted.
        """
        self._cancel_clear_timer(conversation_id)
        state = self._registry.get(conversation_id)
        if state is None or state.phase is not Phase.INTERRUPTED:
            return False
        state.move_to(Phase.IDLE)
        return True

    def forget(self, conversation_id: str) -> None:
        self._cancel_clear_timer(conversation_id)

    async def shutdown(self) -> None:
        tasks = list(self._clear_timers.values())
        for task in tasks:
            task.cancel()
        self._clear_timers.clear()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _arm_clear_timer(self, conversation_id: str, generation: int) -> None:
        self._cancel_clear_timer(conversation_id)
        self._clear_timers[conversation_id] = asyncio.create_task(
            self._clear_task(conversation_id, generation)
        )

    def _cancel_clear_timer(self, conversation_id: str) -> None:
        task = self._clear_timers.pop(conversation_id, None)
        if task is not None and not task.done():
            task.cancel()

    async def _clear_task(self, conversation_id: str, generation: int) -> None:
        """Return INTERRUPTED -> IDLE after the configured delay."""
        try:
            await asyncio.sleep(self._config.interrupt_clear_delay_ms / 1000.0)
        except asyncio.CancelledError:
            return

        if self._clear_timers.get(conversation_id) is asyncio.current_task():
            self._clear_timers.pop(conversation_id, None)

        state = self._registry.get(conversation_id)
        if state is None or state.phase is not Phase.INTERRUPTED:
            return

        state.move_to(Phase.IDLE)
        log_event({
            "event_type": "INTERRUPT_CLEARED",
            "session_id": conversation_id,
            "generation": generation,
        })

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
                "event_type": "INTERRUPT_ACK_SEND_FAILED",
                "level": "warning",
                "session_id": state.conversation_id,
                "event": event.value,
                "error": str(exc),
            })
