"""
Delivery lanes.

Responsibilities:
- Send planned units to the client transport as `audio-chunk` events
- Optionally send unit 0 immediately, ahead of the lanes
- Run `lane_count` lanes concurrently; lane k starts after
  k * inter_lane_delay_ms and paces its units by inter_unit_delay_ms
- Check the generation and the halt signal before EVERY unit
- On DeliveryTransportError, stop the lanes and send every unsent unit once,
  in index order, on a single lane with sequential_delay_ms pacing
- Emit one `audio-complete` after the last unit

Non-responsibilities:
- NO unit sizing (scheduler)
- NO response ordering across turns (runtime)
- NO generation increments (interruption controller)

An in-flight write is never cancelled; halting only prevents the next unit.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Callable, Optional, Sequence

from config import DeliveryConfig
from constants import LANE_PORT_BASE
from observability.logger import log_event
from observability.metrics import discard_timer, start_timer, stop_timer
from protocol.messages import ClientEvent, encode_audio
from relay.models import DeliveryUnit
from relay.protocols import ClientTransport, DeliveryTransportError


# ---------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------

def assign_lanes(
    units: Sequence[DeliveryUnit],
    lane_count: int,
) -> list[list[DeliveryUnit]]:
    """
    Partition units into lane buckets by index mod lane_count.

    Each bucket keeps increasing index order.
    """
    count = max(1, lane_count)
    buckets: list[list[DeliveryUnit]] = [[] for _ in range(count)]
    for unit in sorted(units, key=lambda u: u.index):
        buckets[unit.index % count].append(unit)
    return buckets


def unit_payload(unit: DeliveryUnit, *, lane_id: int) -> dict[str, object]:
    """Client-facing `audio-chunk` body for one unit."""
    return {
        "sessionId": unit.conversation_id,
        "turnId": unit.turn_id,
        "chunkIndex": unit.index,
        "totalChunks": unit.total_units,
        "isLastChunk": unit.is_last,
        "isFirstChunk": unit.is_first,
        "laneId": lane_id,
        "portNumber": LANE_PORT_BASE + lane_id,
        "progress": round((unit.index + 1) / unit.total_units * 100, 1),
        "audioData": encode_audio(unit.payload),
    }


# ---------------------------------------------------------------------
# Result
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class DeliveryReport:
    """Outcome of one deliver() call."""
    conversation_id: str
    generation: int
    total_units: int
    sent_indices: tuple[int, ...] = ()
    completed: bool = False
    interrupted: bool = False
    fell_back: bool = False
    failed: bool = False


# ---------------------------------------------------------------------
# One delivery run
# ---------------------------------------------------------------------

@dataclass
class _Run:
    conversation_id: str
    generation: int
    units: tuple[DeliveryUnit, ...]
    transport: ClientTransport
    halt: asyncio.Event
    sent: list[int] = field(default_factory=list)
    transport_failed: bool = False
    first_unit_timer: Optional[str] = None


class DeliveryLanes:
    """
    Concurrent, pacing-aware sender of delivery units.

    is_current(conversation_id, generation) is injected so a stale run stops
    before its next unit.
    """

    def __init__(
        self,
        *,
        config: DeliveryConfig,
        is_current: Callable[[str, int], bool],
    ) -> None:
        self._config = config
        self._is_current = is_current
        self._halts: dict[str, asyncio.Event] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def halt(self, conversation_id: str) -> bool:
        """
        Stop the conversation's active run before its next unit.

        Sleeping lanes wake immediately. Returns True if a run was active.
        """
        event = self._halts.get(conversation_id)
        if event is None:
            return False
        event.set()
        return True

    def is_active(self, conversation_id: str) -> bool:
        return conversation_id in self._halts

    async def deliver(
        self,
        units: Sequence[DeliveryUnit],
        transport: ClientTransport,
    ) -> DeliveryReport:
        """
        Send all units, then `audio-complete`.

        Never raises DeliveryTransportError; failures are reflected in the
        returned report.
        """
        if not units:
            raise ValueError("deliver() requires at least one unit")

        ordered = tuple(sorted(units, key=lambda u: u.index))
        first = ordered[0]
        run = _Run(
            conversation_id=first.conversation_id,
            generation=first.generation,
            units=ordered,
            transport=transport,
            halt=asyncio.Event(),
            first_unit_timer=start_timer("delivery_first_unit_latency"),
        )

        # A newer run for the same conversation supersedes the old halt handle
        previous = self._halts.get(run.conversation_id)
        if previous is not None:
            previous.set()
        self._halts[run.conversation_id] = run.halt

        delivery_timer = start_timer("response_delivery")
        try:
            return await self._deliver(run)
        finally:
            if self._halts.get(run.conversation_id) is run.halt:
                self._halts.pop(run.conversation_id, None)
            if run.first_unit_timer is not None:
                discard_timer(run.first_unit_timer)
            stop_timer(
                delivery_timer,
                session_id=run.conversation_id,
                details={
                    "units": len(run.units),
                    "sent": len(run.sent),
                    "lanes": self._config.lane_count,
                },
            )

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    async def _deliver(self, run: _Run) -> DeliveryReport:
        remaining = list(run.units)

        # Priority path: unit 0 ahead of the lanes
        if self._config.immediate_first_unit and remaining and remaining[0].index == 0:
            head = remaining.pop(0)
            if self._can_send(run):
                try:
                    await self._emit(run, head, lane_id=head.lane_id)
                except DeliveryTransportError as exc:
                    self._note_failure(run, head, exc)

        if remaining and not run.transport_failed and self._can_send(run):
            buckets = assign_lanes(remaining, self._config.lane_count)
            await asyncio.gather(*(
                self._run_lane(run, lane_id, bucket)
                for lane_id, bucket in enumerate(buckets)
                if bucket
            ))

        fell_back = False
        if run.transport_failed and self._can_send(run):
            fell_back = True
            ok = await self._run_sequential(run)
            if not ok:
                return self._report(run, fell_back=True, failed=True)

        if not self._can_send(run) and len(run.sent) < len(run.units):
            log_event({
                "event_type": "DELIVERY_HALTED",
                "session_id": run.conversation_id,
                "generation": run.generation,
                "sent": len(run.sent),
                "total_units": len(run.units),
            })
            return self._report(run, interrupted=True, fell_back=fell_back)

        if len(run.sent) < len(run.units):
            return self._report(run, fell_back=fell_back, failed=True)

        # Last chance to observe an interruption before announcing completion
        if not self._can_send(run):
            return self._report(run, interrupted=True, fell_back=fell_back)

        try:
            await run.transport.send_event(ClientEvent.AUDIO_COMPLETE, {
                "sessionId": run.conversation_id,
                "turnId": run.units[0].turn_id,
                "totalChunks": len(run.units),
            })
        except DeliveryTransportError as exc:
            log_event({
                "event_type": "DELIVERY_COMPLETE_SEND_FAILED",
                "level": "warning",
                "session_id": run.conversation_id,
                "error": str(exc),
            })
            return self._report(run, fell_back=fell_back, failed=True)

        log_event({
            "event_type": "DELIVERY_COMPLETED",
            "session_id": run.conversation_id,
            "turn_id": run.units[0].turn_id,
            "generation": run.generation,
            "total_units": len(run.units),
            "fell_back": fell_back,
        })
        return self._report(run, completed=True, fell_back=fell_back)

    async def _run_lane(self, run: _Run, lane_id: int, bucket: list[DeliveryUnit]) -> None:
        """Send one lane's bucket in index order."""
        if lane_id and self._config.inter_lane_delay_ms:
            await self._pause(run, lane_id * self._config.inter_lane_delay_ms)

        for position, unit in enumerate(bucket):
            if run.transport_failed or not self._can_send(run):
                return
            try:
                await self._emit(run, unit, lane_id=lane_id)
            except DeliveryTransportError as exc:
                self._note_failure(run, unit, exc)
                return
            if position < len(bucket) - 1 and self._config.inter_unit_delay_ms:
                await self._pause(run, self._config.inter_unit_delay_ms)

    async def _run_sequential(self, run: _Run) -> bool:
        """
        Single-lane fallback for every unit not yet sent.

        Returns False if the transport fails again.
        """
        sent = set(run.sent)
        leftover = [u for u in run.units if u.index not in sent]

        log_event({
            "event_type": "DELIVERY_FALLBACK_SEQUENTIAL",
            "level": "warning",
            "session_id": run.conversation_id,
            "generation": run.generation,
            "remaining_units": len(leftover),
        })

        for position, unit in enumerate(leftover):
            if not self._can_send(run):
                return True
            if position and self._config.sequential_delay_ms:
                await self._pause(run, self._config.sequential_delay_ms)
                if not self._can_send(run):
                    return True
            try:
                await self._emit(run, unit, lane_id=0)
            except DeliveryTransportError as exc:
                log_event({
                    "event_type": "DELIVERY_FALLBACK_FAILED",
                    "level": "error",
                    "session_id": run.conversation_id,
                    "generation": run.generation,
                    "chunk_index": unit.index,
                    "error": str(exc),
                })
                return False
        return True

    async def _emit(self, run: _Run, unit: DeliveryUnit, *, lane_id: int) -> None:
        await run.transport.send_event(
            ClientEvent.AUDIO_CHUNK,
            unit_payload(unit, lane_id=lane_id),
        )
        run.sent.append(unit.index)

        if run.first_unit_timer is not None:
            timer_id, run.first_unit_timer = run.first_unit_timer, None
            stop_timer(timer_id, session_id=run.conversation_id)

        log_event({
            "event_type": "DELIVERY_UNIT_SENT",
            "level": "debug",
            "session_id": run.conversation_id,
            "generation": run.generation,
            "chunk_index": unit.index,
            "total_units": unit.total_units,
            "lane_id": lane_id,
        })

    def _can_send(self, run: _Run) -> bool:
        return (
            not run.halt.is_set()
            and self._is_current(run.conversation_id, run.generation)
        )

    async def _pause(self, run: _Run, delay_ms: int) -> None:
        """Sleep, but wake early if the run is halted."""
        try:
            await asyncio.wait_for(run.halt.wait(), timeout=delay_ms / 1000.0)
        except asyncio.TimeoutError:
            pass

    @staticmethod
    def _note_failure(run: _Run, unit: DeliveryUnit, exc: Exception) -> None:
        run.transport_failed = True
        log_event({
            "event_type": "DELIVERY_LANE_FAILED",
            "level": "warning",
            "session_id": run.conversation_id,
            "generation": run.generation,
            "chunk_index": unit.index,
            "lane_id": unit.lane_id,
            "error": str(exc),
        })

    @staticmethod
    def _report(
        run: _Run,
        *,
        completed: bool = False,
        interrupted: bool = False,
        fell_back: bool = False,
        failed: bool = False,
    ) -> DeliveryReport:
        return DeliveryReport(
            conversation_id=run.conversation_id,
            generation=run.generation,
            total_units=len(run.units),
            sent_indices=tuple(run.sent),
            completed=completed,
            interrupted=interrupted,
            fell_back=fell_back,
            failed=failed,
        )
