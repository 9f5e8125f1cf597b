"""
Response accumulator.

Responsibilities:
- Collect upstream audio fragments per conversation, in arrival order
- Detect response completion with an idle timer (re-armed on every fragment)
- Guarantee progress with a force-completion ceiling measured from the first
  fragment of the response
- Merge fragments into one CompleteResponse (one header, concatenated samples)
- Hand a completed response to the delivery side, or queue it (FIFO) while an
  earlier response is still being delivered

Non-responsibilities:
- NO unit sizing or lane scheduling
- NO phase transitions (the runtime owns ConversationState)
- NO generation increments (read-only access via callback)

Exactly one timer task exists per conversation. It is always cancelled before
a new one is armed, and a timer that fires for a stale generation is a no-op.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from audio.fragments import AudioFragment
from audio.wav import MalformedAudioError, reheader, split_samples
from config import DeliveryConfig
from constants import RAW_PCM_FORMAT, RESPONSE_QUEUE_MAX, PcmFormat
from observability.logger import log_event
from relay.models import CompleteResponse, PendingResponse
from relay.queues import ResponseQueue


OnResponseComplete = Callable[[CompleteResponse], Awaitable[None]]
OnNothingHandedOff = Callable[[str], None]


def _now_ms() -> int:
    return time.time_ns() // 1_000_000


# ---------------------------------------------------------------------
# Merge (pure)
# ---------------------------------------------------------------------

def merge_pending(
    pending: PendingResponse,
    *,
    default_format: PcmFormat = RAW_PCM_FORMAT,
) -> Optional[CompleteResponse]:
    """
    Merge a pending response's fragments into one CompleteResponse.

    - The first valid container header wins; its format describes the result
    - Sample regions are concatenated in arrival order
    - Malformed containers are treated as raw PCM
    - Returns None when no sample bytes remain
    """
    header = None
    fmt = default_format
    parts: list[bytes] = []

    for fragment in pending.fragments:
        try:
            frag_header, samples, frag_fmt = split_samples(fragment.data, default_format)
        except MalformedAudioError as exc:
            log_event({
                "event_type": "MALFORMED_FRAGMENT",
                "level": "warning",
                "session_id": pending.conversation_id,
                "turn_id": pending.turn_id,
                "bytes": len(fragment.data),
                "error": str(exc),
                "action": "treat_as_raw",
            })
            frag_header, samples = None, fragment.data

        if header is None and frag_header is not None:
            header = frag_header
            fmt = frag_fmt

        parts.append(samples)

    merged = b"".join(parts)
    if not merged:
        return None

    audio = reheader(merged, header) if header is not None else merged

    return CompleteResponse(
        conversation_id=pending.conversation_id,
        turn_id=pending.turn_id,
        generation=pending.generation,
        audio=audio,
        sample_rate_hz=fmt.sample_rate_hz,
        channels=fmt.channels,
        bits_per_sample=fmt.bits_per_sample,
        has_header=header is not None,
        fragment_count=len(pending.fragments),
    )


# ---------------------------------------------------------------------
# Per-conversation buffer
# ---------------------------------------------------------------------

@dataclass
class _ConversationBuffer:
    queue: ResponseQueue
    active: Optional[PendingResponse] = None


# ---------------------------------------------------------------------
# Accumulator
# ---------------------------------------------------------------------

class ResponseAccumulator:
    """
    Turns a stream of fragments into an ordered stream of complete responses.

    Collaborators are injected as callables:
        current_generation(conversation_id) -> int
        is_delivering(conversation_id) -> bool
        on_complete(response) -> awaitable, starts delivery of `response`
        on_dropped(conversation_id) -> None, a completion handed nothing off
    """

    def __init__(
        self,
        *,
        config: DeliveryConfig,
        current_generation: Callable[[str], int],
        is_delivering: Callable[[str], bool],
        on_complete: OnResponseComplete,
        on_dropped: Optional[OnNothingHandedOff] = None,
        default_format: PcmFormat = RAW_PCM_FORMAT,
        max_queued_responses: int = RESPONSE_QUEUE_MAX,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config
        self._current_generation = current_generation
        self._is_delivering = is_delivering
        self._on_complete = on_complete
        self._on_dropped = on_dropped
        self._default_format = default_format
        self._max_queued = max_queued_responses
        self._clock = clock

        self._buffers: dict[str, _ConversationBuffer] = {}
        self._timers: dict[str, asyncio.Task[None]] = {}

    # ------------------------------------------------------------------
    # Fragment intake
    # ------------------------------------------------------------------

    async def on_fragment(
        self,
        conversation_id: str,
        turn_id: str,
        data: bytes,
        *,
        generation: int,
    ) -> bool:
        """
        Append a fragment to the active pending response for `turn_id`.

        Returns:
            True if the fragment was accepted
            False if it was stale or empty
        """
        if generation != self._current_generation(conversation_id):
            self._log_stale(conversation_id, turn_id, generation, "fragment")
            return False

        if not data:
            return False

        buf = self._buffer(conversation_id)

        if buf.active is not None and buf.active.generation != generation:
            buf.active = None

        # A new turn id closes the previous turn immediately
        if buf.active is not None and buf.active.turn_id != turn_id:
            await self._complete(conversation_id, reason="turn_changed")
            if generation != self._current_generation(conversation_id):
                self._log_stale(conversation_id, turn_id, generation, "fragment")
                return False

        now = self._clock()
        fragment = AudioFragment(data=bytes(data), arrived_at=now, ts_ms=_now_ms())

        if buf.active is None:
            buf.active = PendingResponse(
                conversation_id=conversation_id,
                turn_id=turn_id,
                generation=generation,
                first_fragment_time=now,
                last_fragment_time=now,
            )
            log_event({
                "event_type": "RESPONSE_STARTED",
                "session_id": conversation_id,
                "turn_id": turn_id,
                "generation": generation,
            })

        buf.active.append(fragment)

        elapsed_ms = (now - buf.active.first_fragment_time) * 1000.0
        remaining_ms = self._config.force_completion_ceiling_ms - elapsed_ms

        if remaining_ms <= 0:
            await self._complete(conversation_id, reason="ceiling")
            return True

        if remaining_ms < self._config.idle_timeout_ms:
            self._arm_timer(conversation_id, generation, remaining_ms, reason="ceiling")
        else:
            self._arm_timer(
                conversation_id, generation, self._config.idle_timeout_ms, reason="idle"
            )
        return True

    # ------------------------------------------------------------------
    # Hand-off
    # ------------------------------------------------------------------

    async def submit(self, response: CompleteResponse) -> bool:
        """
        Deliver `response` now, or queue it behind an in-progress delivery.

        Also used for synthetic responses (fallback audio) so they respect
        turn order.

        Returns:
            True if handed off or queued
            False if stale or dropped by queue overflow
        """
        cid = response.conversation_id
        if response.generation != self._current_generation(cid):
            self._log_stale(cid, response.turn_id, response.generation, "response")
            return False

        buf = self._buffer(cid)

        if self._is_delivering(cid) or not buf.queue.is_empty():
            accepted = buf.queue.enqueue(response)
            log_event({
                "event_type": "RESPONSE_QUEUED" if accepted else "RESPONSE_DROPPED",
                "session_id": cid,
                "turn_id": response.turn_id,
                "generation": response.generation,
                "queue_depth": len(buf.queue),
                "reason": None if accepted else "overflow",
            })
            if not accepted:
                return False
            if self._is_delivering(cid):
                return True
            nxt = buf.queue.dequeue()
            if nxt is not None:
                await self._on_complete(nxt)
            return True

        await self._on_complete(response)
        return True

    def take_next(self, conversation_id: str) -> Optional[CompleteResponse]:
        """Pop the oldest queued response, if any."""
        buf = self._buffers.get(conversation_id)
        if buf is None:
            return None
        return buf.queue.dequeue()

    # ------------------------------------------------------------------
    # Clearing
    # ------------------------------------------------------------------

    def clear(self, conversation_id: str) -> int:
        """
        Discard the active pending response and every queued response.

        Safe to call regardless of timer state. Returns the number of
        discarded fragments plus queued responses.
        """
        self._cancel_timer(conversation_id)

        buf = self._buffers.get(conversation_id)
        if buf is None:
            return 0

        discarded = 0
        if buf.active is not None:
            discarded += len(buf.active.fragments)
            buf.active = None
        discarded += buf.queue.clear()
        return discarded

    def forget(self, conversation_id: str) -> None:
        """Clear and drop all per-conversation storage."""
        self.clear(conversation_id)
        self._buffers.pop(conversation_id, None)

    async def shutdown(self) -> None:
        """Cancel every timer and wait for the tasks to finish."""
        tasks = list(self._timers.values())
        for task in tasks:
            task.cancel()
        self._timers.clear()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def has_active(self, conversation_id: str) -> bool:
        buf = self._buffers.get(conversation_id)
        return buf is not None and buf.active is not None

    def active_turn_id(self, conversation_id: str) -> Optional[str]:
        buf = self._buffers.get(conversation_id)
        if buf is None or buf.active is None:
            return None
        return buf.active.turn_id

    def queue_depth(self, conversation_id: str) -> int:
        buf = self._buffers.get(conversation_id)
        return len(buf.queue) if buf is not None else 0

    def has_timer(self, conversation_id: str) -> bool:
        return conversation_id in self._timers

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _buffer(self, conversation_id: str) -> _ConversationBuffer:
        buf = self._buffers.get(conversation_id)
        if buf is None:
            buf = _ConversationBuffer(queue=ResponseQueue(max_responses=self._max_queued))
            self._buffers[conversation_id] = buf
        return buf

    async def _complete(self, conversation_id: str, *, reason: str) -> None:
        """Merge the active pending response and hand it off."""
        self._cancel_timer(conversation_id)

        buf = self._buffers.get(conversation_id)
        if buf is None or buf.active is None:
            return

        pending = buf.active
        buf.active = None

        if pending.generation != self._current_generation(conversation_id):
            self._log_stale(conversation_id, pending.turn_id, pending.generation, "completion")
            self._dropped(conversation_id)
            return

        response = merge_pending(pending, default_format=self._default_format)
        if response is None:
            log_event({
                "event_type": "RESPONSE_EMPTY",
                "level": "warning",
                "session_id": conversation_id,
                "turn_id": pending.turn_id,
                "fragments": len(pending.fragments),
            })
            self._dropped(conversation_id)
            return

        log_event({
            "event_type": "RESPONSE_COMPLETED",
            "session_id": conversation_id,
            "turn_id": response.turn_id,
            "generation": response.generation,
            "reason": reason,
            "fragments": response.fragment_count,
            "data_bytes": response.data_length,
            "duration_s": round(response.duration_s, 3),
            "has_header": response.has_header,
        })

        if not await self.submit(response):
            self._dropped(conversation_id)

    def _dropped(self, conversation_id: str) -> None:
        if self._on_dropped is not None:
            self._on_dropped(conversation_id)

    def _arm_timer(
        self,
        conversation_id: str,
        generation: int,
        delay_ms: float,
        *,
        reason: str,
    ) -> None:
        """Start or replace the conversation's completion timer."""
        self._cancel_timer(conversation_id)

        async def _timer_task() -> None:
            try:
                await asyncio.sleep(delay_ms / 1000.0)

                # Detach first so clear() cannot cancel the hand-off itself
                if self._timers.get(conversation_id) is asyncio.current_task():
                    self._timers.pop(conversation_id, None)

                if generation != self._current_generation(conversation_id):
                    self._log_stale(conversation_id, None, generation, "timer")
                    return

                await self._complete(conversation_id, reason=reason)

            except asyncio.CancelledError:
                # Timer was cancelled - this is normal
                return

        self._timers[conversation_id] = asyncio.create_task(_timer_task())

    def _cancel_timer(self, conversation_id: str) -> None:
        """Cancel an in-flight timer if it exists (idempotent)."""
        task = self._timers.pop(conversation_id, None)
        if task is not None and not task.done():
            task.cancel()

    @staticmethod
    def _log_stale(
        conversation_id: str,
        turn_id: Optional[str],
        generation: int,
        what: str,
    ) -> None:
        log_event({
            "event_type": "STALE_GENERATION_IGNORED",
            "level": "debug",
            "session_id": conversation_id,
            "turn_id": turn_id,
            "generation": generation,
            "what": what,
        })
