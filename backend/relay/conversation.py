"""
Conversation state and the per-process registry.

ConversationState is the only cross-component mutable state besides the
components' own buffers. Its generation counter is the sole guard against
stale async continuations (timers, lane steps, late fragments).

The registry is constructed once at startup and injected; there is no
module-level registry.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator, Optional

from observability.logger import log_event
from relay.enums.phase import Phase
from relay.protocols import ClientTransport


# ---------------------------------------------------------------------
# Phase transitions
# ---------------------------------------------------------------------

ALLOWED_TRANSITIONS: dict[Phase, frozenset[Phase]] = {
    Phase.IDLE: frozenset({Phase.ACCUMULATING, Phase.DELIVERING}),
    Phase.ACCUMULATING: frozenset({Phase.DELIVERING, Phase.INTERRUPTED, Phase.IDLE}),
    Phase.DELIVERING: frozenset({Phase.ACCUMULATING, Phase.INTERRUPTED, Phase.IDLE}),
    Phase.INTERRUPTED: frozenset({Phase.IDLE}),
}


def can_transition(current: Phase, target: Phase) -> bool:
    """Same-phase moves are always allowed (no-op)."""
    return current is target or target in ALLOWED_TRANSITIONS[current]


# ---------------------------------------------------------------------
# State
# ---------------------------------------------------------------------

@dataclass
class ConversationState:
    """
    Per-conversation bookkeeping.

    is_interrupted mirrors phase == INTERRUPTED and auto-clears.
    interrupted_turn_id remembers the turn that was cut off so its late
    fragments are dropped even after the flag clears.
    """
    conversation_id: str
    start_time: float
    last_activity_time: float
    phase: Phase = Phase.IDLE
    generation: int = 0
    turn_count: int = 0
    is_active: bool = True
    is_interrupted: bool = False
    active_turn_id: Optional[str] = None
    interrupted_turn_id: Optional[str] = None
    interruptions: int = 0
    responses_delivered: int = 0
    voice: Optional[str] = None
    last_user_text: Optional[str] = None
    history: list[dict[str, Any]] = field(default_factory=list, repr=False)
    transport: Optional[ClientTransport] = field(default=None, repr=False, compare=False)

    def touch(self, now: float) -> None:
        self.last_activity_time = now

    def add_to_history(self, role: str, text: str, ts_ms: int) -> None:
        """role is "user" or "assistant"."""
        self.history.append({"role": role, "content": text, "timestamp": ts_ms})

    def move_to(self, target: Phase) -> bool:
        """
        Apply a phase transition if allowed.

        Returns False (and logs) for a disallowed transition; state is left
        unchanged in that case.
        """
        if not can_transition(self.phase, target):
            log_event({
                "event_type": "PHASE_TRANSITION_REJECTED",
                "level": "warning",
                "session_id": self.conversation_id,
                "from": self.phase.value,
                "to": target.value,
            })
            return False

        if self.phase is not target:
            log_event({
                "event_type": "PHASE_TRANSITION",
                "level": "debug",
                "session_id": self.conversation_id,
                "from": self.phase.value,
                "to": target.value,
                "generation": self.generation,
            })
        self.phase = target
        self.is_interrupted = target is Phase.INTERRUPTED
        return True

    def snapshot(self, now: float) -> dict[str, Any]:
        """Client/status view (camelCase keys, matching the wire format)."""
        return {
            "sessionId": self.conversation_id,
            "phase": self.phase.value,
            "isActive": self.is_active,
            "isInterrupted": self.is_interrupted,
            "turnCount": self.turn_count,
            "generation": self.generation,
            "interruptions": self.interruptions,
            "responsesDelivered": self.responses_delivered,
            "durationS": round(now - self.start_time, 3),
            "idleS": round(now - self.last_activity_time, 3),
        }

    def export(self, now: float, exported_at_ms: int) -> dict[str, Any]:
        """Snapshot plus the full conversation history."""
        duration_s = now - self.start_time
        messages_per_minute = len(self.history) / (duration_s / 60.0) if duration_s > 0 else 0.0
        return {
            **self.snapshot(now),
            "voice": self.voice,
            "messageCount": len(self.history),
            "conversationHistory": list(self.history),
            "exportedAt": exported_at_ms,
            "statistics": {
                "durationS": round(duration_s, 3),
                "messagesPerMinute": round(messages_per_minute, 3),
            },
        }


# ---------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------

class ConversationRegistry:
    """
    Directory of live conversations for one process.

    Generation helpers return -1 for unknown conversations so that any
    continuation for an ended conversation is treated as stale.
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._conversations: dict[str, ConversationState] = {}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def create(
        self,
        conversation_id: str,
        *,
        transport: Optional[ClientTransport] = None,
        voice: Optional[str] = None,
    ) -> ConversationState:
        """
        Create a conversation, or reactivate an existing one with a new
        transport.
        """
        now = self._clock()
        state = self._conversations.get(conversation_id)
        if state is not None:
            state.is_active = True
            state.transport = transport or state.transport
            state.voice = voice or state.voice
            state.touch(now)
            return state

        state = ConversationState(
            conversation_id=conversation_id,
            start_time=now,
            last_activity_time=now,
            transport=transport,
            voice=voice,
        )
        self._conversations[conversation_id] = state
        return state

    def get(self, conversation_id: str) -> Optional[ConversationState]:
        return self._conversations.get(conversation_id)

    def end(self, conversation_id: str) -> Optional[ConversationState]:
        """Remove a conversation. Its generation becomes unknown (stale)."""
        state = self._conversations.pop(conversation_id, None)
        if state is not None:
            state.is_active = False
            state.transport = None
        return state

    # ------------------------------------------------------------------
    # Generation counter
    # ------------------------------------------------------------------

    def current_generation(self, conversation_id: str) -> int:
        state = self._conversations.get(conversation_id)
        return state.generation if state is not None else -1

    def is_current(self, conversation_id: str, generation: int) -> bool:
        return generation >= 0 and self.current_generation(conversation_id) == generation

    def bump_generation(self, conversation_id: str) -> int:
        """Increment and return the new generation (-1 if unknown)."""
        state = self._conversations.get(conversation_id)
        if state is None:
            return -1
        state.generation += 1
        return state.generation

    # ------------------------------------------------------------------
    # Inactivity
    # ------------------------------------------------------------------

    def inactive_ids(self, max_idle_s: float) -> list[str]:
        now = self._clock()
        return [
            cid
            for cid, state in self._conversations.items()
            if now - state.last_activity_time > max_idle_s
        ]

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def now(self) -> float:
        return self._clock()

    def __len__(self) -> int:
        return len(self._conversations)

    def __iter__(self) -> Iterator[ConversationState]:
        return iter(list(self._conversations.values()))

    def summaries(self) -> list[dict[str, Any]]:
        now = self._clock()
        return [state.snapshot(now) for state in self._conversations.values()]

    def statistics(self) -> dict[str, Any]:
        now = self._clock()
        durations = [now - s.start_time for s in self._conversations.values()]
        by_phase: dict[str, int] = {phase.value: 0 for phase in Phase}
        for state in self._conversations.values():
            by_phase[state.phase.value] += 1
        return {
            "active_conversations": len(self._conversations),
            "by_phase": by_phase,
            "total_turns": sum(s.turn_count for s in self._conversations.values()),
            "total_interruptions": sum(
                s.interruptions for s in self._conversations.values()
            ),
            "average_duration_s": round(sum(durations) / len(durations), 3) if durations else 0.0,
        }
