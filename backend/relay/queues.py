# backend/relay/queues.py
"""
Bounded FIFO of completed responses waiting for delivery.

- One queue per conversation, owned by the accumulator
- Preserves turn order: dequeue always returns the oldest response
- Explicit drop behavior with distinguishable reasons
- Deterministic, synchronous behavior
"""

from __future__ import annotations
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Deque, Optional

from relay.models import CompleteResponse


class DropReason(str, Enum):
    """
    Reason a completed response was dropped before delivery.
    """
    OVERFLOW = "overflow"
    INTERRUPTED = "interrupted"


@dataclass
class DropCounters:
    """
    Drop counters for observability.
    """
    overflow: int = 0
    interrupted: int = 0


class ResponseQueue:
    """
    Bounded FIFO queue for CompleteResponse objects.

    Drop rules:
    - enqueue beyond max_responses drops the NEW response (overflow)
    - clear() drops everything and counts it as interrupted
    """

    def __init__(self, *, max_responses: int) -> None:
        if max_responses <= 0:
            raise ValueError("max_responses must be > 0")

        self._max_responses: int = max_responses
        self._responses: Deque[CompleteResponse] = deque()
        self.drops: DropCounters = DropCounters()

    # -------------------------
    # Core queue operations
    # -------------------------

    def enqueue(self, response: CompleteResponse) -> bool:
        """
        Enqueue a completed response.

        Returns:
            True if enqueued
            False if dropped
        """
        if len(self._responses) >= self._max_responses:
            self.drops.overflow += 1
            return False

        self._responses.append(response)
        return True

    def dequeue(self) -> Optional[CompleteResponse]:
        """
        Dequeue the oldest response.

        Returns None if queue is empty.
        """
        if not self._responses:
            return None
        return self._responses.popleft()

    def peek(self) -> Optional[CompleteResponse]:
        """View the oldest response without removing it."""
        return self._responses[0] if self._responses else None

    def clear(self) -> int:
        """
        Drop all queued responses.

        Returns the number discarded. Used on interruption and disconnect.
        """
        dropped = len(self._responses)
        self._responses.clear()
        self.drops.interrupted += dropped
        return dropped

    # -------------------------
    # Introspection helpers
    # -------------------------

    def __len__(self) -> int:
        return len(self._responses)

    def is_empty(self) -> bool:
        """Check if the queue is empty."""
        return not self._responses
