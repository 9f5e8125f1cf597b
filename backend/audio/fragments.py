"""
Audio fragment primitives.

Pure data containers only.
No behavior, no queues, no timing logic.
"""

from __future__ import annotations
from dataclasses import dataclass


@dataclass(frozen=True)
class AudioFragment:
    """
    One burst of audio bytes emitted by the upstream engine for a turn.

    data:
        Raw PCM or a pre-framed container (see audio.wav). Fragments of one
        turn may mix both; the accumulator resolves this at merge time.

    arrived_at:
        Monotonic seconds at arrival. Used for idle/ceiling timing.

    ts_ms:
        Wall-clock milliseconds at arrival. Used for observability only.
    """
    data: bytes
    arrived_at: float
    ts_ms: int

    def __len__(self) -> int:
        return len(self.data)
