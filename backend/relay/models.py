"""
Relay data model.

PendingResponse is mutable and owned by the accumulator.
CompleteResponse and DeliveryUnit are immutable hand-off values.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from audio.fragments import AudioFragment
from constants import WAV_HEADER_BYTES


# ---------------------------------------------------------------------
# Accumulation
# ---------------------------------------------------------------------

@dataclass
class PendingResponse:
    """
    Fragments of one turn, in arrival order, not yet merged.

    generation is captured at creation; a pending response whose generation
    is no longer current is discarded rather than completed.
    """
    conversation_id: str
    turn_id: str
    generation: int
    first_fragment_time: float
    last_fragment_time: float
    fragments: list[AudioFragment] = field(default_factory=list)

    def append(self, fragment: AudioFragment) -> None:
        self.fragments.append(fragment)
        self.last_fragment_time = fragment.arrived_at

    @property
    def total_bytes(self) -> int:
        return sum(len(f) for f in self.fragments)


@dataclass(frozen=True)
class CompleteResponse:
    """
    One merged response, ready for unit planning.

    audio is either a container (has_header=True) or raw PCM in the
    declared format.
    """
    conversation_id: str
    turn_id: str
    generation: int
    audio: bytes
    sample_rate_hz: int
    channels: int
    bits_per_sample: int
    has_header: bool
    fragment_count: int = 1

    @property
    def header_bytes(self) -> int:
        return WAV_HEADER_BYTES if self.has_header else 0

    @property
    def samples(self) -> bytes:
        """Raw sample region (header stripped)."""
        return self.audio[self.header_bytes:]

    @property
    def data_length(self) -> int:
        return len(self.audio) - self.header_bytes

    @property
    def block_align(self) -> int:
        return max(1, self.channels * (self.bits_per_sample // 8))

    @property
    def bytes_per_second(self) -> int:
        return self.sample_rate_hz * self.block_align

    @property
    def duration_s(self) -> float:
        if self.bytes_per_second <= 0:
            return 0.0
        return self.data_length / self.bytes_per_second


# ---------------------------------------------------------------------
# Delivery
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class DeliveryUnit:
    """
    One independently playable slice of a CompleteResponse.

    index / total_units let the client reassemble regardless of lane
    interleaving. header_bytes is 44 for re-wrapped container slices and
    0 for raw slices.
    """
    conversation_id: str
    turn_id: str
    generation: int
    index: int
    total_units: int
    lane_id: int
    payload: bytes
    header_bytes: int = 0

    @property
    def is_last(self) -> bool:
        return self.index == self.total_units - 1

    @property
    def is_first(self) -> bool:
        return self.index == 0

    @property
    def samples(self) -> bytes:
        return self.payload[self.header_bytes:]
