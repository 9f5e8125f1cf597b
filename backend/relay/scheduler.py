"""
Delivery unit planning.

This module is PURE up to the ChunkScheduler holder at the bottom:
- No async
- No I/O
- Deterministic given (response, config, latency budget)

Sizing policy (duration bands):
    total <= 2s   -> max(min_unit, total / 3)
    total <= 5s   -> max(1.0s, total / 4)
    total <= 10s  -> medium_unit (1.8s)
    otherwise     -> min(3.0s, total / 5)
then clamp to [min_unit, max_unit], then shrink to the latency budget if the
unit would take longer than the budget to play, still clamped.

Unit byte sizes are aligned to the sample frame (block align) so no sample is
split across units. Container responses are sliced on the sample region and
each slice is re-wrapped with a corrected header; raw responses are sliced
directly. Concatenating unit sample regions in index order reproduces the
response's sample region exactly.
"""

from __future__ import annotations

import math
from typing import Optional

from audio.wav import WavHeader, reheader
from config import DeliveryConfig
from constants import (
    BAND_LONG_DIVISOR,
    BAND_MEDIUM_MAX_S,
    BAND_SHORT_DIVISOR,
    BAND_SHORT_FLOOR_S,
    BAND_SHORT_MAX_S,
    BAND_VERY_SHORT_DIVISOR,
    BAND_VERY_SHORT_MAX_S,
    WAV_HEADER_BYTES,
)
from observability.logger import log_event
from relay.models import CompleteResponse, DeliveryUnit


# =============================================================================
# Sizing
# =============================================================================

def estimate_duration_s(
    data_length: int,
    *,
    sample_rate_hz: int,
    channels: int,
    bits_per_sample: int,
) -> float:
    """duration = bytes / (rate * channels * bits/8); 0.0 for degenerate formats."""
    bytes_per_second = sample_rate_hz * channels * (bits_per_sample / 8)
    if bytes_per_second <= 0 or data_length <= 0:
        return 0.0
    return data_length / bytes_per_second


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def choose_unit_duration_s(total_duration_s: float, config: DeliveryConfig) -> float:
    """
    Pick the per-unit duration for a response of `total_duration_s`.

    Falls back to target_unit_duration_s when the duration is unknown.
    """
    if total_duration_s <= 0:
        return config.target_unit_duration_s

    if total_duration_s <= BAND_VERY_SHORT_MAX_S:
        chosen = max(config.min_unit_duration_s, total_duration_s / BAND_VERY_SHORT_DIVISOR)
    elif total_duration_s <= BAND_SHORT_MAX_S:
        chosen = max(BAND_SHORT_FLOOR_S, total_duration_s / BAND_SHORT_DIVISOR)
    elif total_duration_s <= BAND_MEDIUM_MAX_S:
        chosen = config.medium_unit_duration_s
    else:
        chosen = min(config.max_unit_duration_s, total_duration_s / BAND_LONG_DIVISOR)

    return _clamp(chosen, config.min_unit_duration_s, config.max_unit_duration_s)


def unit_size_bytes(
    *,
    total_duration_s: float,
    bytes_per_second: int,
    block_align: int,
    config: DeliveryConfig,
    latency_budget_ms: int,
) -> int:
    """
    Byte size of every unit except possibly the last.

    Always a positive multiple of block_align.
    """
    block = max(1, block_align)
    unit_s = choose_unit_duration_s(total_duration_s, config)

    if unit_s * 1000.0 > latency_budget_ms:
        unit_s = _clamp(
            latency_budget_ms / 1000.0,
            config.min_unit_duration_s,
            config.max_unit_duration_s,
        )

    raw_size = int(unit_s * bytes_per_second)
    aligned = (raw_size // block) * block
    return max(block, aligned)


# =============================================================================
# Slicing
# =============================================================================

def lane_for_index(index: int, lane_count: int) -> int:
    """Round-robin lane assignment."""
    return index % max(1, lane_count)


def plan_units(
    response: CompleteResponse,
    *,
    config: DeliveryConfig,
    latency_budget_ms: Optional[int] = None,
) -> tuple[DeliveryUnit, ...]:
    """
    Slice a complete response into ordered delivery units.

    Returns an empty tuple for a response with no sample bytes.
    """
    budget = config.latency_budget_ms if latency_budget_ms is None else latency_budget_ms
    samples = response.samples
    if not samples:
        return ()

    total_s = estimate_duration_s(
        len(samples),
        sample_rate_hz=response.sample_rate_hz,
        channels=response.channels,
        bits_per_sample=response.bits_per_sample,
    )
    size = unit_size_bytes(
        total_duration_s=total_s,
        bytes_per_second=response.bytes_per_second,
        block_align=response.block_align,
        config=config,
        latency_budget_ms=budget,
    )

    total_units = math.ceil(len(samples) / size)
    header = WavHeader(raw=response.audio[:WAV_HEADER_BYTES]) if response.has_header else None

    units: list[DeliveryUnit] = []
    for index in range(total_units):
        piece = samples[index * size:(index + 1) * size]
        if header is not None:
            payload = reheader(piece, header)
            header_bytes = WAV_HEADER_BYTES
        else:
            payload = piece
            header_bytes = 0

        units.append(DeliveryUnit(
            conversation_id=response.conversation_id,
            turn_id=response.turn_id,
            generation=response.generation,
            index=index,
            total_units=total_units,
            lane_id=lane_for_index(index, config.lane_count),
            payload=payload,
            header_bytes=header_bytes,
        ))

    return tuple(units)


# =============================================================================
# Pending plans
# =============================================================================

class ChunkScheduler:
    """
    Holds each conversation's planned-but-not-yet-distributed units.

    schedule() plans and parks the units; the delivery task take()s them.
    clear() (interruption) drops a parked plan before any lane sees it.
    """

    def __init__(self, *, config: DeliveryConfig) -> None:
        self._config = config
        self._pending: dict[str, tuple[DeliveryUnit, ...]] = {}

    def schedule(
        self,
        response: CompleteResponse,
        *,
        latency_budget_ms: Optional[int] = None,
    ) -> tuple[DeliveryUnit, ...]:
        units = plan_units(
            response,
            config=self._config,
            latency_budget_ms=latency_budget_ms,
        )
        self._pending[response.conversation_id] = units

        log_event({
            "event_type": "DELIVERY_PLANNED",
            "session_id": response.conversation_id,
            "turn_id": response.turn_id,
            "generation": response.generation,
            "units": len(units),
            "unit_bytes": len(units[0].samples) if units else 0,
            "duration_s": round(response.duration_s, 3),
        })
        return units

    def take(self, conversation_id: str) -> Optional[tuple[DeliveryUnit, ...]]:
        """Remove and return the parked plan, or None if it was cleared."""
        return self._pending.pop(conversation_id, None)

    def clear(self, conversation_id: str) -> int:
        """Drop a parked plan. Returns the number of discarded units."""
        units = self._pending.pop(conversation_id, None)
        return len(units) if units else 0

    def has_pending(self, conversation_id: str) -> bool:
        return conversation_id in self._pending
