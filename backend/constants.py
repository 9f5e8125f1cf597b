"""
BEHAVIOR-AS-CONSTANTS
---------------------
Single source of truth for the relay's tunable defaults.

Rules:
- If changing a value changes runtime behavior, it belongs here.
- No magic numbers elsewhere in the codebase.
- Deployment overrides go through config.py, which reads these as defaults.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Final, Tuple

# =============================================================================
# Audio Container (RIFF/WAVE, PCM)
# =============================================================================

WAV_HEADER_BYTES: Final[int] = 44
WAV_RIFF_SIZE_OFFSET: Final[int] = 4
WAV_DATA_SIZE_OFFSET: Final[int] = 40
WAV_RIFF_SIZE_BASE: Final[int] = 36  # header bytes counted by the RIFF size field
WAV_FMT_CHUNK_BYTES: Final[int] = 16
WAV_FORMAT_PCM: Final[int] = 1
WAV_MAGIC_MIN_BYTES: Final[int] = 12

# Raw (headerless) PCM is assumed to be in this format
RAW_PCM_SAMPLE_RATE_HZ: Final[int] = 48_000
RAW_PCM_CHANNELS: Final[int] = 1
RAW_PCM_BITS_PER_SAMPLE: Final[int] = 16

# OpenAI realtime emits PCM16 24kHz mono
UPSTREAM_PCM_SAMPLE_RATE_HZ: Final[int] = 24_000

# =============================================================================
# Response Accumulation
# =============================================================================

IDLE_TIMEOUT_MS: Final[int] = 1_000
FORCE_COMPLETION_CEILING_MS: Final[int] = 2_000

# Completed responses waiting behind an in-progress delivery
RESPONSE_QUEUE_MAX: Final[int] = 16

# =============================================================================
# Delivery Unit Sizing
# =============================================================================

TARGET_UNIT_DURATION_S: Final[float] = 1.0
MIN_UNIT_DURATION_S: Final[float] = 0.5
MAX_UNIT_DURATION_S: Final[float] = 3.0
MEDIUM_UNIT_DURATION_S: Final[float] = 1.8
LATENCY_BUDGET_MS: Final[int] = 1_500

# Duration bands (upper bounds, seconds)
BAND_VERY_SHORT_MAX_S: Final[float] = 2.0
BAND_SHORT_MAX_S: Final[float] = 5.0
BAND_MEDIUM_MAX_S: Final[float] = 10.0

# Band divisors
BAND_VERY_SHORT_DIVISOR: Final[int] = 3
BAND_SHORT_DIVISOR: Final[int] = 4
BAND_LONG_DIVISOR: Final[int] = 5
BAND_SHORT_FLOOR_S: Final[float] = 1.0

# =============================================================================
# Delivery Lanes
# =============================================================================

LANE_COUNT: Final[int] = 4
INTER_UNIT_DELAY_MS: Final[int] = 5
INTER_LANE_DELAY_MS: Final[int] = 5
SEQUENTIAL_DELAY_MS: Final[int] = 25
IMMEDIATE_FIRST_UNIT: Final[bool] = True

# Reported to clients for lane bookkeeping (laneId + base)
LANE_PORT_BASE: Final[int] = 3_000

# =============================================================================
# Interruption
# =============================================================================

INTERRUPT_CLEAR_DELAY_MS: Final[int] = 1_000

# =============================================================================
# Conversation Lifecycle
# =============================================================================

CONVERSATION_IDLE_TIMEOUT_S: Final[float] = 600.0
CONVERSATION_SWEEP_INTERVAL_S: Final[float] = 30.0

# =============================================================================
# Upstream Reconnect Policy
# =============================================================================

UPSTREAM_MAX_RECONNECTS: Final[int] = 3
UPSTREAM_RECONNECT_DELAYS_MS: Final[Tuple[int, ...]] = (500, 2_000, 5_000)

# =============================================================================
# Fallback Audio
# =============================================================================

FALLBACK_TONE_HZ: Final[float] = 800.0
FALLBACK_TONE_DURATION_S: Final[float] = 0.5
FALLBACK_TONE_AMPLITUDE: Final[float] = 0.3
FALLBACK_TONE_SAMPLE_RATE_HZ: Final[int] = 44_100
FALLBACK_TONE_FADE_S: Final[float] = 0.1

FALLBACK_TEXT_GENERIC: Final[str] = (
    "I'm sorry, but I'm currently experiencing technical difficulties. "
    "Please try again later."
)
FALLBACK_TEXT_WITH_INPUT: Final[str] = (
    "I'm sorry, but I'm currently experiencing technical difficulties. "
    'I heard you say: "{text}". Please try again later.'
)


# =============================================================================
# Convenience Bundles
# =============================================================================

@dataclass(frozen=True)
class PcmFormat:
    """
    Immutable bundle describing an uncompressed PCM layout.

    This is a convenience wrapper for passing format metadata around;
    it is NOT a second source of truth.
    """
    sample_rate_hz: int = RAW_PCM_SAMPLE_RATE_HZ
    channels: int = RAW_PCM_CHANNELS
    bits_per_sample: int = RAW_PCM_BITS_PER_SAMPLE

    @property
    def block_align(self) -> int:
        """Bytes per sample frame across all channels."""
        return self.channels * (self.bits_per_sample // 8)

    @property
    def bytes_per_second(self) -> int:
        """Return byte rate."""
        return self.sample_rate_hz * self.block_align


RAW_PCM_FORMAT: Final[PcmFormat] = PcmFormat()
UPSTREAM_PCM_FORMAT: Final[PcmFormat] = PcmFormat(
    sample_rate_hz=UPSTREAM_PCM_SAMPLE_RATE_HZ,
)
