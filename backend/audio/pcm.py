"""PCM utilities: placeholder tone synthesis and sample-level helpers."""

from __future__ import annotations

import numpy as np

from constants import (
    FALLBACK_TONE_AMPLITUDE,
    FALLBACK_TONE_DURATION_S,
    FALLBACK_TONE_FADE_S,
    FALLBACK_TONE_HZ,
    FALLBACK_TONE_SAMPLE_RATE_HZ,
)


def float32_to_pcm16le(samples: np.ndarray) -> bytes:
    """
    Convert float samples in [-1.0, 1.0] to PCM16 little-endian bytes.

    Out-of-range values are clipped, not wrapped.
    """
    clipped = np.clip(samples, -1.0, 1.0)
    return (clipped * 32767.0).astype("<i2").tobytes()


def synth_tone(
    *,
    frequency_hz: float = FALLBACK_TONE_HZ,
    duration_s: float = FALLBACK_TONE_DURATION_S,
    sample_rate_hz: int = FALLBACK_TONE_SAMPLE_RATE_HZ,
    amplitude: float = FALLBACK_TONE_AMPLITUDE,
    fade_s: float = FALLBACK_TONE_FADE_S,
) -> bytes:
    """
    Generate a mono PCM16 sine tone with linear fade-in/fade-out.

    Used as placeholder audio when a real response is unusable or the
    upstream engine is unavailable.
    """
    n = int(sample_rate_hz * duration_s)
    if n <= 0:
        return b""

    t = np.arange(n, dtype=np.float32) / float(sample_rate_hz)
    wave = amplitude * np.sin(2.0 * np.pi * frequency_hz * t)

    fade_n = min(int(sample_rate_hz * fade_s), n // 2)
    if fade_n > 0:
        envelope = np.ones(n, dtype=np.float32)
        ramp = np.linspace(0.0, 1.0, fade_n, dtype=np.float32)
        envelope[:fade_n] = ramp
        envelope[-fade_n:] = ramp[::-1]
        wave = wave * envelope

    return float32_to_pcm16le(wave)
