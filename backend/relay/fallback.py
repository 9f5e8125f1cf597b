"""
Placeholder responses.

Used when the upstream engine is unavailable: the client still receives a
short, normal-looking response (tone + apology text) instead of an error.
"""

from __future__ import annotations

from typing import Optional
from uuid import uuid4

from audio.pcm import synth_tone
from audio.wav import wrap
from constants import (
    FALLBACK_TEXT_GENERIC,
    FALLBACK_TEXT_WITH_INPUT,
    FALLBACK_TONE_SAMPLE_RATE_HZ,
)
from relay.models import CompleteResponse


def fallback_text(heard: Optional[str]) -> str:
    """Apology text, echoing the user's input when it is known."""
    if heard and heard.strip():
        return FALLBACK_TEXT_WITH_INPUT.format(text=heard.strip())
    return FALLBACK_TEXT_GENERIC


def fallback_response(conversation_id: str, *, generation: int) -> CompleteResponse:
    """A short placeholder tone as a container response."""
    pcm = synth_tone(sample_rate_hz=FALLBACK_TONE_SAMPLE_RATE_HZ)
    return CompleteResponse(
        conversation_id=conversation_id,
        turn_id=f"fallback_{uuid4().hex[:8]}",
        generation=generation,
        audio=wrap(pcm, FALLBACK_TONE_SAMPLE_RATE_HZ, 1, 16),
        sample_rate_hz=FALLBACK_TONE_SAMPLE_RATE_HZ,
        channels=1,
        bits_per_sample=16,
        has_header=True,
    )
