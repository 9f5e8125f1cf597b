# pylint: disable=missing-module-docstring,missing-function-docstring

import numpy as np

from audio.pcm import float32_to_pcm16le, synth_tone
from audio.wav import unwrap
from constants import FALLBACK_TEXT_GENERIC, FALLBACK_TONE_SAMPLE_RATE_HZ
from relay.fallback import fallback_response, fallback_text


def test_tone_length_and_fade():
    pcm = synth_tone(duration_s=0.5, sample_rate_hz=8_000, fade_s=0.1)
    samples = np.frombuffer(pcm, dtype="<i2")

    assert len(samples) == 4_000
    # Envelope starts and ends at silence
    assert samples[0] == 0
    assert abs(int(samples[-1])) <= 1
    assert np.abs(samples).max() <= int(0.3 * 32767) + 1


def test_zero_duration_tone_is_empty():
    assert synth_tone(duration_s=0.0) == b""


def test_pcm16_conversion_clips():
    out = np.frombuffer(float32_to_pcm16le(np.array([2.0, -2.0, 0.0])), dtype="<i2")
    assert list(out) == [32767, -32767, 0]


def test_fallback_text_variants():
    assert fallback_text(None) == FALLBACK_TEXT_GENERIC
    assert fallback_text("   ") == FALLBACK_TEXT_GENERIC
    assert 'I heard you say: "hello"' in fallback_text(" hello ")


def test_fallback_response_is_container():
    response = fallback_response("c1", generation=7)

    assert response.has_header
    assert response.generation == 7
    assert response.turn_id.startswith("fallback_")
    assert response.sample_rate_hz == FALLBACK_TONE_SAMPLE_RATE_HZ

    header, samples = unwrap(response.audio)
    assert header.sample_rate_hz == FALLBACK_TONE_SAMPLE_RATE_HZ
    assert response.duration_s == 0.5
    assert len(samples) == response.data_length
