# pylint: disable=missing-module-docstring,missing-function-docstring

import struct

import pytest

from audio.wav import wrap
from config import DeliveryConfig
from relay.models import CompleteResponse
from relay.scheduler import (
    ChunkScheduler,
    choose_unit_duration_s,
    estimate_duration_s,
    lane_for_index,
    plan_units,
    unit_size_bytes,
)


RATE = 48_000
BYTES_PER_S = RATE * 2  # mono PCM16


def raw_response(n_bytes: int, *, turn_id: str = "t1", generation: int = 0) -> CompleteResponse:
    return CompleteResponse(
        conversation_id="c1",
        turn_id=turn_id,
        generation=generation,
        audio=bytes(i % 256 for i in range(n_bytes)),
        sample_rate_hz=RATE,
        channels=1,
        bits_per_sample=16,
        has_header=False,
    )


def container_response(n_bytes: int, *, rate: int = 24_000, channels: int = 1) -> CompleteResponse:
    samples = bytes(i % 256 for i in range(n_bytes))
    return CompleteResponse(
        conversation_id="c1",
        turn_id="t1",
        generation=0,
        audio=wrap(samples, rate, channels, 16),
        sample_rate_hz=rate,
        channels=channels,
        bits_per_sample=16,
        has_header=True,
    )


# ---------------------------------------------------------------------
# Duration bands
# ---------------------------------------------------------------------

def test_one_second_response_uses_short_units():
    chosen = choose_unit_duration_s(1.0, DeliveryConfig())
    assert 0.33 <= chosen <= 1.0


def test_eight_second_response_uses_medium_units():
    chosen = choose_unit_duration_s(8.0, DeliveryConfig())
    assert 1.5 <= chosen <= 2.5


def test_long_response_never_exceeds_max():
    config = DeliveryConfig()
    assert choose_unit_duration_s(20.0, config) <= config.max_unit_duration_s
    assert choose_unit_duration_s(600.0, config) == config.max_unit_duration_s


def test_unknown_duration_uses_target():
    config = DeliveryConfig()
    assert choose_unit_duration_s(0.0, config) == config.target_unit_duration_s


def test_estimate_duration():
    assert estimate_duration_s(96_000, sample_rate_hz=48_000, channels=1, bits_per_sample=16) == 1.0
    assert estimate_duration_s(100, sample_rate_hz=0, channels=1, bits_per_sample=16) == 0.0


# ---------------------------------------------------------------------
# Unit size
# ---------------------------------------------------------------------

def test_unit_size_shrinks_to_latency_budget():
    size = unit_size_bytes(
        total_duration_s=20.0,
        bytes_per_second=BYTES_PER_S,
        block_align=2,
        config=DeliveryConfig(),
        latency_budget_ms=1_500,
    )
    assert size == int(1.5 * BYTES_PER_S)


def test_unit_size_budget_never_goes_below_min():
    config = DeliveryConfig()
    size = unit_size_bytes(
        total_duration_s=20.0,
        bytes_per_second=BYTES_PER_S,
        block_align=2,
        config=config,
        latency_budget_ms=100,
    )
    assert size == int(config.min_unit_duration_s * BYTES_PER_S)


@pytest.mark.parametrize("block_align", [2, 4, 6])
def test_unit_size_is_block_aligned(block_align: int):
    size = unit_size_bytes(
        total_duration_s=3.3,
        bytes_per_second=44_100 * block_align,
        block_align=block_align,
        config=DeliveryConfig(),
        latency_budget_ms=1_500,
    )
    assert size > 0
    assert size % block_align == 0


# ---------------------------------------------------------------------
# Planning
# ---------------------------------------------------------------------

def test_small_response_is_one_unit():
    response = raw_response(12_000)
    units = plan_units(response, config=DeliveryConfig())

    assert len(units) == 1
    assert units[0].is_first and units[0].is_last
    assert units[0].total_units == 1
    assert units[0].payload == response.audio


def test_raw_segmentation_is_lossless():
    response = raw_response(8 * BYTES_PER_S + 123 * 2)
    units = plan_units(response, config=DeliveryConfig())

    assert len(units) > 1
    assert [u.index for u in units] == list(range(len(units)))
    assert all(u.total_units == len(units) for u in units)
    assert b"".join(u.samples for u in units) == response.samples
    assert [u.is_last for u in units].count(True) == 1
    assert units[-1].is_last


def test_units_are_assigned_round_robin():
    config = DeliveryConfig(lane_count=3)
    units = plan_units(raw_response(20 * BYTES_PER_S), config=config)
    assert [u.lane_id for u in units] == [lane_for_index(u.index, 3) for u in units]
    assert {u.lane_id for u in units} == {0, 1, 2}


def test_container_units_carry_corrected_headers():
    response = container_response(24_000 * 2 * 6 + 10)
    units = plan_units(response, config=DeliveryConfig())
    source_header = response.audio[:44]

    assert len(units) > 1
    for unit in units:
        piece = unit.samples
        assert unit.header_bytes == 44
        assert struct.unpack_from("<I", unit.payload, 4)[0] == 36 + len(piece)
        assert struct.unpack_from("<I", unit.payload, 40)[0] == len(piece)
        assert unit.payload[0:4] == source_header[0:4]
        assert unit.payload[8:40] == source_header[8:40]

    assert b"".join(u.samples for u in units) == response.samples


def test_stereo_units_do_not_split_frames():
    response = container_response(44_100 * 4 * 3, rate=44_100, channels=2)
    units = plan_units(response, config=DeliveryConfig())
    for unit in units[:-1]:
        assert len(unit.samples) % 4 == 0


def test_empty_response_has_no_units():
    assert plan_units(raw_response(0), config=DeliveryConfig()) == ()


def test_explicit_budget_overrides_config():
    response = raw_response(20 * BYTES_PER_S)
    tight = plan_units(response, config=DeliveryConfig(), latency_budget_ms=500)
    loose = plan_units(response, config=DeliveryConfig(), latency_budget_ms=10_000)
    assert len(tight) > len(loose)


# ---------------------------------------------------------------------
# ChunkScheduler
# ---------------------------------------------------------------------

def test_scheduler_parks_plan_until_taken():
    scheduler = ChunkScheduler(config=DeliveryConfig())
    units = scheduler.schedule(raw_response(12_000))

    assert scheduler.has_pending("c1")
    assert scheduler.take("c1") == units
    assert scheduler.take("c1") is None


def test_scheduler_clear_discards_plan():
    scheduler = ChunkScheduler(config=DeliveryConfig())
    units = scheduler.schedule(raw_response(8 * BYTES_PER_S))

    assert scheduler.clear("c1") == len(units)
    assert not scheduler.has_pending("c1")
    assert scheduler.clear("c1") == 0
