# pylint: disable=missing-module-docstring,missing-function-docstring

import pytest

from relay.models import CompleteResponse
from relay.queues import ResponseQueue


def make_response(turn_id: str) -> CompleteResponse:
    return CompleteResponse(
        conversation_id="c1",
        turn_id=turn_id,
        generation=0,
        audio=b"\x00\x00",
        sample_rate_hz=48_000,
        channels=1,
        bits_per_sample=16,
        has_header=False,
    )


# ---------------------------------------------------------------------
# FIFO
# ---------------------------------------------------------------------

def test_fifo_order():
    q = ResponseQueue(max_responses=4)
    for turn in ("a", "b", "c"):
        assert q.enqueue(make_response(turn))

    assert q.peek().turn_id == "a"
    assert [q.dequeue().turn_id for _ in range(3)] == ["a", "b", "c"]
    assert q.dequeue() is None
    assert q.is_empty()


# ---------------------------------------------------------------------
# Drops
# ---------------------------------------------------------------------

def test_overflow_drops_newest():
    q = ResponseQueue(max_responses=2)

    assert q.enqueue(make_response("a")) is True
    assert q.enqueue(make_response("b")) is True
    assert q.enqueue(make_response("c")) is False

    assert q.drops.overflow == 1
    assert [q.dequeue().turn_id, q.dequeue().turn_id] == ["a", "b"]


def test_clear_counts_as_interrupted():
    q = ResponseQueue(max_responses=4)
    q.enqueue(make_response("a"))
    q.enqueue(make_response("b"))

    assert q.clear() == 2
    assert q.drops.interrupted == 2
    assert len(q) == 0


def test_invalid_capacity():
    with pytest.raises(ValueError):
        ResponseQueue(max_responses=0)
