"""
Upstream reconnect policy.

Purpose:
- Centralize how many times and how quickly a dropped realtime session is
  re-established
- Keep the engine's receive loop free of policy constants

This module contains NO timers, NO async, NO side effects.
"""
from __future__ import annotations

from dataclasses import dataclass

from constants import (
    UPSTREAM_MAX_RECONNECTS,
    UPSTREAM_RECONNECT_DELAYS_MS,
)


@dataclass(frozen=True)
class ReconnectAttempt:
    """
    Immutable reconnect attempt counter.

    attempt == 0 means no reconnect has been tried since the last
    successful connection.
    """
    attempt: int


def reset_attempt() -> ReconnectAttempt:
    """Returns a fresh attempt counter."""
    return ReconnectAttempt(attempt=0)


def next_attempt(current: ReconnectAttempt) -> ReconnectAttempt:
    return ReconnectAttempt(attempt=current.attempt + 1)


def should_reconnect(
    attempt: ReconnectAttempt,
    *,
    max_reconnects: int = UPSTREAM_MAX_RECONNECTS,
) -> bool:
    """True while fewer than max_reconnects attempts have been made."""
    return attempt.attempt < max_reconnects


def get_reconnect_delay_ms(attempt: ReconnectAttempt) -> int:
    """
    Backoff before reconnect attempt N.

    Clamped to the last configured slot.
    """
    idx = min(attempt.attempt, len(UPSTREAM_RECONNECT_DELAYS_MS) - 1)
    return UPSTREAM_RECONNECT_DELAYS_MS[idx]
