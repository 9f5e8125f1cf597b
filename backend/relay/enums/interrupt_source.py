"""
Origin of an interruption signal.
"""

from __future__ import annotations

from enum import Enum


class InterruptSource(str, Enum):
    """
    USER: the client sent `interrupt` (barge-in button, stop command).
    UPSTREAM: the engine reported that the user started talking over it.
    """

    USER = "user"
    UPSTREAM = "upstream"
