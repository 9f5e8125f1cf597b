"""
Per-conversation delivery phase.

Rules:
- This enum defines ONLY the phases.
- Allowed transitions live in relay.conversation.
"""

from __future__ import annotations

from enum import Enum


class Phase(str, Enum):
    """
    Where a conversation is in the response pipeline.

    INTERRUPTED is transient: it always returns to IDLE after a short delay
    or when the next user turn begins.
    """

    IDLE = "IDLE"
    ACCUMULATING = "ACCUMULATING"
    DELIVERING = "DELIVERING"
    INTERRUPTED = "INTERRUPTED"
