"""
JSONL event logger.

- Write one JSON object per line
- Output to stdout
- No buffering, no batching
- Optional "level" key filtered against a process-wide threshold
- No side effects beyond logging
"""

from __future__ import annotations

import json
import sys
import time
from typing import Any, Mapping, Callable


_LEVELS: dict[str, int] = {
    "DEBUG": 10,
    "INFO": 20,
    "WARNING": 30,
    "ERROR": 40,
}

_min_level: int = _LEVELS["INFO"]


# ------------------------------------------------------------------
# Explicit output sink (patchable in tests)
# ------------------------------------------------------------------

def _stdout_print(line: str) -> None:
    sys.stdout.write(line + "\n")
    sys.stdout.flush()

_print: Callable[[str], None] = _stdout_print


def set_log_level(level: str) -> None:
    """
    Set the minimum level that log_event() writes.

    Unknown names fall back to INFO.
    """
    global _min_level  # pylint: disable=global-statement
    _min_level = _LEVELS.get(level.upper(), _LEVELS["INFO"])


def log_event(event: Mapping[str, Any]) -> None:
    """
    Write a single JSONL event to stdout.

    The caller supplies event_type and any correlation keys
    (session_id, generation, turn_id). ts_ms is added when absent.
    Events carrying "level" below the configured threshold are dropped;
    events without a level are always written.

    Never raises.
    """
    level = event.get("level")
    if isinstance(level, str) and _LEVELS.get(level.upper(), _LEVELS["INFO"]) < _min_level:
        return

    record: dict[str, Any] = dict(event)
    if "ts_ms" not in record:
        record["ts_ms"] = int(time.time() * 1000)

    try:
        line = json.dumps(record, ensure_ascii=False, separators=(",", ":"))
    except (TypeError, ValueError) as e:
        # Last-resort fallback; logging must never crash the relay
        fallback: dict[str, Any] = {
            "ts_ms": record.get("ts_ms"),
            "event_type": "LOGGER_SERIALIZATION_ERROR",
            "error": str(e),
            "original_event_repr": repr(event),
        }
        line = json.dumps(fallback, ensure_ascii=False, separators=(",", ":"))

    _print(line)
