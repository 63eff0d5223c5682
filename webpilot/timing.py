"""
Clock helpers shared by the run loop, the summarizer and logging.

- Durations come from the monotonic clock so wall-clock jumps never skew them
- UTC strings are for log lines and persisted transcripts only
"""
from __future__ import annotations

import time
from datetime import datetime, timezone

_PROCESS_START_MONOTONIC = time.monotonic()
_PROCESS_START_WALL = time.time()


def monotonic_seconds() -> float:
    """Current monotonic time in seconds."""
    return time.monotonic()


def elapsed_since(started_at: float) -> float:
    """Non-negative seconds elapsed since a ``monotonic_seconds()`` reading."""
    return max(0.0, time.monotonic() - started_at)


def uptime_seconds() -> float:
    return time.monotonic() - _PROCESS_START_MONOTONIC


def _iso(dt: datetime) -> str:
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def now_utc_iso() -> str:
    """ISO-8601 UTC timestamp with millisecond precision, e.g. 2025-08-25T12:34:56.789Z."""
    return _iso(datetime.now(timezone.utc))


def now_utc_compact() -> str:
    """Filesystem-safe UTC stamp used in transcript file names."""
    return datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")


def process_start_utc_iso() -> str:
    return _iso(datetime.fromtimestamp(_PROCESS_START_WALL, tz=timezone.utc))
