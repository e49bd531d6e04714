"""
Timing Utilities.

Wall-clock measurement for pipeline stages. Stage timings feed the
VERBOSE log level and the X-Processing-Time response header.

Example Usage:
    with timeit("cache_lookup") as t:
        hit = index.lookup_completed(fp, user_id)
    verbose(_LOG, "stage", event="cache_lookup", seconds=t.seconds)

Precision:
    Uses time.perf_counter(), so values are only meaningful as durations.
"""
from __future__ import annotations

from dataclasses import dataclass
from time import perf_counter
from typing import Any, Dict, Optional


@dataclass
class Timing:
    """
    Timing measurement result.

    Attributes:
        name: Identifier for what was timed (e.g., "provider", "upload").
        seconds: Duration in seconds.
        meta: Optional metadata attached by the caller.
    """
    name: str
    seconds: float
    meta: Optional[Dict[str, Any]] = None


class timeit:
    """
    Context manager for timing code blocks.

    The result is available on ``timing`` after the block exits, and
    ``seconds`` is a shortcut that returns -1.0 while still running.
    """

    def __init__(self, name: str, meta: Optional[Dict[str, Any]] = None):
        self.name = name
        self.meta = meta
        self._t0: float | None = None
        self.timing: Timing | None = None

    def __enter__(self) -> "timeit":
        self._t0 = perf_counter()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        t1 = perf_counter()
        assert self._t0 is not None
        self.timing = Timing(name=self.name, seconds=(t1 - self._t0), meta=self.meta)

    @property
    def seconds(self) -> float:
        """Measured duration, or -1.0 if the block has not finished."""
        return self.timing.seconds if self.timing else -1.0
