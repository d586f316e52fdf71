"""
sluice.scheduling.processing_stats - Rolling Processing Time
==============================================================

Admission estimates waits as position × average processing time. The average
comes from the most recent completions; before any job completes it falls
back to the configured estimate.
"""

from __future__ import annotations

from collections import deque


class ProcessingTimeTracker:
    """Rolling average over the last `window` processing times.

    Example:
        >>> tracker = ProcessingTimeTracker(default_ms=30_000, window=3)
        >>> tracker.average_ms
        30000.0
        >>> tracker.record(10_000); tracker.record(20_000)
        >>> tracker.average_ms
        15000.0
    """

    def __init__(self, default_ms: int = 30_000, window: int = 50) -> None:
        self._default_ms = default_ms
        self._samples: deque[int] = deque(maxlen=window)

    def record(self, processing_time_ms: int) -> None:
        if processing_time_ms >= 0:
            self._samples.append(processing_time_ms)

    @property
    def average_ms(self) -> float:
        if not self._samples:
            return float(self._default_ms)
        return sum(self._samples) / len(self._samples)

    @property
    def sample_count(self) -> int:
        return len(self._samples)

    def estimate_wait_ms(self, position: int) -> int:
        return int(max(0, position) * self.average_ms)
