from __future__ import annotations

from time import perf_counter
from typing import Callable, Optional


def clamp_dt(dt: float, max_dt: float) -> float:
    if dt != dt or dt <= 0.0:
        return 0.0
    return min(dt, max_dt)


class FrameClock:
    """Clamped per-frame delta time; the only time source the integrator sees."""

    def __init__(self, max_dt: float, time_source: Callable[[], float] = perf_counter) -> None:
        self._max_dt = max_dt
        self._time_source = time_source
        self._last: Optional[float] = None
        self._frames = 0

    @property
    def max_dt(self) -> float:
        return self._max_dt

    @property
    def frames(self) -> int:
        return self._frames

    @property
    def last_time(self) -> Optional[float]:
        return self._last

    def reset(self) -> None:
        self._last = None
        self._frames = 0

    def tick(self, now: Optional[float] = None) -> float:
        if now is None:
            now = self._time_source()
        previous = self._last
        self._last = now
        self._frames += 1
        if previous is None:
            return 0.0
        return clamp_dt(now - previous, self._max_dt)
