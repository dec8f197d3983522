from __future__ import annotations

import time


class CapacityIncreaseThrottle:
    """Minimum interval between successive capacity increases.

    Only growth is rate limited. The timestamp starts one interval in the
    past so the first increase is always allowed.
    """

    def __init__(self, interval_seconds: float, now: float | None = None) -> None:
        if now is None:
            now = time.monotonic()
        self._interval = interval_seconds
        self._last_increase = now - interval_seconds

    @property
    def interval_seconds(self) -> float:
        return self._interval

    @property
    def last_increase(self) -> float:
        return self._last_increase

    def allows_increase(self, now: float | None = None) -> bool:
        if now is None:
            now = time.monotonic()
        return now >= self._last_increase + self._interval

    def seconds_until_allowed(self, now: float | None = None) -> float:
        if now is None:
            now = time.monotonic()
        return max(0.0, self._last_increase + self._interval - now)

    def record_increase(self, now: float | None = None) -> None:
        if now is None:
            now = time.monotonic()
        self._last_increase = now
