"""
Two-layer throttling applied before any value leaves the engine.

- **Interval gate**: keyed rate limiter.  A call under a key is suppressed
  if less than the configured interval has elapsed since the last allowed
  call under the same key.  Keys are independent.
- **Magnitude gate**: a value is emitted only if it differs from the last
  emitted value by at least the metric's threshold.  A metric that was
  never emitted compares against 0.

Numeric values are rounded to 2 decimals when emitted (:func:`clamp`).  The
magnitude comparison always uses the unrounded new value.

CHANGELOG:
- 2026-10-19: Drop unused last_allowed accessor (STORY-019)
- 2026-10-13: Initial creation (STORY-008)

TODO:
- None
"""

from __future__ import annotations

from collections.abc import Mapping

SYSTEM_SYNC_KEY = "SystemSync"
"""Interval gate key guarding Synchronization Engine passes."""


def independent_key(name: str) -> str:
    """Interval gate key for a global scalar updated outside a pass."""
    return f"Indep_{name}"


def clamp(value: float | int | str | None) -> float | int | str | None:
    """Round numeric values to 2 decimals; pass anything else through."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return value
    return round(value, 2)


class ThresholdGate:
    """Interval registry plus the magnitude check.

    Args:
        interval_s: Minimum seconds between allowed calls under one key.
    """

    def __init__(self, interval_s: float) -> None:
        self._interval_ms = interval_s * 1000.0
        self._last_allowed: dict[str, int] = {}

    def rate_limited(self, key: str, now_ms: int) -> bool:
        """Return True if *key* is still inside its interval.

        When the call is allowed, *now_ms* is recorded as the key's new
        timestamp.
        """
        last = self._last_allowed.get(key)
        if last is not None and now_ms - last < self._interval_ms:
            return True
        self._last_allowed[key] = now_ms
        return False

    def mark(self, key: str, now_ms: int) -> None:
        """Record an allowed call under *key* that bypassed the check."""
        self._last_allowed[key] = now_ms

    def reset(self) -> None:
        """Forget every key (daily rollover)."""
        self._last_allowed.clear()

    @staticmethod
    def changed(
        last_emitted: Mapping[str, float | int | str | None],
        name: str,
        value: float,
        threshold: float,
    ) -> bool:
        """Magnitude gate: True if *value* moved at least *threshold*."""
        previous = last_emitted.get(name)
        if not isinstance(previous, (int, float)):
            previous = 0
        return abs(value - previous) >= threshold
