"""
Pure classifier for meter sensor identifiers.

Maps a sample id such as ``"sensor-voltage"`` or ``"sensor-power_3"`` onto a
closed set of kinds so the engine can dispatch without ad-hoc string checks.
Rules are applied in priority order:

1. ``voltage`` anywhere in the id
2. ``frequency``
3. ``temperature``
4. ``uptime``
5. ``(power|current|energy|amperage)_<N>`` without ``internal``

Anything else is :attr:`SampleKind.UNKNOWN`.

CHANGELOG:
- 2026-10-13: Initial creation (STORY-005)

TODO:
- None
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import StrEnum

_CHANNEL_RE = re.compile(r"(power|current|energy|amperage)_(\d+)", re.IGNORECASE)


class SampleKind(StrEnum):
    VOLTAGE = "voltage"
    FREQUENCY = "frequency"
    TEMPERATURE = "temperature"
    UPTIME = "uptime"
    CHANNEL_METRIC = "channel_metric"
    UNKNOWN = "unknown"


class Quantity(StrEnum):
    """Per-channel raw quantity a channel metric sample updates."""

    POWER = "power"
    CURRENT = "current"
    ENERGY = "energy"


_QUANTITY_BY_METRIC: dict[str, Quantity] = {
    "power": Quantity.POWER,
    "current": Quantity.CURRENT,
    "amperage": Quantity.CURRENT,
    "energy": Quantity.ENERGY,
}


@dataclass(frozen=True, slots=True)
class Classification:
    """Result of :func:`classify`.

    ``quantity`` and ``channel`` are only set for
    :attr:`SampleKind.CHANNEL_METRIC`.
    """

    kind: SampleKind
    quantity: Quantity | None = None
    channel: int | None = None


_UNKNOWN = Classification(SampleKind.UNKNOWN)


def classify(sample_id: str | None) -> Classification:
    """Classify a sensor identifier.

    Args:
        sample_id: The ``id`` field of a decoded sample.  ``None`` or an
            empty string classifies as unknown.

    Returns:
        The :class:`Classification` for the id.
    """
    if not sample_id:
        return _UNKNOWN

    if "voltage" in sample_id:
        return Classification(SampleKind.VOLTAGE)
    if "frequency" in sample_id:
        return Classification(SampleKind.FREQUENCY)
    if "temperature" in sample_id:
        return Classification(SampleKind.TEMPERATURE)
    if "uptime" in sample_id:
        return Classification(SampleKind.UPTIME)

    match = _CHANNEL_RE.search(sample_id)
    if match is None or "internal" in sample_id:
        return _UNKNOWN

    channel = int(match.group(2))
    if channel < 1:
        return _UNKNOWN
    return Classification(
        SampleKind.CHANNEL_METRIC,
        quantity=_QUANTITY_BY_METRIC[match.group(1).lower()],
        channel=channel,
    )
