"""
Pure grid, phase and temperature evaluators.

CHANGELOG:
- 2026-10-13: Initial creation (STORY-010)

TODO:
- None
"""

from __future__ import annotations

from meter.src.models import GridStatus, PhaseStatus, TempScale

PHASE_MIN_LOAD_A = 5.0
"""Heavier leg must exceed this many amps before an imbalance can warn."""


def grid_status(voltage: float, low: float, high: float) -> GridStatus:
    """Classify a voltage reading against the brownout/surge band."""
    if voltage < low:
        return GridStatus.BROWNOUT
    if voltage > high:
        return GridStatus.SURGE
    return GridStatus.NORMAL


def phase_balance(
    amps_a: float,
    amps_b: float,
    imbalance_threshold: float,
) -> tuple[float, PhaseStatus]:
    """Compute split-phase imbalance.

    The imbalance is the difference between the legs as a percentage of the
    heavier leg.  At near-zero load a tiny absolute difference yields a huge
    percentage, so a warning additionally requires the heavier leg to carry
    more than :data:`PHASE_MIN_LOAD_A`.

    Args:
        amps_a: Summed current on leg A.
        amps_b: Summed current on leg B.
        imbalance_threshold: Warning threshold in percent.

    Returns:
        ``(imbalance_pct, status)``.
    """
    heavier = max(amps_a, amps_b)
    pct = abs(amps_a - amps_b) / heavier * 100.0 if heavier > 0 else 0.0
    if pct > imbalance_threshold and heavier > PHASE_MIN_LOAD_A:
        return pct, PhaseStatus.WARNING
    return pct, PhaseStatus.BALANCED


def convert_temperature(celsius: float, scale: TempScale) -> tuple[float, str]:
    """Convert the meter's Celsius reading to the display scale.

    Returns:
        ``(value, unit)``.
    """
    if scale is TempScale.CELSIUS:
        return celsius, "°C"
    if scale is TempScale.KELVIN:
        return celsius + 273.15, "K"
    return celsius * 1.8 + 32, "°F"
