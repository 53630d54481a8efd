"""
Pydantic models and status enums shared across the edge daemon.

Defines the decoded inbound ``TelemetrySample`` (one SSE state event from the
meter), the outbound ``AttributeEvent`` (one attribute change published to
the hub), and the status enums produced by the grid and phase evaluators.

CHANGELOG:
- 2026-10-19: Add EventBatch upload body (STORY-019)
- 2026-10-14: Add label to AttributeEvent for channel display names (STORY-011)
- 2026-10-12: Initial creation (STORY-002)

TODO:
- None
"""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel


class GridStatus(StrEnum):
    """Grid voltage health derived from the latest voltage sample."""

    NORMAL = "Normal"
    BROWNOUT = "Brownout"
    SURGE = "Surge"


class PhaseStatus(StrEnum):
    """Split-phase load balance status."""

    BALANCED = "Balanced"
    WARNING = "Warning"
    DISABLED = "Disabled"


class TempScale(StrEnum):
    """Display unit for the meter's internal temperature sensor."""

    FAHRENHEIT = "Fahrenheit"
    CELSIUS = "Celsius"
    KELVIN = "Kelvin"


class ConnectionState(StrEnum):
    """Event stream connection state published as ``connectionState``."""

    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


class TelemetrySample(BaseModel):
    """A single decoded state event from the meter's event stream.

    Attributes:
        id: Sensor identifier, e.g. ``"sensor-voltage"`` or ``"sensor-power_3"``.
        value: Numeric reading, or text for non-numeric sensors.
        state: Human-readable state string as reported by the device
            (``"120.4 V"``, ``"2d 3h"``).  Optional.
    """

    id: str
    value: float | int | str | None = None
    state: str | None = None


class AttributeEvent(BaseModel):
    """One attribute change emitted by the engine.

    Parent (aggregate) attributes have ``channel`` set to ``None``.  Numeric
    values are already rounded to display precision.  A ``None`` value means
    the attribute was cleared (daily rollover).

    Attributes:
        device_id: Identifier of the meter the event belongs to.
        channel: 1-based channel index, or None for parent attributes.
        label: Display label for the channel (configured name or ``CT<n>``).
        name: Attribute name, e.g. ``"power"`` or ``"gridStatus"``.
        value: Emitted value.
        unit: Engineering unit, when the attribute has one.
        ts: Time of emission.
    """

    device_id: str
    channel: int | None = None
    label: str | None = None
    name: str
    value: float | int | str | None
    unit: str | None = None
    ts: datetime


class EventBatch(BaseModel):
    """Request body POSTed to the hub's ``/v1/events`` endpoint."""

    events: list[AttributeEvent]
