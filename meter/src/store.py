"""
In-memory channel telemetry store.

Holds the latest raw readings and derived per-channel state for every
channel seen so far, plus the aggregate (parent) state.  Channels are
created in exactly one place, :meth:`ChannelStore.get_or_create`, the first
time a sample for their index arrives.  Nothing here is persisted; state
lives for the life of the process.

Timestamps are epoch milliseconds.

CHANGELOG:
- 2026-10-19: Drop unused membership test (STORY-019)
- 2026-10-14: Self-heal energy offset on counter rollback (STORY-009)
- 2026-10-13: Initial creation (STORY-007)

TODO:
- None
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from dataclasses import dataclass, field

from meter.src.classifier import Quantity
from meter.src.models import GridStatus, PhaseStatus

logger = logging.getLogger(__name__)

AttributeValue = float | int | str | None


@dataclass
class ChannelState:
    """Raw readings and derived state for one monitored circuit.

    Attributes:
        index: 1-based channel index.
        power: Last power reading in W (absolute value).
        current: Last current reading in A (absolute value).
        energy_raw: Last cumulative energy reading in kWh.
        energy_offset: Baseline subtracted from energy_raw for daily energy.
        lowest_watts: Minimum positive power since the last rollover.
        active_since: When the channel last turned on, or None while off.
        daily_active_minutes: Minutes spent on since the last rollover.
        last_run_at: Last time the channel was observed on.
        last_emitted: Attribute name -> last value sent for this channel.
    """

    index: int
    power: float = 0.0
    current: float = 0.0
    energy_raw: float = 0.0
    energy_offset: float = 0.0
    lowest_watts: float | None = None
    active_since: int | None = None
    daily_active_minutes: float = 0.0
    last_run_at: int | None = None
    last_emitted: dict[str, AttributeValue] = field(default_factory=dict)

    def set_reading(self, quantity: Quantity, value: float) -> None:
        """Store an absolute reading; the device sign carries no meaning."""
        value = abs(value)
        if quantity is Quantity.POWER:
            self.power = value
        elif quantity is Quantity.CURRENT:
            self.current = value
        else:
            self.energy_raw = value

    def daily_energy(self) -> float:
        """Energy since the last rollover, in kWh.

        If the hardware counter went backwards (device reboot) the offset is
        reset to 0 before computing, so the result is never negative.
        """
        if self.energy_offset > self.energy_raw:
            logger.info(
                "Channel %d energy counter rolled back (%.3f < offset %.3f); "
                "resetting offset",
                self.index,
                self.energy_raw,
                self.energy_offset,
            )
            self.energy_offset = 0.0
        return max(0.0, self.energy_raw - self.energy_offset)

    @property
    def is_active(self) -> bool:
        return self.active_since is not None


@dataclass
class SystemState:
    """Aggregate state of the parent device.

    ``phase_status`` starts unknown so the first pass always publishes it;
    ``grid_status`` starts at Normal and is only published on change.
    """

    grid_status: GridStatus = GridStatus.NORMAL
    phase_status: PhaseStatus | None = None
    last_pass_ms: int | None = None
    last_emitted: dict[str, AttributeValue] = field(default_factory=dict)


class ChannelStore:
    """Mapping of channel index -> :class:`ChannelState`."""

    def __init__(self) -> None:
        self._channels: dict[int, ChannelState] = {}

    def get_or_create(self, index: int) -> tuple[ChannelState, bool]:
        """Return the channel for *index*, creating it on first sight.

        Returns:
            ``(channel, created)`` where *created* is True only for the call
            that created the channel.
        """
        channel = self._channels.get(index)
        if channel is not None:
            return channel, False
        channel = ChannelState(index=index)
        self._channels[index] = channel
        logger.info("Discovered channel %d", index)
        return channel, True

    def get(self, index: int) -> ChannelState | None:
        return self._channels.get(index)

    def __iter__(self) -> Iterator[ChannelState]:
        return iter(sorted(self._channels.values(), key=lambda ch: ch.index))

    def __len__(self) -> int:
        return len(self._channels)
