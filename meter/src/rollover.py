"""
Daily rollover helpers.

The engine calls these under its lock and then forces a pass; they only
mutate the store.

CHANGELOG:
- 2026-10-14: Initial creation (STORY-013)

TODO:
- None
"""

from __future__ import annotations

import logging

from meter.src.store import ChannelStore

logger = logging.getLogger(__name__)

DAILY_ATTRIBUTES = ("lowestDailyWatts", "dailyActiveTime")
"""Per-channel attributes cleared at rollover."""


def snapshot_energy_offsets(store: ChannelStore) -> None:
    """Move every channel's baseline to its current counter reading.

    Daily energy restarts at 0 for each channel afterwards.
    """
    for channel in store:
        channel.energy_offset = channel.energy_raw
    logger.info("Energy offsets snapshotted for %d channels", len(store))


def clear_daily_accumulators(store: ChannelStore) -> None:
    """Clear vampire minimums and duty accumulators on every channel."""
    for channel in store:
        channel.lowest_watts = None
        channel.daily_active_minutes = 0.0
