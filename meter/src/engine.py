"""
Derived-metrics synchronization engine.

Consumes decoded telemetry samples, keeps per-channel and aggregate state,
and turns it into attribute events for the hub.  One engine instance owns
one meter.

Public operations (``ingest``, ``run_pass``, ``force_pass``, ``rollover``,
``reset_daily_energy``, ``publish_connection_state``) each hold the engine
lock for their whole duration and return the list of
:class:`~meter.src.models.AttributeEvent` they emitted.  A pass therefore
always sees a store that no ingestion is mutating, so aggregate totals
always equal the sum of the per-channel values published in the same pass.

Pass outline:

1. Interval gate on ``SystemSync`` (skipped for forced passes).
2. Per channel: daily energy, totals, phase legs, vampire minimum,
   runtime/duty state machine, breaker load, raw values.
3. Aggregate totals.
4. Phase balance (or ``Disabled``).

Duty time is approximated: the whole interval since the previous pass is
charged to every channel that is on at pass time.

CHANGELOG:
- 2026-10-19: Runtime tracking reads ChannelState.is_active (STORY-019)
- 2026-10-16: Publish connectionState through the engine (STORY-016)
- 2026-10-15: Clear daily attributes on rollover (STORY-013)
- 2026-10-14: Runtime/duty state machine and breaker load (STORY-011)
- 2026-10-13: Initial creation (STORY-009)

TODO:
- None
"""

from __future__ import annotations

import logging
import math
import threading
import time
from collections.abc import Callable
from datetime import UTC, datetime

from meter.src.classifier import SampleKind, classify
from meter.src.config import EngineConfig
from meter.src.evaluators import convert_temperature, grid_status, phase_balance
from meter.src.gate import SYSTEM_SYNC_KEY, ThresholdGate, clamp, independent_key
from meter.src.models import (
    AttributeEvent,
    ConnectionState,
    GridStatus,
    PhaseStatus,
    TelemetrySample,
)
from meter.src.rollover import (
    DAILY_ATTRIBUTES,
    clear_daily_accumulators,
    snapshot_energy_offsets,
)
from meter.src.store import AttributeValue, ChannelState, ChannelStore, SystemState

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Fixed magnitude thresholds for derived metrics
# ---------------------------------------------------------------------------

TEMPERATURE_THRESHOLD = 0.1
LOWEST_WATTS_THRESHOLD = 0.5
RUNTIME_THRESHOLD = 1.0
RUNTIME_RESET_THRESHOLD = 0.1
RUN_HOURS_ACTIVE_THRESHOLD = 0.1
RUN_HOURS_IDLE_THRESHOLD = 0.5
DAILY_ACTIVE_THRESHOLD = 1.0
LOAD_PERCENT_THRESHOLD = 1.0
PHASE_AMPS_THRESHOLD = 0.1
PHASE_IMBALANCE_THRESHOLD = 1.0

_MS_PER_MINUTE = 60_000
_MS_PER_HOUR = 3_600_000


def _epoch_ms() -> int:
    return int(time.time() * 1000)


def _to_number(value: object) -> float | None:
    """Coerce a sample value to a finite float, or None."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


class MeterEngine:
    """Stateful derived-metrics engine for one multi-channel meter.

    Args:
        config: Immutable configuration snapshot.
        device_id: Identifier stamped on every emitted event.
        clock: Returns the current time in epoch milliseconds.  Injected
            so tests can drive time explicitly.
    """

    def __init__(
        self,
        config: EngineConfig,
        *,
        device_id: str,
        clock: Callable[[], int] = _epoch_ms,
    ) -> None:
        self._config = config
        self._device_id = device_id
        self._clock = clock
        self._store = ChannelStore()
        self._system = SystemState(last_pass_ms=clock())
        self._gate = ThresholdGate(config.min_interval_s)
        self._lock = threading.RLock()
        self._outbox: list[AttributeEvent] = []

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def store(self) -> ChannelStore:
        return self._store

    @property
    def system(self) -> SystemState:
        return self._system

    @property
    def channel_count(self) -> int:
        return len(self._store)

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def ingest(self, sample: TelemetrySample) -> list[AttributeEvent]:
        """Route one decoded sample.

        Never raises on bad input: unknown ids and non-numeric values are
        logged at debug level and dropped without touching any state.
        """
        with self._lock:
            self._ingest(sample, self._clock())
            return self._drain()

    def run_pass(self, now_ms: int | None = None) -> list[AttributeEvent]:
        """Run a rate-limited synchronization pass."""
        with self._lock:
            self._run_pass(self._clock() if now_ms is None else now_ms, force=False)
            return self._drain()

    def force_pass(self) -> list[AttributeEvent]:
        """Run a synchronization pass bypassing the interval gate."""
        with self._lock:
            self._run_pass(self._clock(), force=True)
            return self._drain()

    def reset_daily_energy(self) -> list[AttributeEvent]:
        """Restart daily energy at 0 for every channel and publish it."""
        with self._lock:
            snapshot_energy_offsets(self._store)
            self._run_pass(self._clock(), force=True)
            return self._drain()

    def rollover(self) -> list[AttributeEvent]:
        """Daily rollover: reset energy, vampire minimums and duty time.

        Also forgets the rate-limit registry and publishes one pass
        immediately, regardless of the interval gate.
        """
        with self._lock:
            now = self._clock()
            logger.info("Performing daily rollover for %d channels", len(self._store))
            snapshot_energy_offsets(self._store)
            clear_daily_accumulators(self._store)
            self._gate.reset()
            for channel in self._store:
                for name in DAILY_ATTRIBUTES:
                    if name in channel.last_emitted:
                        self._clear(channel, name, now)
            self._run_pass(now, force=True)
            return self._drain()

    def publish_connection_state(self, state: ConnectionState) -> list[AttributeEvent]:
        """Publish the event stream state when it changed."""
        with self._lock:
            if self._system.last_emitted.get("connectionState") != state.value:
                self._send(None, "connectionState", state.value, None, self._clock())
            return self._drain()

    # ------------------------------------------------------------------
    # Ingestion routing
    # ------------------------------------------------------------------

    def _ingest(self, sample: TelemetrySample, now: int) -> None:
        result = classify(sample.id)

        if result.kind is SampleKind.UNKNOWN:
            logger.debug("Ignoring sample with unrecognised id '%s'", sample.id)
            return

        if result.kind is SampleKind.UPTIME:
            if sample.state is not None:
                text = sample.state
            else:
                text = "" if sample.value is None else str(sample.value)
            self._send(None, "uptime", text, None, now)
            return

        value = _to_number(sample.value)
        if value is None:
            logger.debug("Dropping non-numeric sample %s=%r", sample.id, sample.value)
            return

        threshold = self._config.change_threshold
        if result.kind is SampleKind.VOLTAGE:
            self._check_grid_health(value, now)
            self._update_sensor("voltage", value, "V", threshold, now)
        elif result.kind is SampleKind.FREQUENCY:
            self._update_sensor("frequency", value, "Hz", threshold, now)
        elif result.kind is SampleKind.TEMPERATURE:
            converted, unit = convert_temperature(value, self._config.temp_scale)
            self._update_sensor("temperature", converted, unit, TEMPERATURE_THRESHOLD, now)
        else:
            channel, created = self._store.get_or_create(result.channel)
            if created:
                self._send(None, "channelCount", len(self._store), None, now)
            channel.set_reading(result.quantity, value)
            self._run_pass(now, force=False)

    def _check_grid_health(self, voltage: float, now: int) -> None:
        status = grid_status(voltage, self._config.voltage_low, self._config.voltage_high)
        if status is self._system.grid_status:
            return
        if status is not GridStatus.NORMAL:
            logger.warning("GRID ALERT: Voltage is %.1fV (%s)!", voltage, status)
        self._system.grid_status = status
        self._send(None, "gridStatus", status.value, None, now)

    def _update_sensor(
        self,
        name: str,
        value: float,
        unit: str,
        threshold: float,
        now: int,
    ) -> None:
        """Publish a global scalar under its own interval key."""
        if self._gate.rate_limited(independent_key(name), now):
            return
        self._send_if_changed(None, name, value, unit, threshold, now)

    # ------------------------------------------------------------------
    # Synchronization pass
    # ------------------------------------------------------------------

    def _run_pass(self, now: int, *, force: bool) -> bool:
        if force:
            self._gate.mark(SYSTEM_SYNC_KEY, now)
        elif self._gate.rate_limited(SYSTEM_SYNC_KEY, now):
            return False

        cfg = self._config
        last = self._system.last_pass_ms if self._system.last_pass_ms is not None else now
        delta_minutes = max(0.0, (now - last) / _MS_PER_MINUTE)
        self._system.last_pass_ms = now

        total_power = 0.0
        total_energy = 0.0
        total_current = 0.0
        amps_a = 0.0
        amps_b = 0.0

        for channel in self._store:
            daily_energy = channel.daily_energy()
            total_power += channel.power
            total_energy += daily_energy
            total_current += channel.current

            if cfg.phase_enabled:
                leg = cfg.phase_of(channel.index)
                if leg == "A":
                    amps_a += channel.current
                elif leg == "B":
                    amps_b += channel.current

            self._track_vampire(channel, now)
            self._track_runtime(channel, now, delta_minutes)

            breaker = cfg.breaker_for(channel.index)
            if breaker > 0:
                load_pct = channel.current / breaker * 100.0
                self._send_if_changed(
                    channel, "loadPercent", load_pct, "%", LOAD_PERCENT_THRESHOLD, now
                )

            self._send_if_changed(channel, "power", channel.power, "W", cfg.change_threshold, now)
            self._send_if_changed(
                channel, "energy", daily_energy, "kWh", cfg.energy_threshold, now
            )
            self._send_if_changed(
                channel, "amperage", channel.current, "A", cfg.change_threshold, now
            )

        self._send_if_changed(None, "power", total_power, "W", cfg.change_threshold, now)
        self._send_if_changed(None, "energy", total_energy, "kWh", cfg.energy_threshold, now)
        self._send_if_changed(None, "amperage", total_current, "A", cfg.change_threshold, now)

        if cfg.phase_enabled:
            self._update_phase_balance(amps_a, amps_b, now)
        elif self._system.phase_status is not PhaseStatus.DISABLED:
            self._system.phase_status = PhaseStatus.DISABLED
            self._send(None, "phaseStatus", PhaseStatus.DISABLED.value, None, now)
        return True

    def _track_vampire(self, channel: ChannelState, now: int) -> None:
        power = channel.power
        lowest = channel.lowest_watts
        if power > 0 and (lowest is None or power < lowest):
            channel.lowest_watts = power
            self._send_if_changed(
                channel, "lowestDailyWatts", power, "W", LOWEST_WATTS_THRESHOLD, now
            )
        elif lowest is not None and "lowestDailyWatts" not in channel.last_emitted:
            self._send(channel, "lowestDailyWatts", lowest, "W", now)

    def _track_runtime(self, channel: ChannelState, now: int, delta_minutes: float) -> None:
        if channel.power >= self._config.active_threshold_w:
            if not channel.is_active:
                channel.active_since = now
            minutes = round((now - channel.active_since) / _MS_PER_MINUTE, 1)
            self._send_if_changed(
                channel, "continuousRuntime", minutes, "min", RUNTIME_THRESHOLD, now
            )
            channel.daily_active_minutes += delta_minutes
            channel.last_run_at = now
            self._send_if_changed(
                channel, "hoursSinceLastRun", 0.0, "hrs", RUN_HOURS_ACTIVE_THRESHOLD, now
            )
        else:
            if channel.is_active:
                channel.active_since = None
                self._send_if_changed(
                    channel, "continuousRuntime", 0, "min", RUNTIME_RESET_THRESHOLD, now
                )
            if channel.last_run_at is not None:
                hours = round((now - channel.last_run_at) / _MS_PER_HOUR, 2)
                self._send_if_changed(
                    channel, "hoursSinceLastRun", hours, "hrs", RUN_HOURS_IDLE_THRESHOLD, now
                )

        if channel.daily_active_minutes > 0:
            self._send_if_changed(
                channel,
                "dailyActiveTime",
                round(channel.daily_active_minutes, 1),
                "min",
                DAILY_ACTIVE_THRESHOLD,
                now,
            )

    def _update_phase_balance(self, amps_a: float, amps_b: float, now: int) -> None:
        self._send_if_changed(None, "phaseA_Amps", amps_a, "A", PHASE_AMPS_THRESHOLD, now)
        self._send_if_changed(None, "phaseB_Amps", amps_b, "A", PHASE_AMPS_THRESHOLD, now)

        pct, status = phase_balance(amps_a, amps_b, self._config.imbalance_threshold)
        self._send_if_changed(None, "phaseImbalance", pct, "%", PHASE_IMBALANCE_THRESHOLD, now)

        if status is self._system.phase_status:
            return
        self._system.phase_status = status
        self._send(None, "phaseStatus", status.value, None, now)
        if status is PhaseStatus.WARNING:
            logger.warning(
                "PHASE IMBALANCE: %.1f%% (A:%.2fA vs B:%.2fA)", pct, amps_a, amps_b
            )

    # ------------------------------------------------------------------
    # Emission
    # ------------------------------------------------------------------

    def _last_emitted(self, channel: ChannelState | None) -> dict[str, AttributeValue]:
        return self._system.last_emitted if channel is None else channel.last_emitted

    def _send_if_changed(
        self,
        channel: ChannelState | None,
        name: str,
        value: float,
        unit: str | None,
        threshold: float,
        now: int,
    ) -> None:
        if self._gate.changed(self._last_emitted(channel), name, value, threshold):
            self._send(channel, name, value, unit, now)

    def _send(
        self,
        channel: ChannelState | None,
        name: str,
        value: AttributeValue,
        unit: str | None,
        now: int,
    ) -> None:
        value = clamp(value)
        self._last_emitted(channel)[name] = value
        self._outbox.append(self._event(channel, name, value, unit, now))

    def _clear(self, channel: ChannelState, name: str, now: int) -> None:
        """Publish a cleared attribute and forget its last value."""
        channel.last_emitted.pop(name, None)
        self._outbox.append(self._event(channel, name, None, None, now))

    def _event(
        self,
        channel: ChannelState | None,
        name: str,
        value: AttributeValue,
        unit: str | None,
        now: int,
    ) -> AttributeEvent:
        return AttributeEvent(
            device_id=self._device_id,
            channel=None if channel is None else channel.index,
            label=None if channel is None else self._config.label_for(channel.index),
            name=name,
            value=value,
            unit=unit,
            ts=datetime.fromtimestamp(now / 1000, tz=UTC),
        )

    def _drain(self) -> list[AttributeEvent]:
        events, self._outbox = self._outbox, []
        return events
