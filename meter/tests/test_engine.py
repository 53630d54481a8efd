"""
Tests for the derived-metrics synchronization engine.

Drives MeterEngine with decoded samples and a FakeClock and checks the
emitted AttributeEvents: totals, daily energy, throttling, grid and phase
status, vampire and runtime tracking, breaker load and rollover.

CHANGELOG:
- 2026-10-19: Assert runtime state through is_active (STORY-019)
- 2026-10-16: Add connectionState tests (STORY-016)
- 2026-10-15: Add rollover tests (STORY-013)
- 2026-10-14: Add runtime, breaker and phase tests (STORY-011)
- 2026-10-13: Initial creation (STORY-009)

TODO:
- None
"""

from __future__ import annotations

import logging
import threading
from datetime import UTC, datetime

import pytest
from meter.src.config import EngineConfig
from meter.src.engine import MeterEngine
from meter.src.models import (
    AttributeEvent,
    ConnectionState,
    GridStatus,
    PhaseStatus,
    TelemetrySample,
)

from conftest import START_MS, FakeClock


def _engine(clock: FakeClock, **overrides: object) -> MeterEngine:
    return MeterEngine(EngineConfig(**overrides), device_id="meter-test", clock=clock)


def _sample(sample_id: str, value: object) -> TelemetrySample:
    return TelemetrySample(id=sample_id, value=value)


def _values(
    events: list[AttributeEvent], name: str, channel: int | None = None
) -> list[object]:
    return [e.value for e in events if e.name == name and e.channel == channel]


class TestTotals:
    def test_parent_totals_equal_sum_of_channels(self, clock: FakeClock) -> None:
        engine = _engine(clock, min_interval_s=0)

        for sample_id, watts in (
            ("sensor-power_1", 100),
            ("sensor-power_2", 50),
            ("sensor-power_3", 25.5),
            ("sensor-power_1", 10),
        ):
            engine.ingest(_sample(sample_id, watts))
            parts = sum(ch.last_emitted["power"] for ch in engine.store)
            assert engine.system.last_emitted["power"] == pytest.approx(parts)

        assert engine.system.last_emitted["power"] == pytest.approx(85.5)

    def test_totals_published_in_same_batch_as_channel_values(
        self, clock: FakeClock
    ) -> None:
        engine = _engine(clock)
        events = engine.ingest(_sample("sensor-current_1", 4.25))

        assert _values(events, "amperage", channel=1) == [4.25]
        assert _values(events, "amperage") == [4.25]

    def test_concurrent_ingestion_keeps_totals_consistent(
        self, clock: FakeClock
    ) -> None:
        engine = _engine(clock, min_interval_s=0)

        def feed(channel: int) -> None:
            for watts in range(1, 51):
                engine.ingest(_sample(f"sensor-power_{channel}", watts))

        threads = [threading.Thread(target=feed, args=(ch,)) for ch in (1, 2, 3, 4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        engine.force_pass()
        assert engine.system.last_emitted["power"] == pytest.approx(200.0)


class TestDailyEnergy:
    def test_energy_published_relative_to_offset(self, clock: FakeClock) -> None:
        engine = _engine(clock)
        events = engine.ingest(_sample("sensor-energy_1", 5.0))
        assert _values(events, "energy", channel=1) == [5.0]

        events = engine.reset_daily_energy()
        assert _values(events, "energy", channel=1) == [0.0]
        assert _values(events, "energy") == [0.0]

    def test_counter_rollback_self_heals(self, clock: FakeClock) -> None:
        engine = _engine(clock)
        engine.ingest(_sample("sensor-energy_1", 5.0))
        engine.reset_daily_energy()

        clock.advance(seconds=10)
        events = engine.ingest(_sample("sensor-energy_1", 0.4))

        assert _values(events, "energy", channel=1) == [0.4]
        assert engine.store.get(1).energy_offset == 0.0

    def test_reset_daily_energy_keeps_accumulators(self, clock: FakeClock) -> None:
        engine = _engine(clock)
        engine.ingest(_sample("sensor-power_1", 3))
        engine.reset_daily_energy()
        assert engine.store.get(1).lowest_watts == 3.0


class TestThrottling:
    def test_repeat_pass_emits_nothing(self, clock: FakeClock) -> None:
        engine = _engine(clock)
        assert engine.ingest(_sample("sensor-power_1", 5))

        clock.advance(seconds=10)
        assert engine.run_pass() == []

    def test_pass_inside_interval_is_dropped(self, clock: FakeClock) -> None:
        engine = _engine(clock)
        engine.ingest(_sample("sensor-power_1", 100))

        clock.advance(seconds=1)
        assert engine.ingest(_sample("sensor-power_1", 300)) == []
        assert engine.store.get(1).power == 300.0

        clock.advance(seconds=4)
        events = engine.run_pass()
        assert _values(events, "power", channel=1) == [300.0]
        assert _values(events, "power") == [300.0]

    def test_force_pass_bypasses_interval(self, clock: FakeClock) -> None:
        engine = _engine(clock)
        engine.ingest(_sample("sensor-power_1", 100))
        clock.advance(seconds=1)
        engine.ingest(_sample("sensor-power_1", 200))

        events = engine.force_pass()
        assert _values(events, "power", channel=1) == [200.0]

    def test_small_change_is_filtered(self, clock: FakeClock) -> None:
        engine = _engine(clock, change_threshold=0.5)
        engine.ingest(_sample("sensor-power_1", 100))

        clock.advance(seconds=10)
        events = engine.ingest(_sample("sensor-power_1", 100.3))
        assert _values(events, "power", channel=1) == []

    def test_global_scalar_has_its_own_interval(self, clock: FakeClock) -> None:
        engine = _engine(clock)
        assert _values(engine.ingest(_sample("sensor-voltage", 120)), "voltage") == [120]

        clock.advance(seconds=1)
        assert engine.ingest(_sample("sensor-voltage", 122)) == []

        clock.advance(seconds=5)
        assert _values(engine.ingest(_sample("sensor-voltage", 123)), "voltage") == [123]


class TestGridStatus:
    def test_edge_triggered_transitions(self, clock: FakeClock) -> None:
        engine = _engine(clock)
        events: list[AttributeEvent] = []
        for volts in (120, 110, 108, 112, 121):
            events += engine.ingest(_sample("sensor-voltage", volts))

        assert _values(events, "gridStatus") == ["Brownout", "Normal"]
        assert engine.system.grid_status is GridStatus.NORMAL

    def test_surge_logs_alert(
        self, clock: FakeClock, caplog: pytest.LogCaptureFixture
    ) -> None:
        engine = _engine(clock)
        with caplog.at_level(logging.WARNING, logger="meter.src.engine"):
            events = engine.ingest(_sample("sensor-voltage", 131.2))

        assert _values(events, "gridStatus") == ["Surge"]
        assert "GRID ALERT: Voltage is 131.2V (Surge)!" in caplog.text

    def test_string_voltage_is_accepted(self, clock: FakeClock) -> None:
        engine = _engine(clock)
        events = engine.ingest(_sample("sensor-voltage", "121.5"))
        assert _values(events, "voltage") == [121.5]


class TestPhaseBalance:
    def test_imbalance_warning(
        self, clock: FakeClock, caplog: pytest.LogCaptureFixture
    ) -> None:
        engine = _engine(
            clock,
            imbalance_threshold=50,
            phase_a=frozenset({1}),
            phase_b=frozenset({2}),
        )
        events = engine.ingest(_sample("sensor-current_2", 4))
        assert _values(events, "phaseStatus") == ["Balanced"]

        clock.advance(seconds=5)
        with caplog.at_level(logging.WARNING, logger="meter.src.engine"):
            events = engine.ingest(_sample("sensor-current_1", 10))

        assert _values(events, "phaseA_Amps") == [10.0]
        assert _values(events, "phaseImbalance") == [60.0]
        assert _values(events, "phaseStatus") == ["Warning"]
        assert "PHASE IMBALANCE" in caplog.text

    def test_low_load_stays_balanced(self, clock: FakeClock) -> None:
        engine = _engine(
            clock,
            imbalance_threshold=10,
            phase_a=frozenset({1}),
            phase_b=frozenset({2}),
        )
        events = engine.ingest(_sample("sensor-current_1", 0.2))
        clock.advance(seconds=5)
        events += engine.ingest(_sample("sensor-current_2", 0.1))

        assert _values(events, "phaseStatus") == ["Balanced"]
        assert engine.system.phase_status is PhaseStatus.BALANCED

    def test_unassigned_channel_counts_on_neither_leg(self, clock: FakeClock) -> None:
        engine = _engine(
            clock,
            imbalance_threshold=50,
            phase_a=frozenset({1}),
            phase_b=frozenset({2}),
        )
        events = engine.ingest(_sample("sensor-current_7", 30))

        assert _values(events, "amperage") == [30.0]
        assert "phaseA_Amps" not in engine.system.last_emitted

    def test_disabled_published_once(self, clock: FakeClock) -> None:
        engine = _engine(clock)
        events = engine.ingest(_sample("sensor-current_1", 30))
        assert _values(events, "phaseStatus") == ["Disabled"]
        assert _values(events, "phaseImbalance") == []

        clock.advance(seconds=10)
        events = engine.ingest(_sample("sensor-current_2", 30))
        assert _values(events, "phaseStatus") == []


class TestVampireTracking:
    def test_minimum_ignores_zero(self, clock: FakeClock) -> None:
        engine = _engine(clock)
        events: list[AttributeEvent] = []
        for watts in (50, 0, 3, 1, 5):
            events += engine.ingest(_sample("sensor-power_1", watts))
            clock.advance(seconds=5)

        assert _values(events, "lowestDailyWatts", channel=1) == [50.0, 3.0, 1.0]
        assert engine.store.get(1).lowest_watts == 1.0

    def test_unpublished_minimum_is_emitted_once(self, clock: FakeClock) -> None:
        engine = _engine(clock)
        engine.ingest(_sample("sensor-power_1", 0))
        engine.store.get(1).lowest_watts = 7.0

        clock.advance(seconds=5)
        assert _values(engine.run_pass(), "lowestDailyWatts", channel=1) == [7.0]

        clock.advance(seconds=5)
        assert _values(engine.run_pass(), "lowestDailyWatts", channel=1) == []


class TestRuntime:
    def test_on_on_off_on(self, clock: FakeClock) -> None:
        engine = _engine(clock, active_threshold_w=10)
        events: list[AttributeEvent] = []
        for watts in (100, 100, 0, 100, 100):
            clock.advance(minutes=5)
            events += engine.ingest(_sample("sensor-power_1", watts))

        assert _values(events, "continuousRuntime", channel=1) == [5.0, 0, 5.0]
        assert _values(events, "dailyActiveTime", channel=1) == [5.0, 10.0, 15.0, 20.0]
        assert engine.store.get(1).daily_active_minutes == pytest.approx(20.0)

    def test_hours_since_last_run(self, clock: FakeClock) -> None:
        engine = _engine(clock)
        clock.advance(minutes=5)
        engine.ingest(_sample("sensor-power_1", 100))
        clock.advance(minutes=5)
        engine.ingest(_sample("sensor-power_1", 0))

        clock.advance(minutes=55)
        events = engine.run_pass()
        assert _values(events, "hoursSinceLastRun", channel=1) == [1.0]
        assert engine.store.get(1).is_active is False

    def test_never_run_emits_no_run_hours(self, clock: FakeClock) -> None:
        engine = _engine(clock)
        engine.ingest(_sample("sensor-power_1", 2))
        clock.advance(minutes=90)
        events = engine.run_pass()

        assert _values(events, "hoursSinceLastRun", channel=1) == []
        assert _values(events, "dailyActiveTime", channel=1) == []


class TestBreakerLoad:
    def test_load_percent_for_configured_breaker(self, clock: FakeClock) -> None:
        engine = _engine(clock, breaker_amps=(20.0,))
        events = engine.ingest(_sample("sensor-current_1", 10))

        load = [e for e in events if e.name == "loadPercent"]
        assert [(e.channel, e.value, e.unit) for e in load] == [(1, 50.0, "%")]

    def test_no_load_percent_without_breaker(self, clock: FakeClock) -> None:
        engine = _engine(clock, breaker_amps=(20.0, 0.0))
        events = engine.ingest(_sample("sensor-current_2", 10))
        assert _values(events, "loadPercent", channel=2) == []


class TestRollover:
    def test_rollover_resets_and_publishes(self, clock: FakeClock) -> None:
        engine = _engine(clock)
        engine.ingest(_sample("sensor-power_1", 100))
        clock.advance(minutes=5)
        engine.ingest(_sample("sensor-energy_1", 3.0))
        channel = engine.store.get(1)
        assert channel.last_emitted["dailyActiveTime"] == 5.0

        events = engine.rollover()

        assert channel.daily_energy() == 0.0
        assert channel.daily_active_minutes == 0.0
        assert _values(events, "dailyActiveTime", channel=1) == [None]
        assert "dailyActiveTime" not in channel.last_emitted
        assert _values(events, "lowestDailyWatts", channel=1) == [None, 100.0]
        # Pass ran without advancing the clock.
        assert _values(events, "energy", channel=1) == [0.0]
        assert _values(events, "energy") == [0.0]

    def test_rollover_without_channels(self, clock: FakeClock) -> None:
        engine = _engine(clock)
        events = engine.rollover()
        assert _values(events, "phaseStatus") == ["Disabled"]


class TestIngestionRouting:
    def test_channel_count_on_discovery(self, clock: FakeClock) -> None:
        engine = _engine(clock, min_interval_s=0)
        events: list[AttributeEvent] = []
        for sample_id in ("sensor-power_1", "sensor-power_2", "sensor-current_1"):
            events += engine.ingest(_sample(sample_id, 1))

        assert _values(events, "channelCount") == [1, 2]
        assert engine.channel_count == 2

    def test_labels(self, clock: FakeClock) -> None:
        engine = _engine(clock, channel_names=("Fridge",), min_interval_s=0)
        events = engine.ingest(_sample("sensor-power_1", 80))
        events += engine.ingest(_sample("sensor-power_2", 80))

        labels = {(e.channel, e.label) for e in events if e.name == "power"}
        assert labels == {(1, "Fridge"), (2, "CT2"), (None, None)}

    def test_uptime_uses_state_text(self, clock: FakeClock) -> None:
        engine = _engine(clock)
        events = engine.ingest(TelemetrySample(id="text_sensor-uptime", state="3d 2h"))
        assert _values(events, "uptime") == ["3d 2h"]

        events = engine.ingest(_sample("sensor-uptime", 12345))
        assert _values(events, "uptime") == ["12345"]

    def test_temperature_converted(self, clock: FakeClock) -> None:
        engine = _engine(clock)
        events = engine.ingest(_sample("sensor-internal_temperature", 25))
        assert [(e.value, e.unit) for e in events] == [(77.0, "°F")]

        clock.advance(seconds=10)
        assert engine.ingest(_sample("sensor-internal_temperature", 25.05)) == []

    def test_internal_and_unknown_ignored(self, clock: FakeClock) -> None:
        engine = _engine(clock)
        assert engine.ingest(_sample("sensor-internal_power_1", 5)) == []
        assert engine.ingest(_sample("sensor-total_power", 5)) == []
        assert engine.channel_count == 0

    def test_non_numeric_dropped(self, clock: FakeClock) -> None:
        engine = _engine(clock)
        assert engine.ingest(_sample("sensor-power_1", "n/a")) == []
        assert engine.ingest(_sample("sensor-voltage", None)) == []
        assert engine.channel_count == 0

    def test_event_metadata(self, clock: FakeClock) -> None:
        engine = _engine(clock)
        (event,) = engine.ingest(_sample("sensor-frequency", 60.02))

        assert event.device_id == "meter-test"
        assert event.channel is None
        assert event.name == "frequency"
        assert event.unit == "Hz"
        assert event.ts == datetime.fromtimestamp(START_MS / 1000, tz=UTC)


class TestConnectionState:
    def test_published_on_change_only(self, clock: FakeClock) -> None:
        engine = _engine(clock)
        events = engine.publish_connection_state(ConnectionState.CONNECTED)
        assert _values(events, "connectionState") == ["connected"]

        assert engine.publish_connection_state(ConnectionState.CONNECTED) == []

        events = engine.publish_connection_state(ConnectionState.DISCONNECTED)
        assert _values(events, "connectionState") == ["disconnected"]
