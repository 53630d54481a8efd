"""
Shared test fixtures for edge daemon tests.

Provides environment variable fixtures for MeterSettings configuration
tests and a controllable millisecond clock for engine tests.  All meter env
vars are cleaned before each test to ensure isolation.

CHANGELOG:
- 2026-10-19: Rename SPOOL_PATH; add OUTBOX_MAX_ROWS and TIMEZONE (STORY-019)
- 2026-10-14: Add FakeClock fixture for engine tests (STORY-009)
- 2026-10-12: Initial creation (STORY-001)

TODO:
- None
"""

from __future__ import annotations

import pytest

# All MeterSettings environment variable names, used for cleanup.
_ALL_METER_ENV_VARS = (
    "METER_HOST",
    "DEVICE_ID",
    "CHANNEL_NAMES",
    "BREAKER_SIZES",
    "PHASE_A_CHANNELS",
    "PHASE_B_CHANNELS",
    "IMBALANCE_THRESHOLD",
    "VOLTAGE_LOW_THRESHOLD",
    "VOLTAGE_HIGH_THRESHOLD",
    "ACTIVE_THRESHOLD_W",
    "SENSOR_HYSTERESIS_S",
    "MIN_CHANGE_THRESHOLD",
    "TEMP_SCALE",
    "READ_TIMEOUT_S",
    "WATCHDOG_INTERVAL_S",
    "HUB_BASE_URL",
    "HUB_DEVICE_TOKEN",
    "BATCH_SIZE",
    "UPLOAD_INTERVAL_S",
    "OUTBOX_PATH",
    "OUTBOX_MAX_ROWS",
    "TIMEZONE",
    "HEALTH_PATH",
    "LOG_DEBUG",
)

START_MS = 1_760_000_000_000
"""Arbitrary fixed epoch-ms start time for engine tests."""


class FakeClock:
    """Callable epoch-ms clock that only moves when told to."""

    def __init__(self, start_ms: int = START_MS) -> None:
        self.now_ms = start_ms

    def __call__(self) -> int:
        return self.now_ms

    def advance(self, *, seconds: float = 0, minutes: float = 0) -> int:
        self.now_ms += int(seconds * 1000 + minutes * 60_000)
        return self.now_ms


@pytest.fixture(autouse=True)
def _clean_meter_env(monkeypatch: pytest.MonkeyPatch, tmp_path: str) -> None:
    """Remove all meter env vars and isolate from .env files before each test.

    Changes working directory to tmp_path so no .env file is accidentally
    loaded by Pydantic BaseSettings.
    """
    for var in _ALL_METER_ENV_VARS:
        monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def env_vars_full(monkeypatch: pytest.MonkeyPatch) -> dict[str, str]:
    """Set all required and optional environment variables for MeterSettings.

    Returns the dict of env var names to values for assertion convenience.
    """
    env = {
        "METER_HOST": "192.168.1.60",
        "DEVICE_ID": "athom-panel",
        "CHANNEL_NAMES": "Fridge, HVAC, Office, Dryer, Washer, Garage",
        "BREAKER_SIZES": "15, 30, 20, 30, 20, 15",
        "PHASE_A_CHANNELS": "1,2,3",
        "PHASE_B_CHANNELS": "4,5,6",
        "IMBALANCE_THRESHOLD": "40",
        "VOLTAGE_LOW_THRESHOLD": "110",
        "VOLTAGE_HIGH_THRESHOLD": "130",
        "ACTIVE_THRESHOLD_W": "25",
        "SENSOR_HYSTERESIS_S": "10",
        "MIN_CHANGE_THRESHOLD": "0.5",
        "TEMP_SCALE": "Celsius",
        "READ_TIMEOUT_S": "30",
        "WATCHDOG_INTERVAL_S": "45",
        "HUB_BASE_URL": "https://hub.example.com",
        "HUB_DEVICE_TOKEN": "test-device-token",
        "BATCH_SIZE": "20",
        "UPLOAD_INTERVAL_S": "10",
        "OUTBOX_PATH": "/tmp/test-outbox.db",
        "OUTBOX_MAX_ROWS": "5000",
        "TIMEZONE": "America/New_York",
        "HEALTH_PATH": "/tmp/test-health.json",
        "LOG_DEBUG": "true",
    }
    for key, value in env.items():
        monkeypatch.setenv(key, value)
    return env


@pytest.fixture()
def env_vars_required_only(monkeypatch: pytest.MonkeyPatch) -> dict[str, str]:
    """Set only the required environment variables (no optional ones)."""
    env = {
        "METER_HOST": "10.0.0.50",
        "HUB_BASE_URL": "https://hub.example.com",
        "HUB_DEVICE_TOKEN": "device-token-xyz",
    }
    for key, value in env.items():
        monkeypatch.setenv(key, value)
    return env
