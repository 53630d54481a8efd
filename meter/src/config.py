"""
Edge daemon configuration loaded from environment variables.

Uses Pydantic BaseSettings for automatic env var loading and validation.
Circuit-level settings (names, breaker sizes, phase legs) arrive as
comma-separated strings and are resolved into an immutable
:class:`EngineConfig` snapshot that the engine consumes.

List parsing is lenient: a malformed entry becomes 0 (disabled) and the
rest of the list still parses.

CHANGELOG:
- 2026-10-19: Add OUTBOX_MAX_ROWS and TIMEZONE (STORY-019)
- 2026-10-15: Add TEMP_SCALE and LOG_DEBUG (STORY-012)
- 2026-10-13: Resolve comma lists into EngineConfig (STORY-004)
- 2026-10-12: Initial creation (STORY-001)

TODO:
- None
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings

from meter.src.models import TempScale

logger = logging.getLogger(__name__)

DEFAULT_PHASE_A = "1,3,5"
DEFAULT_PHASE_B = "2,4,6"

ENERGY_CHANGE_THRESHOLD = 0.001
"""Magnitude threshold for energy attributes (kWh); not user-configurable."""


# ---------------------------------------------------------------------------
# Comma-list parsing
# ---------------------------------------------------------------------------


def parse_number_list(text: str | None) -> tuple[float, ...]:
    """Parse ``"15, 20, x, 30"`` into ``(15.0, 20.0, 0.0, 30.0)``.

    Position matters (index 1-based in the caller), so malformed entries
    become 0.0 instead of being dropped.
    """
    if not text or not text.strip():
        return ()
    values: list[float] = []
    for raw in text.split(","):
        entry = raw.strip()
        try:
            values.append(float(entry))
        except ValueError:
            logger.warning("Ignoring non-numeric list entry '%s' (using 0)", entry)
            values.append(0.0)
    return tuple(values)


def parse_channel_set(text: str | None, default: str) -> frozenset[int]:
    """Parse a comma list of 1-based channel indices into a set.

    An empty value falls back to *default*.  Entries that are not positive
    integers are skipped with a warning.
    """
    if not text or not text.strip():
        text = default
    channels: set[int] = set()
    for raw in text.split(","):
        entry = raw.strip()
        if entry.isdigit() and int(entry) > 0:
            channels.add(int(entry))
        elif entry:
            logger.warning("Ignoring invalid phase channel entry '%s'", entry)
    return frozenset(channels)


def parse_name_list(text: str | None) -> tuple[str, ...]:
    if not text:
        return ()
    return tuple(name.strip() for name in text.split(","))


# ---------------------------------------------------------------------------
# Immutable engine snapshot
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class EngineConfig:
    """Typed configuration snapshot used by one engine instance.

    Attributes:
        channel_names: Display names, index 0 is channel 1.
        breaker_amps: Breaker ratings, index 0 is channel 1; 0 = unmonitored.
        phase_a: Channel indices on leg A.
        phase_b: Channel indices on leg B.
        imbalance_threshold: Warning threshold in percent, or None when
            phase monitoring is disabled.
        voltage_low: Brownout threshold in volts.
        voltage_high: Surge threshold in volts.
        active_threshold_w: Power at or above which an appliance is "on".
        min_interval_s: Minimum seconds between passes (and between
            independent scalar updates under the same key).
        change_threshold: Magnitude threshold for V, A, W and Hz.
        energy_threshold: Magnitude threshold for kWh.
        temp_scale: Display unit for temperature.
    """

    channel_names: tuple[str, ...] = ()
    breaker_amps: tuple[float, ...] = ()
    phase_a: frozenset[int] = frozenset({1, 3, 5})
    phase_b: frozenset[int] = frozenset({2, 4, 6})
    imbalance_threshold: float | None = None
    voltage_low: float = 114.0
    voltage_high: float = 126.0
    active_threshold_w: float = 10.0
    min_interval_s: float = 5.0
    change_threshold: float = 0.1
    energy_threshold: float = ENERGY_CHANGE_THRESHOLD
    temp_scale: TempScale = TempScale.FAHRENHEIT

    @property
    def phase_enabled(self) -> bool:
        return self.imbalance_threshold is not None

    def breaker_for(self, channel: int) -> float:
        """Return the breaker rating for *channel*, 0.0 when not configured."""
        if 1 <= channel <= len(self.breaker_amps):
            return self.breaker_amps[channel - 1]
        return 0.0

    def phase_of(self, channel: int) -> str | None:
        """Return ``"A"``, ``"B"`` or None.  Leg A wins if listed in both."""
        if channel in self.phase_a:
            return "A"
        if channel in self.phase_b:
            return "B"
        return None

    def label_for(self, channel: int) -> str:
        if 1 <= channel <= len(self.channel_names) and self.channel_names[channel - 1]:
            return self.channel_names[channel - 1]
        return f"CT{channel}"


# ---------------------------------------------------------------------------
# Environment settings
# ---------------------------------------------------------------------------


class MeterSettings(BaseSettings):
    """Edge daemon configuration for the energy meter pipeline.

    All values are loaded from environment variables. Required variables
    must be set; optional variables have sensible defaults.

    Attributes:
        meter_host: Meter IP address / hostname on the local LAN.
        device_id: Device identifier on emitted events. Defaults to
            meter_host if not set.
        channel_names: Comma-separated circuit names (1-based).
        breaker_sizes: Comma-separated breaker ratings in amps (1-based).
        phase_a_channels: Comma-separated channel indices on leg A.
        phase_b_channels: Comma-separated channel indices on leg B.
        imbalance_threshold: Phase imbalance warning threshold in percent.
            Any negative value disables phase monitoring.
        voltage_low_threshold: Brownout threshold in volts.
        voltage_high_threshold: Surge threshold in volts.
        active_threshold_w: Watts required to count an appliance as running.
        sensor_hysteresis_s: Minimum seconds between updates (anti-flood).
        min_change_threshold: Minimum change for volts, amps, watts and Hz.
        temp_scale: Temperature display unit.
        read_timeout_s: Event stream read timeout in seconds.
        watchdog_interval_s: Seconds between stream liveness checks.
        hub_base_url: Hub base URL for event upload (must be HTTPS).
        hub_device_token: Per-device bearer token for hub auth.
        batch_size: Max events per upload batch.
        upload_interval_s: Seconds between upload attempts.
        outbox_path: SQLite outbox file path.
        outbox_max_rows: Pending events kept during a hub outage before the
            oldest are dropped.
        timezone: IANA zone whose midnight starts a new day.
        health_path: Health JSON file path.
        log_debug: Enable DEBUG level logging.
    """

    meter_host: str
    device_id: str = ""
    channel_names: str = ""
    breaker_sizes: str = ""
    phase_a_channels: str = DEFAULT_PHASE_A
    phase_b_channels: str = DEFAULT_PHASE_B
    imbalance_threshold: float = -1
    voltage_low_threshold: float = 114
    voltage_high_threshold: float = 126
    active_threshold_w: float = 10
    sensor_hysteresis_s: float = 5
    min_change_threshold: float = 0.1
    temp_scale: TempScale = TempScale.FAHRENHEIT
    read_timeout_s: float = 60
    watchdog_interval_s: float = 60
    hub_base_url: str
    hub_device_token: str
    batch_size: int = 50
    upload_interval_s: int = 5
    outbox_path: str = "/data/outbox.db"
    outbox_max_rows: int = 100_000
    health_path: str = "/data/health.json"
    timezone: str = "UTC"
    log_debug: bool = False

    @model_validator(mode="after")
    def _default_device_id(self) -> "MeterSettings":
        """Default device_id to meter_host when not explicitly set."""
        if not self.device_id:
            self.device_id = self.meter_host
        return self

    @model_validator(mode="after")
    def _voltage_band_must_be_ordered(self) -> "MeterSettings":
        if self.voltage_low_threshold >= self.voltage_high_threshold:
            raise ValueError(
                "VOLTAGE_LOW_THRESHOLD must be below VOLTAGE_HIGH_THRESHOLD "
                f"(got {self.voltage_low_threshold} >= {self.voltage_high_threshold})"
            )
        return self

    @field_validator("hub_base_url")
    @classmethod
    def hub_base_url_must_be_https(cls, v: str) -> str:
        """Validate that the hub base URL uses HTTPS.

        HTTP URLs are rejected at startup to prevent insecure transport of
        the bearer token.
        """
        if not v.startswith("https://"):
            raise ValueError(f"HUB_BASE_URL must use HTTPS (got: '{v[:20]}...').")
        return v.rstrip("/")

    @field_validator("sensor_hysteresis_s", "active_threshold_w", "min_change_threshold")
    @classmethod
    def must_be_non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("value must be >= 0")
        return v

    @field_validator("read_timeout_s", "watchdog_interval_s")
    @classmethod
    def timeouts_must_be_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("value must be > 0")
        return v

    @field_validator("batch_size")
    @classmethod
    def batch_size_must_be_valid(cls, v: int) -> int:
        """Validate batch size is between 1 and 1000."""
        if v < 1 or v > 1000:
            raise ValueError("BATCH_SIZE must be >= 1 and <= 1000")
        return v

    @model_validator(mode="after")
    def _outbox_must_hold_a_batch(self) -> "MeterSettings":
        if self.outbox_max_rows < self.batch_size:
            raise ValueError(
                "OUTBOX_MAX_ROWS must be at least BATCH_SIZE "
                f"(got {self.outbox_max_rows} < {self.batch_size})"
            )
        return self

    @field_validator("timezone")
    @classmethod
    def timezone_must_exist(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"TIMEZONE '{v}' is not a known IANA zone") from exc
        return v

    def tzinfo(self) -> ZoneInfo:
        """Zone used to find local midnight for the daily rollover."""
        return ZoneInfo(self.timezone)

    def engine_config(self) -> EngineConfig:
        """Resolve the raw settings into an immutable :class:`EngineConfig`."""
        phase_a = parse_channel_set(self.phase_a_channels, DEFAULT_PHASE_A)
        phase_b = parse_channel_set(self.phase_b_channels, DEFAULT_PHASE_B)
        overlap = phase_a & phase_b
        if overlap:
            logger.warning(
                "Channels %s listed on both phases; counting them on phase A",
                sorted(overlap),
            )
        return EngineConfig(
            channel_names=parse_name_list(self.channel_names),
            breaker_amps=parse_number_list(self.breaker_sizes),
            phase_a=phase_a,
            phase_b=phase_b,
            imbalance_threshold=(
                self.imbalance_threshold if self.imbalance_threshold >= 0 else None
            ),
            voltage_low=self.voltage_low_threshold,
            voltage_high=self.voltage_high_threshold,
            active_threshold_w=self.active_threshold_w,
            min_interval_s=self.sensor_hysteresis_s,
            change_threshold=self.min_change_threshold,
            temp_scale=self.temp_scale,
        )

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}
