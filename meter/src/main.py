"""
Edge daemon main loop for the multi-circuit energy meter pipeline.

Runs four concurrent asyncio loops:
1. **Stream loop**: reads the meter's event stream, feeds every sample to
   the MeterEngine, and appends the emitted attribute events to the outbox.
2. **Upload loop**: calls uploader.upload_batch(outbox) to flush buffered
   events to the hub over HTTPS.
3. **Watchdog loop**: closes a stalled or disconnected stream so the stream
   loop reconnects.
4. **Midnight loop**: runs the engine's daily rollover at midnight in the
   configured timezone.

All loops are resilient: an exception in one iteration is logged and does
not crash the loop or affect the others.  Every engine call happens on the
event loop thread, so engine operations never interleave.  Graceful shutdown
on SIGTERM/SIGINT sets a shared asyncio.Event; the stream is cancelled and
one final upload flush is attempted before exiting.

CHANGELOG:
- 2026-10-19: Upload waits follow uploader backoff; DST-aware midnight (STORY-019)
- 2026-10-17: Add midnight rollover loop (STORY-018)
- 2026-10-16: Add watchdog loop and connectionState publishing (STORY-016)
- 2026-10-15: Initial creation (STORY-014)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import contextlib
import hashlib
import json
import logging
import signal
import sys
from collections.abc import Callable
from datetime import UTC, datetime, time, timedelta, tzinfo
from typing import TYPE_CHECKING

from meter.src.engine import MeterEngine
from meter.src.health import HealthWriter
from meter.src.models import ConnectionState, TelemetrySample

if TYPE_CHECKING:
    from meter.src.outbox import EventOutbox
    from meter.src.stream import EventStream
    from meter.src.uploader import Uploader

logger = logging.getLogger(__name__)

_MIDNIGHT_SLACK_S = 1.0


# ---------------------------------------------------------------------------
# Structured JSON logging setup
# ---------------------------------------------------------------------------


def configure_logging(debug: bool = False) -> None:
    """Configure structured JSON logging for the edge daemon.

    Sets up the root logger with a JSON-formatted handler writing to stderr.

    Args:
        debug: Log at DEBUG instead of INFO.
    """

    class _JsonFormatter(logging.Formatter):
        """Minimal JSON log formatter."""

        def format(self, record: logging.LogRecord) -> str:
            log_entry = {
                "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
                "level": record.levelname,
                "logger": record.name,
                "msg": record.getMessage(),
            }
            if record.exc_info and record.exc_info[1] is not None:
                log_entry["exception"] = self.formatException(record.exc_info)
            return json.dumps(log_entry)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(_JsonFormatter())
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(logging.DEBUG if debug else logging.INFO)
    # httpx logs every request at INFO; keep it quiet unless debugging.
    logging.getLogger("httpx").setLevel(logging.DEBUG if debug else logging.WARNING)


def _masked_token(value: str | None) -> str:
    """Return a short non-reversible token fingerprint for diagnostics."""
    if not value:
        return "empty"
    digest = hashlib.sha256(value.encode("utf-8")).hexdigest()[:10]
    return f"len={len(value)} sha256={digest}"


def log_config_summary(settings: object) -> None:
    """Log a config summary at startup, masking the hub token.

    Args:
        settings: A MeterSettings instance (or any object with the same attrs).
    """
    logger.info(
        "Edge daemon starting with config: "
        "meter_host=%s, device_id=%s, channel_names=%s, breaker_sizes=%s, "
        "phase_a_channels=%s, phase_b_channels=%s, imbalance_threshold=%s, "
        "voltage_band=%s-%s, active_threshold_w=%s, sensor_hysteresis_s=%s, "
        "min_change_threshold=%s, temp_scale=%s, hub_base_url=%s, "
        "batch_size=%s, upload_interval_s=%s, outbox_path=%s, timezone=%s, "
        "hub_token_masked=%s",
        settings.meter_host,  # type: ignore[attr-defined]
        settings.device_id,  # type: ignore[attr-defined]
        settings.channel_names,  # type: ignore[attr-defined]
        settings.breaker_sizes,  # type: ignore[attr-defined]
        settings.phase_a_channels,  # type: ignore[attr-defined]
        settings.phase_b_channels,  # type: ignore[attr-defined]
        settings.imbalance_threshold,  # type: ignore[attr-defined]
        settings.voltage_low_threshold,  # type: ignore[attr-defined]
        settings.voltage_high_threshold,  # type: ignore[attr-defined]
        settings.active_threshold_w,  # type: ignore[attr-defined]
        settings.sensor_hysteresis_s,  # type: ignore[attr-defined]
        settings.min_change_threshold,  # type: ignore[attr-defined]
        settings.temp_scale,  # type: ignore[attr-defined]
        settings.hub_base_url,  # type: ignore[attr-defined]
        settings.batch_size,  # type: ignore[attr-defined]
        settings.upload_interval_s,  # type: ignore[attr-defined]
        settings.outbox_path,  # type: ignore[attr-defined]
        settings.timezone,  # type: ignore[attr-defined]
        _masked_token(settings.hub_device_token),  # type: ignore[attr-defined]
    )


def seconds_until_midnight(now: datetime, tz: tzinfo) -> float:
    """Real seconds from *now* until the next midnight in *tz*.

    The day length follows *tz*, so on a daylight-saving change day the
    result spans 23 or 25 hours.
    """
    local = now.astimezone(tz)
    midnight = datetime.combine(local.date() + timedelta(days=1), time.min, tzinfo=tz)
    # Same-zone subtraction ignores offset changes; compare in UTC.
    return max(0.0, (midnight.astimezone(UTC) - now.astimezone(UTC)).total_seconds())


# ---------------------------------------------------------------------------
# Single-iteration functions (easily testable)
# ---------------------------------------------------------------------------


async def _ingest_once(
    *,
    engine: MeterEngine,
    sample: TelemetrySample,
    outbox: EventOutbox,
    health: HealthWriter | None,
) -> None:
    """Feed one sample to the engine and enqueue what it emitted.

    Catches all exceptions so that the stream is never torn down by a
    single bad sample.
    """
    try:
        events = engine.ingest(sample)
        await outbox.append(events)
    except Exception:
        logger.error("Ingest error for sample id=%s", sample.id, exc_info=True)

    if health is not None:
        try:
            health.record_event(engine.channel_count)
        except Exception:
            logger.warning("Failed to write health file", exc_info=True)


async def _set_connection_state(
    *,
    engine: MeterEngine,
    state: ConnectionState,
    outbox: EventOutbox,
    health: HealthWriter | None,
) -> None:
    try:
        await outbox.append(engine.publish_connection_state(state))
        if health is not None:
            health.set_connection_state(state)
    except Exception:
        logger.warning("Failed to publish connection state %s", state, exc_info=True)


async def _stream_once(
    *,
    stream: EventStream,
    engine: MeterEngine,
    outbox: EventOutbox,
    health: HealthWriter | None,
) -> None:
    """Run one event stream connection until it ends or fails.

    Connection and read errors are logged; they never propagate.
    """
    await _set_connection_state(
        engine=engine, state=ConnectionState.CONNECTING, outbox=outbox, health=health
    )
    try:
        async for sample in stream.events():
            await _set_connection_state(
                engine=engine, state=stream.state, outbox=outbox, health=health
            )
            await _ingest_once(engine=engine, sample=sample, outbox=outbox, health=health)
    except Exception as exc:
        logger.warning("EventStream error: %s", exc)
    await _set_connection_state(
        engine=engine, state=ConnectionState.DISCONNECTED, outbox=outbox, health=health
    )


async def _watchdog_once(*, stream: EventStream) -> bool:
    """Close the stream if it is stale.

    Returns:
        True if the watchdog forced a reconnect.
    """
    if not stream.is_stale():
        return False
    logger.warning("Watchdog: stream %s or stalled, forcing reconnect", stream.state)
    try:
        await stream.close()
    except Exception:
        logger.warning("Watchdog: error closing stream", exc_info=True)
    return True


async def _rollover_once(*, engine: MeterEngine, outbox: EventOutbox) -> None:
    try:
        await outbox.append(engine.rollover())
    except Exception:
        logger.error("Daily rollover error", exc_info=True)


async def _upload_once(
    *,
    uploader: Uploader,
    outbox: EventOutbox,
    health: HealthWriter | None = None,
) -> bool:
    """Execute a single upload cycle.

    Catches all exceptions so that the caller's loop is never broken.

    Returns:
        True if upload succeeded, False otherwise.
    """
    try:
        result = await uploader.upload_batch(outbox)
        if result:
            logger.debug("Upload success")
            if health is not None:
                health.record_upload()
        if health is not None:
            health.set_outbox_count(await outbox.count())
        return result
    except Exception:
        logger.error("Upload cycle error", exc_info=True)
        return False


# ---------------------------------------------------------------------------
# Loop runners
# ---------------------------------------------------------------------------


async def _wait(shutdown_event: asyncio.Event, timeout: float) -> None:
    """Sleep for *timeout* seconds or until shutdown, whichever is first."""
    with contextlib.suppress(TimeoutError):
        await asyncio.wait_for(shutdown_event.wait(), timeout=timeout)


async def _stream_loop(
    *,
    stream: EventStream,
    engine: MeterEngine,
    outbox: EventOutbox,
    health: HealthWriter | None,
    shutdown_event: asyncio.Event,
) -> None:
    """Reconnect the event stream until shutdown (backoff lives in the stream)."""
    logger.info("Stream loop started (%s)", stream.url)
    while not shutdown_event.is_set():
        await _stream_once(stream=stream, engine=engine, outbox=outbox, health=health)
    logger.info("Stream loop stopped")


async def _upload_loop(
    *,
    uploader: Uploader,
    outbox: EventOutbox,
    upload_interval_s: float,
    shutdown_event: asyncio.Event,
    health: HealthWriter | None = None,
) -> None:
    """Drain the outbox every interval, slowing down while the hub fails."""
    logger.info("Upload loop started (interval=%ss)", upload_interval_s)
    while not shutdown_event.is_set():
        await _upload_once(uploader=uploader, outbox=outbox, health=health)
        await _wait(shutdown_event, max(upload_interval_s, uploader.current_backoff))
    logger.info("Upload loop stopped")


async def _watchdog_loop(
    *,
    stream: EventStream,
    watchdog_interval_s: float,
    shutdown_event: asyncio.Event,
) -> None:
    logger.info("Watchdog loop started (interval=%ss)", watchdog_interval_s)
    while not shutdown_event.is_set():
        await _wait(shutdown_event, watchdog_interval_s)
        if not shutdown_event.is_set():
            await _watchdog_once(stream=stream)
    logger.info("Watchdog loop stopped")


async def _midnight_loop(
    *,
    engine: MeterEngine,
    outbox: EventOutbox,
    shutdown_event: asyncio.Event,
    tz: tzinfo = UTC,
    now: Callable[[], datetime] = lambda: datetime.now(UTC),
) -> None:
    """Run the daily rollover at every midnight in *tz* until shutdown."""
    logger.info("Midnight loop started (timezone=%s)", tz)
    slack = timedelta(seconds=_MIDNIGHT_SLACK_S)
    while not shutdown_event.is_set():
        # A wake-up slightly before midnight must not schedule a second
        # rollover a moment later.
        delay = seconds_until_midnight(now() + slack, tz) + _MIDNIGHT_SLACK_S
        await _wait(shutdown_event, delay)
        if not shutdown_event.is_set():
            await _rollover_once(engine=engine, outbox=outbox)
    logger.info("Midnight loop stopped")


# ---------------------------------------------------------------------------
# Concurrent runner with graceful shutdown
# ---------------------------------------------------------------------------


async def run_loops(
    *,
    stream: EventStream,
    engine: MeterEngine,
    outbox: EventOutbox,
    uploader: Uploader,
    upload_interval_s: float,
    watchdog_interval_s: float,
    shutdown_event: asyncio.Event,
    health: HealthWriter | None = None,
    tz: tzinfo = UTC,
) -> None:
    """Run all daemon loops until shutdown.

    The stream loop blocks on network reads, so it runs as a separate task
    that is cancelled once the other loops have observed the shutdown event.
    A final upload flush is attempted before returning.
    """
    logger.info("Starting stream, upload, watchdog and midnight loops")

    stream_task = asyncio.create_task(
        _stream_loop(
            stream=stream,
            engine=engine,
            outbox=outbox,
            health=health,
            shutdown_event=shutdown_event,
        )
    )

    await asyncio.gather(
        _upload_loop(
            uploader=uploader,
            outbox=outbox,
            upload_interval_s=upload_interval_s,
            shutdown_event=shutdown_event,
            health=health,
        ),
        _watchdog_loop(
            stream=stream,
            watchdog_interval_s=watchdog_interval_s,
            shutdown_event=shutdown_event,
        ),
        _midnight_loop(
            engine=engine, outbox=outbox, shutdown_event=shutdown_event, tz=tz
        ),
    )

    stream_task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await stream_task

    logger.info("Attempting final upload flush before exit")
    await _upload_once(uploader=uploader, outbox=outbox, health=health)
    logger.info("Shutdown complete")


# ---------------------------------------------------------------------------
# Entrypoint
# ---------------------------------------------------------------------------


async def async_main() -> None:
    """Async entrypoint: load config, build components, run loops."""
    configure_logging()

    from meter.src.config import MeterSettings
    from meter.src.outbox import EventOutbox
    from meter.src.stream import EventStream
    from meter.src.uploader import Uploader

    settings = MeterSettings()
    if settings.log_debug:
        configure_logging(debug=True)
    log_config_summary(settings)

    shutdown_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda: _handle_signal(shutdown_event))

    engine = MeterEngine(settings.engine_config(), device_id=settings.device_id)
    stream = EventStream(host=settings.meter_host, read_timeout_s=settings.read_timeout_s)
    uploader = Uploader(
        hub_base_url=settings.hub_base_url,
        hub_device_token=settings.hub_device_token,
        batch_size=settings.batch_size,
    )
    health = HealthWriter(settings.health_path)

    async with EventOutbox(settings.outbox_path, max_rows=settings.outbox_max_rows) as outbox:
        await run_loops(
            stream=stream,
            engine=engine,
            outbox=outbox,
            uploader=uploader,
            upload_interval_s=settings.upload_interval_s,
            watchdog_interval_s=settings.watchdog_interval_s,
            shutdown_event=shutdown_event,
            health=health,
            tz=settings.tzinfo(),
        )


def _handle_signal(shutdown_event: asyncio.Event) -> None:
    """Handle SIGTERM/SIGINT by setting the shutdown event."""
    logger.info("Received shutdown signal, initiating graceful shutdown")
    shutdown_event.set()


def main() -> None:
    """Synchronous entrypoint for the edge daemon."""
    asyncio.run(async_main())


if __name__ == "__main__":
    main()
