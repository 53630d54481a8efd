"""
Async Server-Sent-Events client for the meter's ``/events`` endpoint.

Opens a long-lived HTTP stream with httpx, decodes each line with
:func:`~meter.src.decoder.decode_event`, and yields TelemetrySample objects.
Designed to be robust:

- Exponential backoff between reconnect attempts (capped at MAX_BACKOFF_S).
- Connection state and the time of the last received line are tracked so
  the daemon watchdog can detect a stalled stream.
- :meth:`EventStream.close` aborts the current connection from outside
  (watchdog), which ends the running :meth:`EventStream.events` iterator.

CHANGELOG:
- 2026-10-16: Track last line time for the watchdog (STORY-016)
- 2026-10-14: Initial creation (STORY-014)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator

import httpx

from meter.src.decoder import decode_event
from meter.src.models import ConnectionState, TelemetrySample

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

BASE_BACKOFF_S: float = 1.0
"""Initial backoff delay in seconds after the first connection failure."""

MAX_BACKOFF_S: float = 60.0
"""Maximum backoff delay in seconds (cap for exponential growth)."""

CONNECT_TIMEOUT_S: float = 10.0


class EventStream:
    """Reconnecting SSE reader for one meter.

    Args:
        host: Meter IP address or hostname.
        read_timeout_s: Seconds without any line (data or keep-alive)
            before the read is considered stalled.
    """

    def __init__(self, *, host: str, read_timeout_s: float = 60.0) -> None:
        self._url = f"http://{host}/events"
        self._read_timeout_s = read_timeout_s
        self._state = ConnectionState.DISCONNECTED
        self._last_line_monotonic: float | None = None
        self._consecutive_failures: int = 0
        self._response: httpx.Response | None = None

    @property
    def url(self) -> str:
        return self._url

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    def is_stale(self, now_monotonic: float | None = None) -> bool:
        """True when the stream is not connected or has gone quiet."""
        if self._state is not ConnectionState.CONNECTED:
            return True
        if self._last_line_monotonic is None:
            return False
        now = time.monotonic() if now_monotonic is None else now_monotonic
        return now - self._last_line_monotonic > self._read_timeout_s

    def backoff_delay(self) -> float:
        """Delay to wait before the next connection attempt."""
        if self._consecutive_failures == 0:
            return 0.0
        return min(
            BASE_BACKOFF_S * (2 ** (self._consecutive_failures - 1)),
            MAX_BACKOFF_S,
        )

    async def events(self) -> AsyncIterator[TelemetrySample]:
        """Connect once and yield samples until the stream ends.

        The state is ``disconnected`` afterwards.  A stream the meter ends
        cleanly also counts towards the backoff so a meter that keeps
        hanging up is not hammered.

        Raises:
            httpx.HTTPError: On connection failures, non-2xx responses and
                read timeouts.
            httpx.StreamError: When :meth:`close` aborted the stream.
        """
        delay = self.backoff_delay()
        if delay > 0:
            logger.warning(
                "Backoff: sleeping %.1fs before reconnect (consecutive failures: %d)",
                delay,
                self._consecutive_failures,
            )
            await asyncio.sleep(delay)

        self._state = ConnectionState.CONNECTING
        logger.info("Connecting to EventStream: %s", self._url)
        timeout = httpx.Timeout(self._read_timeout_s, connect=CONNECT_TIMEOUT_S)
        try:
            async with httpx.AsyncClient(timeout=timeout) as client:
                async with client.stream(
                    "GET", self._url, headers={"Accept": "text/event-stream"}
                ) as response:
                    response.raise_for_status()
                    self._response = response
                    self._state = ConnectionState.CONNECTED
                    self._consecutive_failures = 0
                    self._last_line_monotonic = time.monotonic()
                    logger.info("EventStream connected")
                    async for line in response.aiter_lines():
                        self._last_line_monotonic = time.monotonic()
                        sample = decode_event(line)
                        if sample is not None:
                            yield sample
        except httpx.HTTPError:
            self._consecutive_failures += 1
            raise
        finally:
            self._response = None
            self._state = ConnectionState.DISCONNECTED
        self._consecutive_failures += 1
        logger.warning("EventStream closed by meter")

    async def close(self) -> None:
        """Abort the current connection, if any."""
        response = self._response
        if response is not None:
            logger.info("Closing EventStream connection")
            await response.aclose()
