"""
Health file writer for the edge daemon.

Writes a JSON health file with:
- last_event_ts: ISO timestamp of the most recent telemetry sample.
- last_upload_ts: ISO timestamp of the most recent delivered batch.
- outbox_count: Number of events waiting in the outbox.
- connection_state: Event stream state.
- channel_count: Channels discovered so far.

Samples arrive several times per second, so recording one only touches the
file when the channel count changed.  The upload loop rewrites the file on
every tick via :meth:`HealthWriter.set_outbox_count`, which carries the
latest event timestamp with it.  Docker HEALTHCHECK or monitoring can
inspect the file.

CHANGELOG:
- 2026-10-19: Stop rewriting the file on every sample; rename spool_count (STORY-019)
- 2026-10-16: Add connection_state and channel_count (STORY-016)
- 2026-10-15: Initial creation (STORY-017)

TODO:
- None
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path

from meter.src.models import ConnectionState


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat()


class HealthWriter:
    """Keeps edge health status and mirrors it to a JSON file.

    Args:
        path: Filesystem path for the health JSON file.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._state: dict[str, str | int | None] = {
            "last_event_ts": None,
            "last_upload_ts": None,
            "outbox_count": 0,
            "connection_state": ConnectionState.DISCONNECTED.value,
            "channel_count": 0,
        }

    def record_event(self, channel_count: int) -> None:
        """Note a received sample; written immediately only on a new channel."""
        self._state["last_event_ts"] = _now_iso()
        if channel_count != self._state["channel_count"]:
            self._state["channel_count"] = channel_count
            self._write()

    def record_upload(self) -> None:
        self._state["last_upload_ts"] = _now_iso()
        self._write()

    def set_outbox_count(self, count: int) -> None:
        self._state["outbox_count"] = count
        self._write()

    def set_connection_state(self, state: ConnectionState) -> None:
        if state.value == self._state["connection_state"]:
            return
        self._state["connection_state"] = state.value
        self._write()

    def _write(self) -> None:
        self.path.write_text(json.dumps(self._state))
