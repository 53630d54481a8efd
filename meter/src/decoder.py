"""
Pure decoder that turns one event stream line into a TelemetrySample.

The meter publishes Server-Sent Events.  Only ``data:`` payloads carry
sensor state; the decoder also accepts a bare JSON line.  Everything the
meter emits that is not a sensor state (keep-alive pings, empty objects,
log lines, garbage from a half-read frame) decodes to ``None``.

This is a pure function: no side effects, no I/O, no clock.  Garbled
hardware output must never raise, so every failure is logged at debug
level and swallowed here.

CHANGELOG:
- 2026-10-13: Initial creation (STORY-006)

TODO:
- None
"""

from __future__ import annotations

import json
import logging

from pydantic import ValidationError

from meter.src.models import TelemetrySample

logger = logging.getLogger(__name__)

_IGNORED_PAYLOADS = frozenset({"", "ping", "{}"})


def decode_event(line: str) -> TelemetrySample | None:
    """Decode a single stream line.

    Args:
        line: One text line from the event stream, with or without the
            ``data:`` prefix.  Non-data SSE fields (``event:``, ``id:``,
            ``retry:``) and comments (``:``) decode to ``None``.

    Returns:
        A :class:`TelemetrySample` when the line holds a JSON object with a
        non-empty ``id``, otherwise ``None``.
    """
    text = line.strip()
    if text.startswith("data:"):
        text = text[5:].strip()
    elif text.startswith(("event:", "id:", "retry:", ":")):
        return None

    if text in _IGNORED_PAYLOADS:
        return None

    try:
        payload = json.loads(text)
    except ValueError:
        logger.debug("Dropping unparseable event payload: %.80s", text)
        return None

    if not isinstance(payload, dict) or not payload.get("id"):
        logger.debug("Dropping event without id: %.80s", text)
        return None

    try:
        return TelemetrySample(
            id=str(payload["id"]),
            value=payload.get("value"),
            state=None if payload.get("state") is None else str(payload["state"]),
        )
    except ValidationError:
        logger.debug("Dropping event with unsupported value: %.80s", text)
        return None
