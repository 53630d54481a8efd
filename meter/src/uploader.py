"""
Hub uploader: drains the event outbox to ``{hub_base_url}/v1/events``.

Each call takes the oldest batch from the outbox, wraps it in an
:class:`~meter.src.models.EventBatch` and POSTs it with the device bearer
token.  Rows are acknowledged only on a 2xx answer.  While the hub is
unreachable or refusing batches, :attr:`Uploader.current_backoff` grows
(1s, 2s, 4s, ... up to ``max_backoff_s``); the daemon's upload loop waits at
least that long before the next attempt.  It drops back to 0 after the next
delivered batch.

HTTPS is enforced at construction and TLS certificates are always verified.

CHANGELOG:
- 2026-10-19: Post EventBatch from EventOutbox; backoff drives the upload loop (STORY-019)
- 2026-10-15: Initial creation (STORY-015)

TODO:
- None
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import httpx

from meter.src.models import EventBatch

if TYPE_CHECKING:
    from meter.src.outbox import EventOutbox

logger = logging.getLogger(__name__)

FIRST_RETRY_S = 1.0
DEFAULT_MAX_BACKOFF_S = 300.0


class Uploader:
    """Batch uploader for one device token.

    Args:
        hub_base_url: Hub base URL, ``https://`` only.
        hub_device_token: Bearer token identifying this meter at the hub.
        batch_size: Maximum events per request.
        max_backoff_s: Ceiling for :attr:`current_backoff`.

    Raises:
        ValueError: If *hub_base_url* is not an HTTPS URL.
    """

    def __init__(
        self,
        hub_base_url: str,
        hub_device_token: str,
        batch_size: int,
        max_backoff_s: float = DEFAULT_MAX_BACKOFF_S,
    ) -> None:
        if not hub_base_url.lower().startswith("https://"):
            raise ValueError(f"Hub base URL must use HTTPS (got: '{hub_base_url}').")
        self._events_url = f"{hub_base_url.rstrip('/')}/v1/events"
        self._auth_header = {"Authorization": f"Bearer {hub_device_token}"}
        self._batch_size = batch_size
        self._max_backoff_s = max_backoff_s
        self._backoff_s = 0.0

    @property
    def events_url(self) -> str:
        return self._events_url

    @property
    def current_backoff(self) -> float:
        """Seconds to hold off before retrying; 0 while the hub is healthy."""
        return self._backoff_s

    async def upload_batch(self, outbox: EventOutbox) -> bool:
        """Deliver the oldest pending batch.

        Returns:
            True if a batch was delivered and acknowledged.  False when the
            outbox is empty or the hub did not accept the batch.
        """
        pending = await outbox.peek(self._batch_size)
        if not pending:
            logger.debug("Outbox empty, skipping upload.")
            return False

        body = EventBatch(events=[event for _, event in pending])
        try:
            async with httpx.AsyncClient(verify=True) as client:
                response = await client.post(
                    self._events_url,
                    json=body.model_dump(mode="json"),
                    headers=self._auth_header,
                )
        except httpx.HTTPError as exc:
            self._failed()
            logger.warning(
                "Upload of %d events failed (%s); retrying in %.0fs",
                len(pending),
                exc,
                self._backoff_s,
            )
            return False

        if not 200 <= response.status_code < 300:
            self._failed()
            logger.warning(
                "Hub rejected %d events (HTTP %d); retrying in %.0fs",
                len(pending),
                response.status_code,
                self._backoff_s,
            )
            return False

        await outbox.ack([rowid for rowid, _ in pending])
        logger.info("Uploaded %d events.", len(pending))
        self._backoff_s = 0.0
        return True

    def _failed(self) -> None:
        self._backoff_s = min(max(FIRST_RETRY_S, self._backoff_s * 2), self._max_backoff_s)
