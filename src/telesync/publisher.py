"""
HTTP delivery of telemetry batches to the BI push endpoint.

One POST per batch, no retries.  Whether a failed batch is retried,
dropped or fatal is the orchestrator's decision.
"""

from __future__ import annotations

import json
import logging
from typing import Optional, Sequence

import httpx

from telesync.transform import TelemetryRecord

logger = logging.getLogger("telesync.publisher")

_HEADERS = {"Content-Type": "application/json"}


def serialize(batch: Sequence[TelemetryRecord]) -> str:
    """Render *batch* as a compact JSON array."""
    return json.dumps([record.to_payload() for record in batch], separators=(",", ":"))


class SinkPublisher:
    """Posts batches to the push URL.

    Args:
        url: Push endpoint (the Power BI push-dataset URL carries its own key).
        timeout: Request timeout in seconds.
        http_client: Optional pre-configured ``httpx.AsyncClient`` (for
                     testing or connection reuse).  When omitted, a client
                     is opened per request.
    """

    def __init__(
        self,
        url: str,
        timeout: float = 30.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._url = url
        self._timeout = timeout
        self._http_client = http_client

    async def _post(self, client: httpx.AsyncClient, body: str) -> httpx.Response:
        return await client.post(self._url, content=body.encode("utf-8"), headers=_HEADERS)

    async def publish(self, batch: Sequence[TelemetryRecord]) -> bool:
        """Deliver *batch*; return ``True`` on any 2xx response.

        Non-2xx responses and transport errors are logged and reported as
        ``False``.  Never raises.
        """
        if not batch:
            logger.debug("Empty batch; nothing to publish")
            return True

        body = serialize(batch)
        try:
            if self._http_client is not None:
                response = await self._post(self._http_client, body)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await self._post(client, body)
        except Exception:
            logger.exception("Exception sending %d records to sink", len(batch))
            return False

        if not 200 <= response.status_code < 300:
            logger.error(
                "Sink error - Status: %s, Body: %s",
                response.status_code,
                response.text,
            )
            return False

        logger.debug("Sink accepted %d records (status=%s)", len(batch), response.status_code)
        return True
