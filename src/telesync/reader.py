"""
Read-only queries against the telemetry table.

All queries use parameterized placeholders ($1, $2, ...).  The table name
comes from validated configuration, never from request input.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import AsyncIterator, List, Tuple

import asyncpg

logger = logging.getLogger("telesync.reader")

_COLUMNS = (
    '"deviceId", "enqueuedTime", battery, barometer, latitude, longitude, altitude, '
    '"AccelMagnitude", "GyroMagnitude", "MagMagnitude", "Anomaly"'
)


class TelemetryReader:
    """Fetches telemetry rows incrementally or page by page.

    Args:
        pool: ``asyncpg`` pool for the source database.
        table: Telemetry table name (already validated by ``SyncConfig``).
    """

    def __init__(self, pool: asyncpg.Pool, table: str = "telemetry") -> None:
        self._pool = pool
        self._table = table
        self._since_sql = (
            f"SELECT {_COLUMNS} FROM {table} "
            'WHERE "enqueuedTime" > $1::timestamptz '
            'ORDER BY "enqueuedTime" ASC'
        )
        self._page_sql = (
            f"SELECT {_COLUMNS} FROM {table} "
            'ORDER BY "enqueuedTime" ASC '
            "LIMIT $1 OFFSET $2"
        )
        self._count_sql = f"SELECT COUNT(*) FROM {table}"

    async def count_rows(self) -> int:
        """Total number of rows in the telemetry table."""
        total = await self._pool.fetchval(self._count_sql)
        return int(total or 0)

    async def fetch_since(self, watermark: datetime) -> List[asyncpg.Record]:
        """Return every row newer than *watermark*, oldest first."""
        rows = await self._pool.fetch(self._since_sql, watermark)
        logger.debug("Fetched %d rows newer than %s", len(rows), watermark.isoformat())
        return rows

    async def iter_pages(
        self, total: int, page_size: int
    ) -> AsyncIterator[Tuple[int, List[asyncpg.Record]]]:
        """Yield ``(offset, rows)`` pages in ascending time order.

        Stops after a short page or once *total* rows have been covered,
        so ``total`` rows take ``ceil(total / page_size)`` queries.
        """
        if page_size < 1:
            raise ValueError(f"page_size must be positive, got {page_size}")

        offset = 0
        while offset < total:
            rows = await self._pool.fetch(self._page_sql, page_size, offset)
            logger.debug("Fetched page offset=%d rows=%d", offset, len(rows))
            yield offset, rows
            if len(rows) < page_size:
                break
            offset += page_size
