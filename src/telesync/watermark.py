"""
High-water-mark persistence in the ``sync_state`` table.

The watermark is the ``enqueuedTime`` of the newest row already delivered
to the sink.  Storage problems are never fatal: a failed read falls back
to a fixed lookback window and a failed write is logged and skipped, which
only means the next cycle re-scans (and re-pushes) a little more.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import asyncpg

from shared.db import CREATE_SYNC_STATE_SQL

logger = logging.getLogger("telesync.watermark")

_SELECT_SQL = """
    SELECT last_processed_time
    FROM sync_state
    WHERE partition_key = $1 AND row_key = $2
"""

_UPSERT_SQL = """
    INSERT INTO sync_state (partition_key, row_key, last_processed_time, updated_at)
    VALUES ($1, $2, $3, NOW())
    ON CONFLICT (partition_key, row_key)
    DO UPDATE SET
        last_processed_time = EXCLUDED.last_processed_time,
        updated_at = NOW()
"""


class WatermarkStore:
    """Reads and writes the ``LastProcessedTime`` watermark.

    Args:
        pool: ``asyncpg`` pool for the state database, or ``None`` when no
              store is configured (reads return the default, writes no-op).
        lookback: Age of the default watermark.
        partition_key: Fixed partition identifier of the entry.
        row_key: Fixed row identifier of the entry.
    """

    def __init__(
        self,
        pool: Optional[asyncpg.Pool],
        lookback: timedelta = timedelta(hours=1),
        partition_key: str = "sync",
        row_key: str = "lastProcessed",
    ) -> None:
        self._pool = pool
        self._lookback = lookback
        self._partition_key = partition_key
        self._row_key = row_key
        self._table_ready = False

    def default(self) -> datetime:
        """Watermark used when none is stored: now minus the lookback."""
        return datetime.now(timezone.utc) - self._lookback

    async def _ensure_table(self) -> None:
        if self._table_ready:
            return
        await self._pool.execute(CREATE_SYNC_STATE_SQL)
        self._table_ready = True

    async def stored(self) -> Optional[datetime]:
        """Return the persisted watermark, or ``None`` if there is none.

        No lookback default is applied.  A failed read is logged and also
        gives ``None``.
        """
        if self._pool is None:
            return None
        try:
            await self._ensure_table()
            value = await self._pool.fetchval(_SELECT_SQL, self._partition_key, self._row_key)
        except Exception:
            logger.warning("Watermark read failed", exc_info=True)
            return None

        if not isinstance(value, datetime):
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value

    async def get(self) -> datetime:
        """Return the stored watermark, or the default lookback."""
        value = await self.stored()
        if value is None:
            return self.default()
        return value

    async def set(self, timestamp: datetime) -> bool:
        """Persist *timestamp* as the new watermark.

        Returns:
            ``True`` if the write went through, ``False`` if it was skipped
            or failed.  Never raises.
        """
        if self._pool is None:
            logger.debug("No watermark store configured; skipping update")
            return False
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=timezone.utc)
        try:
            await self._ensure_table()
            await self._pool.execute(_UPSERT_SQL, self._partition_key, self._row_key, timestamp)
        except Exception:
            logger.warning("Watermark update to %s failed", timestamp.isoformat(), exc_info=True)
            return False
        logger.debug("Watermark advanced to %s", timestamp.isoformat())
        return True
