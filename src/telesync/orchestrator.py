"""
Sync orchestration — incremental cycles and full bulk loads.

Per cycle::

    Idle → ReadingWatermark → Querying → (Empty → Idle)
                                        | Publishing → (Failure → Idle)
                                                     | (Success → AdvancingWatermark → Idle)

The watermark only moves after the sink has accepted a batch.  Nothing
prevents two cycles (a scheduled one and a manual one) from reading the
same watermark and pushing overlapping rows; the sink is expected to
tolerate re-delivery.  ``SyncConfig.single_flight`` serializes cycles
within this process when that is not acceptable.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from datetime import datetime, timezone
from typing import AsyncIterator, Optional

from shared.audit import BULK_LOAD, INCREMENTAL_SYNC, AuditLogger, CycleOutcome
from telesync.config import SyncConfig
from telesync.progress import BulkLoadProgress
from telesync.publisher import SinkPublisher
from telesync.reader import TelemetryReader
from telesync.transform import build_record, newest_timestamp
from telesync.watermark import WatermarkStore

logger = logging.getLogger("telesync.orchestrator")


class ConfigurationMissing(RuntimeError):
    """Required sink or source settings are absent."""


class PublishFailure(RuntimeError):
    """The sink rejected a bulk-load batch."""


async def throttle_delay(seconds: float) -> None:
    """Fixed pause between bulk batches so the sink is not flooded."""
    if seconds > 0:
        await asyncio.sleep(seconds)


class SyncOrchestrator:
    """Drives reader → transformer → publisher → watermark.

    Args:
        config: Resolved service settings.
        reader: Telemetry source.
        publisher: Sink client.
        watermarks: Watermark persistence.
        audit: Audit logger for cycle outcomes.
    """

    def __init__(
        self,
        config: SyncConfig,
        reader: TelemetryReader,
        publisher: SinkPublisher,
        watermarks: WatermarkStore,
        audit: AuditLogger,
    ) -> None:
        self._config = config
        self._reader = reader
        self._publisher = publisher
        self._watermarks = watermarks
        self._audit = audit
        self._lock: Optional[asyncio.Lock] = asyncio.Lock() if config.single_flight else None

    @contextlib.asynccontextmanager
    async def _cycle_guard(self) -> AsyncIterator[None]:
        if self._lock is None:
            yield
            return
        async with self._lock:
            yield

    # ------------------------------------------------------------------
    # Incremental
    # ------------------------------------------------------------------

    async def run_incremental(self, manual: bool = False) -> int:
        """Push every row newer than the watermark.

        Args:
            manual: ``True`` for the on-demand trigger (affects logging only).

        Returns:
            Number of records delivered; 0 when there was nothing new, the
            configuration is incomplete, the sink rejected the batch, or
            anything raised.  Never raises.
        """
        missing = self._config.missing_settings()
        if missing:
            logger.warning("Missing configuration (%s) - skipping sync", ", ".join(missing))
            return 0

        label = "Manual sync" if manual else "Continuous sync"
        async with self._cycle_guard():
            try:
                return await self._incremental_cycle(label, manual)
            except Exception as exc:
                logger.exception("Error during telemetry data processing")
                await self._audit.record(
                    CycleOutcome(INCREMENTAL_SYNC, success=False, manual=manual, error=str(exc))
                )
                return 0

    async def _incremental_cycle(self, label: str, manual: bool) -> int:
        started = time.monotonic()
        previous = await self._watermarks.get()
        rows = await self._reader.fetch_since(previous)
        now = datetime.now(timezone.utc)
        batch = [build_record(row, now=now) for row in rows]

        if not batch:
            # Timer ticks with nothing new stay quiet.
            if manual:
                logger.info("%s: No new records found", label)
            return 0

        if not await self._publisher.publish(batch):
            logger.error("Failed to push %d records to sink", len(batch))
            await self._audit.record(
                CycleOutcome(
                    INCREMENTAL_SYNC,
                    success=False,
                    manual=manual,
                    previous_watermark=previous,
                    error=f"sink rejected {len(batch)} records",
                )
            )
            return 0

        newest = newest_timestamp(batch)
        saved = False
        if newest is not None and newest > previous:
            saved = await self._watermarks.set(newest)

        logger.info("%s: Pushed %d new records to sink", label, len(batch))
        await self._audit.record(
            CycleOutcome(
                INCREMENTAL_SYNC,
                success=True,
                records=len(batch),
                manual=manual,
                previous_watermark=previous,
                new_watermark=newest,
                watermark_saved=saved,
                elapsed_seconds=round(time.monotonic() - started, 3),
            )
        )
        return len(batch)

    # ------------------------------------------------------------------
    # Bulk load
    # ------------------------------------------------------------------

    async def run_bulk_load(self) -> int:
        """Push the whole telemetry table in pages of ``batch_size``.

        Once every page was accepted, the watermark is advanced to the
        newest timestamp seen, unless the stored watermark is already at
        or past it.  Batches delivered before a failure stay delivered.

        Returns:
            Number of records delivered.

        Raises:
            ConfigurationMissing: Sink or source settings are absent.
            PublishFailure: The sink rejected a batch; later pages are skipped.
        """
        missing = self._config.missing_settings()
        if missing:
            raise ConfigurationMissing(f"Missing configuration: {', '.join(missing)}")

        async with self._cycle_guard():
            try:
                return await self._bulk_load()
            except Exception as exc:
                await self._audit.record(CycleOutcome(BULK_LOAD, success=False, error=str(exc)))
                raise

    async def _bulk_load(self) -> int:
        batch_size = self._config.batch_size
        total = await self._reader.count_rows()
        logger.info(
            "Starting initial bulk load of %d records in batches of %d", total, batch_size
        )
        if total == 0:
            logger.info("No data found in database")
            await self._audit.record(CycleOutcome(BULK_LOAD, success=True, total=0))
            return 0

        progress = BulkLoadProgress(total)
        latest: Optional[datetime] = None

        async for offset, rows in self._reader.iter_pages(total, batch_size):
            batch = [build_record(row) for row in rows]
            if not batch:
                continue

            if progress.batches > 0:
                await throttle_delay(self._config.bulk_batch_delay_seconds)

            if not await self._publisher.publish(batch):
                raise PublishFailure(f"Failed to push batch at offset {offset}")

            progress.update(len(batch))
            progress.log_batch()

            newest = newest_timestamp(batch)
            if newest is not None and (latest is None or newest > latest):
                latest = newest

        previous = await self._watermarks.stored()
        saved = False
        if latest is not None:
            if previous is None or latest > previous:
                saved = await self._watermarks.set(latest)
            else:
                logger.info(
                    "Watermark %s is already past the newest loaded row %s; leaving it",
                    previous.isoformat(),
                    latest.isoformat(),
                )

        progress.log_complete()
        await self._audit.record(
            CycleOutcome(
                BULK_LOAD,
                success=True,
                records=progress.pushed,
                total=total,
                batches=progress.batches,
                previous_watermark=previous,
                new_watermark=latest,
                watermark_saved=saved,
                elapsed_seconds=round(progress.elapsed_seconds, 1),
            )
        )
        return progress.pushed
