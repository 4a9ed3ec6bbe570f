"""
Sync service entry point — runs the scheduled incremental cycle and serves
the on-demand HTTP trigger.

Runs as a long-lived systemd service.

Key behaviours:
    - Loads configuration from ``/etc/telesync/settings.toml`` (or
      ``$TELESYNC_CONFIG``) plus environment overrides.
    - Runs an incremental cycle every ``sync.interval_seconds``.
    - Serves ``POST /api/sync`` via uvicorn when ``trigger.enabled``.
    - Handles SIGTERM / SIGINT for graceful shutdown.
    - Records every cycle in the audit log.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Optional

import asyncpg
import uvicorn
from fastapi import FastAPI

from shared.audit import AuditLogger
from shared.db import get_connection_pool, init_database
from telesync.config import SyncConfig, load_config
from telesync.orchestrator import SyncOrchestrator
from telesync.publisher import SinkPublisher
from telesync.reader import TelemetryReader
from telesync.trigger import create_app
from telesync.watermark import WatermarkStore

logger = logging.getLogger("telesync.main")


# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------


@dataclass
class SyncService:
    """Everything one process needs, created once at startup."""

    config: SyncConfig
    orchestrator: SyncOrchestrator
    audit: AuditLogger
    source_pool: Optional[asyncpg.Pool] = None
    state_pool: Optional[asyncpg.Pool] = None

    async def aclose(self) -> None:
        for pool in (self.source_pool, self.state_pool):
            if pool is None:
                continue
            try:
                await pool.close()
            except Exception:
                logger.exception("Failed to close database pool")


async def build_service(config: SyncConfig) -> SyncService:
    """Open pools and assemble the orchestrator.

    Pools connect lazily, so an unreachable source surfaces as a failed
    (logged) cycle rather than a crash at startup.  A missing source DSN
    leaves the source pool unset and the orchestrator skips every cycle.
    """
    source_pool = None
    if config.source_dsn:
        source_pool = await get_connection_pool(config.source_dsn, min_size=0)

    state_pool = None
    if config.watermark_dsn:
        state_pool = await get_connection_pool(config.watermark_dsn, min_size=0)
        try:
            await init_database(state_pool)
        except Exception:
            logger.warning("Failed to initialise state tables", exc_info=True)
    else:
        logger.warning("No watermark store configured; every cycle uses the default lookback")

    audit = AuditLogger(state_pool, log_path=config.audit_log_path)
    orchestrator = SyncOrchestrator(
        config=config,
        reader=TelemetryReader(source_pool, table=config.source_table),
        publisher=SinkPublisher(config.push_url, timeout=config.http_timeout_seconds),
        watermarks=WatermarkStore(state_pool, lookback=config.lookback),
        audit=audit,
    )
    return SyncService(
        config=config,
        orchestrator=orchestrator,
        audit=audit,
        source_pool=source_pool,
        state_pool=state_pool,
    )


# ---------------------------------------------------------------------------
# Graceful shutdown
# ---------------------------------------------------------------------------

_shutdown_event: threading.Event = threading.Event()


async def _sleep_with_shutdown(seconds: float) -> bool:
    """Sleep for up to ``seconds`` while remaining responsive to shutdown."""
    if _shutdown_event.is_set():
        return True

    remaining = max(0.0, seconds)
    while remaining > 0:
        if _shutdown_event.is_set():
            return True
        tick = min(0.5, remaining)
        await asyncio.sleep(tick)
        remaining -= tick
    return _shutdown_event.is_set()


def _handle_signal(sig: int, frame: Any) -> None:
    """Set the shutdown event so the scheduled loop exits after its current cycle."""
    logger.info("Received signal %s, initiating graceful shutdown...", sig)
    _shutdown_event.set()


# ---------------------------------------------------------------------------
# Scheduled trigger
# ---------------------------------------------------------------------------


async def scheduled_loop(orchestrator: SyncOrchestrator, interval: float) -> int:
    """Run incremental cycles every *interval* seconds until shutdown.

    Returns:
        Number of cycles executed.
    """
    cycle = 0
    while not _shutdown_event.is_set():
        cycle += 1
        now = datetime.now(timezone.utc)
        logger.debug(
            "Timer trigger executed at %s; next run at %s",
            now.isoformat(),
            (now + timedelta(seconds=interval)).isoformat(),
        )
        count = await orchestrator.run_incremental()
        if count:
            logger.info("Sync cycle #%d complete: %d records pushed", cycle, count)

        # Wait for the next cycle or a shutdown signal
        await _sleep_with_shutdown(interval)
    return cycle


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------


def build_app(config: SyncConfig) -> FastAPI:
    """Trigger app whose lifespan owns the service and the scheduled loop."""

    @contextlib.asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        service = await build_service(config)
        app.state.orchestrator = service.orchestrator
        app.state.state_pool = service.state_pool
        _shutdown_event.clear()
        loop_task = asyncio.create_task(
            scheduled_loop(service.orchestrator, config.sync_interval_seconds),
            name="telesync-scheduler",
        )
        try:
            yield
        finally:
            _shutdown_event.set()
            await loop_task
            await service.aclose()
            logger.info("Sync service shut down cleanly.")

    return create_app(lifespan=lifespan)


async def main(config: SyncConfig) -> None:
    """Scheduler-only entry point (trigger disabled)."""
    service = await build_service(config)
    try:
        await scheduled_loop(service.orchestrator, config.sync_interval_seconds)
    finally:
        await service.aclose()
        logger.info("Sync service shut down cleanly.")


def run(config_path: Optional[Path] = None) -> None:
    """Synchronous entry point (called from ``__main__`` or systemd)."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    )
    config = load_config(config_path)

    if config.trigger_enabled:
        # uvicorn installs its own SIGTERM/SIGINT handling and runs the
        # lifespan shutdown, which stops the scheduler.
        uvicorn.run(
            build_app(config),
            host=config.trigger_host,
            port=config.trigger_port,
            log_config=None,
        )
        return

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)
    asyncio.run(main(config))


if __name__ == "__main__":
    run()
