#!/usr/bin/env python3
"""
Run a one-off bulk load of the whole telemetry table into the BI dataset.

Usage:
  /opt/telesync/venv/bin/python3 /opt/telesync/scripts/initial-load.py [--config PATH] [--batch-size N]

Exits non-zero if configuration is missing or any batch is rejected; the
watermark is only written when every batch was delivered.
"""
from __future__ import annotations

import argparse
import asyncio
import dataclasses
import logging
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from telesync.config import load_config
from telesync.main import build_service

logger = logging.getLogger("scripts.initial_load")


async def initial_load(config_path: Path | None, batch_size: int | None) -> int:
    config = load_config(config_path)
    if batch_size is not None:
        config = dataclasses.replace(config, batch_size=batch_size)

    service = await build_service(config)
    try:
        pushed = await service.orchestrator.run_bulk_load()
        logger.info("Initial load pushed %d records", pushed)
        return pushed
    finally:
        await service.aclose()


def run() -> None:
    parser = argparse.ArgumentParser(description="Bulk-load all telemetry into the BI dataset")
    parser.add_argument("--config", type=Path, default=None, help="settings.toml path")
    parser.add_argument("--batch-size", type=int, default=None, help="rows per batch")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    )
    try:
        asyncio.run(initial_load(args.config, args.batch_size))
    except Exception as exc:
        logger.error("Initial load failed: %s", exc)
        sys.exit(1)


if __name__ == "__main__":
    run()
