"""
Bulk-load progress tracking with ETA for journalctl output.

``BulkLoadProgress`` logs one human-readable line per delivered batch with
the running total, percentage, rate and elapsed time.
"""

from __future__ import annotations

import logging
import time

logger = logging.getLogger("telesync.progress")


def format_duration(seconds: float) -> str:
    """Format a duration in seconds to a human-readable string.

    Examples: ``"45s"``, ``"2m 30s"``, ``"1h 15m"``.
    """
    if seconds < 0:
        return "0s"
    total = int(seconds)
    if total < 60:
        return f"{total}s"
    minutes, secs = divmod(total, 60)
    if minutes < 60:
        if secs:
            return f"{minutes}m {secs}s"
        return f"{minutes}m"
    hours, mins = divmod(minutes, 60)
    if mins:
        return f"{hours}h {mins}m"
    return f"{hours}h"


class BulkLoadProgress:
    """Tracks rows pushed during a bulk load.

    Args:
        total: Row count reported by the source before the load started.
    """

    def __init__(self, total: int) -> None:
        self.total = total
        self.pushed = 0
        self.batches = 0
        self._start = time.monotonic()

    @property
    def elapsed_seconds(self) -> float:
        return time.monotonic() - self._start

    @property
    def percent(self) -> float:
        if self.total <= 0:
            return 0.0
        return min(100.0, self.pushed * 100.0 / self.total)

    @property
    def rate(self) -> float:
        """Rows pushed per second."""
        elapsed = self.elapsed_seconds
        if elapsed <= 0:
            return 0.0
        return self.pushed / elapsed

    @property
    def eta_seconds(self) -> float | None:
        """Estimated seconds remaining, or None if no estimate possible."""
        if self.total <= 0 or self.rate <= 0:
            return None
        return max(0, self.total - self.pushed) / self.rate

    def update(self, batch_pushed: int) -> None:
        """Count a delivered batch."""
        self.pushed += batch_pushed
        self.batches += 1

    def log_batch(self) -> None:
        eta = self.eta_seconds
        logger.info(
            "Progress: %d/%d (%.1f%%) - Elapsed: %s%s",
            self.pushed,
            self.total,
            self.percent,
            format_duration(self.elapsed_seconds),
            f" - ETA: ~{format_duration(eta)}" if eta is not None else "",
        )

    def log_complete(self) -> None:
        logger.info(
            "Initial load completed! Successfully pushed %d/%d records in %s",
            self.pushed,
            self.total,
            format_duration(self.elapsed_seconds),
        )
