"""
Audit trail for sync cycles.

Every incremental cycle that did something and every bulk load ends in
one ``CycleOutcome``.  ``AuditLogger.record`` appends it as a JSON line to
the audit file and, when a state database is configured, inserts it into
``audit_log`` through the same pool the watermark store uses.  Audit
failures are logged and never reach the sync path.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

import asyncpg

logger = logging.getLogger("shared.audit")

_DEFAULT_LOG_PATH = Path("/var/log/telesync/audit.log")
_INSERT_AUDIT_SQL = (
    "INSERT INTO audit_log (service, action, details, success) "
    "VALUES ($1, $2, $3::jsonb, $4)"
)

INCREMENTAL_SYNC = "incremental_sync"
BULK_LOAD = "bulk_load"


@dataclass(frozen=True)
class CycleOutcome:
    """Result of one sync cycle as written to the audit trail.

    Attributes:
        action: ``INCREMENTAL_SYNC`` or ``BULK_LOAD``.
        success: Whether every batch of the cycle was accepted.
        records: Records delivered to the sink.
        manual: Started by the HTTP trigger rather than the timer.
        total: Source row count (bulk loads only).
        batches: Batches delivered (bulk loads only).
        previous_watermark: Watermark read at the start of the cycle.
        new_watermark: Newest delivered ``enqueuedTime``.
        watermark_saved: The watermark store accepted ``new_watermark``.
        elapsed_seconds: Wall time of the cycle.
        error: Exception message or rejection reason on failure.
    """

    action: str
    success: bool
    records: int = 0
    manual: bool = False
    total: Optional[int] = None
    batches: Optional[int] = None
    previous_watermark: Optional[datetime] = None
    new_watermark: Optional[datetime] = None
    watermark_saved: bool = False
    elapsed_seconds: Optional[float] = None
    error: Optional[str] = None

    def details(self) -> Dict[str, Any]:
        """Everything except action/success, without unset fields."""
        out: Dict[str, Any] = {}
        for key, value in asdict(self).items():
            if key in ("action", "success") or value is None:
                continue
            if isinstance(value, datetime):
                value = value.isoformat()
            out[key] = value
        return out


class AuditLogger:
    """Writes ``CycleOutcome`` entries to a JSON Lines file and ``audit_log``.

    Args:
        pool: State database pool, or ``None`` to write the file only.
        log_path: JSON Lines audit file; parent directories are created.
        service: Value of the ``service`` column.
    """

    def __init__(
        self,
        pool: Optional[asyncpg.Pool] = None,
        log_path: Path = _DEFAULT_LOG_PATH,
        service: str = "telesync",
    ) -> None:
        self._pool = pool
        self._log_path = log_path
        self._service = service
        # Cycles may overlap; keep file lines whole.
        self._file_lock = asyncio.Lock()

    def _append_line(self, line: str) -> None:
        self._log_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self._log_path, "a", encoding="utf-8") as handle:
            handle.write(line)

    async def record(self, outcome: CycleOutcome) -> None:
        """Persist *outcome*.  Never raises."""
        details = outcome.details()
        line = json.dumps(
            {
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "service": self._service,
                "action": outcome.action,
                "success": outcome.success,
                "details": details,
            }
        )
        try:
            async with self._file_lock:
                await asyncio.to_thread(self._append_line, line + "\n")
        except OSError:
            logger.exception("Failed to write audit log file %s", self._log_path)

        if self._pool is None:
            return
        try:
            await self._pool.execute(
                _INSERT_AUDIT_SQL,
                self._service,
                outcome.action,
                json.dumps(details),
                outcome.success,
            )
        except Exception:
            logger.exception("Failed to write %s audit row", outcome.action)
