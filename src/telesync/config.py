"""
Configuration for the sync service.

Settings come from an optional TOML file and are then overridden by
environment variables (the names the deployment already uses, e.g.
``POWERBI_PUSH_URL``).  The result is a frozen ``SyncConfig`` built once at
startup and handed to every component; nothing below the entry point reads
the environment.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import quote

import toml

logger = logging.getLogger("telesync.config")

_DEFAULT_CONFIG_PATH = Path("/etc/telesync/settings.toml")
_DEFAULT_AUDIT_LOG_PATH = Path("/var/log/telesync/audit.log")
_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)?$")

DEFAULT_BATCH_SIZE = 500


@dataclass(frozen=True)
class SyncConfig:
    """Resolved service settings.

    Attributes:
        push_url: BI push endpoint receiving JSON arrays.
        source_dsn: PostgreSQL DSN for the telemetry table ("" if unset).
        watermark_dsn: PostgreSQL DSN for ``sync_state``/``audit_log``
            ("" disables watermark persistence).
        source_table: Telemetry table name.
        batch_size: Page size for bulk loads.
        sync_interval_seconds: Period of the scheduled incremental cycle.
        bulk_batch_delay_seconds: Fixed wait between bulk batches.
        lookback: Watermark default when none is stored.
        http_timeout_seconds: Timeout for the sink POST.
        single_flight: Serialize sync cycles inside one process.
    """

    push_url: str = ""
    source_dsn: str = ""
    watermark_dsn: str = ""
    source_table: str = "telemetry"
    batch_size: int = DEFAULT_BATCH_SIZE
    sync_interval_seconds: float = 10.0
    bulk_batch_delay_seconds: float = 0.2
    lookback: timedelta = timedelta(hours=1)
    http_timeout_seconds: float = 30.0
    single_flight: bool = False
    trigger_enabled: bool = True
    trigger_host: str = "0.0.0.0"
    trigger_port: int = 8080
    audit_log_path: Path = field(default=_DEFAULT_AUDIT_LOG_PATH)

    def __post_init__(self) -> None:
        if not _IDENTIFIER_RE.match(self.source_table):
            raise ValueError(f"Invalid source table name: {self.source_table!r}")
        if self.batch_size < 1:
            raise ValueError(f"batch_size must be positive, got {self.batch_size}")

    def missing_settings(self) -> List[str]:
        """Return the names of required settings that are not configured."""
        missing = []
        if not self.push_url:
            missing.append("POWERBI_PUSH_URL")
        if not self.source_dsn:
            missing.append("SQL_CONNECTION_STRING")
        return missing


def build_source_dsn(
    connection_string: Optional[str] = None,
    server: Optional[str] = None,
    database: Optional[str] = None,
    user: Optional[str] = None,
    password: Optional[str] = None,
    port: Optional[str] = None,
) -> str:
    """Return a DSN for the telemetry database.

    A full connection string wins.  Otherwise server, database, user and
    password must all be present; the DSN then requires TLS.  Returns an
    empty string when the parts are incomplete.
    """
    if connection_string:
        return connection_string
    if not (server and database and user and password):
        return ""
    host = f"{server}:{port}" if port else server
    return (
        f"postgresql://{quote(user, safe='')}:{quote(password, safe='')}"
        f"@{host}/{quote(database, safe='')}?sslmode=require"
    )


def _parse_int(value: Any, default: int, name: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        logger.warning("Invalid %s value %r; using %d", name, value, default)
        return default


def _parse_float(value: Any, default: float, name: str) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        logger.warning("Invalid %s value %r; using %s", name, value, default)
        return default


def _parse_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def _resolve_path(path: Optional[Path], environ: Mapping[str, str]) -> Path:
    if path is not None:
        return path
    env_path = environ.get("TELESYNC_CONFIG")
    return Path(env_path) if env_path else _DEFAULT_CONFIG_PATH


def load_config(
    path: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> SyncConfig:
    """Load settings from TOML (if present) and the environment.

    Args:
        path: Settings file.  Defaults to ``$TELESYNC_CONFIG`` or
              ``/etc/telesync/settings.toml``.  A missing file is allowed.
        environ: Environment mapping (defaults to ``os.environ``).

    Returns:
        The resolved ``SyncConfig``.

    Raises:
        ValueError: If the source table name or batch size is invalid.
    """
    env = os.environ if environ is None else environ
    cfg_path = _resolve_path(path, env)

    data: Dict[str, Any] = {}
    if cfg_path.exists():
        data = toml.load(cfg_path)
        logger.info("Loaded settings from %s", cfg_path)
    else:
        logger.info("No settings file at %s; using environment only", cfg_path)

    sink = data.get("sink", {})
    source = data.get("source", {})
    state = data.get("watermark", {})
    sync = data.get("sync", {})
    trigger = data.get("trigger", {})
    audit = data.get("audit", {})

    push_url = env.get("POWERBI_PUSH_URL") or sink.get("push_url", "")

    source_dsn = build_source_dsn(
        connection_string=env.get("SQL_CONNECTION_STRING") or source.get("dsn"),
        server=env.get("SQL_SERVER") or source.get("server"),
        database=env.get("SQL_DATABASE") or source.get("database"),
        user=env.get("SQL_USER") or source.get("user"),
        password=env.get("SQL_PASSWORD") or source.get("password"),
        port=env.get("SQL_PORT") or (str(source["port"]) if "port" in source else None),
    )

    batch_size = _parse_int(
        env.get("BATCH_SIZE") or sync.get("batch_size", DEFAULT_BATCH_SIZE),
        DEFAULT_BATCH_SIZE,
        "BATCH_SIZE",
    )
    if batch_size < 1:
        logger.warning("BATCH_SIZE must be positive; using %d", DEFAULT_BATCH_SIZE)
        batch_size = DEFAULT_BATCH_SIZE

    interval = _parse_float(
        env.get("SYNC_INTERVAL_SECONDS") or sync.get("interval_seconds", 10.0),
        10.0,
        "SYNC_INTERVAL_SECONDS",
    )
    lookback_minutes = _parse_float(
        state.get("lookback_minutes", 60), 60.0, "watermark.lookback_minutes"
    )

    return SyncConfig(
        push_url=push_url,
        source_dsn=source_dsn,
        watermark_dsn=env.get("WATERMARK_STORE_DSN") or state.get("dsn", ""),
        source_table=source.get("table", "telemetry"),
        batch_size=batch_size,
        sync_interval_seconds=max(1.0, interval),
        bulk_batch_delay_seconds=max(
            0.0,
            _parse_float(sync.get("bulk_batch_delay_seconds", 0.2), 0.2, "bulk_batch_delay_seconds"),
        ),
        lookback=timedelta(minutes=max(0.0, lookback_minutes)),
        http_timeout_seconds=_parse_float(sink.get("timeout_seconds", 30.0), 30.0, "sink.timeout_seconds"),
        single_flight=_parse_bool(sync.get("single_flight", False)),
        trigger_enabled=_parse_bool(trigger.get("enabled", True)),
        trigger_host=trigger.get("host", "0.0.0.0"),
        trigger_port=_parse_int(trigger.get("port", 8080), 8080, "trigger.port"),
        audit_log_path=Path(audit.get("log_path", _DEFAULT_AUDIT_LOG_PATH)),
    )
