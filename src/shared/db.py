"""
Database helpers — connection pool management, schema initialisation,
and health checks.

Uses ``asyncpg`` for async PostgreSQL access.  Two databases may be
involved (they can be the same server):

- **source**: the telemetry table, read-only from this service.
- **state**: ``sync_state`` (the watermark) and ``audit_log``.

Every pool runs its sessions in UTC so naive ``timestamp`` columns compare
correctly against the timezone-aware watermark.
"""

from __future__ import annotations

import logging

import asyncpg

logger = logging.getLogger("shared.db")

CREATE_SYNC_STATE_SQL = """
    CREATE TABLE IF NOT EXISTS sync_state (
        partition_key        TEXT NOT NULL,
        row_key              TEXT NOT NULL,
        last_processed_time  TIMESTAMPTZ,
        updated_at           TIMESTAMPTZ DEFAULT NOW(),
        PRIMARY KEY (partition_key, row_key)
    )
"""

CREATE_AUDIT_LOG_SQL = """
    CREATE TABLE IF NOT EXISTS audit_log (
        id        BIGSERIAL PRIMARY KEY,
        timestamp TIMESTAMPTZ DEFAULT NOW(),
        service   TEXT NOT NULL,
        action    TEXT NOT NULL,
        details   JSONB,
        success   BOOLEAN NOT NULL
    )
"""


# ---------------------------------------------------------------------------
# Connection pool
# ---------------------------------------------------------------------------


async def get_connection_pool(
    dsn: str,
    min_size: int = 1,
    max_size: int = 5,
) -> asyncpg.Pool:
    """Create and return an ``asyncpg`` connection pool.

    Args:
        dsn: PostgreSQL connection string.
        min_size: Connections opened eagerly.
        max_size: Upper bound on pooled connections.

    Raises:
        asyncpg.PostgresError: If the connection cannot be established.
        OSError: If the server is unreachable.
    """
    pool = await asyncpg.create_pool(
        dsn=dsn,
        min_size=min_size,
        max_size=max_size,
        server_settings={"timezone": "UTC"},
    )
    logger.info("Database pool created (min=%d max=%d)", min_size, max_size)
    return pool


# ---------------------------------------------------------------------------
# Schema initialisation
# ---------------------------------------------------------------------------


async def init_database(pool: asyncpg.Pool) -> None:
    """Create the state tables if they do not exist.

    Idempotent (uses IF NOT EXISTS).  The telemetry table itself is owned
    by the ingestion pipeline and is never created here.
    """
    async with pool.acquire() as conn:
        await conn.execute(CREATE_SYNC_STATE_SQL)
        await conn.execute(CREATE_AUDIT_LOG_SQL)
    logger.info("State tables ready (sync_state, audit_log)")


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------


async def health_check(pool: asyncpg.Pool) -> bool:
    """Verify the database is reachable and responsive.

    Returns:
        ``True`` if a simple query succeeds, ``False`` otherwise.
    """
    try:
        async with pool.acquire() as conn:
            result = await conn.fetchval("SELECT 1;")
            return result == 1
    except Exception:
        logger.exception("Database health check failed")
        return False
