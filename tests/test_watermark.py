"""
Unit tests for WatermarkStore: defaults, lazy table creation, and the
never-raise behaviour on storage failures.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from telesync.watermark import WatermarkStore

STORED = datetime(2024, 3, 1, 9, 15, tzinfo=timezone.utc)


@pytest.fixture
def mock_pool():
    pool = MagicMock()
    pool.execute = AsyncMock(return_value="OK")
    pool.fetchval = AsyncMock(return_value=STORED)
    return pool


def _near_default(value: datetime, lookback: timedelta = timedelta(hours=1)) -> bool:
    expected = datetime.now(timezone.utc) - lookback
    return abs((value - expected).total_seconds()) < 5


class TestGet:
    @pytest.mark.asyncio
    async def test_returns_stored_value(self, mock_pool):
        store = WatermarkStore(mock_pool)
        assert await store.get() == STORED
        args = mock_pool.fetchval.call_args.args
        assert args[1:] == ("sync", "lastProcessed")

    @pytest.mark.asyncio
    async def test_creates_table_once(self, mock_pool):
        store = WatermarkStore(mock_pool)
        await store.get()
        await store.get()
        create_calls = [
            c for c in mock_pool.execute.call_args_list if "CREATE TABLE" in c.args[0]
        ]
        assert len(create_calls) == 1

    @pytest.mark.asyncio
    async def test_missing_row_gives_default(self, mock_pool):
        mock_pool.fetchval.return_value = None
        assert _near_default(await WatermarkStore(mock_pool).get())

    @pytest.mark.asyncio
    async def test_no_pool_gives_default(self):
        value = await WatermarkStore(None, lookback=timedelta(minutes=10)).get()
        assert _near_default(value, timedelta(minutes=10))

    @pytest.mark.asyncio
    async def test_read_failure_gives_default(self, mock_pool):
        mock_pool.fetchval.side_effect = OSError("connection refused")
        assert _near_default(await WatermarkStore(mock_pool).get())

    @pytest.mark.asyncio
    async def test_naive_value_treated_as_utc(self, mock_pool):
        mock_pool.fetchval.return_value = datetime(2024, 3, 1, 9, 15)
        assert await WatermarkStore(mock_pool).get() == STORED


class TestStored:
    @pytest.mark.asyncio
    async def test_returns_persisted_value(self, mock_pool):
        assert await WatermarkStore(mock_pool).stored() == STORED

    @pytest.mark.asyncio
    async def test_missing_row_is_none(self, mock_pool):
        mock_pool.fetchval.return_value = None
        assert await WatermarkStore(mock_pool).stored() is None

    @pytest.mark.asyncio
    async def test_no_pool_is_none(self):
        assert await WatermarkStore(None).stored() is None

    @pytest.mark.asyncio
    async def test_read_failure_is_none(self, mock_pool):
        mock_pool.fetchval.side_effect = OSError("connection refused")
        assert await WatermarkStore(mock_pool).stored() is None


class TestSet:
    @pytest.mark.asyncio
    async def test_upserts_timestamp(self, mock_pool):
        store = WatermarkStore(mock_pool)
        assert await store.set(STORED) is True
        sql, *params = mock_pool.execute.call_args.args
        assert "ON CONFLICT" in sql
        assert params == ["sync", "lastProcessed", STORED]

    @pytest.mark.asyncio
    async def test_write_failure_is_swallowed(self, mock_pool):
        mock_pool.execute.side_effect = OSError("connection reset")
        assert await WatermarkStore(mock_pool).set(STORED) is False

    @pytest.mark.asyncio
    async def test_no_pool_skips(self):
        assert await WatermarkStore(None).set(STORED) is False

    @pytest.mark.asyncio
    async def test_custom_keys(self, mock_pool):
        store = WatermarkStore(mock_pool, partition_key="p", row_key="r")
        await store.set(STORED)
        assert mock_pool.execute.call_args.args[1:3] == ("p", "r")
