"""
End-to-end tests against a live SQL Server.

Set TDSCLIENT_HOST, TDSCLIENT_USERNAME and TDSCLIENT_PASSWORD (optionally
TDSCLIENT_DATABASE, TDSCLIENT_PORT, TDSCLIENT_ENCRYPTION) and make FreeTDS
available to run them:

    python -m pytest tests/test_integration.py -m integration
"""

import asyncio
import datetime
import decimal
import uuid

import pytest
from conftest import Config

from tdsclient import Connection, ConnectionPool, ExecutionError, Parameters, PoolConfig


@pytest.mark.integration
@pytest.mark.asyncio
async def test_basic_select(test_config: Config):
    """Test a simple SELECT returns typed values."""
    async with Connection(options=test_config.options()) as conn:
        result = await conn.execute("SELECT 1 AS one, N'héllo' AS greeting, CAST(NULL AS INT) AS nothing")
        row = result.rows()[0]
        assert row["one"] == 1
        assert row["greeting"] == "héllo"
        assert row.is_null("nothing")


@pytest.mark.integration
@pytest.mark.asyncio
async def test_types_round_trip(test_config: Config):
    """Test values of the common column types decode as expected."""
    async with Connection(options=test_config.options()) as conn:
        result = await conn.execute("""
            SELECT CAST('01020304-0506-0708-090A-0B0C0D0E0F10' AS UNIQUEIDENTIFIER) AS id,
                   CAST(12.5 AS MONEY) AS amount,
                   CAST(123.4500 AS DECIMAL(10, 4)) AS exact,
                   CAST('2024-03-01T12:34:56.123' AS DATETIME) AS legacy,
                   CAST('2024-03-01T12:34:56.1234567' AS DATETIME2) AS modern,
                   CAST(1 AS BIT) AS flag,
                   CAST(9000000000 AS BIGINT) AS big,
                   0xDEADBEEF AS raw
        """)
        row = result.rows()[0]
        assert row["id"] == uuid.UUID("01020304-0506-0708-090a-0b0c0d0e0f10")
        assert str(row["amount"]) == "12.5000"
        assert row["exact"] == decimal.Decimal("123.4500")
        assert row["legacy"] == datetime.datetime(2024, 3, 1, 12, 34, 56, 123000)
        assert row["modern"] == datetime.datetime(2024, 3, 1, 12, 34, 56, 123456)
        assert row["flag"] is True
        assert row["big"] == 9000000000
        assert row["raw"] == b"\xde\xad\xbe\xef"


@pytest.mark.integration
@pytest.mark.asyncio
async def test_multiple_result_sets_and_counts(test_config: Config):
    """Test a batch with DML and two SELECTs."""
    async with Connection(options=test_config.options()) as conn:
        result = await conn.execute("""
            CREATE TABLE #t (id INT);
            INSERT INTO #t VALUES (1), (2), (3);
            UPDATE #t SET id = id + 10 WHERE id > 1;
            SELECT id FROM #t ORDER BY id;
            SELECT COUNT(*) AS n FROM #t;
        """)
        assert len(result.tables) == 2
        assert [row["id"] for row in result.tables[0]] == [1, 12, 13]
        assert result.tables[1][0]["n"] == 3


@pytest.mark.integration
@pytest.mark.asyncio
async def test_error_then_recover(test_config: Config):
    """Test a failing batch reports the server text and leaves the connection usable."""
    async with Connection(options=test_config.options()) as conn:
        with pytest.raises(ExecutionError) as info:
            await conn.execute("SELECT 1/0")
        assert "zero" in str(info.value).lower()
        result = await conn.execute("SELECT 2 AS two")
        assert result.rows()[0]["two"] == 2


@pytest.mark.integration
@pytest.mark.asyncio
async def test_stored_procedure_outputs(test_config: Config):
    """Test OUTPUT parameters and the return status of an RPC call."""
    async with Connection(options=test_config.options()) as conn:
        await conn.execute("""
            IF OBJECT_ID('tempdb..#double_it') IS NOT NULL DROP PROCEDURE #double_it
        """)
        await conn.execute("""
            CREATE PROCEDURE #double_it @value INT, @doubled INT OUTPUT AS
            BEGIN
                SET @doubled = @value * 2;
                RETURN 7;
            END
        """)
        result = await conn.execute_rpc("#double_it", Parameters().add(21, name="value").add_output("doubled", 0))
        assert result.output("doubled") == 42
        assert result.return_status == 7


@pytest.mark.integration
@pytest.mark.asyncio
async def test_execute_parameterized(test_config: Config):
    """Test server-side parameters through sp_executesql."""
    async with Connection(options=test_config.options()) as conn:
        result = await conn.execute_parameterized("SELECT @p1 + @p2 AS total", [40, 2])
        assert result.rows()[0]["total"] == 42


@pytest.mark.integration
@pytest.mark.asyncio
async def test_bulk_insert(test_config: Config):
    """Test bulk insert into a temporary table."""
    async with Connection(options=test_config.options()) as conn:
        await conn.execute("CREATE TABLE #bulk (id INT, name VARCHAR(50) NULL)")
        rows = [{"id": i, "name": f"row {i}" if i % 10 else None} for i in range(1000)]
        assert await conn.bulk_insert("#bulk", rows) == 1000
        result = await conn.execute("SELECT COUNT(*) AS n, COUNT(name) AS named FROM #bulk")
        assert result.rows()[0]["n"] == 1000


@pytest.mark.integration
@pytest.mark.asyncio
async def test_concurrent_queries_on_one_connection(test_config: Config):
    """Test concurrent callers are serialized and each gets its own result."""
    async with Connection(options=test_config.options()) as conn:
        results = await asyncio.gather(*(conn.execute(f"SELECT {n} AS n") for n in range(20)))
        assert [r.rows()[0]["n"] for r in results] == list(range(20))


@pytest.mark.integration
@pytest.mark.asyncio
async def test_pool(test_config: Config):
    """Test pooled connections run queries in parallel."""
    async with ConnectionPool(test_config.options(), PoolConfig(max_size=3)) as pool:
        async def one(n):
            async with pool.connection() as conn:
                return (await conn.execute(f"SELECT {n} AS n")).rows()[0]["n"]

        assert await asyncio.gather(*(one(n) for n in range(9))) == list(range(9))
