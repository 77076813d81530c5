"""
Tests for the connection pool.

Run with: python -m pytest tests/test_pool.py
"""

import asyncio

import pytest
from conftest import FakeDriver

from tdsclient import ConnectionOptions, ConnectionPool, ConnectionState, PoolConfig, ResourceError, StateError


def make_pool(driver=None, **config):
    options = ConnectionOptions(server="fake-host", username="sa", password="pw")
    return ConnectionPool(options, PoolConfig(**config), driver=driver or FakeDriver())


class TestPoolConfig:
    def test_defaults(self):
        config = PoolConfig()
        assert config.max_size == 10
        assert config.min_idle is None
        assert config.connection_timeout_secs is None

    def test_presets(self):
        assert PoolConfig.high_throughput().max_size == 50
        assert PoolConfig.low_resource().max_size == 3
        assert PoolConfig.development().idle_timeout_secs == 60

    def test_validation(self):
        with pytest.raises(ValueError):
            PoolConfig(max_size=0)
        with pytest.raises(ValueError):
            PoolConfig(max_size=2, min_idle=3)

    def test_repr(self):
        assert "max_size=4" in repr(PoolConfig(max_size=4))


@pytest.mark.asyncio
async def test_acquire_opens_and_reuses():
    driver = FakeDriver()
    pool = make_pool(driver, max_size=2)
    first = await pool.acquire()
    assert first.state is ConnectionState.CONNECTED
    await pool.release(first)
    second = await pool.acquire()
    assert second is first
    assert len(driver.processes) == 1
    await pool.release(second)
    await pool.close()


@pytest.mark.asyncio
async def test_size_never_exceeds_max():
    driver = FakeDriver()
    pool = make_pool(driver, max_size=2)
    a = await pool.acquire()
    b = await pool.acquire()
    assert a is not b
    assert pool.size == 2
    waiter = asyncio.ensure_future(pool.acquire())
    await asyncio.sleep(0.01)
    assert not waiter.done()
    assert pool.stats()["waiters"] == 1
    await pool.release(a)
    assert await waiter is a
    assert len(driver.processes) == 2
    await pool.release(b)
    await pool.release(a)
    await pool.close()


@pytest.mark.asyncio
async def test_waiters_served_in_order():
    pool = make_pool(max_size=1)
    held = await pool.acquire()
    order = []

    async def borrower(n):
        async with pool.connection():
            order.append(n)

    tasks = [asyncio.ensure_future(borrower(n)) for n in range(5)]
    await asyncio.sleep(0.01)
    await pool.release(held)
    await asyncio.gather(*tasks)
    assert order == list(range(5))
    await pool.close()


@pytest.mark.asyncio
async def test_acquire_timeout():
    pool = make_pool(max_size=1, connection_timeout_secs=0.05)
    held = await pool.acquire()
    with pytest.raises(ResourceError):
        await pool.acquire()
    assert pool.stats()["waiters"] == 0
    await pool.release(held)
    await pool.close()


@pytest.mark.asyncio
async def test_release_unknown_connection():
    pool = make_pool()
    conn = await pool.acquire()
    await pool.release(conn)
    with pytest.raises(StateError):
        await pool.release(conn)
    await pool.close()


@pytest.mark.asyncio
async def test_broken_connection_is_replaced():
    driver = FakeDriver()
    pool = make_pool(driver, max_size=1)
    conn = await pool.acquire()
    await conn.disconnect()
    await pool.release(conn)
    assert pool.size == 0
    fresh = await pool.acquire()
    assert fresh is not conn
    assert len(driver.processes) == 2
    await pool.release(fresh)
    await pool.close()


@pytest.mark.asyncio
async def test_failed_open_frees_the_slot():
    driver = FakeDriver()
    driver.fail_open = True
    pool = make_pool(driver, max_size=1)
    with pytest.raises(Exception):
        await pool.acquire()
    assert pool.size == 0
    driver.fail_open = False
    conn = await pool.acquire()
    await pool.release(conn)
    await pool.close()


@pytest.mark.asyncio
async def test_warm_up_and_close():
    driver = FakeDriver()
    pool = make_pool(driver, max_size=4, min_idle=2)
    async with pool:
        assert pool.stats()["idle_connections"] == 2
    assert pool.closed
    assert all(process.closed == 1 for process in driver.processes)
    with pytest.raises(StateError):
        await pool.acquire()


@pytest.mark.asyncio
async def test_close_rejects_waiters():
    pool = make_pool(max_size=1)
    held = await pool.acquire()
    waiter = asyncio.ensure_future(pool.acquire())
    await asyncio.sleep(0.01)
    await pool.close()
    with pytest.raises(StateError):
        await waiter
    await pool.release(held)
    assert held.state is ConnectionState.DISCONNECTED


@pytest.mark.asyncio
async def test_expired_connections_are_not_reused():
    driver = FakeDriver()
    pool = make_pool(driver, max_size=1, max_lifetime_secs=0)
    conn = await pool.acquire()
    await pool.release(conn)
    assert conn.state is ConnectionState.DISCONNECTED
    again = await pool.acquire()
    assert again is not conn
    await pool.release(again)
    await pool.close()


@pytest.mark.asyncio
async def test_cancelled_waiter_returns_handed_off_connection():
    pool = make_pool(max_size=1, connection_timeout_secs=1)
    held = await pool.acquire()
    waiter = asyncio.ensure_future(pool.acquire())
    await asyncio.sleep(0.01)
    await pool.release(held)
    waiter.cancel()
    try:
        handed = await waiter
    except asyncio.CancelledError:
        handed = None
    if handed is not None:
        await pool.release(handed)
    assert pool.stats()["in_use"] == 0
    again = await asyncio.wait_for(pool.acquire(), 0.5)
    assert again is held
    await pool.release(again)
    await pool.close()


@pytest.mark.asyncio
async def test_cancelled_waiter_passes_free_slot_on():
    driver = FakeDriver()
    pool = make_pool(driver, max_size=1, connection_timeout_secs=1)
    held = await pool.acquire()
    first = asyncio.ensure_future(pool.acquire())
    second = asyncio.ensure_future(pool.acquire())
    await asyncio.sleep(0.01)
    await held.disconnect()
    await pool.release(held)
    first.cancel()
    try:
        handed = await first
    except asyncio.CancelledError:
        handed = None
    if handed is not None:
        await pool.release(handed)
    conn = await asyncio.wait_for(second, 0.5)
    assert conn.state is ConnectionState.CONNECTED
    await pool.release(conn)
    await pool.close()
