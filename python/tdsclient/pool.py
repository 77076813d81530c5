"""
Connection pool.

A Connection serializes everything issued on it, so concurrent callers that
want parallelism need separate connections. ConnectionPool hands out
independent Connection instances, at most ``max_size`` of them, and queues
callers in FIFO order when all are busy.
"""

import asyncio
import collections
import contextlib
import time
from typing import Any, Deque, Dict, Optional, Tuple, Union

import structlog

from .config import ConnectionOptions
from .connection import Connection
from .types import ConnectionState, ResourceError, StateError

logger = structlog.get_logger()


class PoolConfig:
    """Connection pool configuration."""

    def __init__(
        self,
        max_size: int = 10,
        min_idle: Optional[int] = None,
        max_lifetime_secs: Optional[int] = None,
        idle_timeout_secs: Optional[int] = None,
        connection_timeout_secs: Optional[int] = None
    ):
        """Initialize connection pool configuration.

        Args:
            max_size: Maximum number of connections in pool (default: 10)
            min_idle: Minimum number of idle connections opened by ``warm_up()``
            max_lifetime_secs: Maximum lifetime of connections in seconds
            idle_timeout_secs: How long a connection can be idle before being closed (seconds)
            connection_timeout_secs: How long ``acquire()`` waits for a free connection (seconds)
        """
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        if min_idle is not None and min_idle > max_size:
            raise ValueError("min_idle cannot exceed max_size")
        self._max_size = max_size
        self._min_idle = min_idle
        self._max_lifetime_secs = max_lifetime_secs
        self._idle_timeout_secs = idle_timeout_secs
        self._connection_timeout_secs = connection_timeout_secs

    @property
    def max_size(self) -> int:
        """Maximum number of connections in pool."""
        return self._max_size

    @property
    def min_idle(self) -> Optional[int]:
        """Minimum number of idle connections."""
        return self._min_idle

    @property
    def max_lifetime_secs(self) -> Optional[int]:
        """Maximum lifetime of connections in seconds."""
        return self._max_lifetime_secs

    @property
    def idle_timeout_secs(self) -> Optional[int]:
        """Idle timeout in seconds."""
        return self._idle_timeout_secs

    @property
    def connection_timeout_secs(self) -> Optional[int]:
        """Acquire timeout in seconds."""
        return self._connection_timeout_secs

    @staticmethod
    def high_throughput() -> 'PoolConfig':
        """Create configuration for high-throughput scenarios."""
        return PoolConfig(max_size=50, min_idle=10, max_lifetime_secs=1800,
                          idle_timeout_secs=600, connection_timeout_secs=30)

    @staticmethod
    def low_resource() -> 'PoolConfig':
        """Create configuration for low-resource scenarios."""
        return PoolConfig(max_size=3, min_idle=1, max_lifetime_secs=900,
                          idle_timeout_secs=300, connection_timeout_secs=15)

    @staticmethod
    def development() -> 'PoolConfig':
        """Create configuration for development scenarios."""
        return PoolConfig(max_size=5, min_idle=1, max_lifetime_secs=300,
                          idle_timeout_secs=60, connection_timeout_secs=10)

    def __repr__(self) -> str:
        return (f"PoolConfig(max_size={self._max_size}, min_idle={self._min_idle}, "
                f"max_lifetime_secs={self._max_lifetime_secs}, idle_timeout_secs={self._idle_timeout_secs}, "
                f"connection_timeout_secs={self._connection_timeout_secs})")


class ConnectionPool:
    """Bounded pool of connected Connection objects."""

    def __init__(self, options: Union[ConnectionOptions, str], config: Optional[PoolConfig] = None,
                 driver=None):
        """
        Args:
            options: ConnectionOptions or a connection string
            config: Pool limits, defaults to ``PoolConfig()``
            driver: Native driver passed to every Connection
        """
        if isinstance(options, str):
            options = ConnectionOptions.from_connection_string(options)
        self._options = options
        self._config = config or PoolConfig()
        self._driver = driver
        # (connection, created_at, idle_since)
        self._idle: Deque[Tuple[Connection, float, float]] = collections.deque()
        self._in_use: Dict[Connection, float] = {}
        self._opening = 0
        self._waiters: Deque[asyncio.Future] = collections.deque()
        self._closed = False

    @property
    def config(self) -> PoolConfig:
        return self._config

    @property
    def size(self) -> int:
        """Open connections, idle or in use, plus those being opened."""
        return len(self._idle) + len(self._in_use) + self._opening

    @property
    def closed(self) -> bool:
        return self._closed

    def stats(self) -> Dict[str, Any]:
        return {
            "connections": self.size,
            "idle_connections": len(self._idle),
            "in_use": len(self._in_use),
            "waiters": len(self._waiters),
            "max_size": self._config.max_size,
        }

    def _expired(self, created_at: float, idle_since: Optional[float], now: float) -> bool:
        lifetime = self._config.max_lifetime_secs
        if lifetime is not None and now - created_at >= lifetime:
            return True
        idle = self._config.idle_timeout_secs
        return idle is not None and idle_since is not None and now - idle_since >= idle

    async def _open(self) -> Connection:
        self._opening += 1
        try:
            connection = Connection(options=self._options, driver=self._driver)
            await connection.connect()
        except BaseException:
            self._opening -= 1
            self._wake_one(None)
            raise
        self._opening -= 1
        self._in_use[connection] = time.monotonic()
        logger.debug("Pool connection opened", size=self.size)
        return connection

    async def _discard(self, connection: Connection) -> None:
        try:
            await connection.disconnect()
        except Exception as e:
            logger.warning("Pool connection failed to close", error=str(e))

    def _wake_one(self, connection: Optional[Connection]) -> bool:
        """Hand ``connection`` (or a free slot, for ``None``) to the oldest live waiter."""
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(connection)
                return True
        return False

    async def _pass_on(self, waiter: asyncio.Future) -> None:
        """Give back whatever was handed to a waiter that stopped waiting."""
        if not waiter.done() or waiter.cancelled():
            return
        connection = waiter.result()
        if connection is None:
            self._wake_one(None)
        else:
            await self.release(connection)

    async def warm_up(self) -> None:
        """Open connections until ``min_idle`` are idle."""
        target = self._config.min_idle or 0
        while not self._closed and len(self._idle) < target and self.size < self._config.max_size:
            connection = await self._open()
            created_at = self._in_use.pop(connection)
            self._idle.append((connection, created_at, time.monotonic()))

    async def acquire(self) -> Connection:
        """Take a connection, opening one or waiting in line when needed.

        Raises:
            StateError: If the pool is closed
            ResourceError: If no connection frees up within ``connection_timeout_secs``
        """
        while True:
            if self._closed:
                raise StateError("Connection pool is closed.")
            now = time.monotonic()
            while self._idle:
                connection, created_at, idle_since = self._idle.popleft()
                if self._expired(created_at, idle_since, now) or connection.state is not ConnectionState.CONNECTED:
                    await self._discard(connection)
                    continue
                self._in_use[connection] = created_at
                return connection
            if self.size < self._config.max_size:
                return await self._open()

            waiter = asyncio.get_running_loop().create_future()
            self._waiters.append(waiter)
            try:
                connection = await asyncio.wait_for(waiter, self._config.connection_timeout_secs)
            except asyncio.TimeoutError:
                await self._pass_on(waiter)
                raise ResourceError(
                    f"Timed out waiting for a pooled connection (max_size={self._config.max_size})."
                ) from None
            except asyncio.CancelledError:
                await self._pass_on(waiter)
                raise
            finally:
                with contextlib.suppress(ValueError):
                    self._waiters.remove(waiter)
            if connection is None:
                continue
            if self._closed:
                await self.release(connection)
                continue
            return connection

    async def release(self, connection: Connection) -> None:
        """Return a connection; broken, expired or surplus ones are closed."""
        created_at = self._in_use.pop(connection, None)
        if created_at is None:
            raise StateError("Connection does not belong to this pool or was already released.")
        healthy = connection.state is ConnectionState.CONNECTED
        if self._closed or not healthy or self._expired(created_at, None, time.monotonic()):
            await self._discard(connection)
            self._wake_one(None)
            return
        # Direct handoff keeps waiters FIFO; the connection stays counted as in use.
        self._in_use[connection] = created_at
        if self._wake_one(connection):
            return
        del self._in_use[connection]
        self._idle.append((connection, created_at, time.monotonic()))

    @contextlib.asynccontextmanager
    async def connection(self):
        """``async with pool.connection() as conn:`` acquires and releases."""
        connection = await self.acquire()
        try:
            yield connection
        finally:
            await self.release(connection)

    async def close(self) -> None:
        """Close idle connections and refuse new acquisitions.

        Connections still in use are closed when they are released.
        """
        self._closed = True
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_exception(StateError("Connection pool is closed."))
        while self._idle:
            connection, _, _ = self._idle.popleft()
            await self._discard(connection)
        logger.debug("Pool closed", in_use=len(self._in_use))

    async def __aenter__(self):
        await self.warm_up()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    def __repr__(self) -> str:
        return f"ConnectionPool(server={self._options.server!r}, size={self.size}, max_size={self._config.max_size})"
