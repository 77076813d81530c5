"""
Async connection to a SQL Server-family server over FreeTDS db-lib.

Every public coroutine becomes one unit of work on the connection's
CommandSerializer. The unit checks the connection state when its turn comes,
so operations issued back to back complete in issue order even when one of
them is still connecting.
"""

import asyncio
import contextlib
from typing import Any, Callable, Dict, Iterable, List, Optional, Type, Union

import structlog

from . import _freetds as tds
from . import config as _config
from .bulk import BulkCopy, BulkRow
from .config import ConnectionOptions
from .mapping import map_rows
from .messages import NO_HANDLE, ServerMessage, get_message_center
from .parameters import Parameters, as_parameter_list, build_sql
from .result import Result, ResultAssembler, execution_error
from .rpc import RpcCall, executesql_parameters
from .serializer import CommandSerializer
from .table import DataSet, DataTable
from .types import (
    AlreadyConnectedError,
    ConfigurationError,
    ConnectionState,
    ConnectivityError,
    EncryptionMode,
    NotConnectedError,
    SelectionError,
)

logger = structlog.get_logger()

SQL_LOG_PREVIEW = 100

ParameterInput = Union[None, Parameters, dict, Iterable[Any]]


def _preview(sql: str) -> str:
    sql = " ".join(sql.split())
    return sql if len(sql) <= SQL_LOG_PREVIEW else sql[:SQL_LOG_PREVIEW] + "..."


async def check_reachability(server: str, port: int = _config.DEFAULT_PORT, timeout: float = 5.0) -> None:
    """Open and close a plain TCP connection to ``server:port``.

    Useful before ``connect()`` to fail fast instead of waiting for the login
    timeout. Nothing is sent over the socket.

    Raises:
        ConnectivityError: If no connection is established within ``timeout`` seconds
    """
    host, suffix_port = _config.split_server(server)
    host = host.split("\\", 1)[0]
    port = suffix_port or port
    try:
        _, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout)
    except (OSError, asyncio.TimeoutError) as e:
        raise ConnectivityError(server, f"{host}:{port} is not reachable ({e.__class__.__name__}).") from e
    writer.close()
    with contextlib.suppress(OSError):
        await writer.wait_closed()


class Connection:
    """Async connection to a SQL Server-family database."""

    def __init__(
        self,
        connection_string: Optional[str] = None,
        server: Optional[str] = None,
        database: Optional[str] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        options: Optional[ConnectionOptions] = None,
        driver=None,
        **settings,
    ):
        """Initialize a new async connection.

        Args:
            connection_string: ADO-style connection string (if not using individual parameters)
            server: Database server address, optionally with ``,port`` or ``\\INSTANCE``
            database: Database to select after login
            username: Login name
            password: Login password
            options: A complete ConnectionOptions; wins over every other argument
            driver: Native driver factory, defaults to FreeTDS db-lib
            **settings: Any other ConnectionOptions field (``encryption``, ``port``, ``read_only``...)

        Note:
            Either options, connection_string OR server must be provided.
        """
        if options is None:
            explicit = {
                key: value for key, value in (
                    ("server", server), ("database", database),
                    ("username", username), ("password", password),
                ) if value is not None
            }
            explicit.update(settings)
            if connection_string:
                options = ConnectionOptions.from_connection_string(connection_string, **explicit)
            else:
                options = ConnectionOptions(**explicit)
        self._options = options
        self._driver = driver
        self._serializer = CommandSerializer(name=f"tdsclient-{options.host}")
        self._state = ConnectionState.DISCONNECTED
        self._login = None
        self._native = None
        self.max_text_size = _config.get_default_max_text_size()

    @property
    def options(self) -> ConnectionOptions:
        return self._options

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def handle(self) -> int:
        """Native handle key used in ServerMessage.handle, 0 while disconnected."""
        return self._native.handle if self._native is not None else NO_HANDLE

    async def is_connected(self) -> bool:
        """Check if connected to the database."""
        return self._state is ConnectionState.CONNECTED

    # Lifecycle

    async def connect(self) -> None:
        """Log in, open the connection and select the database.

        Raises:
            AlreadyConnectedError: If the connection is already open
            ResourceError: If FreeTDS is missing or cannot allocate a login record
            ConnectivityError: If the server rejects or never answers the login
            SelectionError: If the database cannot be selected
        """
        await self._serializer.submit(self._connect_sync)

    async def disconnect(self) -> None:
        """Close the connection; a no-op when already disconnected."""
        await self._serializer.submit(self._disconnect_sync)
        await self._serializer.shutdown()

    def _connect_sync(self) -> None:
        if self._state is not ConnectionState.DISCONNECTED:
            raise AlreadyConnectedError()
        options = self._options
        self._state = ConnectionState.CONNECTING
        logger.info("Connecting", server=options.server, database=options.database)
        try:
            if self._driver is None:
                self._driver = tds.FreeTDSDriver()
            center = get_message_center()
            with contextlib.ExitStack() as cleanup:
                login = self._driver.login()
                cleanup.callback(login.free)
                self._apply_login(login, options)

                with center.capture() as captured:
                    native = self._driver.open(login, options.host)
                if native is None:
                    for handle in captured.handles:
                        center.clear(handle)
                    raise ConnectivityError(options.server, captured.last_error)
                cleanup.callback(native.close)

                if options.database and not native.use(options.database):
                    detail = center.last_error(native.handle)
                    center.clear(native.handle)
                    raise SelectionError(options.database, detail)
                cleanup.pop_all()
        except Exception:
            self._state = ConnectionState.DISCONNECTED
            raise
        self._login = login
        self._native = native
        self._state = ConnectionState.CONNECTED
        logger.info("Connected", server=options.server, database=options.database, handle=native.handle)

    def _apply_login(self, login, options: ConnectionOptions) -> None:
        login.set_name(tds.DBSETUSER, options.login_name)
        login.set_name(tds.DBSETPWD, options.password)
        login.set_name(tds.DBSETAPP, options.app_name)
        login.set_name(tds.DBSETCHARSET, options.charset)
        port = options.effective_port
        if port is not None:
            login.set_short(tds.DBSETPORT, port)
        if options.encryption is not EncryptionMode.REQUEST:
            login.set_name(tds.DBSETENCRYPTION, options.encryption.value)
        login.set_bool(tds.DBSETNTLMV2, options.use_ntlmv2)
        if options.network_auth:
            login.set_bool(tds.DBSETNETWORKAUTH, True)
        if options.read_only:
            login.set_bool(tds.DBSETREADONLY, True)
        if options.use_utf16:
            login.set_bool(tds.DBSETUTF16, True)
        if options.bulk_copy:
            login.set_bool(tds.DBSETBCP, True)
        # Both timeouts are process-wide in db-lib.
        if options.login_timeout > 0:
            self._driver.set_login_timeout(options.login_timeout)
        if options.query_timeout > 0:
            self._driver.set_query_timeout(options.query_timeout)

    def _disconnect_sync(self) -> None:
        if self._state is not ConnectionState.CONNECTED:
            return
        native, login = self._native, self._login
        self._native = self._login = None
        self._state = ConnectionState.DISCONNECTED
        get_message_center().clear(native.handle)
        try:
            native.close()
        finally:
            login.free()
        logger.info("Disconnected", server=self._options.server)

    def _require_native(self):
        if self._state is not ConnectionState.CONNECTED or self._native is None:
            raise NotConnectedError()
        return self._native

    # Commands

    def _execute_sync(self, sql: str, max_text_size: int) -> Result:
        native = self._require_native()
        if not sql or not sql.strip():
            raise ConfigurationError("No SQL command text provided.")
        get_message_center().clear(native.handle)
        native.cancel()
        native.set_text_size(max_text_size)
        logger.debug("Executing SQL", sql=_preview(sql), handle=native.handle)
        if not native.command(sql) or not native.sql_exec():
            raise execution_error(native)
        return ResultAssembler(native).read()

    async def execute(self, sql: str, parameters: ParameterInput = None) -> Result:
        """Execute a batch asynchronously and return every result it produced.

        Args:
            sql: SQL batch; may contain several statements
            parameters: Optional values for ``?`` placeholders, inlined as
                        escaped SQL literals in order

        Returns:
            Result with one table per row-returning statement

        Raises:
            NotConnectedError: If the connection is not open
            ConfigurationError: If ``sql`` is empty or the placeholder count does not match
            ExecutionError: If the server or the native layer rejects the batch

        Examples:
            result = await conn.execute("SELECT * FROM users WHERE age > ? AND name = ?", [18, "John"])
        """
        if parameters is not None:
            sql = build_sql(sql, as_parameter_list(parameters))
        return await self._serializer.submit(self._execute_sync, sql, self.max_text_size)

    async def query(self, sql: str, as_type: Optional[Type[Any]] = None) -> List[Any]:
        """Rows of the first result table, mapped onto ``as_type`` when given."""
        rows = (await self.execute(sql)).rows()
        if as_type is None:
            return rows
        return map_rows(rows, as_type)

    async def run(self, sql: str) -> int:
        """Execute ``sql`` and return the total affected-row count (-1 if none was reported)."""
        return (await self.execute(sql)).affected_rows

    def _rpc_sync(self, name: str, parameters) -> Result:
        native = self._require_native()
        if not name or not name.strip():
            raise ConfigurationError("No procedure name provided.")
        get_message_center().clear(native.handle)
        logger.debug("Calling procedure", procedure=name, parameters=len(parameters), handle=native.handle)
        return RpcCall(native, name, parameters).run()

    async def execute_rpc(self, name: str, parameters: ParameterInput = None) -> Result:
        """Call a stored procedure through the RPC interface.

        Args:
            name: Procedure name
            parameters: Parameters object, mapping of name to value, or a sequence;
                        use ``Parameters().add_output(...)`` for OUTPUT parameters

        Returns:
            Result carrying ``output_parameters`` and ``return_status``
        """
        params = as_parameter_list(parameters)
        return await self._serializer.submit(self._rpc_sync, name, params)

    async def execute_parameterized(self, sql: str, parameters: ParameterInput = None) -> Result:
        """Run ``sql`` through ``sp_executesql`` with server-side parameters.

        Unnamed parameters are bound as ``@p1``, ``@p2``... in order.
        """
        if not sql or not sql.strip():
            raise ConfigurationError("No SQL command text provided.")
        params = executesql_parameters(sql, as_parameter_list(parameters))
        return await self._serializer.submit(self._rpc_sync, "sp_executesql", params)

    def _bulk_sync(self, table: str, rows: List[BulkRow]) -> int:
        native = self._require_native()
        if not rows:
            return 0
        get_message_center().clear(native.handle)
        logger.debug("Bulk insert", table=table, rows=len(rows), handle=native.handle)
        return BulkCopy(native, table, rows).run()

    async def bulk_insert(self, table: str, rows: Iterable[BulkRow]) -> int:
        """Insert ``rows`` into ``table`` with bulk copy.

        Rows may be Row objects, mappings or sequences; the columns of the first
        row must match the table's columns in order.

        Returns:
            Number of rows the server reports as inserted
        """
        if not table or not table.strip():
            raise ConfigurationError("No target table provided.")
        return await self._serializer.submit(self._bulk_sync, table, list(rows))

    async def data_table(self, sql: str, name: Optional[str] = None) -> DataTable:
        """Execute ``sql`` and return its first result table as a typed DataTable."""
        return (await self.execute(sql)).as_data_table(name)

    async def data_set(self, sql: str) -> DataSet:
        """Execute ``sql`` and return every result table as a DataSet."""
        return (await self.execute(sql)).as_data_set()

    # Notifications

    def add_message_handler(self, handler: Callable[[ServerMessage], None]) -> Callable[[], None]:
        """Receive server messages for this connection only.

        The handler runs on the connection's worker thread. Returns a callable
        that removes it.
        """
        def filtered(message: ServerMessage) -> None:
            if self._native is not None and message.handle == self._native.handle:
                handler(message)

        return get_message_center().subscribe(filtered)

    async def check_reachability(self, timeout: float = 5.0) -> None:
        await check_reachability(self._options.server, self._options.effective_port or _config.DEFAULT_PORT, timeout)

    async def __aenter__(self):
        """Async context manager entry."""
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.disconnect()

    def __repr__(self) -> str:
        return f"Connection(server={self._options.server!r}, state={self._state.value})"


def connect(connection_string: Optional[str] = None, **kwargs) -> Connection:
    """Create a Connection; use it with ``async with``."""
    return Connection(connection_string, **kwargs)


async def execute_async(connection_string: str, sql: str, parameters: ParameterInput = None) -> Result:
    """Open a connection, run one batch and close the connection again."""
    async with Connection(connection_string) as conn:
        return await conn.execute(sql, parameters)


async def execute_scalar_async(connection_string: str, sql: str, parameters: ParameterInput = None) -> Any:
    """First column of the first row, ``None`` when the batch returned no rows."""
    rows = (await execute_async(connection_string, sql, parameters)).rows()
    return rows[0][0] if rows and len(rows[0]) else None


async def execute_dict_async(connection_string: str, sql: str,
                             parameters: ParameterInput = None) -> List[Dict[str, Any]]:
    """Rows of the first result table as plain dictionaries."""
    rows = (await execute_async(connection_string, sql, parameters)).rows()
    return [row.to_dict() for row in rows]
