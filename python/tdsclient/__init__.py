"""
tdsclient: An async Python client for Microsoft SQL Server and Sybase over FreeTDS db-lib

The native library does the networking, login and TLS; tdsclient runs its
blocking calls on one worker thread per connection, in strict FIFO order, and
decodes every column into typed Python values.

**ASYNC ONLY**: This library only supports asynchronous operations.

Basic Usage:
    >>> import tdsclient
    >>> async with tdsclient.Connection(server="localhost", username="sa", password="...") as conn:
    ...     result = await conn.execute("SELECT name, age FROM users WHERE age > ?", [18])
    ...     for row in result:
    ...         print(row['name'], row['age'])

Stored procedures:
    >>> params = tdsclient.Parameters(7).add_output("@doubled", 0)
    >>> result = await conn.execute_rpc("dbo.double_it", params)
    >>> result.output("doubled"), result.return_status

One-off Queries:
    >>> count = await tdsclient.execute_scalar_async(conn_string, "SELECT COUNT(*) FROM users")
"""

from .config import ConnectionOptions, get_default_max_text_size, set_default_max_text_size
from .connection import (
    Connection,
    check_reachability,
    connect,
    execute_async,
    execute_dict_async,
    execute_scalar_async,
)
from .mapping import map_row, map_rows
from .messages import ServerMessage, subscribe
from .parameters import Parameter, Parameters
from .pool import ConnectionPool, PoolConfig
from .result import Result, ResultTable, Row
from .table import DataColumn, DataSet, DataTable
from .types import (
    AlreadyConnectedError,
    CellKind,
    CellValue,
    ColumnType,
    ConfigurationError,
    ConnectionState,
    ConnectivityError,
    EncryptionMode,
    ExecutionError,
    MappingError,
    NotConnectedError,
    ResourceError,
    SelectionError,
    StateError,
    TDSClientError,
    TDSType,
)

__version__ = "0.1.0"


def version() -> str:
    """Get the version of the tdsclient library."""
    return __version__


# Main public API - what users should primarily use
__all__ = [
    # High-level async API
    'Connection',
    'ConnectionOptions',
    'ConnectionPool',
    'PoolConfig',
    'connect',
    'execute_async',
    'execute_scalar_async',
    'execute_dict_async',
    'check_reachability',
    'Parameter',
    'Parameters',
    'Result',
    'ResultTable',
    'Row',
    'DataColumn',
    'DataTable',
    'DataSet',
    'map_row',
    'map_rows',

    # Values and notifications
    'CellKind',
    'CellValue',
    'ColumnType',
    'ConnectionState',
    'EncryptionMode',
    'TDSType',
    'ServerMessage',
    'subscribe',
    'get_default_max_text_size',
    'set_default_max_text_size',

    # Errors
    'TDSClientError',
    'ConfigurationError',
    'StateError',
    'AlreadyConnectedError',
    'NotConnectedError',
    'ResourceError',
    'ConnectivityError',
    'SelectionError',
    'ExecutionError',
    'MappingError',
    'version',
]
