"""
RPC parameter marshalling.

Stored procedures are called through db-lib's RPC interface rather than by
building EXEC strings, so OUTPUT parameters and the procedure's return status
come back without an extra SELECT.
"""

import ctypes
from typing import Dict, List, Optional, Sequence

import structlog

from . import _freetds as tds
from .codec import decode, encode
from .parameters import Parameter
from .result import Result, ResultAssembler, execution_error
from .types import CellKind, CellValue, TDSType

logger = structlog.get_logger()

# Room reserved for a variable-length OUTPUT value whose final size is unknown.
OUTPUT_BUFFER_SIZE = 8000

FIXED_LENGTH_TYPES = frozenset({
    TDSType.INT1, TDSType.INT2, TDSType.INT4, TDSType.INT8,
    TDSType.REAL, TDSType.FLT8, TDSType.BIT, TDSType.UNIQUE,
})

_SQL_TYPE_NAMES = {
    CellKind.NULL: "NVARCHAR(MAX)",
    CellKind.STRING: "NVARCHAR(MAX)",
    CellKind.INT16: "SMALLINT",
    CellKind.INT32: "INT",
    CellKind.INT64: "BIGINT",
    CellKind.UINT16: "INT",
    CellKind.UINT32: "BIGINT",
    CellKind.UINT64: "DECIMAL(20, 0)",
    CellKind.FLOAT: "REAL",
    CellKind.DOUBLE: "FLOAT",
    CellKind.BOOL: "BIT",
    CellKind.BYTES: "VARBINARY(MAX)",
    CellKind.DATETIME: "DATETIME",
    CellKind.UUID: "UNIQUEIDENTIFIER",
    CellKind.OBJECT: "NVARCHAR(MAX)",
}


class BoundParameter:
    """A parameter ready for dbrpcparam(); owns the buffer handed to the library."""

    __slots__ = ("name", "status", "type_code", "max_len", "data_len", "buffer")

    def __init__(self, param: Parameter):
        cell = param.cell
        type_code, payload = encode(cell)
        variable = type_code not in FIXED_LENGTH_TYPES
        self.name = param.name
        self.type_code = type_code
        self.status = tds.DBRPCRETURN if param.output else 0
        self.max_len = OUTPUT_BUFFER_SIZE if param.output and variable else -1
        if cell.is_null:
            self.data_len = 0
            self.buffer = None
        else:
            self.data_len = len(payload)
            size = len(payload) + 1 if variable else len(payload)
            if param.output and variable:
                size = max(size, OUTPUT_BUFFER_SIZE + 1)
            self.buffer = ctypes.create_string_buffer(payload, size)


class RpcCall:
    """One stored-procedure call, run entirely inside a serializer turn."""

    def __init__(self, native, name: str, parameters: Sequence[Parameter]):
        self._native = native
        self._name = name
        self._parameters = list(parameters)
        self._outputs: Dict[str, CellValue] = {}
        self._return_status: Optional[int] = None

    def _collect_returns(self) -> None:
        native = self._native
        for index in range(1, native.num_rets() + 1):
            name = native.ret_name(index)
            if not name:
                continue
            self._outputs[name] = decode(native.ret_type(index), native.ret_data(index), native=native)
        if native.has_ret_status():
            self._return_status = native.ret_status()

    def run(self) -> Result:
        native = self._native
        native.cancel()
        if not native.rpc_init(self._name):
            raise execution_error(native)

        # Buffers must outlive dbrpcsend()/dbsqlok(); they are dropped with `bound`.
        bound: List[BoundParameter] = [BoundParameter(p) for p in self._parameters]
        for param in bound:
            if not native.rpc_param(param.name, param.status, param.type_code,
                                    param.max_len, param.data_len, param.buffer):
                raise execution_error(native)

        if not native.rpc_send():
            raise execution_error(native)
        if not native.sql_ok():
            raise execution_error(native)

        result = ResultAssembler(native, after_result=self._collect_returns).read()
        # Output values can also arrive with the final DONEPROC token.
        self._collect_returns()
        logger.debug("RPC completed", procedure=self._name,
                     outputs=list(self._outputs), return_status=self._return_status)
        return Result(result.tables, result.affected_rows, self._outputs, self._return_status)


def sql_type_name(value) -> str:
    """SQL type used in an sp_executesql signature for ``value``."""
    if isinstance(value, Parameter):
        if value.sql_type:
            return value.sql_type
        value = value.value
    cell = value if isinstance(value, CellValue) else Parameter(value).cell
    if cell.kind is CellKind.DECIMAL:
        exponent = cell.value.as_tuple().exponent
        scale = min(max(-exponent, 0), 38) if isinstance(exponent, int) else 0
        return f"DECIMAL(38, {scale})"
    return _SQL_TYPE_NAMES[cell.kind]


def executesql_parameters(sql: str, parameters: Sequence[Parameter]) -> List[Parameter]:
    """Parameter list for ``sp_executesql``: statement, signature, then the values.

    Unnamed parameters are called ``@p1``, ``@p2``... in order.
    """
    named = [
        (param.name or f"@p{index}", param)
        for index, param in enumerate(parameters, start=1)
    ]
    signature = ", ".join(
        f"{name} {sql_type_name(param)}" + (" OUTPUT" if param.output else "")
        for name, param in named
    )
    rpc_params = [
        Parameter(sql, name="@stmt"),
        Parameter(signature, name="@params"),
    ]
    rpc_params.extend(
        Parameter(param.value, name=name, output=param.output, sql_type=param.sql_type)
        for name, param in named
    )
    return rpc_params
