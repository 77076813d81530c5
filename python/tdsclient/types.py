"""
Type definitions for tdsclient

This module holds the wire type codes reported by the native library, the
closed cell-value union every decoded column becomes, and the exception
hierarchy raised by the public API.
"""

import base64
import datetime
import decimal
import uuid
from enum import Enum, IntEnum
from typing import Any, Optional


class TDSType(IntEnum):
    """Column and parameter type codes as reported by FreeTDS db-lib."""
    VOID = 31
    IMAGE = 34
    TEXT = 35
    UNIQUE = 36
    VARBINARY = 37
    INTN = 38
    VARCHAR = 39
    MSDATE = 40
    MSTIME = 41
    MSDATETIME2 = 42
    MSDATETIMEOFFSET = 43
    BINARY = 45
    CHAR = 47
    INT1 = 48
    BIT = 50
    INT2 = 52
    DECIMAL_LEGACY = 55
    INT4 = 56
    DATETIME4 = 58
    REAL = 59
    MONEY = 60
    DATETIME = 61
    FLT8 = 62
    NUMERIC_LEGACY = 63
    UINT2 = 65
    UINT4 = 66
    UINT8 = 67
    NTEXT = 99
    NCHAR = 102
    NVARCHAR = 103
    BITN = 104
    DECIMAL = 106
    NUMERIC = 108
    FLTN = 109
    MONEYN = 110
    DATETIMN = 111
    MONEY4 = 122
    INT8 = 127
    BLOB = 167
    BIGBINARY = 173
    BIGVARBINARY = 174
    BIGDATETIME = 187
    BIGTIME = 188
    XML = 241


class CellKind(Enum):
    """Tag of a CellValue; exactly one is active per value."""
    NULL = "null"
    STRING = "string"
    INT16 = "int16"
    INT32 = "int32"
    INT64 = "int64"
    UINT16 = "uint16"
    UINT32 = "uint32"
    UINT64 = "uint64"
    DECIMAL = "decimal"
    FLOAT = "float"
    DOUBLE = "double"
    BOOL = "bool"
    DATETIME = "datetime"
    BYTES = "bytes"
    UUID = "uuid"
    OBJECT = "object"


_INT_RANGES = {
    CellKind.INT16: (-2 ** 15, 2 ** 15 - 1),
    CellKind.INT32: (-2 ** 31, 2 ** 31 - 1),
    CellKind.INT64: (-2 ** 63, 2 ** 63 - 1),
    CellKind.UINT16: (0, 2 ** 16 - 1),
    CellKind.UINT32: (0, 2 ** 32 - 1),
    CellKind.UINT64: (0, 2 ** 64 - 1),
}


class CellValue:
    """An immutable, tagged column or parameter value.

    ``CellValue.null()`` carries no payload; every other kind carries a plain
    Python value (``int``, ``str``, ``decimal.Decimal``, ``datetime.datetime``,
    ``bytes``, ``uuid.UUID``...).
    """

    __slots__ = ("_kind", "_value")

    def __init__(self, kind: CellKind, value: Any = None):
        if kind is CellKind.NULL:
            value = None
        elif value is None:
            raise ValueError(f"{kind.value} cell requires a value")
        elif kind in _INT_RANGES:
            low, high = _INT_RANGES[kind]
            if not low <= value <= high:
                raise ValueError(f"{value} out of range for {kind.value}")
        elif kind is CellKind.BYTES:
            value = bytes(value)
        object.__setattr__(self, "_kind", kind)
        object.__setattr__(self, "_value", value)

    def __setattr__(self, name, value):
        raise AttributeError("CellValue is immutable")

    @classmethod
    def null(cls) -> "CellValue":
        return cls(CellKind.NULL)

    @property
    def kind(self) -> CellKind:
        return self._kind

    @property
    def value(self) -> Any:
        """The native Python payload, ``None`` for null."""
        return self._value

    @property
    def is_null(self) -> bool:
        return self._kind is CellKind.NULL

    @property
    def display_string(self) -> str:
        """Text used when rendering the cell into a Markdown table."""
        kind, value = self._kind, self._value
        if kind is CellKind.NULL:
            return ""
        if kind is CellKind.STRING:
            return value.replace("|", "\\|")
        if kind is CellKind.BOOL:
            return "true" if value else "false"
        if kind is CellKind.DATETIME:
            return value.isoformat(sep=" ", timespec="milliseconds")
        if kind is CellKind.BYTES:
            return base64.b64encode(value).decode("ascii")
        if kind is CellKind.UUID:
            return str(value).upper()
        return str(value)

    def to_json(self) -> dict:
        """JSON-friendly ``{"type": ..., "value": ...}`` form."""
        kind, value = self._kind, self._value
        if kind is CellKind.DATETIME:
            value = value.isoformat()
        elif kind is CellKind.BYTES:
            value = base64.b64encode(value).decode("ascii")
        elif kind in (CellKind.UUID, CellKind.DECIMAL):
            value = str(value)
        return {"type": kind.value, "value": value}

    @classmethod
    def from_json(cls, data: dict) -> "CellValue":
        kind = CellKind(data["type"])
        value = data.get("value")
        if kind is CellKind.DATETIME:
            value = datetime.datetime.fromisoformat(value)
        elif kind is CellKind.BYTES:
            value = base64.b64decode(value)
        elif kind is CellKind.UUID:
            value = uuid.UUID(value)
        elif kind is CellKind.DECIMAL:
            value = decimal.Decimal(value)
        return cls(kind, value)

    def __eq__(self, other) -> bool:
        if not isinstance(other, CellValue):
            return NotImplemented
        return self._kind is other._kind and self._value == other._value

    def __hash__(self) -> int:
        return hash((self._kind, self._value))

    def __repr__(self) -> str:
        if self.is_null:
            return "CellValue.null()"
        return f"CellValue({self._kind.value}, {self._value!r})"


class ColumnType(Enum):
    """Semantic column type of a typed DataTable column."""
    STRING = "String"
    INT16 = "Int16"
    INT32 = "Int32"
    INT64 = "Int64"
    UINT16 = "UInt16"
    UINT32 = "UInt32"
    UINT64 = "UInt64"
    DECIMAL = "Decimal"
    DOUBLE = "Double"
    FLOAT = "Float"
    BOOLEAN = "Boolean"
    DATETIME = "DateTime"
    BYTE = "Byte"
    BYTE_ARRAY = "ByteArray"
    GUID = "Guid"
    OBJECT = "Object"


class ConnectionState(Enum):
    """Connection state enumeration."""
    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"


class EncryptionMode(Enum):
    """Login encryption modes understood by FreeTDS."""
    OFF = "off"
    REQUEST = "request"
    REQUIRE = "require"
    STRICT = "strict"


# Exception classes
class TDSClientError(Exception):
    """Base exception for tdsclient operations."""
    pass


class ConfigurationError(TDSClientError):
    """Raised for invalid caller input (empty SQL, bad parameter lists, bad options)."""
    pass


class StateError(TDSClientError):
    """Raised when an operation does not fit the connection state."""
    pass


class AlreadyConnectedError(StateError):
    def __init__(self):
        super().__init__("Already connected to a server. Call disconnect() first.")


class NotConnectedError(StateError):
    def __init__(self):
        super().__init__("Not connected. Call connect() before executing queries.")


class ResourceError(TDSClientError):
    """Raised when the native library cannot be loaded or cannot allocate."""
    pass


class ConnectivityError(TDSClientError):
    """Raised when the server cannot be reached or rejects the login."""

    def __init__(self, server: str, detail: Optional[str] = None):
        self.server = server
        self.detail = detail
        message = f"Could not connect to '{server}'."
        if detail:
            message = f"{message} {detail}"
        super().__init__(message)


class SelectionError(TDSClientError):
    """Raised when the target database cannot be selected after login."""

    def __init__(self, database: str, detail: Optional[str] = None):
        self.database = database
        self.detail = detail
        message = f"Could not select database '{database}'."
        if detail:
            message = f"{message} {detail}"
        super().__init__(message)


class ExecutionError(TDSClientError):
    """Raised when a command fails server-side or in the native layer."""

    def __init__(self, detail: Optional[str] = None):
        self.detail = detail
        super().__init__(detail or "SQL execution failed. Check server messages for details.")


class MappingError(TDSClientError):
    """Raised when a row cannot be mapped onto a target type."""
    pass
