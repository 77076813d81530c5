"""
Bulk-copy encoder.

Every column is bound once as a fixed-capacity CHAR buffer and the rows are
streamed through it as text. The server converts the text to the target
column type, so the values must be in a form it parses regardless of
language settings.

Known limitation: values are sent as UTF-8 bytes through a single-byte
character binding. Non-ASCII text reaching a CHAR/VARCHAR column whose
collation uses a different code page, or an NCHAR/NVARCHAR column, may not
arrive exactly as sent. Use ``execute_parameterized`` for such data.
"""

import ctypes
import datetime
import decimal
import uuid
from typing import Any, List, Mapping, Optional, Sequence, Union

import structlog

from . import _freetds as tds
from .codec import format_datetime
from .result import Row, execution_error
from .types import CellValue, ConfigurationError, TDSType

logger = structlog.get_logger()

# Capacity of each column buffer, terminator included.
BUFFER_SIZE = 8192

BulkRow = Union[Row, Mapping[str, Any], Sequence[Any]]


def format_bulk_value(value: Any) -> Optional[str]:
    """Text sent for one bulk-copy value, ``None`` for NULL."""
    if isinstance(value, CellValue):
        value = value.value
    if value is None:
        return None
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, datetime.datetime):
        return format_datetime(value)
    if isinstance(value, datetime.date):
        return value.isoformat()
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).hex()
    if isinstance(value, decimal.Decimal):
        return format(value, "f")
    if isinstance(value, uuid.UUID):
        return str(value).upper()
    return str(value)


def _fit(text: str, capacity: int) -> bytes:
    """UTF-8 bytes of ``text`` cut to ``capacity`` without splitting a character."""
    data = text.encode("utf-8")
    if len(data) <= capacity:
        return data
    return data[:capacity].decode("utf-8", "ignore").encode("utf-8")


class BulkCopy:
    """Streams rows into ``table`` with the native bulk-copy interface.

    The column list comes from the first row: the names of a Row or mapping,
    or the positions of a plain sequence. Every row is checked for those
    columns before anything is sent.
    """

    def __init__(self, native, table: str, rows: Sequence[BulkRow]):
        self._native = native
        self._table = table
        self._rows = rows
        self._buffers: List[ctypes.Array] = []
        self.rows_sent = 0

    def _columns(self) -> List[Union[str, int]]:
        first = self._rows[0]
        if isinstance(first, Row):
            return first.columns
        if isinstance(first, Mapping):
            return list(first.keys())
        if isinstance(first, (str, bytes)) or not isinstance(first, Sequence):
            raise ConfigurationError(f"Bulk row 0 is not a mapping or sequence: {type(first).__name__}")
        return list(range(len(first)))

    def _check_rows(self, columns: List[Union[str, int]]) -> None:
        for position, row in enumerate(self._rows):
            if isinstance(row, Row):
                missing = [column for column in columns if not isinstance(column, str) or column not in row]
            elif isinstance(row, Mapping):
                missing = [column for column in columns if column not in row]
            elif isinstance(row, (str, bytes)) or not isinstance(row, Sequence):
                raise ConfigurationError(f"Bulk row {position} is not a mapping or sequence: {type(row).__name__}")
            else:
                missing = [column for column in columns if not isinstance(column, int) or column >= len(row)]
            if missing:
                raise ConfigurationError(f"Bulk row {position} is missing column {missing[0]!r}")

    @staticmethod
    def _value(row: BulkRow, column: Union[str, int]) -> Any:
        if isinstance(row, Row):
            return row.cell(column)
        return row[column]

    def run(self) -> int:
        columns = self._columns()
        self._check_rows(columns)

        native = self._native
        native.cancel()
        if not native.bcp_init(self._table):
            raise execution_error(native)

        self._buffers = [ctypes.create_string_buffer(BUFFER_SIZE) for _ in columns]
        for index, buffer in enumerate(self._buffers, start=1):
            if not native.bcp_bind(buffer, index, TDSType.CHAR):
                raise execution_error(native)

        for row in self._rows:
            for index, column in enumerate(columns, start=1):
                self._fill(index, column, format_bulk_value(self._value(row, column)))
            if not native.bcp_sendrow():
                raise execution_error(native)
            self.rows_sent += 1

        inserted = native.bcp_done()
        if inserted < 0:
            raise execution_error(native)
        logger.debug("Bulk copy finished", table=self._table,
                     rows_sent=self.rows_sent, rows_inserted=inserted)
        return inserted

    def _fill(self, index: int, column: Union[str, int], text: Optional[str]) -> None:
        buffer = self._buffers[index - 1]
        if text is None:
            buffer[0] = b"\x00"
            self._native.bcp_collen(0, index)
            return
        data = _fit(text, BUFFER_SIZE - 1)
        if len(data) < len(text.encode("utf-8")):
            logger.warning("Bulk value truncated", table=self._table, column=column,
                           capacity=BUFFER_SIZE - 1)
        ctypes.memmove(buffer, data + b"\x00", len(data) + 1)
        self._native.bcp_collen(len(data), index)
