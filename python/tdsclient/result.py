"""
Rows, result tables and the assembler that builds them.

A Result is created once, at the end of a command, from the results/rows
db-lib reports, and is never modified afterwards.
"""

from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple, Union

import structlog

from . import _freetds as tds
from .codec import decode, to_cell
from .messages import get_message_center
from .types import CellValue, ExecutionError

logger = structlog.get_logger()

# Affected-row sentinel for results where a count does not apply.
NO_COUNT = -1


class Row:
    """One decoded row.

    Values are reachable by position or by column name; name lookup ignores
    case while ``columns`` keeps the names exactly as the server sent them.
    """

    __slots__ = ("_names", "_cells", "_lookup", "_column_types")

    def __init__(self, cells: Sequence[Tuple[str, CellValue]],
                 column_types: Optional[Mapping[str, int]] = None):
        self._names = tuple(name for name, _ in cells)
        self._cells = tuple(cell for _, cell in cells)
        lookup = {}
        for index, name in enumerate(self._names):
            lookup.setdefault(name.lower(), index)
        self._lookup = lookup
        self._column_types = MappingProxyType(dict(column_types or {}))

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any]) -> "Row":
        """Build a row from plain application values (e.g. for bulk inserts)."""
        return cls([(name, to_cell(value)) for name, value in values.items()])

    @property
    def columns(self) -> List[str]:
        return list(self._names)

    @property
    def column_types(self) -> Mapping[str, int]:
        """Column name to db-lib type code, when the row came off the wire."""
        return self._column_types

    def _position(self, column: Union[str, int]) -> int:
        if isinstance(column, int):
            if not -len(self._cells) <= column < len(self._cells):
                raise IndexError(f"Column index {column} out of range")
            return column
        try:
            return self._lookup[column.lower()]
        except KeyError:
            raise KeyError(f"Column '{column}' not found. Available columns: {', '.join(self._names)}") from None

    def cell(self, column: Union[str, int]) -> CellValue:
        """Typed cell by column name or index."""
        return self._cells[self._position(column)]

    def get(self, column: Union[str, int], default: Any = None) -> Any:
        """Get value by column name or index, ``default`` when the column is missing."""
        try:
            return self[column]
        except (KeyError, IndexError):
            return default

    def is_null(self, column: Union[str, int]) -> bool:
        return self.cell(column).is_null

    def to_dict(self) -> Dict[str, Any]:
        return {name: cell.value for name, cell in zip(self._names, self._cells)}

    def to_tuple(self) -> tuple:
        return tuple(cell.value for cell in self._cells)

    def items(self) -> List[Tuple[str, Any]]:
        return [(name, cell.value) for name, cell in zip(self._names, self._cells)]

    def cells(self) -> List[Tuple[str, CellValue]]:
        return list(zip(self._names, self._cells))

    def __getitem__(self, key: Union[str, int]) -> Any:
        return self.cell(key).value

    def __contains__(self, column: str) -> bool:
        return column.lower() in self._lookup

    def __len__(self) -> int:
        return len(self._cells)

    def __iter__(self) -> Iterator[Any]:
        return iter(self.to_tuple())

    def __eq__(self, other) -> bool:
        if not isinstance(other, Row):
            return NotImplemented
        return self._names == other._names and self._cells == other._cells

    def __hash__(self) -> int:
        return hash((self._names, self._cells))

    def __repr__(self) -> str:
        return f"Row({self.to_dict()})"


class ResultTable:
    """Rows produced by one statement of a batch."""

    __slots__ = ("_columns", "_rows", "_affected_rows", "_column_types")

    def __init__(self, columns: Sequence[str], rows: Sequence[Row], affected_rows: int = NO_COUNT,
                 column_types: Optional[Mapping[str, int]] = None):
        self._columns = tuple(columns)
        self._rows = tuple(rows)
        self._affected_rows = affected_rows
        self._column_types = MappingProxyType(dict(column_types or {}))

    @property
    def columns(self) -> List[str]:
        return list(self._columns)

    @property
    def rows(self) -> Tuple[Row, ...]:
        return self._rows

    @property
    def affected_rows(self) -> int:
        """Affected-row count reported with this result, -1 when not applicable."""
        return self._affected_rows

    @property
    def column_types(self) -> Mapping[str, int]:
        return self._column_types

    def __len__(self) -> int:
        return len(self._rows)

    def __iter__(self) -> Iterator[Row]:
        return iter(self._rows)

    def __getitem__(self, index: int) -> Row:
        return self._rows[index]

    def __repr__(self) -> str:
        return f"ResultTable(columns={list(self._columns)}, rows={len(self._rows)})"


class Result:
    """Everything a command produced: tables, counts, output parameters, return status."""

    def __init__(
        self,
        tables: Sequence[ResultTable] = (),
        affected_rows: int = NO_COUNT,
        output_parameters: Optional[Mapping[str, CellValue]] = None,
        return_status: Optional[int] = None,
    ):
        self._tables = tuple(tables)
        self._affected_rows = affected_rows
        self._output_parameters = MappingProxyType(dict(output_parameters or {}))
        self._return_status = return_status

    @property
    def tables(self) -> Tuple[ResultTable, ...]:
        return self._tables

    @property
    def affected_rows(self) -> int:
        """Sum of the affected-row counts of every statement, -1 if none reported one."""
        return self._affected_rows

    @property
    def output_parameters(self) -> Mapping[str, CellValue]:
        return self._output_parameters

    @property
    def return_status(self) -> Optional[int]:
        return self._return_status

    def output(self, name: str, default: Any = None) -> Any:
        """Plain value of an output parameter; the leading ``@`` is optional."""
        for key in (name, f"@{name.lstrip('@')}", name.lstrip("@")):
            if key in self._output_parameters:
                return self._output_parameters[key].value
        return default

    def rows(self) -> List[Row]:
        """Rows of the first table."""
        return list(self._tables[0].rows) if self._tables else []

    def has_rows(self) -> bool:
        return any(len(table) for table in self._tables)

    def as_data_table(self, name: Optional[str] = None):
        from .table import DataSet, DataTable
        data_set = DataSet.from_result(self)
        if not data_set.tables:
            return DataTable(name, [], [])
        table = data_set.tables[0]
        return table.renamed(name) if name else table

    def as_data_set(self):
        from .table import DataSet
        return DataSet.from_result(self)

    def __len__(self) -> int:
        return len(self.rows())

    def __iter__(self) -> Iterator[Row]:
        return iter(self.rows())

    def __repr__(self) -> str:
        if self.has_rows():
            return f"Result(tables={len(self._tables)}, rows={len(self.rows())})"
        return f"Result(affected_rows={self._affected_rows})"


class AssemblerState(Enum):
    IDLE = "idle"
    AWAITING_RESULT = "awaiting_result"
    HAS_COLUMNS = "has_columns"
    READING_ROWS = "reading_rows"


def execution_error(native) -> ExecutionError:
    """ExecutionError carrying the last native error reported for this handle."""
    return ExecutionError(get_message_center().last_error(native.handle))


class ResultAssembler:
    """Drives dbresults()/dbnextrow() for one command and builds the Result.

    ``after_result`` is called once per result, after its rows were read, so
    RPC calls can pick up output parameters and the return status.
    """

    def __init__(self, native, after_result: Optional[Callable[[], None]] = None):
        self._native = native
        self._after_result = after_result
        self.state = AssemblerState.IDLE

    def read(self) -> Result:
        tables = []
        total = NO_COUNT
        self.state = AssemblerState.AWAITING_RESULT
        try:
            while True:
                code = self._native.results()
                if code == tds.NO_MORE_RESULTS:
                    break
                if code == tds.FAIL:
                    raise execution_error(self._native)
                count = self._native.count()
                if count >= 0:
                    total = count if total < 0 else total + count
                num_cols = self._native.num_cols()
                if num_cols > 0:
                    self.state = AssemblerState.HAS_COLUMNS
                    tables.append(self._read_table(num_cols, count))
                if self._after_result is not None:
                    self._after_result()
                self.state = AssemblerState.AWAITING_RESULT
        finally:
            self.state = AssemblerState.IDLE
        return Result(tables, total)

    def _read_table(self, num_cols: int, affected: int) -> ResultTable:
        native = self._native
        meta = [(native.col_name(i), native.col_type(i)) for i in range(1, num_cols + 1)]
        column_types = dict(meta)
        rows = []
        self.state = AssemblerState.READING_ROWS
        while True:
            code = native.next_row()
            if code == tds.NO_MORE_ROWS:
                break
            if code == tds.FAIL:
                raise execution_error(native)
            if code != tds.REG_ROW:
                # BUF_FULL is flow control; compute rows are not part of the table.
                continue
            cells = [
                (name, decode(type_code, native.column_data(index), native=native))
                for index, (name, type_code) in enumerate(meta, start=1)
            ]
            rows.append(Row(cells, column_types))
        return ResultTable([name for name, _ in meta], rows, affected, column_types)
