"""
Typed, named tables built from query results.

A DataTable carries one semantic ColumnType per column, taken from the wire
type code where that code is unambiguous and otherwise from the first
non-null value in the column. Tables render to GitHub-flavoured Markdown and
to a JSON-friendly dictionary.
"""

from typing import Any, Dict, List, Optional, Sequence, Type, TypeVar, Union

from .codec import BINARY_TYPES, BIT_TYPES, DECIMAL_TYPES, LEGACY_DATE_TYPES, MODERN_DATE_TYPES, TEXT_TYPES
from .mapping import map_rows
from .result import Result, ResultTable, Row
from .types import CellKind, CellValue, ColumnType, TDSType

T = TypeVar("T")

_WIRE_COLUMN_TYPES = {
    TDSType.INT1: ColumnType.BYTE,
    TDSType.INT2: ColumnType.INT16,
    TDSType.INT4: ColumnType.INT32,
    TDSType.INT8: ColumnType.INT64,
    TDSType.UINT2: ColumnType.UINT16,
    TDSType.UINT4: ColumnType.UINT32,
    TDSType.UINT8: ColumnType.UINT64,
    TDSType.REAL: ColumnType.FLOAT,
    TDSType.FLT8: ColumnType.DOUBLE,
    TDSType.UNIQUE: ColumnType.GUID,
}
for _codes, _column_type in (
    (BIT_TYPES, ColumnType.BOOLEAN),
    (DECIMAL_TYPES, ColumnType.DECIMAL),
    (BINARY_TYPES, ColumnType.BYTE_ARRAY),
    (LEGACY_DATE_TYPES | MODERN_DATE_TYPES, ColumnType.DATETIME),
    (TEXT_TYPES, ColumnType.STRING),
):
    for _code in _codes:
        _WIRE_COLUMN_TYPES[_code] = _column_type

_KIND_COLUMN_TYPES = {
    CellKind.STRING: ColumnType.STRING,
    CellKind.INT16: ColumnType.INT16,
    CellKind.INT32: ColumnType.INT32,
    CellKind.INT64: ColumnType.INT64,
    CellKind.UINT16: ColumnType.UINT16,
    CellKind.UINT32: ColumnType.UINT32,
    CellKind.UINT64: ColumnType.UINT64,
    CellKind.DECIMAL: ColumnType.DECIMAL,
    CellKind.FLOAT: ColumnType.FLOAT,
    CellKind.DOUBLE: ColumnType.DOUBLE,
    CellKind.BOOL: ColumnType.BOOLEAN,
    CellKind.DATETIME: ColumnType.DATETIME,
    CellKind.BYTES: ColumnType.BYTE_ARRAY,
    CellKind.UUID: ColumnType.GUID,
    CellKind.OBJECT: ColumnType.OBJECT,
}


def column_type_for(type_code: Optional[int], sample: Optional[CellValue] = None) -> ColumnType:
    """ColumnType from a wire type code, falling back to a sample value.

    INTN and FLTN codes do not say how wide the column is, so they are
    resolved from the sample like unknown codes. Modern date columns whose
    text did not parse hold strings and are typed from the sample too.
    """
    if type_code in MODERN_DATE_TYPES and sample is not None and not sample.is_null \
            and sample.kind is not CellKind.DATETIME:
        return _KIND_COLUMN_TYPES[sample.kind]
    if type_code is not None and type_code in _WIRE_COLUMN_TYPES:
        return _WIRE_COLUMN_TYPES[type_code]
    if sample is None or sample.is_null:
        return ColumnType.STRING
    return _KIND_COLUMN_TYPES[sample.kind]


class DataColumn:
    """Column descriptor: name plus semantic type."""

    __slots__ = ("name", "type")

    def __init__(self, name: str, type: ColumnType):
        self.name = name
        self.type = type

    def to_dict(self) -> Dict[str, str]:
        return {"name": self.name, "type": self.type.value}

    def __eq__(self, other) -> bool:
        if not isinstance(other, DataColumn):
            return NotImplemented
        return self.name == other.name and self.type is other.type

    def __repr__(self) -> str:
        return f"DataColumn({self.name!r}, {self.type.value})"


class DataTable:
    """A named result table with typed columns and CellValue rows."""

    def __init__(self, name: Optional[str], columns: Sequence[DataColumn],
                 rows: Sequence[Sequence[CellValue]]):
        self.name = name
        self.columns = list(columns)
        self.rows = [list(row) for row in rows]

    @classmethod
    def from_result_table(cls, table: ResultTable, name: Optional[str] = None) -> "DataTable":
        names = table.columns
        columns = []
        for index, column in enumerate(names):
            sample = next((row.cell(index) for row in table.rows if not row.cell(index).is_null), None)
            columns.append(DataColumn(column, column_type_for(table.column_types.get(column), sample)))
        rows = [[row.cell(index) for index in range(len(names))] for row in table.rows]
        return cls(name, columns, rows)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DataTable":
        columns = [DataColumn(c["name"], ColumnType(c["type"])) for c in data.get("columns", [])]
        rows = [[CellValue.from_json(cell) for cell in row] for row in data.get("rows", [])]
        return cls(data.get("name"), columns, rows)

    @property
    def row_count(self) -> int:
        return len(self.rows)

    @property
    def column_count(self) -> int:
        return len(self.columns)

    def _column_index(self, name: str) -> Optional[int]:
        lowered = name.lower()
        for index, column in enumerate(self.columns):
            if column.name.lower() == lowered:
                return index
        return None

    def cell(self, row: int, column: Union[str, int]) -> CellValue:
        """Cell by row index and column name or index; null when out of range."""
        if not 0 <= row < len(self.rows):
            return CellValue.null()
        index = self._column_index(column) if isinstance(column, str) else column
        if index is None or not 0 <= index < len(self.columns):
            return CellValue.null()
        return self.rows[row][index]

    def row(self, index: int) -> Dict[str, CellValue]:
        if not 0 <= index < len(self.rows):
            return {}
        return {column.name: cell for column, cell in zip(self.columns, self.rows[index])}

    def column(self, name: str) -> List[CellValue]:
        index = self._column_index(name)
        if index is None:
            return []
        return [row[index] for row in self.rows]

    def renamed(self, name: Optional[str]) -> "DataTable":
        return DataTable(name, self.columns, self.rows)

    def to_rows(self) -> List[Row]:
        return [
            Row([(column.name, cell) for column, cell in zip(self.columns, cells)])
            for cells in self.rows
        ]

    def decode(self, cls: Type[T]) -> List[T]:
        """Map every row onto the dataclass ``cls``."""
        return map_rows(self.to_rows(), cls)

    def to_markdown(self) -> str:
        lines = []
        if self.name:
            lines.append(f"# {self.name}\n")
        lines.append("| " + " | ".join(column.name for column in self.columns) + " |")
        lines.append("|" + "---|" * len(self.columns))
        for cells in self.rows:
            lines.append("| " + " | ".join(cell.display_string for cell in cells) + " |")
        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "columns": [column.to_dict() for column in self.columns],
            "rows": [[cell.to_json() for cell in cells] for cells in self.rows],
        }

    def __len__(self) -> int:
        return len(self.rows)

    def __repr__(self) -> str:
        return f"DataTable(name={self.name!r}, columns={len(self.columns)}, rows={len(self.rows)})"


class DataSet:
    """Ordered collection of DataTables, one per result table."""

    def __init__(self, tables: Sequence[DataTable] = ()):
        self.tables = list(tables)

    @classmethod
    def from_result(cls, result: Result) -> "DataSet":
        """First table is unnamed, later ones are ``Table2``, ``Table3``..."""
        return cls([
            DataTable.from_result_table(table, None if index == 0 else f"Table{index + 1}")
            for index, table in enumerate(result.tables)
        ])

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DataSet":
        return cls([DataTable.from_dict(table) for table in data.get("tables", [])])

    def get(self, key: Union[int, str]) -> Optional[DataTable]:
        """Table by position or case-insensitive name, ``None`` when missing."""
        if isinstance(key, int):
            return self.tables[key] if 0 <= key < len(self.tables) else None
        lowered = key.lower()
        return next((t for t in self.tables if t.name and t.name.lower() == lowered), None)

    def to_dict(self) -> Dict[str, Any]:
        return {"tables": [table.to_dict() for table in self.tables]}

    def __getitem__(self, key: Union[int, str]) -> DataTable:
        table = self.get(key)
        if table is None:
            raise KeyError(key)
        return table

    def __len__(self) -> int:
        return len(self.tables)

    def __iter__(self):
        return iter(self.tables)

    def __repr__(self) -> str:
        return f"DataSet(tables={len(self.tables)})"
