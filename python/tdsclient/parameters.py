"""
Parameter containers and client-side literal inlining.
"""

from typing import Any, List, Optional, Sequence

from .codec import format_datetime, to_cell
from .types import CellKind, CellValue, ConfigurationError

PLACEHOLDER = "?"


class Parameter:
    """Represents a SQL parameter with value, direction and optional type information."""

    def __init__(self, value: Any = None, name: Optional[str] = None,
                 output: bool = False, sql_type: Optional[str] = None):
        """Initialize a parameter.

        Args:
            value: The parameter value (None, bool, int, float, Decimal, str, bytes,
                   datetime, UUID or a CellValue)
            name: Parameter name; a missing ``@`` prefix is added
            output: True for OUTPUT parameters
            sql_type: Optional SQL type for signatures (e.g. 'NVARCHAR(50)', 'INT')
        """
        if name is not None and not name.startswith("@"):
            name = f"@{name}"
        self.name = name
        self.value = value
        self.output = output
        self.sql_type = sql_type

    @property
    def cell(self) -> CellValue:
        return to_cell(self.value)

    def __repr__(self) -> str:
        parts = [f"value={self.value!r}"]
        if self.name:
            parts.insert(0, f"name='{self.name}'")
        if self.output:
            parts.append("output=True")
        if self.sql_type:
            parts.append(f"type={self.sql_type}")
        return f"Parameter({', '.join(parts)})"


class Parameters:
    """Ordered container of parameters for RPC and sp_executesql calls."""

    def __init__(self, *args, **kwargs):
        """Initialize parameters container.

        Args:
            *args: Positional values or Parameter objects
            **kwargs: Named values or Parameter objects (names get an ``@`` prefix)
        """
        self._params: List[Parameter] = []
        for arg in args:
            self._params.append(arg if isinstance(arg, Parameter) else Parameter(arg))
        for name, value in kwargs.items():
            if isinstance(value, Parameter):
                if value.name is None:
                    value.name = f"@{name}"
                self._params.append(value)
            else:
                self._params.append(Parameter(value, name=name))

    def add(self, value: Any, name: Optional[str] = None, sql_type: Optional[str] = None) -> "Parameters":
        """Add an input parameter and return self for chaining."""
        self._params.append(Parameter(value, name=name, sql_type=sql_type))
        return self

    def add_output(self, name: str, value: Any = None, sql_type: Optional[str] = None) -> "Parameters":
        """Add an OUTPUT parameter and return self for chaining."""
        self._params.append(Parameter(value, name=name, output=True, sql_type=sql_type))
        return self

    def to_list(self) -> List[Parameter]:
        return list(self._params)

    def values(self) -> List[Any]:
        return [param.value for param in self._params]

    def __iter__(self):
        return iter(self._params)

    def __len__(self) -> int:
        return len(self._params)

    def __repr__(self) -> str:
        outputs = sum(1 for p in self._params if p.output)
        return f"Parameters(count={len(self._params)}, output={outputs})"


def as_parameter_list(parameters) -> List[Parameter]:
    """Normalize None, a Parameters object, a mapping or a sequence to Parameter objects."""
    if parameters is None:
        return []
    if isinstance(parameters, Parameters):
        return parameters.to_list()
    if isinstance(parameters, dict):
        return Parameters(**parameters).to_list()
    return [p if isinstance(p, Parameter) else Parameter(p) for p in parameters]


def _quote(text: str) -> str:
    return "'" + text.replace("'", "''") + "'"


def sql_literal(value: Any) -> str:
    """Render a value as a T-SQL literal."""
    if isinstance(value, Parameter):
        value = value.value
    cell = to_cell(value)
    kind, v = cell.kind, cell.value
    if kind is CellKind.NULL:
        return "NULL"
    if kind is CellKind.BOOL:
        return "1" if v else "0"
    if kind in (CellKind.INT16, CellKind.INT32, CellKind.INT64,
                CellKind.UINT16, CellKind.UINT32, CellKind.UINT64):
        return str(v)
    if kind in (CellKind.FLOAT, CellKind.DOUBLE):
        return repr(v)
    if kind is CellKind.DECIMAL:
        return format(v, "f")
    if kind is CellKind.BYTES:
        return "0x" + v.hex()
    if kind is CellKind.DATETIME:
        return _quote(format_datetime(v))
    if kind is CellKind.UUID:
        return _quote(str(v).upper())
    return "N" + _quote(str(v))


def build_sql(template: str, parameters: Sequence[Any]) -> str:
    """Replace each ``?`` in ``template`` with the matching value as a literal.

    Placeholders are matched positionally by plain text split, so a ``?``
    inside a string literal of the template counts as a placeholder too.
    """
    parts = template.split(PLACEHOLDER)
    if len(parts) - 1 != len(parameters):
        raise ConfigurationError(
            f"Number of parameters ({len(parameters)}) does not match "
            f"number of placeholders ({len(parts) - 1})."
        )
    pieces = []
    for part, value in zip(parts, parameters):
        pieces.append(part)
        pieces.append(sql_literal(value))
    pieces.append(parts[-1])
    return "".join(pieces)
