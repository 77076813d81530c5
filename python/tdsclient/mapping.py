"""
Row to dataclass mapping.

Each field is matched to a column by exact name, then case-insensitively,
then through its snake_case or camelCase equivalent, so ``created_at`` and
``createdAt`` find each other.
"""

import dataclasses
import datetime
import decimal
import enum
import re
import types
import typing
import uuid
from typing import Any, List, Optional, Type, TypeVar

from .codec import parse_datetime_text
from .types import MappingError

T = TypeVar("T")

_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")
_TRUE_TEXT = ("true", "1", "yes")
_FALSE_TEXT = ("false", "0", "no")
# ``int | None`` has its own origin type on 3.10+.
_UNION_ORIGINS = tuple(
    origin for origin in (typing.Union, getattr(types, "UnionType", None)) if origin is not None
)


def to_snake_case(name: str) -> str:
    return _CAMEL_BOUNDARY.sub("_", name).lower()


def to_camel_case(name: str) -> str:
    parts = [part for part in name.split("_") if part]
    if not parts:
        return name
    return parts[0].lower() + "".join(part.capitalize() for part in parts[1:])


def resolve_column(columns: List[str], name: str) -> Optional[str]:
    """Column matching ``name``, ``None`` when nothing matches."""
    if name in columns:
        return name
    lowered = {column.lower(): column for column in reversed(columns)}
    for candidate in (name, to_snake_case(name), to_camel_case(name)):
        column = lowered.get(candidate.lower())
        if column is not None:
            return column
    return None


def _unwrap_optional(annotation):
    if typing.get_origin(annotation) in _UNION_ORIGINS:
        args = [arg for arg in typing.get_args(annotation) if arg is not type(None)]
        if len(args) == 1:
            return args[0], True
        return annotation, True
    return annotation, annotation is Any


def _convert(value: Any, target, column: str) -> Any:
    if target is Any or not isinstance(target, type):
        return value
    if target is datetime.date and isinstance(value, datetime.datetime):
        return value.date()
    if isinstance(value, target) and not (target is int and isinstance(value, bool)):
        return value
    try:
        if issubclass(target, enum.Enum):
            return target(value)
        if target is bool:
            if isinstance(value, str):
                lowered = value.strip().lower()
                if lowered in _TRUE_TEXT:
                    return True
                if lowered in _FALSE_TEXT:
                    return False
                raise ValueError(value)
            if isinstance(value, (int, float, decimal.Decimal)):
                return bool(value)
        elif target is int:
            if isinstance(value, (str, decimal.Decimal, float)) and not isinstance(value, bool):
                return int(value)
        elif target is float:
            if isinstance(value, (str, int, decimal.Decimal)) and not isinstance(value, bool):
                return float(value)
        elif target is decimal.Decimal:
            if isinstance(value, (str, int, float)) and not isinstance(value, bool):
                return decimal.Decimal(str(value))
        elif target is str:
            if isinstance(value, uuid.UUID):
                return str(value).upper()
            return str(value)
        elif target is datetime.datetime:
            if isinstance(value, str):
                parsed = parse_datetime_text(value.strip())
                if parsed is not None:
                    return parsed
        elif target is uuid.UUID:
            if isinstance(value, str):
                return uuid.UUID(value)
            if isinstance(value, bytes) and len(value) == 16:
                return uuid.UUID(bytes=value)
        elif target is bytes:
            if isinstance(value, (bytearray, memoryview)):
                return bytes(value)
    except (ValueError, TypeError, ArithmeticError) as e:
        raise MappingError(
            f"Cannot convert {value!r} to {target.__name__} for column '{column}'."
        ) from e
    raise MappingError(
        f"Expected {target.__name__}, got {type(value).__name__} for column '{column}'."
    )


def map_row(row, cls: Type[T]) -> T:
    """Build a ``cls`` instance (a dataclass) from one Row.

    Raises:
        MappingError: If ``cls`` is not a dataclass, a required column is
            missing, or a value cannot be converted to the field type
    """
    if not dataclasses.is_dataclass(cls) or not isinstance(cls, type):
        raise MappingError(f"{cls!r} is not a dataclass type")
    try:
        hints = typing.get_type_hints(cls)
    except NameError as e:
        raise MappingError(f"Cannot resolve type hints of {cls.__name__}: {e}") from e

    columns = row.columns
    kwargs = {}
    for field in dataclasses.fields(cls):
        if not field.init:
            continue
        column = resolve_column(columns, field.name)
        has_default = (field.default is not dataclasses.MISSING
                       or field.default_factory is not dataclasses.MISSING)
        if column is None:
            if has_default:
                continue
            raise MappingError(
                f"Column '{field.name}' not found in result set. "
                f"Available columns: {', '.join(columns)}"
            )
        target, nullable = _unwrap_optional(hints.get(field.name, Any))
        value = row[column]
        if value is None:
            if not nullable:
                raise MappingError(f"Column '{column}' is NULL but field '{field.name}' is not Optional.")
            kwargs[field.name] = None
            continue
        kwargs[field.name] = _convert(value, target, column)
    return cls(**kwargs)


def map_rows(rows, cls: Type[T]) -> List[T]:
    return [map_row(row, cls) for row in rows]
