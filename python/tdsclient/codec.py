"""
Wire type codec.

``decode`` turns the raw bytes db-lib hands back for a column (or a returned
RPC parameter) into a CellValue; ``encode`` goes the other way for outbound
RPC parameters. Both are pure functions: conversions that must go through the
native library (legacy dates, decimals, the newer date/time types) receive the
owning DBProcess as ``native`` and only call its ``convert`` and
``crack_datetime`` methods.

Decoding never raises: undecodable text becomes ``""``, dates the parser
does not recognise come back as strings and unknown type codes come back as
raw bytes.
"""

import datetime
import decimal
import json
import re
import struct
import uuid
from typing import Any, NamedTuple, Optional, Tuple

import structlog

from .types import CellKind, CellValue, TDSType

logger = structlog.get_logger()

# Bytes reserved for a native text conversion before it is retried larger.
SCRATCH_CAPACITY = 64
MAX_SCRATCH_CAPACITY = 1024

UUID_LENGTH = 16
MONEY_QUANTUM = decimal.Decimal("0.0001")

TEXT_TYPES = frozenset({
    TDSType.CHAR, TDSType.VARCHAR, TDSType.TEXT, TDSType.NTEXT,
    TDSType.XML, TDSType.NCHAR, TDSType.NVARCHAR,
})
BINARY_TYPES = frozenset({
    TDSType.BINARY, TDSType.VARBINARY, TDSType.IMAGE,
    TDSType.BIGBINARY, TDSType.BIGVARBINARY, TDSType.BLOB,
})
LEGACY_DATE_TYPES = frozenset({TDSType.DATETIME, TDSType.DATETIME4, TDSType.DATETIMN})
MODERN_DATE_TYPES = frozenset({
    TDSType.MSDATE, TDSType.MSTIME, TDSType.MSDATETIME2,
    TDSType.MSDATETIMEOFFSET, TDSType.BIGDATETIME, TDSType.BIGTIME,
})
MONEY_TYPES = frozenset({TDSType.MONEY, TDSType.MONEY4, TDSType.MONEYN})
DECIMAL_TYPES = frozenset({
    TDSType.DECIMAL_LEGACY, TDSType.NUMERIC_LEGACY, TDSType.DECIMAL, TDSType.NUMERIC,
}) | MONEY_TYPES
BIT_TYPES = frozenset({TDSType.BIT, TDSType.BITN})

# struct formats use "=": native byte order, standard sizes, no alignment.
_FIXED_WIDTH = {
    TDSType.INT1: ("=B", CellKind.INT16),
    TDSType.INT2: ("=h", CellKind.INT16),
    TDSType.INT4: ("=i", CellKind.INT32),
    TDSType.INT8: ("=q", CellKind.INT64),
    TDSType.UINT2: ("=H", CellKind.UINT16),
    TDSType.UINT4: ("=I", CellKind.UINT32),
    TDSType.UINT8: ("=Q", CellKind.UINT64),
    TDSType.REAL: ("=f", CellKind.FLOAT),
    TDSType.FLT8: ("=d", CellKind.DOUBLE),
}
_INTN_BY_LENGTH = {1: TDSType.INT1, 2: TDSType.INT2, 4: TDSType.INT4, 8: TDSType.INT8}
_FLTN_BY_LENGTH = {4: TDSType.REAL, 8: TDSType.FLT8}

# Most to least precise; fractions beyond microseconds are cut before parsing.
DATE_PATTERNS = (
    "%Y-%m-%d %H:%M:%S.%f %z",
    "%Y-%m-%d %H:%M:%S %z",
    "%Y-%m-%d %H:%M:%S.%f",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d",
    "%H:%M:%S.%f",
    "%H:%M:%S",
)
_EXCESS_FRACTION = re.compile(r"(\.\d{6})\d+")

TEXT_ENCODINGS = ("utf-8", "cp1252", "utf-16-le")


class DateParts(NamedTuple):
    """Broken-down legacy date as produced by dbdatecrack(); month is zero-based."""
    year: int
    month: int
    day: int
    hour: int
    minute: int
    second: int
    millisecond: int


def decode_text(data: bytes) -> str:
    for encoding in TEXT_ENCODINGS:
        try:
            return data.decode(encoding)
        except UnicodeDecodeError:
            continue
    logger.debug("Undecodable text column", length=len(data))
    return ""


def parse_datetime_text(text: str) -> Optional[datetime.datetime]:
    normalized = _EXCESS_FRACTION.sub(r"\1", text)
    for pattern in DATE_PATTERNS:
        try:
            return datetime.datetime.strptime(normalized, pattern)
        except ValueError:
            continue
    return None


def convert_to_text(native, type_code: int, data: bytes) -> Optional[str]:
    """Render a value as text through the native converter.

    The first attempt uses a SCRATCH_CAPACITY buffer. A failed conversion, or a
    result that fills the buffer completely, is retried with twice the room, so
    a long value is never cut off at the scratch boundary without notice.
    """
    capacity = SCRATCH_CAPACITY
    text = None
    while True:
        raw = native.convert(type_code, data, TDSType.CHAR, capacity)
        if raw is not None:
            text = raw.split(b"\x00", 1)[0].decode("ascii", "replace").strip()
            if len(text) < capacity:
                return text
        if capacity >= MAX_SCRATCH_CAPACITY:
            if text is not None:
                logger.warning("Native conversion filled the scratch buffer",
                               type_code=type_code, capacity=capacity)
            return text
        capacity *= 2


def _decode_fixed(type_code: int, data: bytes) -> CellValue:
    fmt, kind = _FIXED_WIDTH[type_code]
    if len(data) < struct.calcsize(fmt):
        return CellValue.null()
    (value,) = struct.unpack_from(fmt, data)
    return CellValue(kind, value)


def _decode_legacy_date(type_code: int, data: bytes, native) -> CellValue:
    if native is None:
        return CellValue.null()
    if type_code != TDSType.DATETIME:
        data = native.convert(type_code, data, TDSType.DATETIME, 8)
        if data is None:
            return CellValue.null()
    parts = native.crack_datetime(data)
    if parts is None:
        return CellValue.null()
    try:
        value = datetime.datetime(
            parts.year, parts.month + 1, parts.day,
            parts.hour, parts.minute, parts.second,
            parts.millisecond * 1000,
        )
    except ValueError:
        logger.debug("Legacy date out of range", parts=tuple(parts))
        return CellValue.null()
    return CellValue(CellKind.DATETIME, value)


def _decode_modern_date(type_code: int, data: bytes, native) -> CellValue:
    if native is None:
        return CellValue.null()
    text = convert_to_text(native, type_code, data)
    if text is None:
        return CellValue.null()
    value = parse_datetime_text(text)
    if value is None:
        return CellValue(CellKind.STRING, text)
    return CellValue(CellKind.DATETIME, value)


def _decode_decimal(type_code: int, data: bytes, native) -> CellValue:
    if native is None:
        return CellValue.null()
    text = convert_to_text(native, type_code, data)
    if not text:
        return CellValue.null()
    try:
        value = decimal.Decimal(text)
    except decimal.InvalidOperation:
        logger.debug("Unparseable decimal text", text=text)
        return CellValue.null()
    if type_code in MONEY_TYPES:
        value = value.quantize(MONEY_QUANTUM)
    return CellValue(CellKind.DECIMAL, value)


def decode(type_code: int, data: Optional[bytes], declared_length: Optional[int] = None,
           native=None) -> CellValue:
    """Decode one column value.

    Args:
        type_code: db-lib type code of the column (``dbcoltype``)
        data: raw bytes as returned by ``dbdata`` / ``dbretdata``, ``None`` for NULL
        declared_length: byte length reported by the library, defaults to ``len(data)``
        native: the owning DBProcess, needed for dates and decimals

    Returns:
        CellValue; never raises for malformed input
    """
    if data is None:
        return CellValue.null()
    if declared_length is None:
        declared_length = len(data)
    if declared_length <= 0:
        return CellValue.null()
    data = bytes(data[:declared_length])

    if type_code == TDSType.INTN:
        type_code = _INTN_BY_LENGTH.get(declared_length, type_code)
    elif type_code == TDSType.FLTN:
        type_code = _FLTN_BY_LENGTH.get(declared_length, type_code)

    if type_code in _FIXED_WIDTH:
        return _decode_fixed(type_code, data)
    if type_code in BIT_TYPES:
        return CellValue(CellKind.BOOL, any(data))
    if type_code in TEXT_TYPES:
        return CellValue(CellKind.STRING, decode_text(data))
    if type_code in BINARY_TYPES:
        return CellValue(CellKind.BYTES, data)
    if type_code in LEGACY_DATE_TYPES:
        return _decode_legacy_date(type_code, data, native)
    if type_code in MODERN_DATE_TYPES:
        return _decode_modern_date(type_code, data, native)
    if type_code in DECIMAL_TYPES:
        return _decode_decimal(type_code, data, native)
    if type_code == TDSType.UNIQUE:
        if declared_length != UUID_LENGTH or len(data) != UUID_LENGTH:
            return CellValue.null()
        # Wire layout is mixed-endian: the first three fields are little-endian.
        return CellValue(CellKind.UUID, uuid.UUID(bytes_le=data))
    if type_code == TDSType.VOID:
        return CellValue.null()
    return CellValue(CellKind.BYTES, data)


def to_cell(value: Any) -> CellValue:
    """Map an application value onto the CellValue union.

    Supported shapes are None, bool, int, float, Decimal, str, bytes-likes,
    datetime/date/time and UUID. Anything else is stored as an OBJECT cell
    holding its serialized form.
    """
    if isinstance(value, CellValue):
        return value
    if value is None:
        return CellValue.null()
    if isinstance(value, bool):
        return CellValue(CellKind.BOOL, value)
    if isinstance(value, int):
        if -2 ** 31 <= value < 2 ** 31:
            return CellValue(CellKind.INT32, value)
        if -2 ** 63 <= value < 2 ** 63:
            return CellValue(CellKind.INT64, value)
        if 0 <= value < 2 ** 64:
            return CellValue(CellKind.UINT64, value)
        return CellValue(CellKind.DECIMAL, decimal.Decimal(value))
    if isinstance(value, float):
        return CellValue(CellKind.DOUBLE, value)
    if isinstance(value, decimal.Decimal):
        return CellValue(CellKind.DECIMAL, value)
    if isinstance(value, str):
        return CellValue(CellKind.STRING, value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return CellValue(CellKind.BYTES, bytes(value))
    if isinstance(value, datetime.datetime):
        return CellValue(CellKind.DATETIME, value)
    if isinstance(value, datetime.date):
        return CellValue(CellKind.DATETIME, datetime.datetime.combine(value, datetime.time()))
    if isinstance(value, datetime.time):
        return CellValue(CellKind.DATETIME, datetime.datetime.combine(datetime.date(1900, 1, 1), value))
    if isinstance(value, uuid.UUID):
        return CellValue(CellKind.UUID, value)
    if isinstance(value, (dict, list, tuple)):
        return CellValue(CellKind.OBJECT, json.dumps(value, default=str))
    return CellValue(CellKind.OBJECT, str(value))


def format_datetime(value: datetime.datetime) -> str:
    """Language-neutral literal accepted by every SQL Server date/time type."""
    return value.strftime("%Y-%m-%dT%H:%M:%S") + f".{value.microsecond // 1000:03d}"


def _text_wire(text: str) -> Tuple[int, bytes]:
    return TDSType.VARCHAR, text.encode("utf-8")


def encode(value: Any) -> Tuple[int, bytes]:
    """Encode an application value for an outbound RPC parameter.

    Returns:
        ``(type_code, payload)``; NULL encodes as an empty VARCHAR payload
    """
    cell = to_cell(value)
    kind, v = cell.kind, cell.value
    if kind is CellKind.NULL:
        return TDSType.VARCHAR, b""
    if kind is CellKind.BOOL:
        return TDSType.BIT, b"\x01" if v else b"\x00"
    if kind is CellKind.INT16:
        return TDSType.INT2, struct.pack("=h", v)
    if kind in (CellKind.INT32, CellKind.UINT16):
        return TDSType.INT4, struct.pack("=i", v)
    if kind in (CellKind.INT64, CellKind.UINT32):
        return TDSType.INT8, struct.pack("=q", v)
    if kind is CellKind.UINT64:
        if v < 2 ** 63:
            return TDSType.INT8, struct.pack("=q", v)
        return _text_wire(str(v))
    if kind is CellKind.FLOAT:
        return TDSType.REAL, struct.pack("=f", v)
    if kind is CellKind.DOUBLE:
        return TDSType.FLT8, struct.pack("=d", v)
    if kind is CellKind.STRING:
        return _text_wire(v)
    if kind is CellKind.BYTES:
        return TDSType.VARBINARY, v
    if kind is CellKind.UUID:
        # Sent in the wire's mixed-endian layout, mirroring decode().
        return TDSType.UNIQUE, v.bytes_le
    if kind is CellKind.DATETIME:
        return _text_wire(format_datetime(v))
    if kind is CellKind.DECIMAL:
        return _text_wire(format(v, "f"))
    return _text_wire(str(v))
