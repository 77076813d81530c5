"""
ctypes binding to FreeTDS db-lib (libsybdb).

Only the procedural surface tdsclient needs is declared here. The library is
loaded and initialised lazily, once per process; importing this module never
touches the shared object so the rest of the package stays importable on hosts
without FreeTDS.

Nothing in this module is thread-safe. Every ``DBProcess`` / ``LoginRecord``
call must happen inside a serializer turn of the owning connection.
"""

import ctypes
import ctypes.util
import os
import threading
from typing import Optional

import structlog

from .codec import DateParts
from .messages import INFO_SEVERITY, NO_HANDLE, ServerMessage, get_message_center
from .types import ResourceError

logger = structlog.get_logger()

# Return codes
FAIL = 0
SUCCEED = 1
NO_MORE_RESULTS = 2
REG_ROW = -1
NO_MORE_ROWS = -2
BUF_FULL = -3

# Error handler verdicts
INT_EXIT = 0
INT_CONTINUE = 1
INT_CANCEL = 2

DBRPCRETURN = 1
DB_IN = 1
DBTEXTSIZE = 17

# Login record fields
DBSETHOST = 1
DBSETUSER = 2
DBSETPWD = 3
DBSETAPP = 5
DBSETBCP = 6
DBSETCHARSET = 10
DBSETNETWORKAUTH = 101
DBSETUTF16 = 1001
DBSETNTLMV2 = 1002
DBSETREADONLY = 1003
DBSETENCRYPTION = 1005
DBSETPORT = 1006

DBDATETIME_SIZE = 8

LIBRARY_ENV_VAR = "TDSCLIENT_FREETDS_LIB"

_ERR_HANDLER = ctypes.CFUNCTYPE(
    ctypes.c_int, ctypes.c_void_p, ctypes.c_int, ctypes.c_int, ctypes.c_int,
    ctypes.c_char_p, ctypes.c_char_p,
)
_MSG_HANDLER = ctypes.CFUNCTYPE(
    ctypes.c_int, ctypes.c_void_p, ctypes.c_int, ctypes.c_int, ctypes.c_int,
    ctypes.c_char_p, ctypes.c_char_p, ctypes.c_char_p, ctypes.c_int,
)


class DBDATEREC(ctypes.Structure):
    _fields_ = [
        ("dateyear", ctypes.c_int32),
        ("datemonth", ctypes.c_int32),
        ("datedmonth", ctypes.c_int32),
        ("datedyear", ctypes.c_int32),
        ("datedweek", ctypes.c_int32),
        ("datehour", ctypes.c_int32),
        ("dateminute", ctypes.c_int32),
        ("datesecond", ctypes.c_int32),
        ("datemsecond", ctypes.c_int32),
        ("datetzone", ctypes.c_int32),
    ]


_P = ctypes.c_void_p
_I = ctypes.c_int
_S = ctypes.c_char_p

# name: (restype, argtypes)
_PROTOTYPES = {
    "dbinit": (_I, []),
    "dberrhandle": (_P, [_ERR_HANDLER]),
    "dbmsghandle": (_P, [_MSG_HANDLER]),
    "dblogin": (_P, []),
    "dbloginfree": (None, [_P]),
    "dbsetlname": (_I, [_P, _S, _I]),
    "dbsetlbool": (_I, [_P, _I, _I]),
    "dbsetlshort": (_I, [_P, _I, _I]),
    "dbsetlogintime": (_I, [_I]),
    "dbsettime": (_I, [_I]),
    "tdsdbopen": (_P, [_P, _S, _I]),
    "dbuse": (_I, [_P, _S]),
    "dbclose": (None, [_P]),
    "dbcancel": (_I, [_P]),
    "dbsetopt": (_I, [_P, _I, _S, _I]),
    "dbcmd": (_I, [_P, _S]),
    "dbsqlexec": (_I, [_P]),
    "dbresults": (_I, [_P]),
    "dbcount": (ctypes.c_int32, [_P]),
    "dbnumcols": (_I, [_P]),
    "dbcolname": (_S, [_P, _I]),
    "dbcoltype": (_I, [_P, _I]),
    "dbnextrow": (_I, [_P]),
    "dbdata": (_P, [_P, _I]),
    "dbdatlen": (ctypes.c_int32, [_P, _I]),
    "dbconvert": (ctypes.c_int32, [_P, _I, _P, ctypes.c_int32, _I, _P, ctypes.c_int32]),
    "dbdatecrack": (_I, [_P, ctypes.POINTER(DBDATEREC), _P]),
    "dbrpcinit": (_I, [_P, _S, ctypes.c_int16]),
    "dbrpcparam": (_I, [_P, _S, ctypes.c_ubyte, _I, ctypes.c_int32, ctypes.c_int32, _P]),
    "dbrpcsend": (_I, [_P]),
    "dbsqlok": (_I, [_P]),
    "dbnumrets": (_I, [_P]),
    "dbretname": (_S, [_P, _I]),
    "dbrettype": (_I, [_P, _I]),
    "dbretdata": (_P, [_P, _I]),
    "dbretlen": (ctypes.c_int32, [_P, _I]),
    "dbhasretstat": (ctypes.c_ubyte, [_P]),
    "dbretstatus": (ctypes.c_int32, [_P]),
    "bcp_init": (_I, [_P, _S, _S, _S, _I]),
    "bcp_bind": (_I, [_P, _P, _I, ctypes.c_int32, _P, _I, _I, _I]),
    "bcp_collen": (_I, [_P, ctypes.c_int32, _I]),
    "bcp_sendrow": (_I, [_P]),
    "bcp_done": (ctypes.c_int32, [_P]),
}

_init_lock = threading.Lock()
_lib = None
# Callback objects must stay referenced for the life of the process.
_callbacks = []


def _text(raw: Optional[bytes]) -> str:
    if not raw:
        return ""
    return raw.decode("utf-8", "replace")


def _handle_key(dbproc) -> int:
    return dbproc or NO_HANDLE


def _on_error(dbproc, severity, dberr, oserr, dberrstr, oserrstr):
    text = _text(dberrstr) or "Unknown FreeTDS error"
    if oserr and oserrstr:
        text = f"{text} ({_text(oserrstr)})"
    logger.warning("FreeTDS error", code=dberr, severity=severity, message=text)
    get_message_center().publish(ServerMessage(
        code=dberr,
        message=text,
        severity=severity,
        handle=_handle_key(dbproc),
        from_library=True,
    ))
    return INT_CANCEL


def _on_message(dbproc, msgno, msgstate, severity, msgtext, srvname, procname, line):
    text = _text(msgtext)
    if severity > INFO_SEVERITY:
        logger.warning("Server message", code=msgno, severity=severity, message=text)
    else:
        logger.debug("Server message", code=msgno, severity=severity, message=text)
    get_message_center().publish(ServerMessage(
        code=msgno,
        message=text,
        severity=severity,
        state=msgstate,
        server=_text(srvname) or None,
        procedure=_text(procname) or None,
        line=line,
        handle=_handle_key(dbproc),
    ))
    return 0


def _load_library():
    path = os.environ.get(LIBRARY_ENV_VAR) or ctypes.util.find_library("sybdb")
    if not path:
        raise ResourceError(
            f"FreeTDS db-lib (libsybdb) not found. Install FreeTDS or set {LIBRARY_ENV_VAR}."
        )
    try:
        lib = ctypes.CDLL(path)
    except OSError as e:
        raise ResourceError(f"Could not load FreeTDS from '{path}': {e}") from e
    for name, (restype, argtypes) in _PROTOTYPES.items():
        func = getattr(lib, name)
        func.restype = restype
        func.argtypes = argtypes
    return lib


def ensure_initialized():
    """Load libsybdb and install the global handlers, once per process."""
    global _lib
    if _lib is not None:
        return _lib
    with _init_lock:
        if _lib is None:
            lib = _load_library()
            if lib.dbinit() == FAIL:
                raise ResourceError("FreeTDS dbinit() failed.")
            err_cb = _ERR_HANDLER(_on_error)
            msg_cb = _MSG_HANDLER(_on_message)
            _callbacks.extend([err_cb, msg_cb])
            lib.dberrhandle(err_cb)
            lib.dbmsghandle(msg_cb)
            logger.debug("FreeTDS initialized", library=getattr(lib, "_name", None))
            _lib = lib
    return _lib


def _encode(value: str) -> bytes:
    return value.encode("utf-8")


class LoginRecord:
    """Owned LOGINREC; freed exactly once."""

    def __init__(self, lib, pointer: int):
        self._lib = lib
        self._ptr = pointer

    @property
    def pointer(self) -> int:
        return self._ptr

    def set_name(self, which: int, value: str) -> bool:
        return self._lib.dbsetlname(self._ptr, _encode(value), which) != FAIL

    def set_bool(self, which: int, value: bool) -> bool:
        return self._lib.dbsetlbool(self._ptr, 1 if value else 0, which) != FAIL

    def set_short(self, which: int, value: int) -> bool:
        return self._lib.dbsetlshort(self._ptr, value, which) != FAIL

    def free(self) -> None:
        if self._ptr:
            self._lib.dbloginfree(self._ptr)
            self._ptr = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.free()


class DBProcess:
    """Owned DBPROCESS handle with the subset of db-lib calls tdsclient uses."""

    def __init__(self, lib, pointer: int):
        self._lib = lib
        self._ptr = pointer

    @property
    def handle(self) -> int:
        return self._ptr or NO_HANDLE

    # Connection

    def use(self, database: str) -> bool:
        return self._lib.dbuse(self._ptr, _encode(database)) != FAIL

    def close(self) -> None:
        if self._ptr:
            self._lib.dbclose(self._ptr)
            self._ptr = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    # Commands and results

    def cancel(self) -> None:
        self._lib.dbcancel(self._ptr)

    def set_text_size(self, size: int) -> bool:
        return self._lib.dbsetopt(self._ptr, DBTEXTSIZE, _encode(str(size)), -1) != FAIL

    def command(self, sql: str) -> bool:
        return self._lib.dbcmd(self._ptr, _encode(sql)) != FAIL

    def sql_exec(self) -> bool:
        return self._lib.dbsqlexec(self._ptr) != FAIL

    def results(self) -> int:
        return self._lib.dbresults(self._ptr)

    def count(self) -> int:
        return self._lib.dbcount(self._ptr)

    def num_cols(self) -> int:
        return self._lib.dbnumcols(self._ptr)

    def col_name(self, column: int) -> str:
        return _text(self._lib.dbcolname(self._ptr, column))

    def col_type(self, column: int) -> int:
        return self._lib.dbcoltype(self._ptr, column)

    def next_row(self) -> int:
        return self._lib.dbnextrow(self._ptr)

    def column_data(self, column: int) -> Optional[bytes]:
        """Raw column bytes for the current row, ``None`` for SQL NULL."""
        address = self._lib.dbdata(self._ptr, column)
        if not address:
            return None
        length = self._lib.dbdatlen(self._ptr, column)
        if length <= 0:
            return None
        return ctypes.string_at(address, length)

    # Conversion

    def convert(self, src_type: int, data: bytes, dest_type: int, dest_len: int) -> Optional[bytes]:
        """dbconvert() into a scratch buffer of ``dest_len`` bytes plus a terminator."""
        src = ctypes.create_string_buffer(data, len(data))
        dest = ctypes.create_string_buffer(dest_len + 1)
        written = self._lib.dbconvert(self._ptr, src_type, src, len(data), dest_type, dest, dest_len)
        if written < 0:
            return None
        return dest.raw[:written]

    def crack_datetime(self, data: bytes) -> Optional[DateParts]:
        if len(data) != DBDATETIME_SIZE:
            return None
        src = ctypes.create_string_buffer(data, DBDATETIME_SIZE)
        rec = DBDATEREC()
        if self._lib.dbdatecrack(self._ptr, ctypes.byref(rec), src) == FAIL:
            return None
        return DateParts(
            year=rec.dateyear,
            month=rec.datemonth,
            day=rec.datedmonth,
            hour=rec.datehour,
            minute=rec.dateminute,
            second=rec.datesecond,
            millisecond=rec.datemsecond,
        )

    # RPC

    def rpc_init(self, name: str) -> bool:
        return self._lib.dbrpcinit(self._ptr, _encode(name), 0) != FAIL

    def rpc_param(self, name: Optional[str], status: int, type_code: int,
                  max_len: int, data_len: int, buffer) -> bool:
        return self._lib.dbrpcparam(
            self._ptr, _encode(name) if name else None, status, type_code, max_len, data_len, buffer
        ) != FAIL

    def rpc_send(self) -> bool:
        return self._lib.dbrpcsend(self._ptr) != FAIL

    def sql_ok(self) -> bool:
        return self._lib.dbsqlok(self._ptr) != FAIL

    def num_rets(self) -> int:
        return self._lib.dbnumrets(self._ptr)

    def ret_name(self, index: int) -> Optional[str]:
        raw = self._lib.dbretname(self._ptr, index)
        return _text(raw) if raw else None

    def ret_type(self, index: int) -> int:
        return self._lib.dbrettype(self._ptr, index)

    def ret_data(self, index: int) -> Optional[bytes]:
        address = self._lib.dbretdata(self._ptr, index)
        if not address:
            return None
        length = self._lib.dbretlen(self._ptr, index)
        if length <= 0:
            return None
        return ctypes.string_at(address, length)

    def has_ret_status(self) -> bool:
        return bool(self._lib.dbhasretstat(self._ptr))

    def ret_status(self) -> int:
        return self._lib.dbretstatus(self._ptr)

    # Bulk copy

    def bcp_init(self, table: str) -> bool:
        return self._lib.bcp_init(self._ptr, _encode(table), None, None, DB_IN) != FAIL

    def bcp_bind(self, buffer, column: int, type_code: int) -> bool:
        return self._lib.bcp_bind(self._ptr, buffer, 0, -1, None, 0, type_code, column) != FAIL

    def bcp_collen(self, length: int, column: int) -> bool:
        return self._lib.bcp_collen(self._ptr, length, column) != FAIL

    def bcp_sendrow(self) -> bool:
        return self._lib.bcp_sendrow(self._ptr) != FAIL

    def bcp_done(self) -> int:
        return self._lib.bcp_done(self._ptr)


class FreeTDSDriver:
    """Factory for login records and connections backed by the real library."""

    def __init__(self):
        self._lib = ensure_initialized()

    def login(self) -> LoginRecord:
        pointer = self._lib.dblogin()
        if not pointer:
            raise ResourceError("FreeTDS could not allocate a login record.")
        return LoginRecord(self._lib, pointer)

    def open(self, login: LoginRecord, server: str) -> Optional[DBProcess]:
        # msdblib=0 keeps dbdatecrack() months zero-based.
        pointer = self._lib.tdsdbopen(login.pointer, _encode(server), 0)
        if not pointer:
            return None
        return DBProcess(self._lib, pointer)

    def set_login_timeout(self, seconds: int) -> None:
        self._lib.dbsetlogintime(seconds)

    def set_query_timeout(self, seconds: int) -> None:
        self._lib.dbsettime(seconds)
