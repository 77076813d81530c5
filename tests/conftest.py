"""
Shared fixtures for tdsclient tests.

Unit tests never load FreeTDS: FakeDriver / FakeDBProcess implement the same
methods as tdsclient._freetds.FreeTDSDriver / DBProcess and replay scripted
results. Integration tests use a live server configured through environment
variables and are skipped without one.
"""

import itertools
import os
import sys
import threading
import time
from dataclasses import dataclass, field
from typing import List, Optional

import pytest

# Add the parent directory to Python path for development
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'python'))

from tdsclient import _freetds as tds  # noqa: E402
from tdsclient.messages import ServerMessage, get_message_center  # noqa: E402
from tdsclient.types import TDSType  # noqa: E402

# Row marker that makes FakeDBProcess.next_row() report BUF_FULL once.
BUF_FULL_ROW = object()

_handles = itertools.count(1000)


def pytest_configure(config):
    config.addinivalue_line("markers", "integration: requires a live SQL Server")


@dataclass
class FakeResult:
    """One result of a scripted batch."""
    columns: list = field(default_factory=list)  # [(name, type_code)]
    rows: list = field(default_factory=list)  # [[bytes | None, ...] | BUF_FULL_ROW]
    count: int = -1
    returns: list = field(default_factory=list)  # [(name, type_code, bytes | None)]
    return_status: Optional[int] = None


@dataclass
class FakeBatch:
    results: List[FakeResult] = field(default_factory=list)
    fail_exec: Optional[str] = None
    fail_after: Optional[int] = None  # results() returns FAIL after this many results
    error: str = "Scripted failure"


class FakeLogin:
    def __init__(self):
        self.calls = []
        self.freed = 0

    def set_name(self, which, value):
        self.calls.append(("name", which, value))
        return True

    def set_bool(self, which, value):
        self.calls.append(("bool", which, value))
        return True

    def set_short(self, which, value):
        self.calls.append(("short", which, value))
        return True

    def free(self):
        self.freed += 1


class FakeDBProcess:
    """Scripted stand-in for tdsclient._freetds.DBProcess.

    Every call asserts that no other thread is inside the handle; ``delay``
    widens the window during command submission so overlapping units of work
    would be caught.
    """

    def __init__(self, delay: float = 0.0):
        self.handle = next(_handles)
        self.delay = delay
        self.batches: List[FakeBatch] = []
        self.calls = []
        self.sql = []
        self.closed = 0
        self.use_ok = True
        self.databases = []
        self.text_sizes = []
        self.reentrancy_violations = 0
        self.max_concurrency = 0
        self.conversions = {}
        self.dates = {}
        self.rpc_params = []
        self.rpc_names = []
        self.bcp_rows = []
        self.bcp_table = None
        self.bcp_done_result = None
        self._guard = threading.Lock()
        self._active = 0
        self._batch: Optional[FakeBatch] = None
        self._result_index = -1
        self._row_index = -1
        self._row = None
        self._bcp_buffers = {}
        self._bcp_lengths = {}

    # Exclusivity check

    def _enter(self, name):
        if not self._guard.acquire(blocking=False):
            self.reentrancy_violations += 1
            self._guard.acquire()
        self._active += 1
        self.max_concurrency = max(self.max_concurrency, self._active)
        self.calls.append(name)

    def _exit(self):
        self._active -= 1
        self._guard.release()

    def _call(name):
        def decorator(fn):
            def wrapper(self, *args, **kwargs):
                self._enter(name)
                try:
                    return fn(self, *args, **kwargs)
                finally:
                    self._exit()
            return wrapper
        return decorator

    def script(self, *results: FakeResult, **options) -> FakeBatch:
        batch = FakeBatch(list(results), **options)
        self.batches.append(batch)
        return batch

    def _start_batch(self) -> bool:
        self._batch = self.batches.pop(0) if self.batches else FakeBatch()
        self._result_index = -1
        if self._batch.fail_exec:
            get_message_center().publish(ServerMessage(
                code=102, message=self._batch.fail_exec, severity=15, handle=self.handle))
            return False
        return True

    @property
    def _result(self) -> FakeResult:
        return self._batch.results[self._result_index]

    # Connection

    @_call("use")
    def use(self, database):
        self.databases.append(database)
        if not self.use_ok:
            get_message_center().publish(ServerMessage(
                code=911, message=f"Database '{database}' does not exist.", severity=16, handle=self.handle))
        return self.use_ok

    def close(self):
        self.closed += 1

    # Commands and results

    @_call("cancel")
    def cancel(self):
        pass

    @_call("set_text_size")
    def set_text_size(self, size):
        self.text_sizes.append(size)
        return True

    @_call("command")
    def command(self, sql):
        self.sql.append(sql)
        return True

    @_call("sql_exec")
    def sql_exec(self):
        if self.delay:
            time.sleep(self.delay)
        return self._start_batch()

    @_call("results")
    def results(self):
        batch = self._batch
        if batch is None:
            return tds.NO_MORE_RESULTS
        if batch.fail_after is not None and self._result_index + 1 >= batch.fail_after:
            get_message_center().publish(ServerMessage(
                code=50000, message=batch.error, severity=16, handle=self.handle))
            self._batch = None
            return tds.FAIL
        self._result_index += 1
        if self._result_index >= len(batch.results):
            return tds.NO_MORE_RESULTS
        self._row_index = -1
        return tds.SUCCEED

    @_call("count")
    def count(self):
        return self._result.count

    @_call("num_cols")
    def num_cols(self):
        return len(self._result.columns)

    @_call("col_name")
    def col_name(self, column):
        return self._result.columns[column - 1][0]

    @_call("col_type")
    def col_type(self, column):
        return self._result.columns[column - 1][1]

    @_call("next_row")
    def next_row(self):
        self._row_index += 1
        rows = self._result.rows
        if self._row_index >= len(rows):
            return tds.NO_MORE_ROWS
        self._row = rows[self._row_index]
        if self._row is BUF_FULL_ROW:
            return tds.BUF_FULL
        return tds.REG_ROW

    @_call("column_data")
    def column_data(self, column):
        return self._row[column - 1]

    def convert(self, src_type, data, dest_type, dest_len):
        if dest_type == src_type:
            return data
        text = self.conversions.get((src_type, bytes(data)))
        if text is None:
            return None
        return text.encode("ascii")[:dest_len]

    def crack_datetime(self, data):
        return self.dates.get(bytes(data))

    # RPC

    @_call("rpc_init")
    def rpc_init(self, name):
        self.rpc_names.append(name)
        return True

    @_call("rpc_param")
    def rpc_param(self, name, status, type_code, max_len, data_len, buffer):
        payload = None if buffer is None else bytes(buffer.raw[:data_len])
        self.rpc_params.append({
            "name": name, "status": status, "type": type_code,
            "max_len": max_len, "data_len": data_len, "value": payload,
            "buffer_size": None if buffer is None else len(buffer),
        })
        return True

    @_call("rpc_send")
    def rpc_send(self):
        return self._start_batch()

    @_call("sql_ok")
    def sql_ok(self):
        return True

    def _returns(self):
        if self._batch is None or not 0 <= self._result_index < len(self._batch.results):
            return []
        return self._result.returns

    @_call("num_rets")
    def num_rets(self):
        return len(self._returns())

    @_call("ret_name")
    def ret_name(self, index):
        return self._returns()[index - 1][0]

    @_call("ret_type")
    def ret_type(self, index):
        return self._returns()[index - 1][1]

    @_call("ret_data")
    def ret_data(self, index):
        return self._returns()[index - 1][2]

    @_call("has_ret_status")
    def has_ret_status(self):
        if self._batch is None or not 0 <= self._result_index < len(self._batch.results):
            return False
        return self._result.return_status is not None

    @_call("ret_status")
    def ret_status(self):
        return self._result.return_status

    # Bulk copy

    @_call("bcp_init")
    def bcp_init(self, table):
        self.bcp_table = table
        self.bcp_rows = []
        return True

    @_call("bcp_bind")
    def bcp_bind(self, buffer, column, type_code):
        assert type_code == TDSType.CHAR
        self._bcp_buffers[column] = buffer
        return True

    @_call("bcp_collen")
    def bcp_collen(self, length, column):
        self._bcp_lengths[column] = length
        return True

    @_call("bcp_sendrow")
    def bcp_sendrow(self):
        row = []
        for column in sorted(self._bcp_buffers):
            length = self._bcp_lengths[column]
            raw = self._bcp_buffers[column].raw[:length]
            row.append(raw.decode("utf-8") if length else None)
        self.bcp_rows.append(tuple(row))
        return True

    @_call("bcp_done")
    def bcp_done(self):
        if self.bcp_done_result is not None:
            return self.bcp_done_result
        return len(self.bcp_rows)


class FakeDriver:
    """Scripted stand-in for tdsclient._freetds.FreeTDSDriver."""

    def __init__(self, delay: float = 0.0):
        self.delay = delay
        self.logins: List[FakeLogin] = []
        self.processes: List[FakeDBProcess] = []
        self.opened_servers = []
        self.fail_open = False
        self.open_error = "Unable to connect: Adaptive Server is unavailable or does not exist"
        self.failed_handles = []
        self.use_ok = True
        self.login_timeouts = []
        self.query_timeouts = []

    @property
    def process(self) -> FakeDBProcess:
        return self.processes[-1]

    def login(self):
        login = FakeLogin()
        self.logins.append(login)
        return login

    def open(self, login, server):
        self.opened_servers.append(server)
        if self.fail_open:
            # db-lib reports login failures against a DBPROCESS it frees before returning.
            transient = next(_handles)
            self.failed_handles.append(transient)
            get_message_center().publish(ServerMessage(
                code=20009, message=self.open_error, severity=9, handle=transient, from_library=True))
            return None
        process = FakeDBProcess(delay=self.delay)
        process.use_ok = self.use_ok
        self.processes.append(process)
        return process

    def set_login_timeout(self, seconds):
        self.login_timeouts.append(seconds)

    def set_query_timeout(self, seconds):
        self.query_timeouts.append(seconds)


@pytest.fixture
def driver():
    return FakeDriver()


@pytest.fixture
def connection(driver):
    from tdsclient import Connection
    return Connection(server="fake-host", username="sa", password="secret", driver=driver)


class Config:
    """Live-server settings from the environment."""

    def __init__(self):
        self.server = os.environ.get("TDSCLIENT_HOST")
        self.username = os.environ.get("TDSCLIENT_USERNAME")
        self.password = os.environ.get("TDSCLIENT_PASSWORD")
        self.database = os.environ.get("TDSCLIENT_DATABASE", "tempdb")
        port = os.environ.get("TDSCLIENT_PORT")
        self.port = int(port) if port else None

    @property
    def available(self) -> bool:
        return bool(self.server and self.username and self.password)

    def options(self):
        from tdsclient import ConnectionOptions, EncryptionMode
        return ConnectionOptions(
            server=self.server,
            username=self.username,
            password=self.password,
            database=self.database,
            port=self.port,
            encryption=EncryptionMode(os.environ.get("TDSCLIENT_ENCRYPTION", "request")),
        )


@pytest.fixture
def test_config() -> Config:
    config = Config()
    if not config.available:
        pytest.skip("Set TDSCLIENT_HOST, TDSCLIENT_USERNAME and TDSCLIENT_PASSWORD to run integration tests")
    return config
