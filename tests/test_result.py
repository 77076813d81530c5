"""
Tests for Row, Result and the result assembler.

Run with: python -m pytest tests/test_result.py
"""

import struct

import pytest
from conftest import BUF_FULL_ROW, FakeDBProcess, FakeResult

from tdsclient.result import NO_COUNT, AssemblerState, Result, ResultAssembler, ResultTable, Row
from tdsclient.types import CellKind, CellValue, ExecutionError, TDSType


def int4(value):
    return struct.pack("=i", value)


def text(value):
    return value.encode("utf-8")


def run(process, *results, **options):
    process.script(*results, **options)
    process.sql_exec()
    return ResultAssembler(process).read()


class TestRow:
    def setup_method(self):
        self.row = Row([
            ("Id", CellValue(CellKind.INT32, 7)),
            ("Name", CellValue(CellKind.STRING, "Ada")),
            ("Note", CellValue.null()),
        ])

    def test_access_by_name_and_index(self):
        assert self.row["Id"] == 7
        assert self.row["name"] == "Ada"
        assert self.row[1] == "Ada"
        assert self.row[-1] is None

    def test_columns_keep_server_casing(self):
        assert self.row.columns == ["Id", "Name", "Note"]

    def test_missing_column(self):
        with pytest.raises(KeyError):
            self.row["missing"]
        assert self.row.get("missing", "default") == "default"

    def test_null_checks(self):
        assert self.row.is_null("Note")
        assert not self.row.is_null("Id")
        assert self.row.cell("Note") == CellValue.null()

    def test_conversions(self):
        assert self.row.to_dict() == {"Id": 7, "Name": "Ada", "Note": None}
        assert self.row.to_tuple() == (7, "Ada", None)
        assert list(self.row) == [7, "Ada", None]
        assert "NAME" in self.row
        assert len(self.row) == 3

    def test_from_mapping(self):
        row = Row.from_mapping({"a": 1, "b": None})
        assert row.cell("a").kind is CellKind.INT32
        assert row.is_null("b")


class TestResult:
    def test_output_lookup_ignores_at_sign(self):
        result = Result(output_parameters={"@total": CellValue(CellKind.INT32, 3)})
        assert result.output("total") == 3
        assert result.output("@total") == 3
        assert result.output("other", "n/a") == "n/a"

    def test_empty_result(self):
        result = Result()
        assert result.rows() == []
        assert not result.has_rows()
        assert result.affected_rows == NO_COUNT
        assert result.return_status is None

    def test_first_table_rows(self):
        table = ResultTable(["x"], [Row([("x", CellValue(CellKind.INT32, 1))])])
        result = Result([table])
        assert len(result) == 1
        assert [row["x"] for row in result] == [1]


class TestAssembler:
    def test_two_tables(self):
        process = FakeDBProcess()
        result = run(
            process,
            FakeResult(columns=[("a", TDSType.INT4)], rows=[[int4(1)], [int4(2)]]),
            FakeResult(columns=[("b", TDSType.VARCHAR), ("c", TDSType.INT4)], rows=[[text("x"), None]]),
        )
        assert len(result.tables) == 2
        assert [row["a"] for row in result.tables[0]] == [1, 2]
        second = result.tables[1][0]
        assert second["b"] == "x"
        assert second.is_null("c")
        assert result.tables[1].column_types == {"b": TDSType.VARCHAR, "c": TDSType.INT4}

    def test_affected_rows_are_summed(self):
        process = FakeDBProcess()
        result = run(process, FakeResult(count=2), FakeResult(count=0), FakeResult(count=5))
        assert result.affected_rows == 7
        assert result.tables == ()

    def test_no_counts_reported(self):
        result = run(FakeDBProcess(), FakeResult())
        assert result.affected_rows == NO_COUNT

    def test_empty_table_keeps_schema(self):
        result = run(FakeDBProcess(), FakeResult(columns=[("id", TDSType.INT4)], rows=[]))
        assert len(result.tables) == 1
        assert result.tables[0].columns == ["id"]
        assert len(result.tables[0]) == 0

    def test_buf_full_is_skipped(self):
        result = run(
            FakeDBProcess(),
            FakeResult(columns=[("a", TDSType.INT4)], rows=[[int4(1)], BUF_FULL_ROW, [int4(2)]]),
        )
        assert [row["a"] for row in result] == [1, 2]

    def test_failure_raises_with_server_text(self):
        process = FakeDBProcess()
        process.script(FakeResult(count=1), fail_after=1, error="Divide by zero error encountered.")
        process.sql_exec()
        assembler = ResultAssembler(process)
        with pytest.raises(ExecutionError, match="Divide by zero"):
            assembler.read()
        assert assembler.state is AssemblerState.IDLE

    def test_after_result_called_per_result(self):
        process = FakeDBProcess()
        process.script(FakeResult(count=1), FakeResult(columns=[("a", TDSType.INT4)], rows=[[int4(1)]]))
        process.sql_exec()
        calls = []
        ResultAssembler(process, after_result=lambda: calls.append(1)).read()
        assert len(calls) == 2
