"""
Tests for log line parsing and continuation line handling.
"""
import pytest

from conftest import log_line
from pgwr.errors import MalformedLogLine
from pgwr.log_entry import (
    OperationKind,
    iter_logical_lines,
    normalize_placeholders,
    parse_log_line,
)


class TestParseLogLine:
    """Bracket structure and operation classification."""

    def test_execute_entry(self):
        entry = parse_log_line(log_line(7, "LOG:  execute <unnamed>: INSERT INTO t (a) VALUES ($1)"))
        assert entry.connection_id == 7
        assert entry.timestamp == "2016-05-12 10:00:00.000 EDT"
        assert entry.transaction_id == 0
        assert entry.kind is OperationKind.EXECUTE
        assert entry.statement == "INSERT INTO t (a) VALUES (?)"
        assert entry.is_prepared

    def test_named_statement_without_placeholders(self):
        entry = parse_log_line(log_line(12, "LOG:  execute S_1: COMMIT", transaction_id=913))
        assert entry.is_execute
        assert entry.transaction_id == 913
        assert entry.statement == "COMMIT"
        assert not entry.is_prepared

    def test_parse_and_bind(self):
        parse = parse_log_line(log_line(1, "LOG:  duration: 0.061 ms  parse <unnamed>: SELECT 1"))
        bind = parse_log_line(log_line(1, "LOG:  duration: 0.020 ms  bind S_3: SELECT $1"))
        assert parse.is_parse and parse.statement == "SELECT 1"
        assert bind.is_bind and bind.statement == "SELECT ?"

    def test_parameter_detail(self):
        entry = parse_log_line(log_line(7, "DETAIL:  parameters: $1 = 'x', $2 = NULL"))
        assert entry.is_parameters
        assert entry.statement == "$1 = 'x', $2 = NULL"
        assert not entry.is_prepared

    def test_other_entry(self):
        entry = parse_log_line(log_line(3, "LOG:  connection authorized: user=bench database=bench"))
        assert entry.kind is OperationKind.OTHER
        assert entry.statement is None
        assert not entry.is_prepared

    def test_parse_marker_wins_over_execute(self):
        entry = parse_log_line(log_line(3, "LOG:  parse <unnamed>: SELECT 'execute <x>: y'"))
        assert entry.is_parse

    def test_parameter_values_are_not_rewritten(self):
        entry = parse_log_line(log_line(7, "DETAIL:  parameters: $1 = 'http://x/?q=1', $2 = 'costs $5'"))
        assert entry.statement == "$1 = 'http://x/?q=1', $2 = 'costs $5'"

    def test_simple_protocol_statement(self):
        entry = parse_log_line(log_line(7, "LOG:  statement: BEGIN"))
        assert entry.kind is OperationKind.STATEMENT
        assert entry.statement == "BEGIN"
        assert not entry.is_prepared

    def test_statement_with_duration(self):
        entry = parse_log_line(log_line(7, "LOG:  duration: 0.012 ms  statement: COMMIT"))
        assert entry.is_statement
        assert entry.statement == "COMMIT"

    def test_earliest_marker_wins(self):
        entry = parse_log_line(log_line(3, "LOG:  statement: SELECT 'execute <x>: y'"))
        assert entry.is_statement
        assert entry.statement == "SELECT 'execute <x>: y'"

    def test_multi_digit_placeholders(self):
        assert normalize_placeholders("VALUES ($1, $2, $10)") == "VALUES (?, ?, ?)"

    def test_dollar_inside_literal_is_kept(self):
        assert normalize_placeholders("SELECT 'costs $5', 'it''s $2' FROM t WHERE a = $1") == \
            "SELECT 'costs $5', 'it''s $2' FROM t WHERE a = ?"

    def test_embedded_newline(self):
        entry = parse_log_line(log_line(4, "LOG:  execute <unnamed>: SELECT a\n  FROM t WHERE b = $1"))
        assert entry.statement == "SELECT a\n  FROM t WHERE b = ?"

    def test_str_shows_original_shape(self):
        line = log_line(5, "LOG:  execute <unnamed>: SELECT 1")
        assert str(parse_log_line(line)) == line

    @pytest.mark.parametrize("line", [
        "not a log line",
        "7 2016-05-12 [0] LOG:  execute <unnamed>: SELECT 1",
        "7 [2016-05-12 10:00:00.000 EDT] LOG:  execute <unnamed>: SELECT 1",
        "abc [2016-05-12 10:00:00.000 EDT] [0] LOG:  execute <unnamed>: SELECT 1",
        "7 [2016-05-12 10:00:00.000 EDT] [tx] LOG:  execute <unnamed>: SELECT 1",
    ])
    def test_malformed(self, line):
        with pytest.raises(MalformedLogLine):
            parse_log_line(line)

    def test_malformed_reports_line_number(self):
        with pytest.raises(MalformedLogLine, match="line 12"):
            parse_log_line("garbage", line_no=12)


class TestLogicalLines:
    """Joining continuation lines onto their entry."""

    def test_continuation_lines_are_joined(self):
        lines = [
            log_line(1, "LOG:  execute <unnamed>: SELECT a") + "\n",
            "\tFROM t\n",
            log_line(2, "LOG:  execute <unnamed>: SELECT 1") + "\n",
        ]
        assert list(iter_logical_lines(lines)) == [
            (1, log_line(1, "LOG:  execute <unnamed>: SELECT a") + "\n\tFROM t"),
            (3, log_line(2, "LOG:  execute <unnamed>: SELECT 1")),
        ]

    def test_text_before_first_entry_is_yielded(self):
        lines = ["leftover\n", log_line(1, "LOG:  execute <unnamed>: SELECT 1") + "\n"]
        assert list(iter_logical_lines(lines))[0] == (1, "leftover")

    def test_blank_leading_lines_are_skipped(self):
        lines = ["\n", log_line(1, "LOG:  execute <unnamed>: SELECT 1") + "\n"]
        assert [n for n, _ in iter_logical_lines(lines)] == [2]

    def test_crlf_line_endings(self):
        lines = [log_line(1, "LOG:  execute <unnamed>: SELECT 1") + "\r\n"]
        _, line = next(iter_logical_lines(lines))
        assert parse_log_line(line).statement == "SELECT 1"
