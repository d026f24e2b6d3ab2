"""
Tests for the offline capture pass.
"""
import os

import pytest

from conftest import log_line
from pgwr.capture import capture_profile, default_profile
from pgwr.catalog import TypeResolver
from pgwr.errors import MalformedLogLine
from pgwr.interaction import ReplayableStatement, read_interactions
from pgwr.pgtypes import INT8, NUMERIC, TEXT, UNKNOWN
from pgwr.replay import load_clients, run_client

LOG = [
    log_line(7, "LOG:  execute <unnamed>: INSERT INTO t (a) VALUES ($1)"),
    log_line(7, "DETAIL:  parameters: $1 = 'x'"),
    log_line(9, "LOG:  execute <unnamed>: BEGIN"),
    log_line(9, "LOG:  execute <unnamed>: UPDATE accounts SET balance = $1 WHERE id = $2"),
    log_line(9, "DETAIL:  parameters: $1 = '100.50', $2 = '7'"),
    log_line(9, "LOG:  execute <unnamed>: SELECT * FROM accounts WHERE nickname = $1"),
    log_line(9, "DETAIL:  parameters: $1 = 'bob'"),
    log_line(9, "LOG:  execute S_1: COMMIT"),
    log_line(11, "LOG:  connection authorized: user=bench database=bench"),
]


class TestCaptureProfile:
    """Log file to <profile>/<conn>.cli."""

    def test_end_to_end(self, write_log, catalog, tmp_path):
        profile = str(tmp_path / "profile")
        result = capture_profile(write_log(LOG), TypeResolver(catalog), profile=profile)

        assert result.statements == {7: 1, 9: 4}
        assert read_interactions(os.path.join(profile, "7.cli")) == [
            ReplayableStatement("INSERT INTO t (a) VALUES (?)", prepared=True, types=[TEXT], parameters=["x"]),
        ]
        statements = read_interactions(os.path.join(profile, "9.cli"))
        assert [st.statement for st in statements] == [
            "BEGIN",
            "UPDATE accounts SET balance = ? WHERE id = ?",
            "SELECT * FROM accounts WHERE nickname = ?",
            "COMMIT",
        ]
        assert statements[1].types == [NUMERIC, INT8]
        assert statements[2].types == [UNKNOWN]
        assert len(result.diagnostics) == 2

    def test_values_survive_capture_and_replay(self, write_log, catalog, fake_db, tmp_path):
        profile = str(tmp_path / "profile")
        capture_profile(write_log([
            log_line(7, "LOG:  execute <unnamed>: INSERT INTO t (a) VALUES ($1)"),
            log_line(7, "DETAIL:  parameters: $1 = 'http://x/?q=1'"),
            log_line(7, "LOG:  execute <unnamed>: INSERT INTO t (a) VALUES ($1)"),
            log_line(7, "DETAIL:  parameters: $1 = 'costs $5'"),
        ]), TypeResolver(catalog), profile=profile)

        client = load_clients(profile)[0]
        run_client(client, fake_db.connect)
        assert client.success, client.error
        assert [params for _, params, _ in fake_db.connections[0].executed] == [
            ["http://x/?q=1"], ["costs $5"],
        ]

    def test_connections_without_statements_get_no_file(self, write_log, catalog, tmp_path):
        profile = str(tmp_path / "profile")
        capture_profile(write_log(LOG), TypeResolver(catalog), profile=profile)
        assert not os.path.exists(os.path.join(profile, "11.cli"))

    def test_raw_logs(self, write_log, catalog, tmp_path):
        profile = str(tmp_path / "profile")
        result = capture_profile(write_log(LOG), TypeResolver(catalog), profile=profile)
        assert sorted(os.path.basename(p) for p in result.raw_files) == ["11.log", "7.log", "9.log"]
        with open(os.path.join(profile, "raw", "7.log"), encoding="utf-8") as f:
            assert f.read().splitlines() == LOG[:2]

    def test_no_raw(self, write_log, catalog, tmp_path):
        profile = str(tmp_path / "profile")
        capture_profile(write_log(LOG), TypeResolver(catalog), profile=profile, keep_raw=False)
        assert not os.path.exists(os.path.join(profile, "raw"))

    def test_skip_and_max(self, write_log, catalog, tmp_path):
        profile = str(tmp_path / "profile")
        result = capture_profile(write_log(LOG), TypeResolver(catalog), profile=profile,
                                 skip=1, max_statements=1)
        # connection 7 has nothing left; 9 skips BEGIN's whole transaction
        assert result.statements == {}

    def test_malformed_log_writes_nothing(self, write_log, catalog, tmp_path):
        profile = str(tmp_path / "profile")
        with pytest.raises(MalformedLogLine):
            capture_profile(write_log(LOG + ["9 [broken"]), TypeResolver(catalog), profile=profile)
        assert not os.path.exists(profile)

    def test_default_profile(self, write_log, catalog, tmp_path):
        path = write_log(LOG[:2], name="run1.log")
        result = capture_profile(path, TypeResolver(catalog))
        assert result.profile == str(tmp_path / "run1")
        assert os.path.exists(tmp_path / "run1" / "7.cli")

    def test_default_profile_name(self):
        assert default_profile("/logs/postgresql-2016-05-12.log") == "/logs/postgresql-2016-05-12"
