"""
Shared fixtures: an in-memory catalog, fake psycopg2 connections and a
helper that writes server log files.

No test needs a running PostgreSQL server.
"""
import threading
import time

import pytest

from pgwr.catalog import Catalog
from pgwr.pgtypes import INT4, INT8, NUMERIC, TEXT, TIMESTAMPTZ, VARCHAR

TIMESTAMP = "2016-05-12 10:00:00.000 EDT"


def log_line(connection_id, message, transaction_id=0, timestamp=TIMESTAMP):
    return f"{connection_id} [{timestamp}] [{transaction_id}] {message}"


class FakeCatalog(Catalog):
    def __init__(self, tables):
        self.tables = tables
        self.calls = []

    def columns(self, table):
        self.calls.append(table)
        return list(self.tables.get(table, []))


class FakeCursor:
    def __init__(self, connection):
        self.connection = connection
        self.description = None
        self._rows = []
        self.fetched = 0

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def execute(self, sql, params=None):
        self.connection.record(sql, params)
        if self.connection.on_execute is not None:
            self.connection.on_execute(sql, params)
        rows = self.connection.results.get(sql)
        self.description = [("column",)] if rows is not None else None
        self._rows = list(rows or [])

    def fetchall(self):
        rows, self._rows = self._rows, []
        self.fetched += len(rows)
        self.connection.fetched += len(rows)
        return rows


class FakeConnection:
    """Stands in for a psycopg2 connection and records what was done to it."""

    def __init__(self, database, results=None, on_execute=None):
        self.database = database
        self.results = results or {}
        self.on_execute = on_execute
        self.events = []
        self.executed = []
        self.fetched = 0
        self.closed = False
        self.connected_at = time.perf_counter()
        self._autocommit = False

    @property
    def autocommit(self):
        return self._autocommit

    @autocommit.setter
    def autocommit(self, value):
        self._autocommit = value
        self.events.append(("autocommit", value))

    def record(self, sql, params):
        at = time.perf_counter()
        self.events.append(("execute", sql))
        self.executed.append((sql, params, at))
        self.database.record(sql, at)

    def cursor(self):
        return FakeCursor(self)

    def commit(self):
        self.events.append(("commit",))

    def rollback(self):
        self.events.append(("rollback",))

    def xid(self, format_id, gtrid, bqual):
        return (format_id, gtrid, bqual)

    def tpc_begin(self, xid):
        self.events.append(("tpc_begin", xid))

    def tpc_prepare(self):
        self.events.append(("tpc_prepare",))

    def tpc_commit(self):
        self.events.append(("tpc_commit",))

    def tpc_rollback(self):
        self.events.append(("tpc_rollback",))

    def close(self):
        self.closed = True


class FakeDatabase:
    """Connection factory handing out FakeConnections."""

    def __init__(self, results=None, on_execute=None, on_connect=None):
        self.results = results or {}
        self.on_execute = on_execute
        self.on_connect = on_connect
        self.connections = []
        self.statements = []
        self._lock = threading.Lock()

    def connect(self):
        if self.on_connect is not None:
            self.on_connect()
        conn = FakeConnection(self, self.results, self.on_execute)
        with self._lock:
            self.connections.append(conn)
        return conn

    def record(self, sql, at):
        with self._lock:
            self.statements.append((sql, at))


@pytest.fixture
def catalog():
    return FakeCatalog({
        "accounts": [("id", INT8), ("owner", VARCHAR), ("balance", NUMERIC)],
        "t": [("a", TEXT)],
        "orders": [("id", INT8), ("customer_id", INT4), ("total", NUMERIC), ("created", TIMESTAMPTZ)],
        "customers": [("id", INT4), ("name", TEXT), ("region", TEXT)],
    })


@pytest.fixture
def fake_db():
    return FakeDatabase()


@pytest.fixture
def write_log(tmp_path):
    """Write log lines to <tmp>/<name> and return the path."""

    def write(lines, name="postgresql.log"):
        path = tmp_path / name
        path.write_text("".join(line + "\n" for line in lines), encoding="utf-8")
        return str(path)

    return write
