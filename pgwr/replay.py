"""
Concurrent replay of a captured profile.

Every client gets its own thread and database connection. The threads
connect, meet at a start gate and are released together; the coordinator
then waits for them and reports per-client and total timings.
"""
import csv
import logging
import os
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional

import psycopg2
import psycopg2.extras
from sqlparse import lexer
from sqlparse import tokens as T

from pgwr.errors import ParameterCountMismatch, ReplayConnectionError, ReplayError, ReplayTimeout
from pgwr.interaction import (
    ReplayableStatement,
    connection_id_of,
    is_begin,
    is_commit,
    is_rollback,
    list_interaction_files,
    read_interactions,
)
from pgwr.log_entry import PLACEHOLDER
from pgwr.pgtypes import convert_value

logger = logging.getLogger(__name__)

psycopg2.extras.register_uuid()

RESULT_FILE = "result.csv"
CLOCK_ROW = "Clock"
XA_FORMAT_ID = 1

Connect = Callable[[], Any]


def _ms(start: Optional[float], end: Optional[float]) -> Optional[float]:
    if start is None or end is None:
        return None
    return (end - start) * 1000.0


@dataclass
class ReplayClient:
    """One captured connection and what happened when it was replayed."""

    identifier: int
    statements: List[ReplayableStatement]
    before_connection: Optional[float] = None
    after_connection: Optional[float] = None
    before_run: Optional[float] = None
    after_run: Optional[float] = None
    executed: int = 0
    success: bool = False
    error: Optional[BaseException] = None

    @property
    def run_time_ms(self) -> Optional[float]:
        return _ms(self.before_run, self.after_run)

    @property
    def connection_time_ms(self) -> Optional[float]:
        return _ms(self.before_connection, self.after_connection)


def load_clients(profile: str) -> List[ReplayClient]:
    """One client per .cli file of the profile, ordered by connection id."""
    clients = []
    for path in list_interaction_files(profile):
        clients.append(ReplayClient(connection_id_of(path), read_interactions(path)))
    logger.info("Loaded %d clients from %s", len(clients), profile)
    return clients


# ============================================================================
# STATEMENT EXECUTION
# ============================================================================

def to_driver_sql(statement: str):
    """Rewrite '?' placeholders to the driver's %s paramstyle.

    Returns (sql, placeholder count). Literal '%' is doubled; '?' inside
    string literals and comments is left alone.
    """
    parts = []
    count = 0
    for ttype, value in lexer.tokenize(statement):
        if ttype in T.Name.Placeholder and value == PLACEHOLDER:
            parts.append("%s")
            count += 1
        else:
            parts.append(value.replace("%", "%%"))
    return "".join(parts), count


def bind_values(st: ReplayableStatement) -> list:
    """Convert captured values by their resolved types.

    Values past the end of the type list are bound as text.
    """
    types = st.types or []
    return [
        convert_value(value, types[i] if i < len(types) else None)
        for i, value in enumerate(st.parameters)
    ]


def client_xid(conn, identifier: int):
    """Two-phase transaction id of one client, reused for each of its transactions."""
    return conn.xid(XA_FORMAT_ID, f"pgwr-{identifier}", str(identifier))


def execute_statement(conn, cur, st: ReplayableStatement, fetch_results: bool = False, xid=None):
    """Run one statement, mapping transaction markers onto the connection.

    With an xid, transactions are run as two-phase transactions: BEGIN
    starts one, COMMIT prepares and commits it, ROLLBACK rolls it back.
    """
    if is_begin(st.statement):
        conn.autocommit = False
        if xid is not None:
            conn.tpc_begin(xid)
        return
    if is_commit(st.statement):
        if xid is not None:
            conn.tpc_prepare()
            conn.tpc_commit()
        else:
            conn.commit()
        conn.autocommit = True
        return
    if is_rollback(st.statement):
        if xid is not None:
            conn.tpc_rollback()
        else:
            conn.rollback()
        conn.autocommit = True
        return

    if st.prepared:
        sql, count = to_driver_sql(st.statement)
        if count != len(st.parameters):
            raise ParameterCountMismatch(st.statement, count, len(st.parameters))
        cur.execute(sql, bind_values(st))
    else:
        cur.execute(st.statement)

    if fetch_results and cur.description is not None:
        for _ in cur.fetchall():
            pass


class StartGate:
    """Ready barrier plus start gate shared by the replay threads.

    The coordinator is one more party on the barrier, so it passes only
    once every client has signalled ready. It then opens the gate.
    """

    def __init__(self, parties: int):
        self.parties = parties
        self.ready_signals = 0
        self.released_at: Optional[float] = None
        self._lock = threading.Lock()
        self._barrier = threading.Barrier(parties + 1)
        self._gate = threading.Event()

    def arrive(self):
        """Signal ready, then block until the gate opens."""
        with self._lock:
            self.ready_signals += 1
        try:
            self._barrier.wait()
        except threading.BrokenBarrierError:
            raise ReplayTimeout("start gate was abandoned before release") from None
        self._gate.wait()

    def wait_ready(self, timeout: Optional[float] = None) -> bool:
        try:
            self._barrier.wait(timeout)
        except threading.BrokenBarrierError:
            return False
        return True

    def release(self):
        self.released_at = time.perf_counter()
        self._gate.set()

    def abandon(self):
        self._barrier.abort()


def run_client(client: ReplayClient, connect: Connect, fetch_results: bool = False,
               gate: Optional[StartGate] = None, xa: bool = False):
    """Replay one client: connect, wait for the gate, run, close.

    Failures stay on the client; nothing is raised to the caller.
    """
    conn = None
    client.before_connection = time.perf_counter()
    try:
        try:
            conn = connect()
        except psycopg2.Error as e:
            raise ReplayConnectionError(f"client {client.identifier} cannot connect: {e}") from e
        finally:
            if gate is not None:
                gate.arrive()

        client.before_run = time.perf_counter()
        conn.autocommit = True
        xid = client_xid(conn, client.identifier) if xa else None
        with conn.cursor() as cur:
            for st in client.statements:
                execute_statement(conn, cur, st, fetch_results, xid)
                client.executed += 1
        client.after_run = time.perf_counter()
        client.success = True

    except (ReplayError, psycopg2.Error) as e:
        client.error = e
        logger.error("Client %d failed after %d statements: %s", client.identifier, client.executed, e)
    except Exception as e:
        client.error = e
        logger.exception("Client %d failed", client.identifier)
    finally:
        if conn is not None:
            try:
                conn.close()
            except psycopg2.Error as e:
                logger.debug("Client %d: close failed: %s", client.identifier, e)
        client.after_connection = time.perf_counter()


class ReplayWorker(threading.Thread):
    def __init__(self, client: ReplayClient, connect: Connect, gate: StartGate,
                 fetch_results: bool = False, xa: bool = False):
        threading.Thread.__init__(self, name=f"client-{client.identifier}", daemon=True)
        self.client = client
        self.connect = connect
        self.gate = gate
        self.fetch_results = fetch_results
        self.xa = xa

    def run(self):
        logger.debug("Client %d connecting", self.client.identifier)
        run_client(self.client, self.connect, self.fetch_results, self.gate, self.xa)


# ============================================================================
# COORDINATOR
# ============================================================================

@dataclass
class ClientResult:
    identifier: int
    success: bool
    run_time_ms: Optional[float]
    connection_time_ms: Optional[float]
    statements: int
    executed: int
    error: Optional[str] = None


@dataclass
class ReplayReport:
    clock_ms: float
    results: List[ClientResult] = field(default_factory=list)
    ready_signals: int = 0
    timed_out: bool = False
    released_at: Optional[float] = None

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if not r.success)

    @property
    def statements(self) -> int:
        return sum(r.statements for r in self.results)


def _remaining(deadline: Optional[float]) -> Optional[float]:
    if deadline is None:
        return None
    return max(0.0, deadline - time.monotonic())


class ReplayCoordinator:
    """Replays clients concurrently behind a shared start gate.

    `connect` opens one database connection; it is called once per client
    from the client's own thread. `timeout` bounds the whole run, from
    starting the threads until the last one finishes.
    """

    def __init__(self, clients: List[ReplayClient], connect: Connect,
                 timeout: Optional[float] = None, sequential: bool = False,
                 fetch_results: bool = False, xa: bool = False):
        self.clients = clients
        self.connect = connect
        self.timeout = timeout
        self.sequential = sequential
        self.fetch_results = fetch_results
        self.xa = xa

    def run(self) -> ReplayReport:
        if self.sequential:
            return self._run_sequential()
        return self._run_concurrent()

    def _run_concurrent(self) -> ReplayReport:
        deadline = time.monotonic() + self.timeout if self.timeout is not None else None
        gate = StartGate(len(self.clients))
        workers = [ReplayWorker(c, self.connect, gate, self.fetch_results, self.xa) for c in self.clients]

        for worker in workers:
            worker.start()

        timed_out = False
        ready_signals = 0
        if gate.wait_ready(_remaining(deadline)):
            ready_signals = gate.ready_signals
            gate.release()
            logger.info("All %d clients ready, gate released", ready_signals)
        else:
            timed_out = True
            gate.abandon()
            logger.error("Clients not ready within %ss", self.timeout)

        for worker in workers:
            worker.join(_remaining(deadline))

        unfinished = {w.client.identifier for w in workers if w.is_alive()}
        if unfinished:
            timed_out = True
            logger.error("Replay timed out; %d clients still running", len(unfinished))

        done = [c.after_connection for c in self.clients
                if c.identifier not in unfinished and c.after_connection is not None]
        if gate.released_at is not None and done:
            clock_ms = _ms(gate.released_at, max(done))
        else:
            clock_ms = 0.0

        return self._report(clock_ms, ready_signals, timed_out, unfinished, gate.released_at)

    def _run_sequential(self) -> ReplayReport:
        deadline = time.monotonic() + self.timeout if self.timeout is not None else None
        unfinished = set()
        start = time.perf_counter()
        for client in self.clients:
            if deadline is not None and time.monotonic() >= deadline:
                unfinished.add(client.identifier)
                continue
            run_client(client, self.connect, self.fetch_results, xa=self.xa)
        clock_ms = _ms(start, time.perf_counter())

        if unfinished:
            logger.error("Replay timed out; %d clients not started", len(unfinished))
        return self._report(clock_ms, len(self.clients) - len(unfinished), bool(unfinished), unfinished, start)

    def _report(self, clock_ms, ready_signals, timed_out, unfinished, released_at) -> ReplayReport:
        results = []
        for client in self.clients:
            if client.identifier in unfinished:
                error = str(ReplayTimeout(f"client {client.identifier} did not finish"))
                success = False
            else:
                error = str(client.error) if client.error is not None else None
                success = client.success
            results.append(ClientResult(
                identifier=client.identifier,
                success=success,
                run_time_ms=client.run_time_ms if success else None,
                connection_time_ms=client.connection_time_ms,
                statements=len(client.statements),
                executed=client.executed,
                error=error,
            ))
        return ReplayReport(clock_ms=clock_ms, results=results,
                            ready_signals=ready_signals, timed_out=timed_out, released_at=released_at)


def _format_ms(value: Optional[float]) -> str:
    return "" if value is None else f"{value:.3f}"


def write_results_csv(profile: str, report: ReplayReport) -> str:
    """<profile>/result.csv: a Clock row, then id, run ms, connection ms per client."""
    path = os.path.join(profile, RESULT_FILE)
    with open(path, "w", newline="", encoding="utf-8") as f:
        writer = csv.writer(f)
        clock = _format_ms(report.clock_ms)
        writer.writerow([CLOCK_ROW, clock, clock])
        for r in report.results:
            writer.writerow([r.identifier, _format_ms(r.run_time_ms), _format_ms(r.connection_time_ms)])
    return path
