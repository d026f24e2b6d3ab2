"""
Parsing of PostgreSQL server log lines.

Lines are expected to come from a server running with
log_line_prefix = '%p [%m] [%x] ', i.e.

    4711 [2016-05-12 10:00:00.123 EDT] [0] LOG:  execute <unnamed>: SELECT ...
    4711 [2016-05-12 10:00:00.124 EDT] [0] DETAIL:  parameters: $1 = '42'
"""
import enum
import re
from dataclasses import dataclass
from typing import Iterable, Iterator, Optional, Tuple

from pgwr.errors import MalformedLogLine

PLACEHOLDER = "?"
PARAMETERS_MARKER = "DETAIL:  parameters:"

LITERAL_OR_PARAM_RE = re.compile(r"'(?:[^']|'')*'|\$\d+")
ENTRY_START_RE = re.compile(r"^\s*\d+\s+\[")


class OperationKind(str, enum.Enum):
    PARSE = "parse"
    BIND = "bind"
    EXECUTE = "execute"
    STATEMENT = "statement"
    PARAMETERS = "parameters"
    OTHER = "other"


# The marker found nearest the start of the message wins.
PHASE_MARKERS = (
    (OperationKind.PARSE, ("parse <", "parse S")),
    (OperationKind.BIND, ("bind <", "bind S")),
    (OperationKind.EXECUTE, ("execute <", "execute S")),
    (OperationKind.STATEMENT, ("statement: ",)),
)


def _placeholder_or_literal(match) -> str:
    text = match.group(0)
    return text if text.startswith("'") else PLACEHOLDER


def normalize_placeholders(text: str) -> str:
    """Rewrite $1, $2, ... to the canonical '?' marker.

    Quoted string literals are left untouched.
    """
    return LITERAL_OR_PARAM_RE.sub(_placeholder_or_literal, text)


@dataclass(frozen=True)
class LogEntry:
    connection_id: int
    timestamp: str
    transaction_id: int
    kind: OperationKind
    message: str
    statement: Optional[str] = None

    @property
    def is_prepared(self) -> bool:
        if self.kind in (OperationKind.STATEMENT, OperationKind.PARAMETERS, OperationKind.OTHER):
            return False
        return self.statement is not None and PLACEHOLDER in self.statement

    @property
    def is_parse(self) -> bool:
        return self.kind is OperationKind.PARSE

    @property
    def is_bind(self) -> bool:
        return self.kind is OperationKind.BIND

    @property
    def is_execute(self) -> bool:
        return self.kind is OperationKind.EXECUTE

    @property
    def is_statement(self) -> bool:
        return self.kind is OperationKind.STATEMENT

    @property
    def is_parameters(self) -> bool:
        return self.kind is OperationKind.PARAMETERS

    def __str__(self) -> str:
        return f"{self.connection_id} [{self.timestamp}] [{self.transaction_id}] {self.message}"


def _classify(message: str, line: str, line_no: Optional[int]) -> Tuple[OperationKind, Optional[str]]:
    found = None
    for kind, markers in PHASE_MARKERS + ((OperationKind.PARAMETERS, (PARAMETERS_MARKER,)),):
        for marker in markers:
            offset = message.find(marker)
            if offset != -1 and (found is None or offset < found[0]):
                found = (offset, kind, marker)

    if found is None:
        return OperationKind.OTHER, None

    offset, kind, marker = found
    if kind is OperationKind.PARAMETERS:
        # Values are kept exactly as logged; they may contain '?' or '$1'.
        return kind, message[offset + len(marker) + 1:]

    colon = message.find(":", offset)
    if colon == -1:
        raise MalformedLogLine(line, f"no statement after '{marker}'", line_no)
    return kind, normalize_placeholders(message[colon + 2:])


def parse_log_line(line: str, line_no: Optional[int] = None) -> LogEntry:
    """Build a LogEntry from one logical log line.

    Raises MalformedLogLine when the two bracket groups cannot be located or
    the connection / transaction ids are not integers.
    """
    bracket1_start = line.find("[")
    bracket1_end = line.find("]")
    if bracket1_start == -1 or bracket1_end == -1 or bracket1_end < bracket1_start:
        raise MalformedLogLine(line, "missing timestamp bracket", line_no)

    bracket2_start = line.find("[", bracket1_end + 1)
    bracket2_end = line.find("]", bracket1_end + 1)
    if bracket2_start == -1 or bracket2_end == -1 or bracket2_end < bracket2_start:
        raise MalformedLogLine(line, "missing transaction bracket", line_no)

    try:
        connection_id = int(line[:bracket1_start].strip())
    except ValueError:
        raise MalformedLogLine(line, "connection id is not an integer", line_no) from None

    try:
        transaction_id = int(line[bracket2_start + 1:bracket2_end])
    except ValueError:
        raise MalformedLogLine(line, "transaction id is not an integer", line_no) from None

    message = line[bracket2_end + 2:]
    kind, statement = _classify(message, line, line_no)

    return LogEntry(
        connection_id=connection_id,
        timestamp=line[bracket1_start + 1:bracket1_end],
        transaction_id=transaction_id,
        kind=kind,
        message=message,
        statement=statement,
    )


def iter_logical_lines(lines: Iterable[str]) -> Iterator[Tuple[int, str]]:
    """Join continuation lines onto the entry they belong to.

    Yields (line number of the first physical line, logical line). A
    physical line that does not start with `<digits> [` continues the
    previous entry. Text before the first entry is yielded on its own so
    that parsing reports it as malformed.
    """
    current = None
    start = 0
    for line_no, line in enumerate(lines, start=1):
        line = line.rstrip("\r\n")
        if ENTRY_START_RE.match(line):
            if current is not None:
                yield start, current.rstrip("\n")
            current = line
            start = line_no
        elif current is not None:
            current += "\n" + line
        elif line.strip():
            yield line_no, line

    if current is not None:
        yield start, current.rstrip("\n")
