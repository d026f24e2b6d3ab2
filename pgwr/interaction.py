"""
Replayable statements: extraction from a process stream and the .cli
interaction file format.

Every statement is stored as four lines:

    P                                   (P = prepared, S = simple)
    UPDATE accounts SET balance = ? WHERE id = ?
    1700|23                             (type codes, may be empty)
    100.50|7                            (values, may be empty, null = NULL)

Backslash, newline and '|' inside a field are backslash escaped; an empty
string value is written as \\e.
"""
import logging
import os
import re
from dataclasses import dataclass, field
from typing import Iterable, Iterator, List, Optional

from pgwr.errors import MalformedInteractionFile
from pgwr.log_entry import LogEntry

logger = logging.getLogger(__name__)

PREPARED_FLAG = "P"
SIMPLE_FLAG = "S"
NULL_VALUE = "null"
EMPTY_VALUE = "\\e"
SEPARATOR = "|"
INTERACTION_SUFFIX = ".cli"

PARAMETER_RE = re.compile(r"\$\d+ = (?:'((?:[^']|'')*)'|NULL)")

_ESCAPED_RE = re.compile(r"\\(.)", re.S)
_UNESCAPE = {"n": "\n", "r": "\r"}


@dataclass
class ReplayableStatement:
    statement: str
    prepared: bool = False
    types: Optional[List[int]] = None
    parameters: List[Optional[str]] = field(default_factory=list)

    def __post_init__(self):
        if not self.types:
            self.types = None

    @property
    def verb(self) -> str:
        parts = self.statement.split(None, 1)
        return parts[0].upper() if parts else ""


def _words(statement: str) -> List[str]:
    return statement.strip().rstrip(";").upper().split()


def is_begin(statement: str) -> bool:
    """BEGIN or START TRANSACTION, with or without options."""
    words = _words(statement)
    return bool(words) and (words[0] == "BEGIN" or words[:2] == ["START", "TRANSACTION"])


def is_commit(statement: str) -> bool:
    """COMMIT or its END spelling."""
    words = _words(statement)
    return bool(words) and words[0] in ("COMMIT", "END")


def is_rollback(statement: str) -> bool:
    """ROLLBACK or ABORT; ROLLBACK TO SAVEPOINT keeps the transaction open."""
    words = _words(statement)
    return bool(words) and words[0] in ("ROLLBACK", "ABORT") and "TO" not in words[1:3]


def is_transaction_marker(statement: str) -> bool:
    """BEGIN, COMMIT or ROLLBACK in any of their spellings."""
    return is_begin(statement) or is_commit(statement) or is_rollback(statement)


def rewrite_transaction_marker(statement: str) -> Optional[str]:
    """Map two-phase commit statements onto plain transaction control.

    Returns None for statements that must not be replayed.
    """
    upper = statement.lstrip().upper()
    if upper.startswith("PREPARE TRANSACTION"):
        return None
    if upper.startswith("COMMIT PREPARED"):
        return "COMMIT"
    if upper.startswith("ROLLBACK PREPARED"):
        return "ROLLBACK"
    return statement


def split_parameters(text: str) -> List[Optional[str]]:
    """Values of a `DETAIL:  parameters:` text, as logged.

    "$1 = '1', $2 = NULL" -> ["1", None]
    """
    values: List[Optional[str]] = []
    for match in PARAMETER_RE.finditer(text):
        value = match.group(1)
        values.append(None if value is None else value.replace("''", "'"))
    return values


def fold_stream(stream: List[LogEntry]) -> Iterator[ReplayableStatement]:
    """Turn execute entries (plus their parameters) into statements."""
    bind_parameters = {}
    i = 0
    while i < len(stream):
        entry = stream[i]
        following = stream[i + 1] if i + 1 < len(stream) else None

        if entry.is_bind and following is not None and following.is_parameters:
            bind_parameters[entry.statement] = split_parameters(following.statement)
            i += 2
            continue

        if entry.is_statement:
            statement = rewrite_transaction_marker(entry.statement)
            if statement is not None and is_transaction_marker(statement):
                yield ReplayableStatement(statement=statement)
            i += 1
            continue

        if not entry.is_execute:
            i += 1
            continue

        parameters = None
        if following is not None and following.is_parameters:
            parameters = split_parameters(following.statement)
            i += 1
        elif entry.is_prepared:
            parameters = bind_parameters.pop(entry.statement, None)
            if parameters is not None:
                logger.debug("Connection %d: using bind parameters for %s",
                             entry.connection_id, entry.statement)
        i += 1

        statement = rewrite_transaction_marker(entry.statement)
        if statement is None:
            continue

        yield ReplayableStatement(
            statement=statement,
            prepared=entry.is_prepared if statement == entry.statement else False,
            parameters=list(parameters or []),
        )


def window_statements(statements: Iterable[ReplayableStatement], skip: int = 0,
                      max_statements: Optional[int] = None) -> Iterator[ReplayableStatement]:
    """Drop the first `skip` statements and keep at most `max_statements`.

    Neither boundary is placed inside an open transaction: skipping runs on
    until the transaction closes, and the cut is delayed the same way.
    """
    skipping = skip > 0
    skipped = 0
    kept = 0
    in_transaction = False

    for st in statements:
        if skipping:
            skipped += 1
            in_transaction = _track_transaction(st, in_transaction)
            if skipped >= skip and not in_transaction:
                skipping = False
            continue

        if max_statements is not None and kept >= max_statements and not in_transaction:
            break

        kept += 1
        in_transaction = _track_transaction(st, in_transaction)
        yield st


def _track_transaction(st: ReplayableStatement, in_transaction: bool) -> bool:
    if is_begin(st.statement):
        return True
    if is_commit(st.statement) or is_rollback(st.statement):
        return False
    return in_transaction


def extract_statements(stream: List[LogEntry], skip: int = 0,
                       max_statements: Optional[int] = None) -> List[ReplayableStatement]:
    """Ordered replayable statements of one connection."""
    return list(window_statements(fold_stream(stream), skip=skip, max_statements=max_statements))


# ============================================================================
# INTERACTION FILES
# ============================================================================

def _escape(text: str, separator: bool) -> str:
    text = text.replace("\\", "\\\\").replace("\n", "\\n").replace("\r", "\\r")
    if separator:
        text = text.replace(SEPARATOR, "\\" + SEPARATOR)
    return text


def _unescape(text: str) -> str:
    return _ESCAPED_RE.sub(lambda m: _UNESCAPE.get(m.group(1), m.group(1)), text)


def _split_field(line: str) -> List[str]:
    """Split on unescaped '|', leaving escapes in place."""
    if line == "":
        return []
    items = []
    buf = []
    i = 0
    while i < len(line):
        c = line[i]
        if c == "\\" and i + 1 < len(line):
            buf.append(line[i:i + 2])
            i += 2
            continue
        if c == SEPARATOR:
            items.append("".join(buf))
            buf = []
        else:
            buf.append(c)
        i += 1
    items.append("".join(buf))
    return items


def encode_value(value: Optional[str]) -> str:
    """One value field; None becomes the null sentinel."""
    if value is None:
        return NULL_VALUE
    if value == "":
        return EMPTY_VALUE
    return _escape(value, separator=True)


def decode_value(item: str) -> Optional[str]:
    """Inverse of encode_value."""
    if item == NULL_VALUE:
        return None
    if item == EMPTY_VALUE:
        return ""
    return _unescape(item)


def encode_statement(st: ReplayableStatement) -> List[str]:
    """The four lines of one statement."""
    return [
        PREPARED_FLAG if st.prepared else SIMPLE_FLAG,
        _escape(st.statement, separator=False),
        SEPARATOR.join(str(t) for t in st.types) if st.types else "",
        SEPARATOR.join(encode_value(v) for v in st.parameters),
    ]


def decode_statement(prepared: str, statement: str, types: str, parameters: str) -> ReplayableStatement:
    """Rebuild a statement from its four lines."""
    if prepared not in (PREPARED_FLAG, SIMPLE_FLAG):
        raise MalformedInteractionFile(f"bad prepared flag {prepared!r}")
    try:
        type_codes = [int(t) for t in types.split(SEPARATOR)] if types else None
    except ValueError:
        raise MalformedInteractionFile(f"bad type list {types!r}") from None

    return ReplayableStatement(
        statement=_unescape(statement),
        prepared=prepared == PREPARED_FLAG,
        types=type_codes,
        parameters=[decode_value(item) for item in _split_field(parameters)],
    )


def write_interactions(path: str, statements: List[ReplayableStatement]):
    """Write one connection's statements to a .cli file."""
    with open(path, "w", encoding="utf-8", newline="\n") as f:
        for st in statements:
            for line in encode_statement(st):
                f.write(line)
                f.write("\n")


def read_interactions(path: str) -> List[ReplayableStatement]:
    """Read a .cli file back into statements."""
    with open(path, "r", encoding="utf-8", newline="") as f:
        lines = f.read().split("\n")
    if lines and lines[-1] == "":
        lines.pop()

    if len(lines) % 4 != 0:
        raise MalformedInteractionFile(f"{path}: {len(lines)} lines is not a multiple of 4")

    statements = []
    for i in range(0, len(lines), 4):
        try:
            statements.append(decode_statement(*lines[i:i + 4]))
        except MalformedInteractionFile as e:
            raise MalformedInteractionFile(f"{path}:{i + 1}: {e}") from None
    return statements


def interaction_path(profile: str, connection_id: int) -> str:
    """<profile>/<connection id>.cli"""
    return os.path.join(profile, f"{connection_id}{INTERACTION_SUFFIX}")


def connection_id_of(path: str) -> int:
    """Connection id encoded in a .cli file name."""
    stem = os.path.basename(path)[:-len(INTERACTION_SUFFIX)]
    if not stem.isdigit():
        raise MalformedInteractionFile(f"{path}: file name is not a connection id")
    return int(stem)


def list_interaction_files(profile: str) -> List[str]:
    """The .cli files of a profile ordered by connection id."""
    paths = [os.path.join(profile, n) for n in os.listdir(profile) if n.endswith(INTERACTION_SUFFIX)]
    return sorted(paths, key=connection_id_of)
