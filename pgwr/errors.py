"""Error taxonomy for capture and replay.

Ingestion errors (MalformedLogLine, ConfigurationError) abort the run.
UnresolvedParameterType and ParameterCountMismatch are recorded as
diagnostics and never raised out of the type resolver. Replay errors are
kept on the client that hit them.
"""
from typing import Optional


class ReplayError(Exception):
    """Base class for all pgwr errors."""


class ConfigurationError(ReplayError):
    """Missing or invalid connection settings."""


class MalformedLogLine(ReplayError):
    """A log line does not have the `<conn> [<ts>] [<tx>] <text>` shape."""

    def __init__(self, line: str, reason: str, line_no: Optional[int] = None):
        self.line = line
        self.reason = reason
        self.line_no = line_no
        where = f"line {line_no}: " if line_no is not None else ""
        super().__init__(f"{where}{reason}: {line[:120]!r}")


class MalformedInteractionFile(ReplayError):
    """A persisted .cli file is truncated or has a bad field."""


class UnresolvedParameterType(ReplayError):
    """No table/column, or no catalog type, could be found for a placeholder."""

    def __init__(self, statement: str, position: int, table: Optional[str] = None,
                 column: Optional[str] = None):
        self.statement = statement
        self.position = position
        self.table = table
        self.column = column
        target = f"{table}.{column}" if table and column else (column or "no column")
        super().__init__(f"parameter {position} ({target}) unresolved in: {statement}")


class ParameterCountMismatch(ReplayError):
    """The statement has a different number of placeholders than captured values."""

    def __init__(self, statement: str, expected: int, resolved: int):
        self.statement = statement
        self.expected = expected
        self.resolved = resolved
        super().__init__(
            f"incomplete parameter resolution ({resolved}/{expected}) for query: {statement}"
        )


class ValueConversionError(ReplayError):
    """A captured value cannot be converted to its resolved type."""

    def __init__(self, value: str, type_code: int, reason: str = ""):
        self.value = value
        self.type_code = type_code
        detail = f": {reason}" if reason else ""
        super().__init__(f"cannot convert {value!r} to type {type_code}{detail}")


class ReplayConnectionError(ReplayError):
    """A client could not open its database connection."""


class ReplayTimeout(ReplayError):
    """The coordinator gave up waiting for the clients."""
