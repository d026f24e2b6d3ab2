"""
Rebuild per-connection statement streams from a server log.
"""
import logging
import os
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, Iterable, List

from pgwr.log_entry import LogEntry, iter_logical_lines, parse_log_line

logger = logging.getLogger(__name__)

ProcessStream = List[LogEntry]

RAW_DIRECTORY = "raw"


@dataclass
class CapturedLog:
    """Entries and (optionally) the untouched lines, keyed by connection id."""

    streams: Dict[int, ProcessStream] = field(default_factory=dict)
    raw: Dict[int, List[str]] = field(default_factory=dict)

    @property
    def connection_ids(self) -> List[int]:
        return sorted(self.streams)


def read_streams(lines: Iterable[str], keep_raw: bool = True) -> CapturedLog:
    """Group log entries by connection id, keeping file order.

    A malformed line raises MalformedLogLine and nothing is returned.
    """
    streams: Dict[int, ProcessStream] = defaultdict(list)
    raw: Dict[int, List[str]] = defaultdict(list)
    count = 0

    for line_no, line in iter_logical_lines(lines):
        entry = parse_log_line(line, line_no)
        streams[entry.connection_id].append(entry)
        if keep_raw:
            raw[entry.connection_id].append(line)
        count += 1

    logger.debug("Read %d entries for %d connections", count, len(streams))
    return CapturedLog(streams=dict(streams), raw=dict(raw))


def load_streams(path: str, keep_raw: bool = True) -> CapturedLog:
    """Read a log file from disk, see read_streams."""
    with open(path, "r", encoding="utf-8", errors="replace") as f:
        return read_streams(f, keep_raw=keep_raw)


def write_raw_logs(captured: CapturedLog, profile: str) -> List[str]:
    """Write each connection's original lines to <profile>/raw/<conn>.log."""
    directory = os.path.join(profile, RAW_DIRECTORY)
    os.makedirs(directory, exist_ok=True)

    written = []
    for connection_id in sorted(captured.raw):
        path = os.path.join(directory, f"{connection_id}.log")
        with open(path, "w", encoding="utf-8") as f:
            for line in captured.raw[connection_id]:
                f.write(line)
                f.write("\n")
        written.append(path)
    return written


def summarize_sessions(captured: CapturedLog) -> Dict[int, Dict[str, int]]:
    """Entry counts per connection, used by `pgwr sessions`."""
    sessions: Dict[int, Dict[str, int]] = {}
    for connection_id in captured.connection_ids:
        stream = captured.streams[connection_id]
        sessions[connection_id] = {
            "entries": len(stream),
            "executes": sum(1 for e in stream if e.is_execute),
            "prepared": sum(1 for e in stream if e.is_execute and e.is_prepared),
        }
    return sessions
