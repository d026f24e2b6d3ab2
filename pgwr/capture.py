"""
Offline capture pass: server log -> profile directory.

The whole log is parsed and every statement resolved before anything is
written, so a malformed log leaves no partial profile behind.
"""
import logging
import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from pgwr.catalog import TypeResolver
from pgwr.errors import ReplayError
from pgwr.interaction import ReplayableStatement, extract_statements, interaction_path, write_interactions
from pgwr.streams import load_streams, write_raw_logs

logger = logging.getLogger(__name__)


@dataclass
class CaptureResult:
    profile: str
    statements: Dict[int, int] = field(default_factory=dict)
    interaction_files: List[str] = field(default_factory=list)
    raw_files: List[str] = field(default_factory=list)
    diagnostics: List[ReplayError] = field(default_factory=list)

    @property
    def total_statements(self) -> int:
        return sum(self.statements.values())


def default_profile(log_path: str) -> str:
    """The log path without its extension."""
    root, _ = os.path.splitext(log_path)
    return root


def capture_profile(log_path: str, resolver: TypeResolver, profile: Optional[str] = None,
                    skip: int = 0, max_statements: Optional[int] = None,
                    keep_raw: bool = True) -> CaptureResult:
    profile = profile or default_profile(log_path)
    captured = load_streams(log_path, keep_raw=keep_raw)
    logger.info("Read %d connections from %s", len(captured.streams), log_path)

    interactions: Dict[int, List[ReplayableStatement]] = {}
    for connection_id in captured.connection_ids:
        statements = extract_statements(captured.streams[connection_id], skip=skip,
                                        max_statements=max_statements)
        if not statements:
            logger.debug("Connection %d has no statements to replay", connection_id)
            continue
        for st in statements:
            resolver.resolve(st)
        interactions[connection_id] = statements

    os.makedirs(profile, exist_ok=True)
    result = CaptureResult(profile=profile, diagnostics=list(resolver.diagnostics))
    for connection_id, statements in interactions.items():
        path = interaction_path(profile, connection_id)
        write_interactions(path, statements)
        result.statements[connection_id] = len(statements)
        result.interaction_files.append(path)

    if keep_raw:
        result.raw_files = write_raw_logs(captured, profile)

    logger.info("Wrote %d statements for %d connections to %s",
                result.total_statements, len(interactions), profile)
    return result
