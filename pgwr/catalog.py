"""
Column type lookup: the catalog, its cache and the type resolver that
combines them with the structural analysis of a statement.
"""
import abc
import logging
from typing import Dict, List, Optional, Tuple

from pgwr.errors import ParameterCountMismatch, ReplayError, UnresolvedParameterType
from pgwr.interaction import ReplayableStatement
from pgwr.pgtypes import UNKNOWN
from pgwr.sql_analysis import Binding, analyze

logger = logging.getLogger(__name__)

COLUMNS_SQL = """
SELECT a.attname, a.atttypid
  FROM pg_catalog.pg_attribute a
  JOIN pg_catalog.pg_class c ON c.oid = a.attrelid
 WHERE c.relname = %s
   AND pg_catalog.pg_table_is_visible(c.oid)
   AND a.attnum > 0
   AND NOT a.attisdropped
 ORDER BY a.attnum
"""


class Catalog(abc.ABC):
    """Source of column types for the resolver."""

    @abc.abstractmethod
    def columns(self, table: str) -> List[Tuple[str, int]]:
        """(column name, type code) pairs of a table, in column order."""


class PostgresCatalog(Catalog):
    """Catalog backed by pg_attribute on a live psycopg2 connection."""

    def __init__(self, conn):
        self.conn = conn

    def columns(self, table: str) -> List[Tuple[str, int]]:
        with self.conn.cursor() as cur:
            cur.execute(COLUMNS_SQL, (table.lower(),))
            return [(name, int(type_oid)) for name, type_oid in cur.fetchall()]


class ColumnTypeCache:
    """table -> column -> type code; names are stored lower case."""

    def __init__(self):
        self._tables: Dict[str, Dict[str, int]] = {}

    def __contains__(self, table: str) -> bool:
        return table.lower() in self._tables

    def __len__(self) -> int:
        return len(self._tables)

    def put(self, table: str, columns: List[Tuple[str, int]]):
        self._tables[table.lower()] = {name.lower(): code for name, code in columns}

    def table(self, table: str) -> Dict[str, int]:
        return self._tables.get(table.lower(), {})

    def get(self, table: str, column: str) -> Optional[int]:
        return self.table(table).get(column.lower())

    def column_at(self, table: str, ordinal: int) -> Optional[str]:
        names = list(self.table(table))
        return names[ordinal] if 0 <= ordinal < len(names) else None


class TypeResolver:
    """Resolves placeholder types of captured statements.

    Diagnostics (unresolved parameters, count mismatches) are collected in
    `diagnostics` and logged; they never stop the capture. A statement seen
    again with the same number of values reuses its earlier types, so each
    distinct statement is diagnosed once.
    """

    def __init__(self, catalog: Catalog, cache: Optional[ColumnTypeCache] = None):
        self.catalog = catalog
        self.cache = cache if cache is not None else ColumnTypeCache()
        self.diagnostics: List[ReplayError] = []
        self.catalog_queries = 0
        self._statements: Dict[Tuple[str, int], List[int]] = {}

    def table_columns(self, table: str) -> Dict[str, int]:
        if table not in self.cache:
            self.catalog_queries += 1
            self.cache.put(table, self.catalog.columns(table))
            logger.debug("Cached %d columns for table %s", len(self.cache.table(table)), table)
        return self.cache.table(table)

    def lookup(self, binding: Binding) -> Optional[int]:
        """Type code of a binding, trying its table first and then the others."""
        if not binding.resolved:
            return None

        tables = [t for t in binding.candidates if t != binding.table]
        if binding.table is not None:
            tables.insert(0, binding.table)

        for table in tables:
            columns = self.table_columns(table)
            if binding.column is not None:
                code = columns.get(binding.column)
            else:
                name = self.cache.column_at(table, binding.ordinal)
                code = columns.get(name) if name is not None else None
            if code is not None:
                return code
        return None

    def parameter_types(self, statement: str, expected: int) -> List[int]:
        """One type code per placeholder; UNKNOWN where nothing was found."""
        types = []
        unresolved = 0
        for binding in analyze(statement):
            code = self.lookup(binding)
            if code is None:
                unresolved += 1
                self._report(UnresolvedParameterType(statement, binding.position, binding.table, binding.column))
                code = UNKNOWN
            types.append(code)

        resolved = len(types) - unresolved
        if resolved != expected:
            self._report(ParameterCountMismatch(statement, expected, resolved))
        return types

    def resolve(self, st: ReplayableStatement) -> ReplayableStatement:
        """Fill in st.types for a prepared statement with captured values."""
        if st.prepared and st.parameters:
            key = (st.statement, len(st.parameters))
            if key not in self._statements:
                self._statements[key] = self.parameter_types(*key)
            st.types = list(self._statements[key])
        return st

    def _report(self, diagnostic: ReplayError):
        self.diagnostics.append(diagnostic)
        logger.warning("%s", diagnostic)
