"""
Structural analysis of captured statements.

Only enough of the SQL shape is recovered to tell, for every '?'
placeholder, which table and column it is bound against. The sqlparse
lexer supplies the tokens; they are folded into a handful of node kinds
(Name, Placeholder, Keyword, Punct, Other) and walked with an
AnalysisContext that lives for exactly one statement.
"""
import dataclasses
from dataclasses import dataclass
from typing import Dict, List, NamedTuple, Optional, Tuple, Union

from sqlparse import lexer
from sqlparse import tokens as T

CLAUSE_SET = "set"
CLAUSE_WHERE = "where"
CLAUSE_VALUES = "values"
CLAUSE_OTHER = "other"

# Words that shape the statement. Any other word, keyword or not, is taken
# as an identifier so that columns called "name", "type" or "value" work.
CLAUSE_KEYWORDS = frozenset((
    "SELECT", "INSERT", "UPDATE", "DELETE", "WITH", "FROM", "WHERE", "SET",
    "INTO", "VALUES", "AND", "OR", "NOT", "ON", "AS", "IN", "IS", "NULL",
    "NOT NULL", "BETWEEN", "EXISTS", "ORDER BY", "GROUP BY", "HAVING",
    "LIMIT", "OFFSET", "RETURNING", "USING", "DISTINCT", "ALL", "ANY", "SOME",
    "CASE", "WHEN", "THEN", "ELSE", "END", "UNION", "UNION ALL", "INTERSECT",
    "EXCEPT", "ASC", "DESC", "NULLS FIRST", "NULLS LAST", "TRUE", "FALSE",
    "ONLY", "DEFAULT", "CONFLICT", "DO", "NOTHING", "LATERAL", "ESCAPE",
    "INTERVAL", "RECURSIVE", "CURRENT_DATE", "CURRENT_TIME",
    "CURRENT_TIMESTAMP", "LOCALTIMESTAMP", "CURRENT_USER", "JOIN",
))

TABLE_INTRODUCERS = frozenset(("FROM", "JOIN", "UPDATE", "INTO", "USING"))
EXPRESSION_STARTS = frozenset((
    "WHERE", "ON", "HAVING", "AND", "OR", "WHEN", "THEN", "ELSE", "SET",
    "ORDER BY", "GROUP BY", "LIMIT", "OFFSET", "RETURNING", "SELECT",
    "VALUES", "UNION", "UNION ALL", "INTERSECT", "EXCEPT",
))
COMPARISON_OPERATORS = frozenset(("=", "<>", "!=", "<", ">", "<=", ">="))
CLAUSE_OF_KEYWORD = {
    "WHERE": CLAUSE_WHERE,
    "ON": CLAUSE_WHERE,
    "HAVING": CLAUSE_WHERE,
    "SET": CLAUSE_SET,
    "SELECT": CLAUSE_OTHER,
    "ORDER BY": CLAUSE_OTHER,
    "GROUP BY": CLAUSE_OTHER,
    "LIMIT": CLAUSE_OTHER,
    "OFFSET": CLAUSE_OTHER,
    "RETURNING": CLAUSE_OTHER,
}


# ============================================================================
# NODES
# ============================================================================

class Name(NamedTuple):
    parts: Tuple[str, ...]
    call: bool = False


class Placeholder(NamedTuple):
    index: int


class Keyword(NamedTuple):
    value: str


class Punct(NamedTuple):
    value: str


class Other(NamedTuple):
    value: str


Node = Union[Name, Placeholder, Keyword, Punct, Other]


def is_keyword(node: Optional[Node], value: str) -> bool:
    return isinstance(node, Keyword) and node.value == value


def is_punct(node: Optional[Node], value: str) -> bool:
    return isinstance(node, Punct) and node.value == value


def _normalize_keyword(value: str) -> str:
    value = " ".join(value.upper().split())
    return "JOIN" if value.endswith("JOIN") else value


def _is_clause_keyword(ttype, value: str) -> bool:
    if ttype in T.Keyword.DML or ttype in T.Keyword.CTE or ttype in T.Keyword.DDL:
        return True
    if ttype in T.Keyword or ttype in T.Name:
        return _normalize_keyword(value) in CLAUSE_KEYWORDS
    return False


def _word(ttype, value: str) -> Optional[str]:
    """The identifier text of a token, or None if it is not a word."""
    if ttype in T.Name.Placeholder or ttype in T.Keyword.TZCast:
        return None
    if ttype in T.Literal.String.Symbol:
        return value[1:-1].replace('""', '"')
    if _is_clause_keyword(ttype, value):
        return None
    if ttype in T.Name:
        return value.strip("`")
    if ttype in T.Keyword:
        return value
    return None


def _is_dot(token) -> bool:
    return token[0] in T.Punctuation and token[1] == "."


def tokenize(sql: str) -> List[Node]:
    """Lex a statement into analysis nodes."""
    raw = [
        (ttype, value) for ttype, value in lexer.tokenize(sql)
        if ttype not in T.Whitespace and ttype not in T.Comment
    ]

    nodes: List[Node] = []
    placeholders = 0
    i = 0
    while i < len(raw):
        ttype, value = raw[i]

        if ttype in T.Name.Placeholder:
            if value == "?":
                nodes.append(Placeholder(placeholders))
                placeholders += 1
            else:
                nodes.append(Other(value))
            i += 1
            continue

        word = _word(ttype, value)
        if word is not None:
            parts = [word]
            i += 1
            while i + 1 < len(raw) and _is_dot(raw[i]) and _word(*raw[i + 1]) is not None:
                parts.append(_word(*raw[i + 1]))
                i += 2
            if i + 1 < len(raw) and _is_dot(raw[i]) and raw[i + 1][0] in T.Wildcard:
                # t.* in a select list
                i += 2
                continue
            call = i < len(raw) and raw[i][0] in T.Punctuation and raw[i][1] == "("
            nodes.append(Name(tuple(parts), call))
            continue

        if _is_clause_keyword(ttype, value) or ttype in T.Keyword:
            nodes.append(Keyword(_normalize_keyword(value)))
        elif ttype in T.Punctuation:
            nodes.append(Punct(value))
        else:
            nodes.append(Other(value))
        i += 1

    return nodes


# ============================================================================
# ANALYSIS
# ============================================================================

@dataclass(frozen=True)
class Binding:
    """Where one placeholder points. position is 1-based.

    table is None when no table could be attached; candidates lists every
    table the statement mentions so the resolver can search them.
    ordinal is set instead of column for INSERT without a column list.
    """

    position: int
    table: Optional[str] = None
    column: Optional[str] = None
    clause: str = CLAUSE_OTHER
    candidates: Tuple[str, ...] = ()
    ordinal: Optional[int] = None

    @property
    def resolved(self) -> bool:
        return self.column is not None or (self.table is not None and self.ordinal is not None)


@dataclass
class Scope:
    depth: int
    clause: str = CLAUSE_OTHER
    current_table: Optional[str] = None


class AnalysisContext:
    """Alias map, table scopes and placeholder bindings of one statement."""

    def __init__(self, target_table: Optional[str] = None, fixed_table: bool = False):
        self.aliases: Dict[str, str] = {}
        self.tables: List[str] = []
        self.scopes: List[Scope] = [Scope(depth=0)]
        self.target_table = target_table
        self.fixed_table = fixed_table
        self.clause = CLAUSE_OTHER
        self.last_column: Optional[Tuple[Optional[str], str]] = None
        self.row: Optional[List[Tuple[Optional[str], str]]] = None
        self.pending: List[Tuple[int, str]] = []
        self.bindings: Dict[int, Binding] = {}

    @property
    def scope(self) -> Scope:
        return self.scopes[-1]

    def push_scope(self, depth: int):
        self.scopes.append(Scope(depth=depth, clause=self.clause))
        self.last_column = None

    def pop_scope(self, depth: int):
        if len(self.scopes) > 1 and self.scope.depth == depth:
            self.clause = self.scopes.pop().clause

    def add_table(self, name: str, alias: Optional[str] = None):
        table = name.lower()
        self.scope.current_table = table
        if table not in self.tables:
            self.tables.append(table)
        if alias:
            self.aliases[alias.lower()] = table

    def set_clause(self, clause: str):
        self.clause = clause

    def reset(self):
        """Start a new predicate; the previous column no longer applies."""
        self.last_column = None
        self.row = None

    def resolve_table(self, qualifier: Optional[str]) -> Optional[str]:
        if self.fixed_table:
            return self.target_table
        if qualifier is not None:
            qualifier = qualifier.lower()
            return self.aliases.get(qualifier, qualifier)
        for scope in reversed(self.scopes):
            if scope is self.scopes[0] and self.target_table is not None:
                return self.target_table
            if scope.current_table is not None:
                return scope.current_table
        return None

    def column(self, qualifier: Optional[str], name: str):
        table = self.resolve_table(qualifier)
        column = name.lower()
        self.last_column = (table, column)
        for index, clause in self.pending:
            self.bind(index, table, column, clause)
        self.pending = []

    def start_row(self, names: List[Tuple[Optional[str], str]]):
        """Columns of a row constructor; later tuples bind by position."""
        self.row = [(self.resolve_table(qualifier), name.lower()) for qualifier, name in names]
        self.last_column = None

    def row_placeholder(self, position: int, index: int):
        table, column = self.row[position]
        self.bind(index, table, column, self.clause)

    def placeholder(self, index: int):
        if self.last_column is None:
            self.pending.append((index, self.clause))
        else:
            table, column = self.last_column
            self.bind(index, table, column, self.clause)

    def bind(self, index: int, table: Optional[str], column: Optional[str], clause: str,
             ordinal: Optional[int] = None):
        self.bindings[index] = Binding(
            position=index + 1,
            table=table,
            column=column,
            clause=clause,
            ordinal=ordinal,
        )

    def results(self, count: int) -> List[Binding]:
        candidates = tuple(self.tables)
        return [
            dataclasses.replace(self.bindings.get(i, Binding(position=i + 1)), candidates=candidates)
            for i in range(count)
        ]


def _split_name(name: Name) -> Tuple[Optional[str], str]:
    if len(name.parts) >= 2:
        return name.parts[-2], name.parts[-1]
    return None, name.parts[0]


def _read_table_ref(nodes: List[Node], i: int, ctx: AnalysisContext) -> int:
    """Consume `table [AS] [alias]` starting at nodes[i]; return the next index."""
    table = nodes[i].parts[-1]
    i += 1
    alias = None
    if i < len(nodes) and is_keyword(nodes[i], "AS"):
        i += 1
    if i < len(nodes) and isinstance(nodes[i], Name) and not nodes[i].call:
        alias = nodes[i].parts[-1]
        i += 1
    ctx.add_table(table, alias)
    return i


def walk(nodes: List[Node], ctx: AnalysisContext, start: int = 0):
    """Bind placeholders to the column they are compared with."""
    expect_table = False
    between = False
    skip_name = False
    depth = 0

    i = start
    while i < len(nodes):
        node = nodes[i]

        if isinstance(node, Keyword):
            kw = node.value
            skip_name = kw == "AS"
            if kw in TABLE_INTRODUCERS:
                expect_table = True
            elif kw == "BETWEEN":
                between = True
            elif kw == "AND" and between:
                between = False
            elif kw in EXPRESSION_STARTS:
                expect_table = False
                ctx.reset()
                if kw in CLAUSE_OF_KEYWORD:
                    ctx.set_clause(CLAUSE_OF_KEYWORD[kw])
            i += 1

        elif isinstance(node, Punct):
            skip_name = node.value == "::"
            if node.value == "(" and not expect_table:
                columns = _row_columns(nodes, i)
                if columns is not None:
                    ctx.start_row(columns)
                    i = _matching_paren(nodes, i) + 1
                    continue
                if ctx.row is not None:
                    values = _row_values(nodes, i, len(ctx.row))
                    if values is not None:
                        for position, item in enumerate(values):
                            for n in item:
                                if isinstance(n, Placeholder):
                                    ctx.row_placeholder(position, n.index)
                        i = _matching_paren(nodes, i) + 1
                        continue
            if node.value == "(":
                depth += 1
                following = nodes[i + 1] if i + 1 < len(nodes) else None
                if is_keyword(following, "SELECT") or is_keyword(following, "WITH"):
                    ctx.push_scope(depth)
                expect_table = False
            elif node.value == ")":
                ctx.pop_scope(depth)
                depth -= 1
            i += 1

        elif isinstance(node, Name):
            if skip_name or node.call:
                skip_name = False
                i += 1
            elif expect_table:
                i = _read_table_ref(nodes, i, ctx)
            else:
                qualifier, column = _split_name(node)
                ctx.column(qualifier, column)
                i += 1

        elif isinstance(node, Placeholder):
            ctx.placeholder(node.index)
            i += 1

        else:
            i += 1


def _matching_paren(nodes: List[Node], i: int) -> int:
    depth = 0
    for j in range(i, len(nodes)):
        if is_punct(nodes[j], "("):
            depth += 1
        elif is_punct(nodes[j], ")"):
            depth -= 1
            if depth == 0:
                return j
    return len(nodes) - 1


def _tuple_items(nodes: List[Node], open_index: int, close_index: int) -> List[List[Node]]:
    items: List[List[Node]] = [[]]
    depth = 0
    for node in nodes[open_index + 1:close_index]:
        if is_punct(node, "("):
            depth += 1
        elif is_punct(node, ")"):
            depth -= 1
        if is_punct(node, ",") and depth == 0:
            items.append([])
        else:
            items[-1].append(node)
    return items


def _row_columns(nodes: List[Node], i: int) -> Optional[List[Tuple[Optional[str], str]]]:
    """Column names of a row constructor `(a, b) <op>` opening at nodes[i]."""
    previous = nodes[i - 1] if i > 0 else None
    if isinstance(previous, Name) and previous.call:
        return None
    close = _matching_paren(nodes, i)
    items = _tuple_items(nodes, i, close)
    if len(items) < 2:
        return None
    if not all(len(item) == 1 and isinstance(item[0], Name) and not item[0].call for item in items):
        return None
    following = nodes[close + 1] if close + 1 < len(nodes) else None
    if not (is_keyword(following, "IN") or is_keyword(following, "NOT")
            or (isinstance(following, Other) and following.value in COMPARISON_OPERATORS)):
        return None
    return [_split_name(item[0]) for item in items]


def _row_values(nodes: List[Node], i: int, width: int) -> Optional[List[List[Node]]]:
    """Items of a flat `(?, ?)` tuple of the given width opening at nodes[i]."""
    following = nodes[i + 1] if i + 1 < len(nodes) else None
    if is_keyword(following, "SELECT") or is_keyword(following, "WITH"):
        return None
    close = _matching_paren(nodes, i)
    items = _tuple_items(nodes, i, close)
    if len(items) != width or any(is_punct(n, "(") for item in items for n in item):
        return None
    return items


def _analyze_insert(nodes: List[Node], ctx: AnalysisContext):
    i = 0
    while i < len(nodes) and not is_keyword(nodes[i], "INTO"):
        i += 1
    i += 1
    if i >= len(nodes) or not isinstance(nodes[i], Name):
        walk(nodes, ctx)
        return

    table = nodes[i].parts[-1].lower()
    i += 1
    alias = None
    if i + 1 < len(nodes) and is_keyword(nodes[i], "AS") and isinstance(nodes[i + 1], Name):
        alias = nodes[i + 1].parts[-1]
        i += 2
    ctx.add_table(table, alias)

    columns: List[str] = []
    if i < len(nodes) and is_punct(nodes[i], "("):
        close = _matching_paren(nodes, i)
        columns = [n.parts[-1].lower() for n in nodes[i + 1:close] if isinstance(n, Name)]
        i = close + 1

    if i >= len(nodes) or not is_keyword(nodes[i], "VALUES"):
        walk(nodes, ctx, start=i)
        return

    i += 1
    while i < len(nodes) and is_punct(nodes[i], "("):
        close = _matching_paren(nodes, i)
        for position, item in enumerate(_tuple_items(nodes, i, close)):
            for node in item:
                if not isinstance(node, Placeholder):
                    continue
                if columns:
                    column = columns[position] if position < len(columns) else None
                    ctx.bind(node.index, table, column, CLAUSE_VALUES)
                else:
                    ctx.bind(node.index, table, None, CLAUSE_VALUES, ordinal=position)
        i = close + 1
        if i + 1 < len(nodes) and is_punct(nodes[i], ",") and is_punct(nodes[i + 1], "("):
            i += 1

    walk(nodes, ctx, start=i)


def _target_after(nodes: List[Node], keyword: str) -> Tuple[Optional[str], Optional[str]]:
    """Table and alias following the first occurrence of keyword."""
    for i, node in enumerate(nodes):
        if not is_keyword(node, keyword):
            continue
        j = i + 1
        if j < len(nodes) and is_keyword(nodes[j], "ONLY"):
            j += 1
        if j < len(nodes) and isinstance(nodes[j], Name):
            alias = None
            k = j + 1
            if k < len(nodes) and is_keyword(nodes[k], "AS"):
                k += 1
            if k < len(nodes) and isinstance(nodes[k], Name) and not nodes[k].call:
                alias = nodes[k].parts[-1]
            return nodes[j].parts[-1].lower(), alias
        return None, None
    return None, None


def statement_kind(nodes: List[Node]) -> str:
    for node in nodes:
        if isinstance(node, Keyword):
            return node.value
        if not is_punct(node, "("):
            return ""
    return ""


def analyze(sql: str) -> List[Binding]:
    """One Binding per '?' in sql, in textual order."""
    nodes = tokenize(sql)
    count = sum(1 for n in nodes if isinstance(n, Placeholder))
    kind = statement_kind(nodes)

    if kind == "INSERT":
        ctx = AnalysisContext()
        _analyze_insert(nodes, ctx)
    elif kind == "UPDATE":
        table, alias = _target_after(nodes, "UPDATE")
        ctx = AnalysisContext(target_table=table)
        if table is not None:
            ctx.add_table(table, alias)
        walk(nodes, ctx)
    elif kind == "DELETE":
        table, alias = _target_after(nodes, "FROM")
        ctx = AnalysisContext(target_table=table, fixed_table=table is not None)
        if table is not None:
            ctx.add_table(table, alias)
        walk(nodes, ctx)
    elif kind in ("SELECT", "WITH"):
        ctx = AnalysisContext()
        walk(nodes, ctx)
    else:
        ctx = AnalysisContext()

    return ctx.results(count)
