"""
Clause Parser

Splits a single SELECT statement into its clauses (SELECT list, FROM, JOINs,
WHERE, GROUP BY, HAVING, ORDER BY, LIMIT, OFFSET).

Each clause is kept twice: as the verbatim substring of the user's query
(shown to the user as-is) and as structured operands for the planner.
Clause keywords are only recognized at parenthesis depth 0, so subqueries
inside predicates never split the statement.
"""
import re
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

import sqlparse
from sqlparse import tokens as T

from queryflow.errors import SQLParseError
from queryflow.logs import DebugLogger


# ============================================================================
# Constants
# ============================================================================

KEYWORD_SELECT = 'SELECT'
KEYWORD_DISTINCT = 'DISTINCT'
KEYWORD_FROM = 'FROM'
KEYWORD_JOIN = 'JOIN'
KEYWORD_ON = 'ON'
KEYWORD_USING = 'USING'
KEYWORD_WHERE = 'WHERE'
KEYWORD_GROUP_BY = 'GROUP BY'
KEYWORD_HAVING = 'HAVING'
KEYWORD_ORDER_BY = 'ORDER BY'
KEYWORD_LIMIT = 'LIMIT'
KEYWORD_OFFSET = 'OFFSET'
KEYWORD_OVER = 'OVER'

# Clauses that start a new top-level segment
MAJOR_KEYWORDS = {
    KEYWORD_FROM, KEYWORD_WHERE, KEYWORD_GROUP_BY, KEYWORD_HAVING,
    KEYWORD_ORDER_BY, KEYWORD_LIMIT, KEYWORD_OFFSET,
}
SET_OPERATIONS = {'UNION', 'UNION ALL', 'INTERSECT', 'EXCEPT', 'MINUS'}
UNSUPPORTED_KEYWORDS = {'WINDOW', 'QUALIFY'}
JOINS_WITHOUT_CONDITION = {'CROSS', 'NATURAL'}

# Words that can end an expression but are never an implicit alias
_NON_ALIAS_WORDS = {
    'END', 'NULL', 'TRUE', 'FALSE', 'ASC', 'DESC', 'AND', 'OR', 'NOT',
    'IS', 'IN', 'LIKE', 'BETWEEN', 'THEN', 'ELSE', 'WHEN', 'CASE', 'FROM',
}

_IDENT = r'(?:"(?:[^"]|"")+"|`[^`]+`|[A-Za-z_][\w$]*)'
_RE_TABLE_REF = re.compile(
    rf'^(?P<name>{_IDENT}(?:\s*\.\s*{_IDENT})*)(?:\s+(?:AS\s+)?(?P<alias>{_IDENT}))?$',
    re.IGNORECASE | re.DOTALL,
)
_RE_EXPLICIT_ALIAS = re.compile(rf'^(?P<expr>.+?)\s+AS\s+(?P<alias>{_IDENT})$', re.IGNORECASE | re.DOTALL)
_RE_IMPLICIT_ALIAS = re.compile(rf'^(?P<expr>.*[\w)"\'\]])\s+(?P<alias>{_IDENT})$', re.DOTALL)
_RE_SORT_SUFFIX = re.compile(
    r'^(?P<expr>.+?)(?:\s+(?P<direction>ASC|DESC))?(?:\s+NULLS\s+(?P<nulls>FIRST|LAST))?$',
    re.IGNORECASE | re.DOTALL,
)
_RE_COUNT = re.compile(r'^(?P<count>\d+)(?:\s+ROWS?)?$', re.IGNORECASE)
_RE_ORDINAL = re.compile(r'^\d+$')
_RE_DISTINCT_ON = re.compile(r'^ON\b', re.IGNORECASE)


# ============================================================================
# Structured query
# ============================================================================

@dataclass(frozen=True)
class TableRef:
    """A table in FROM or JOIN, with its optional alias."""
    name: str
    alias: Optional[str] = None

    @property
    def qualifier(self) -> str:
        """The name other clauses use to refer to this table."""
        if self.alias:
            return self.alias
        return split_qualified_name(self.name)[-1]

    @property
    def display_qualifier(self) -> str:
        return unquote_identifier(self.qualifier)


@dataclass(frozen=True)
class SelectItem:
    text: str
    expression: str
    alias: Optional[str] = None

    @property
    def is_star(self) -> bool:
        return self.expression == '*' or self.expression.endswith('.*')


@dataclass(frozen=True)
class SelectClause:
    clause_text: str
    list_text: str
    items: Tuple[SelectItem, ...]
    distinct: bool = False
    distinct_text: Optional[str] = None


@dataclass(frozen=True)
class FromClause:
    clause_text: str
    body: str
    sources: Tuple[TableRef, ...]


@dataclass(frozen=True)
class JoinClause:
    clause_text: str
    join_type: str
    table: TableRef
    condition: Optional[str] = None
    using: Optional[str] = None


@dataclass(frozen=True)
class PredicateClause:
    clause_text: str
    predicate: str


@dataclass(frozen=True)
class GroupByClause:
    clause_text: str
    body: str
    columns: Tuple[str, ...]


@dataclass(frozen=True)
class SortKey:
    expression: str
    descending: bool = False
    nulls_first: Optional[bool] = None

    @property
    def is_ordinal(self) -> bool:
        return bool(_RE_ORDINAL.match(self.expression))


@dataclass(frozen=True)
class OrderByClause:
    clause_text: str
    body: str
    keys: Tuple[SortKey, ...]


@dataclass(frozen=True)
class CountClause:
    clause_text: str
    count: int


@dataclass(frozen=True)
class StructuredQuery:
    """Parsed SELECT statement; absent clauses are None."""
    text: str
    select: SelectClause
    from_clause: FromClause
    joins: Tuple[JoinClause, ...] = ()
    where: Optional[PredicateClause] = None
    group_by: Optional[GroupByClause] = None
    having: Optional[PredicateClause] = None
    order_by: Optional[OrderByClause] = None
    limit: Optional[CountClause] = None
    offset: Optional[CountClause] = None

    @property
    def sources(self) -> List[TableRef]:
        return list(self.from_clause.sources) + [join.table for join in self.joins]

    def source_sql(self, join_count: Optional[int] = None) -> str:
        """FROM clause plus the first `join_count` JOIN clauses, verbatim."""
        joins = self.joins if join_count is None else self.joins[:join_count]
        return '\n'.join([self.from_clause.clause_text] + [join.clause_text for join in joins])


# ============================================================================
# Text helpers
# ============================================================================

def split_top_level(text: str, separator: str = ',') -> List[str]:
    """Split by `separator`, respecting parentheses and quotes."""
    parts = []
    current = []
    depth = 0
    quote_char = None

    for char in text:
        if quote_char:
            current.append(char)
            if char == quote_char:
                quote_char = None
            continue
        if char in ("'", '"', '`'):
            quote_char = char
        elif char == '(':
            depth += 1
        elif char == ')':
            depth -= 1
        elif char == separator and depth == 0:
            parts.append(''.join(current).strip())
            current = []
            continue
        current.append(char)

    tail = ''.join(current).strip()
    if tail or parts:
        parts.append(tail)
    return parts


def split_qualified_name(name: str) -> List[str]:
    return [part.strip() for part in split_top_level(name, '.')]


def unquote_identifier(value: str) -> str:
    """Remove identifier quotes: "My Col" -> My Col."""
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ('"', '`'):
        return value[1:-1].replace('""', '"')
    return value


def is_balanced(text: str) -> bool:
    depth = 0
    quote_char = None
    for char in text:
        if quote_char:
            if char == quote_char:
                quote_char = None
            continue
        if char in ("'", '"', '`'):
            quote_char = char
        elif char == '(':
            depth += 1
        elif char == ')':
            depth -= 1
            if depth < 0:
                return False
    return depth == 0 and quote_char is None


def normalize_identifier(value: str) -> str:
    """Key used for case-insensitive identifier comparisons."""
    return unquote_identifier(value).lower()


# ============================================================================
# Parser
# ============================================================================

@dataclass
class _Marker:
    keyword: str
    start: int
    keyword_end: int
    end: int = -1
    sub_keyword: Optional[str] = None
    sub_start: int = -1
    sub_end: int = -1


@dataclass
class _Scan:
    markers: List[_Marker] = field(default_factory=list)
    distinct_span: Optional[Tuple[int, int]] = None


class ClauseParser:
    """Parser for a single SELECT statement. Build a fresh one per query."""

    def __init__(self):
        self.text = ''

    def parse(self, sql: str) -> StructuredQuery:
        """Parse SQL text into a StructuredQuery or raise SQLParseError."""
        if sql is None or not sql.strip():
            raise SQLParseError("Query text is empty")

        statement = self._single_statement(sql)
        self.text = str(statement)
        DebugLogger.log("Parsing statement: {}", self.text.strip()[:200])

        first = statement.token_first(skip_cm=True)
        if first is not None and first.ttype in T.Keyword.CTE:
            raise SQLParseError("Common table expressions (WITH ...) are not supported")
        if statement.get_type() != KEYWORD_SELECT:
            keyword = first.value.upper() if first is not None else 'UNKNOWN'
            raise SQLParseError(f"Only SELECT statements can be visualized, got {keyword}")

        scan = self._scan(statement)
        return self._build(scan)

    # ------------------------------------------------------------------
    # Statement handling
    # ------------------------------------------------------------------

    def _single_statement(self, sql: str):
        statements = [stmt for stmt in sqlparse.parse(sql) if self._has_content(stmt)]
        if not statements:
            raise SQLParseError("No SQL statement found")
        if len(statements) > 1:
            raise SQLParseError(f"Expected a single SELECT statement, found {len(statements)} statements")
        return statements[0]

    def _has_content(self, statement) -> bool:
        for token in statement.flatten():
            if token.is_whitespace or token.ttype in T.Comment:
                continue
            if token.ttype is T.Punctuation and token.value == ';':
                continue
            return True
        return False

    def _scan(self, statement) -> _Scan:
        """Walk the flattened tokens and record clause keyword positions."""
        scan = _Scan()
        pos = 0
        depth = 0
        last_meaningful_end = 0
        select_seen = False
        from_seen = False
        expect_distinct = False

        for token in statement.flatten():
            start = pos
            pos += len(token.value)

            if token.is_whitespace or token.ttype in T.Comment:
                continue

            if token.ttype is T.Punctuation:
                if token.value == '(':
                    depth += 1
                elif token.value == ')':
                    depth -= 1
                elif token.value == ';' and depth == 0:
                    # Anything after the terminating semicolon is whitespace or comments
                    break
                last_meaningful_end = pos
                expect_distinct = False
                continue

            if token.is_keyword and token.value.upper() == KEYWORD_OVER and self._in_window_scope(scan):
                raise SQLParseError("Window functions (OVER ...) are not supported")

            if depth != 0 or not token.is_keyword:
                last_meaningful_end = pos
                expect_distinct = False
                continue

            keyword = ' '.join(token.value.upper().split())

            if keyword == KEYWORD_SELECT and not select_seen:
                select_seen = True
                expect_distinct = True
                self._open(scan, keyword, start, pos, last_meaningful_end)
            elif keyword == KEYWORD_DISTINCT and expect_distinct:
                scan.distinct_span = (start, pos)
                scan.markers[-1].keyword_end = pos
                expect_distinct = False
            elif keyword == 'ALL' and expect_distinct:
                scan.markers[-1].keyword_end = pos
                expect_distinct = False
            elif keyword == KEYWORD_FROM and select_seen and not from_seen:
                from_seen = True
                self._open(scan, keyword, start, pos, last_meaningful_end)
            elif keyword.endswith(KEYWORD_JOIN) and from_seen:
                self._open(scan, keyword, start, pos, last_meaningful_end)
            elif keyword in (KEYWORD_ON, KEYWORD_USING) and self._awaiting_join_condition(scan):
                marker = scan.markers[-1]
                marker.sub_keyword = keyword
                marker.sub_start = start
                marker.sub_end = pos
            elif keyword in MAJOR_KEYWORDS and keyword != KEYWORD_FROM:
                self._open(scan, keyword, start, pos, last_meaningful_end)
            elif keyword in SET_OPERATIONS:
                raise SQLParseError(f"Set operations ({keyword}) are not supported")
            elif keyword in UNSUPPORTED_KEYWORDS:
                raise SQLParseError(f"{keyword} clauses are not supported")

            if keyword != KEYWORD_SELECT:
                expect_distinct = False
            last_meaningful_end = pos

        if scan.markers:
            scan.markers[-1].end = last_meaningful_end
        if not select_seen:
            raise SQLParseError("Could not locate the SELECT keyword")
        return scan

    def _open(self, scan: _Scan, keyword: str, start: int, keyword_end: int, previous_end: int):
        if scan.markers:
            scan.markers[-1].end = previous_end
        scan.markers.append(_Marker(keyword=keyword, start=start, keyword_end=keyword_end))

    def _in_window_scope(self, scan: _Scan) -> bool:
        """Window functions are only legal in the SELECT list and ORDER BY."""
        return bool(scan.markers) and scan.markers[-1].keyword in (KEYWORD_SELECT, KEYWORD_ORDER_BY)

    def _awaiting_join_condition(self, scan: _Scan) -> bool:
        if not scan.markers:
            return False
        marker = scan.markers[-1]
        return marker.keyword.endswith(KEYWORD_JOIN) and marker.sub_keyword is None

    # ------------------------------------------------------------------
    # Clause construction
    # ------------------------------------------------------------------

    def _build(self, scan: _Scan) -> StructuredQuery:
        clauses = {}
        joins: List[JoinClause] = []
        select_clause = None

        for marker in scan.markers:
            clause_text = self.text[marker.start:marker.end]
            if marker.keyword == KEYWORD_SELECT:
                select_clause = self._build_select(marker, clause_text, scan.distinct_span)
            elif marker.keyword.endswith(KEYWORD_JOIN):
                joins.append(self._build_join(marker, clause_text))
            else:
                if marker.keyword in clauses:
                    raise SQLParseError(f"{marker.keyword} clause appears more than once")
                clauses[marker.keyword] = (marker, clause_text)

        if select_clause is None:
            raise SQLParseError("Could not locate the SELECT list")
        if KEYWORD_FROM not in clauses:
            raise SQLParseError("Query has no FROM clause")

        query = StructuredQuery(
            text=self.text,
            select=select_clause,
            from_clause=self._build_from(*clauses[KEYWORD_FROM]),
            joins=tuple(joins),
            where=self._build_predicate(clauses.get(KEYWORD_WHERE)),
            group_by=self._build_group_by(clauses.get(KEYWORD_GROUP_BY)),
            having=self._build_predicate(clauses.get(KEYWORD_HAVING)),
            order_by=self._build_order_by(clauses.get(KEYWORD_ORDER_BY)),
            limit=self._build_count(clauses.get(KEYWORD_LIMIT)),
            offset=self._build_count(clauses.get(KEYWORD_OFFSET)),
        )
        DebugLogger.log(
            "Parsed query: {} source(s), {} join(s), where={}, group_by={}, having={}, order_by={}",
            len(query.from_clause.sources), len(query.joins), query.where is not None,
            query.group_by is not None, query.having is not None, query.order_by is not None,
        )
        return query

    def _body(self, marker: _Marker) -> str:
        return self.text[marker.keyword_end:marker.end].strip()

    def _build_select(self, marker: _Marker, clause_text: str, distinct_span) -> SelectClause:
        list_text = self._body(marker)
        if not list_text:
            raise SQLParseError("SELECT list is empty")
        if distinct_span and _RE_DISTINCT_ON.match(list_text):
            raise SQLParseError("DISTINCT ON is not supported")

        items = []
        for item_text in split_top_level(list_text):
            if not item_text:
                raise SQLParseError(f"Empty expression in SELECT list: {list_text}")
            items.append(self._parse_select_item(item_text))

        distinct_text = self.text[distinct_span[0]:distinct_span[1]] if distinct_span else None
        return SelectClause(
            clause_text=clause_text,
            list_text=list_text,
            items=tuple(items),
            distinct=distinct_span is not None,
            distinct_text=distinct_text,
        )

    def _parse_select_item(self, item_text: str) -> SelectItem:
        match = _RE_EXPLICIT_ALIAS.match(item_text)
        if match and is_balanced(match.group('expr')):
            return SelectItem(item_text, match.group('expr').strip(), match.group('alias'))

        match = _RE_IMPLICIT_ALIAS.match(item_text)
        if match and is_balanced(match.group('expr')):
            alias = match.group('alias')
            if unquote_identifier(alias).upper() not in _NON_ALIAS_WORDS and not match.group('expr').rstrip().endswith('.'):
                return SelectItem(item_text, match.group('expr').strip(), alias)
        return SelectItem(item_text, item_text.strip())

    def _build_from(self, marker: _Marker, clause_text: str) -> FromClause:
        body = self._body(marker)
        if not body:
            raise SQLParseError("FROM clause names no table")
        sources = tuple(self._parse_table_ref(part, clause_text) for part in split_top_level(body))
        return FromClause(clause_text=clause_text, body=body, sources=sources)

    def _parse_table_ref(self, text: str, clause_text: str) -> TableRef:
        text = text.strip()
        if not text:
            raise SQLParseError(f"Missing table name in: {clause_text}")
        if text.startswith('('):
            raise SQLParseError(f"Subqueries in FROM/JOIN are not supported: {clause_text}")
        match = _RE_TABLE_REF.match(text)
        if not match:
            raise SQLParseError(f"Unsupported table reference '{text}' in: {clause_text}")
        return TableRef(name=match.group('name'), alias=match.group('alias'))

    def _build_join(self, marker: _Marker, clause_text: str) -> JoinClause:
        words = [word for word in marker.keyword.split() if word not in (KEYWORD_JOIN, 'OUTER')]
        join_type = ' '.join(words) if words and words != ['INNER'] else 'INNER'

        if marker.sub_keyword is None:
            table_text = self._body(marker)
            condition = None
            using = None
            if not any(word in JOINS_WITHOUT_CONDITION for word in words):
                raise SQLParseError(f"{marker.keyword} requires an ON or USING condition: {clause_text}")
        else:
            table_text = self.text[marker.keyword_end:marker.sub_start].strip()
            tail = self.text[marker.sub_end:marker.end].strip()
            if not tail:
                raise SQLParseError(f"{marker.sub_keyword} condition is empty: {clause_text}")
            condition = tail if marker.sub_keyword == KEYWORD_ON else None
            using = tail if marker.sub_keyword == KEYWORD_USING else None

        table = self._parse_table_ref(table_text, clause_text)
        return JoinClause(clause_text=clause_text, join_type=join_type, table=table, condition=condition, using=using)

    def _build_predicate(self, entry) -> Optional[PredicateClause]:
        if entry is None:
            return None
        marker, clause_text = entry
        predicate = self._body(marker)
        if not predicate:
            raise SQLParseError(f"{marker.keyword} clause has no condition")
        return PredicateClause(clause_text=clause_text, predicate=predicate)

    def _build_group_by(self, entry) -> Optional[GroupByClause]:
        if entry is None:
            return None
        marker, clause_text = entry
        body = self._body(marker)
        columns = split_top_level(body)
        if not body or any(not column for column in columns):
            raise SQLParseError(f"GROUP BY list is malformed: {clause_text}")
        first_word = body.split()[0].upper()
        if first_word in ('ALL', 'ROLLUP', 'CUBE', 'GROUPING') or first_word.startswith(('ROLLUP(', 'CUBE(')):
            raise SQLParseError(f"Unsupported GROUP BY form: {clause_text}")
        return GroupByClause(clause_text=clause_text, body=body, columns=tuple(columns))

    def _build_order_by(self, entry) -> Optional[OrderByClause]:
        if entry is None:
            return None
        marker, clause_text = entry
        body = self._body(marker)
        keys = []
        for part in split_top_level(body):
            match = _RE_SORT_SUFFIX.match(part)
            if not part or not match:
                raise SQLParseError(f"ORDER BY list is malformed: {clause_text}")
            nulls = match.group('nulls')
            keys.append(SortKey(
                expression=match.group('expr').strip(),
                descending=(match.group('direction') or '').upper() == 'DESC',
                nulls_first=None if nulls is None else nulls.upper() == 'FIRST',
            ))
        if not keys:
            raise SQLParseError(f"ORDER BY list is empty: {clause_text}")
        return OrderByClause(clause_text=clause_text, body=body, keys=tuple(keys))

    def _build_count(self, entry) -> Optional[CountClause]:
        if entry is None:
            return None
        marker, clause_text = entry
        match = _RE_COUNT.match(self._body(marker))
        if not match:
            raise SQLParseError(f"{marker.keyword} expects a non-negative integer: {clause_text}")
        return CountClause(clause_text=clause_text, count=int(match.group('count')))


def parse(sql: str) -> StructuredQuery:
    """Parse a SELECT statement with a fresh parser."""
    return ClauseParser().parse(sql)
