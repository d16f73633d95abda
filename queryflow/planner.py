"""
Execution Planner

Maps a StructuredQuery onto the fixed logical execution order
(FROM -> JOIN -> WHERE -> GROUP BY -> HAVING -> SELECT -> DISTINCT ->
ORDER BY -> LIMIT -> OFFSET). Only clauses present in the query become
stages; orders are dense and 1-based over the emitted stages.

Every stage type is its own dataclass carrying just the operands the
simulator needs for it.
"""
import re
from dataclasses import dataclass
from typing import ClassVar, Collection, Dict, List, Optional, Sequence, Tuple

import sqlparse
from sqlparse import tokens as T

from queryflow.clause_parser import (
    JoinClause,
    SelectItem,
    SortKey,
    StructuredQuery,
    TableRef,
    normalize_identifier,
)
from queryflow.errors import SQLParseError
from queryflow.logs import DebugLogger
from queryflow.models import STEP_DESCRIPTIONS, ExecutionStepType


AGGREGATE_FUNCTIONS = (
    'COUNT', 'SUM', 'AVG', 'MIN', 'MAX', 'MEDIAN', 'MODE', 'STDDEV', 'STDDEV_POP',
    'STDDEV_SAMP', 'VARIANCE', 'VAR_POP', 'VAR_SAMP', 'STRING_AGG', 'GROUP_CONCAT',
    'LISTAGG', 'ARRAY_AGG', 'LIST', 'BOOL_AND', 'BOOL_OR', 'ANY_VALUE', 'COUNT_IF',
    'ARG_MIN', 'ARG_MAX', 'TOTAL',
)
_RE_AGGREGATE_START = re.compile(
    r'\b(?:' + '|'.join(AGGREGATE_FUNCTIONS) + r')\s*\(',
    re.IGNORECASE,
)
_RE_SUBQUERY_START = re.compile(r'\(\s*SELECT\b', re.IGNORECASE)
_RE_BARE_IDENTIFIER = re.compile(r'^(?:"(?:[^"]|"")+"|[A-Za-z_][\w$]*)$')


# ============================================================================
# Expression helpers
# ============================================================================

def _matching_paren(text: str, open_idx: int) -> int:
    """Index of the ')' closing the '(' at open_idx, or -1."""
    depth = 0
    quote_char = None
    for idx in range(open_idx, len(text)):
        char = text[idx]
        if quote_char:
            if char == quote_char:
                quote_char = None
            continue
        if char in ("'", '"'):
            quote_char = char
        elif char == '(':
            depth += 1
        elif char == ')':
            depth -= 1
            if depth == 0:
                return idx
    return -1


def strip_subqueries(text: str) -> str:
    """Blank out parenthesized subqueries so their aggregates are not counted."""
    result = text
    match = _RE_SUBQUERY_START.search(result)
    while match:
        close = _matching_paren(result, match.start())
        if close < 0:
            break
        result = result[:match.start()] + ' ' * (close - match.start() + 1) + result[close + 1:]
        match = _RE_SUBQUERY_START.search(result)
    return result


def strip_quoted(text: str) -> str:
    """Blank out string literals and quoted identifiers, keeping offsets."""
    chars = list(text)
    quote_char = None
    for idx, char in enumerate(chars):
        if quote_char:
            if char == quote_char:
                quote_char = None
            chars[idx] = ' '
        elif char in ("'", '"'):
            quote_char = char
            chars[idx] = ' '
    return ''.join(chars)


def find_aggregate_calls(text: str) -> List[str]:
    """Aggregate calls in an expression, e.g. ['COUNT(*)', 'SUM(salary)']."""
    calls: List[str] = []
    scrubbed = strip_subqueries(strip_quoted(text))
    pos = 0
    while True:
        match = _RE_AGGREGATE_START.search(scrubbed, pos)
        if not match:
            break
        close = _matching_paren(scrubbed, match.end() - 1)
        if close < 0:
            break
        call = text[match.start():close + 1]
        if call not in calls:
            calls.append(call)
        pos = close + 1
    return calls


def contains_aggregate(text: str) -> bool:
    return bool(find_aggregate_calls(text))


def substitute_aliases(
    text: str,
    aliases: Sequence[Tuple[str, str]],
    shadowed: Collection[str] = (),
) -> str:
    """Replace bare references to select aliases with their expressions.

    `aliases` pairs a normalized alias with its select expression. Names in
    `shadowed` (source columns) are left alone, and so are qualified names
    and function calls.
    """
    lookup = {name: expression for name, expression in aliases if name not in shadowed}
    if not lookup:
        return text
    parsed = sqlparse.parse(text)
    if not parsed:
        return text

    tokens = list(parsed[0].flatten())
    meaningful = [idx for idx, token in enumerate(tokens)
                  if not token.is_whitespace and token.ttype not in T.Comment]
    parts = [token.value for token in tokens]
    for pos, idx in enumerate(meaningful):
        token = tokens[idx]
        if token.ttype not in (T.Name, T.String.Symbol):
            continue
        name = normalize_identifier(token.value)
        if name not in lookup:
            continue
        before = tokens[meaningful[pos - 1]].value if pos > 0 else ''
        after = tokens[meaningful[pos + 1]].value if pos + 1 < len(meaningful) else ''
        if before == '.' or after in ('.', '('):
            continue
        parts[idx] = f"({lookup[name]})"
    return ''.join(parts)


# ============================================================================
# Planned stages
# ============================================================================

@dataclass(frozen=True)
class PlannedStage:
    order: int
    clause_text: str

    stage_type: ClassVar[ExecutionStepType]

    @property
    def type(self) -> ExecutionStepType:
        return self.stage_type

    @property
    def description(self) -> str:
        return STEP_DESCRIPTIONS[self.stage_type]


@dataclass(frozen=True)
class ScanStage(PlannedStage):
    sources: Tuple[TableRef, ...]
    source_sql: str

    stage_type: ClassVar[ExecutionStepType] = ExecutionStepType.FROM


@dataclass(frozen=True)
class JoinStage(PlannedStage):
    join: JoinClause
    sources: Tuple[TableRef, ...]
    source_sql: str

    stage_type: ClassVar[ExecutionStepType] = ExecutionStepType.JOIN


@dataclass(frozen=True)
class FilterStage(PlannedStage):
    predicate: str
    source_sql: str
    aliases: Tuple[Tuple[str, str], ...] = ()

    stage_type: ClassVar[ExecutionStepType] = ExecutionStepType.WHERE


@dataclass(frozen=True)
class GroupKey:
    """A GROUP BY expression; alias_expression is set when it may name a select alias."""
    expression: str
    alias_expression: Optional[str] = None


@dataclass(frozen=True)
class GroupStage(PlannedStage):
    keys: Tuple[GroupKey, ...]
    source_sql: str
    where: Optional[str]

    stage_type: ClassVar[ExecutionStepType] = ExecutionStepType.GROUP_BY


@dataclass(frozen=True)
class HavingStage(PlannedStage):
    predicate: str
    aggregates: Tuple[str, ...]
    source_sql: str
    where: Optional[str]
    aliases: Tuple[Tuple[str, str], ...] = ()

    stage_type: ClassVar[ExecutionStepType] = ExecutionStepType.HAVING


@dataclass(frozen=True)
class ProjectStage(PlannedStage):
    items: Tuple[SelectItem, ...]
    list_text: str
    source_sql: str
    where: Optional[str]
    aggregate: bool
    sort_keys: Tuple[SortKey, ...]

    stage_type: ClassVar[ExecutionStepType] = ExecutionStepType.SELECT

    @property
    def aliases(self) -> Dict[str, SelectItem]:
        return {normalize_identifier(item.alias): item for item in self.items if item.alias}


@dataclass(frozen=True)
class DistinctStage(PlannedStage):
    stage_type: ClassVar[ExecutionStepType] = ExecutionStepType.DISTINCT


@dataclass(frozen=True)
class SortStage(PlannedStage):
    keys: Tuple[SortKey, ...]

    stage_type: ClassVar[ExecutionStepType] = ExecutionStepType.ORDER_BY


@dataclass(frozen=True)
class LimitStage(PlannedStage):
    count: int
    offset: int

    stage_type: ClassVar[ExecutionStepType] = ExecutionStepType.LIMIT


@dataclass(frozen=True)
class OffsetStage(PlannedStage):
    count: int

    stage_type: ClassVar[ExecutionStepType] = ExecutionStepType.OFFSET


# ============================================================================
# Planner
# ============================================================================

class ExecutionPlanner:
    """Builds the ordered stage list for one query."""

    def __init__(self):
        self.stages: List[PlannedStage] = []

    def plan(self, query: StructuredQuery) -> List[PlannedStage]:
        self.stages = []
        source_sql = query.source_sql()
        where = query.where.predicate if query.where else None
        aliases = tuple(
            (normalize_identifier(item.alias), item.expression) for item in query.select.items if item.alias
        )

        self._add(ScanStage, query.from_clause.clause_text,
                  sources=query.from_clause.sources, source_sql=query.source_sql(0))

        for idx, join in enumerate(query.joins, start=1):
            sources = tuple(query.from_clause.sources) + tuple(j.table for j in query.joins[:idx])
            self._add(JoinStage, join.clause_text, join=join, sources=sources,
                      source_sql=query.source_sql(idx))

        if query.where:
            self._add(FilterStage, query.where.clause_text, predicate=where, source_sql=source_sql,
                      aliases=aliases)

        if query.group_by:
            keys = tuple(self._group_key(column, query) for column in query.group_by.columns)
            self._add(GroupStage, query.group_by.clause_text, keys=keys, source_sql=source_sql, where=where)

        if query.having:
            resolved = substitute_aliases(query.having.predicate, aliases)
            self._add(HavingStage, query.having.clause_text,
                      predicate=query.having.predicate,
                      aggregates=tuple(find_aggregate_calls(resolved)),
                      source_sql=source_sql, where=where, aliases=aliases)

        aggregate = query.group_by is None and (
            query.having is not None or contains_aggregate(query.select.list_text)
        )
        self._add(ProjectStage, query.select.clause_text,
                  items=query.select.items, list_text=query.select.list_text,
                  source_sql=source_sql, where=where, aggregate=aggregate,
                  sort_keys=query.order_by.keys if query.order_by else ())

        if query.select.distinct:
            self._add(DistinctStage, query.select.distinct_text)

        if query.order_by:
            self._add(SortStage, query.order_by.clause_text, keys=query.order_by.keys)

        offset = query.offset.count if query.offset else 0
        if query.limit:
            self._add(LimitStage, query.limit.clause_text, count=query.limit.count, offset=offset)
        if query.offset:
            self._add(OffsetStage, query.offset.clause_text, count=offset)

        DebugLogger.log("Planned stages: {}", [stage.type.value for stage in self.stages])
        return self.stages

    def _add(self, stage_cls, clause_text: str, **operands):
        stage = stage_cls(order=len(self.stages) + 1, clause_text=clause_text, **operands)
        self.stages.append(stage)
        return stage

    def _group_key(self, column: str, query: StructuredQuery) -> GroupKey:
        column = column.strip()
        if column.isdigit():
            position = int(column)
            items = query.select.items
            if position < 1 or position > len(items):
                raise SQLParseError(f"GROUP BY position {position} is not in the SELECT list")
            item = items[position - 1]
            if item.is_star:
                raise SQLParseError(f"GROUP BY position {position} refers to '*'")
            return GroupKey(expression=item.expression)

        if _RE_BARE_IDENTIFIER.match(column):
            wanted = normalize_identifier(column)
            for item in query.select.items:
                if item.alias and normalize_identifier(item.alias) == wanted:
                    return GroupKey(expression=column, alias_expression=item.expression)
        return GroupKey(expression=column)


def plan(query: StructuredQuery) -> List[PlannedStage]:
    """Plan a parsed query with a fresh planner."""
    return ExecutionPlanner().plan(query)
