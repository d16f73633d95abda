"""
Stage Simulator

Walks the planned stages in logical order, keeping one working row set and
recording a DataFlowStep after every stage.

Rows carry a provenance key built from the engine's rowid of every source
table, so each stage can ask the engine to evaluate just its own clause
(a predicate, a grouping, a projection) and map the answers back onto the
rows the previous stage produced. Filtering stages mark rows as excluded
with a reason; shrinking stages (GROUP BY, DISTINCT, aggregate SELECT)
rebuild the row set.
"""
import re
import time
from collections import Counter
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

from queryflow.clause_parser import TableRef, normalize_identifier
from queryflow.config import DEFAULT_MAX_ROWS
from queryflow.errors import QueryTimeoutError, SQLExecutionError, VisualizationError
from queryflow.logs import DebugLogger
from queryflow.models import DataFlowStep, ExecutionStepType, RowState, StepStats
from queryflow.planner import (
    DistinctStage,
    FilterStage,
    GroupKey,
    GroupStage,
    HavingStage,
    JoinStage,
    LimitStage,
    OffsetStage,
    PlannedStage,
    ProjectStage,
    ScanStage,
    SortStage,
    substitute_aliases,
)
from queryflow.sessions import unique_column_names


HIDDEN_PREFIX = '__qf_'
KEY_COLUMN = HIDDEN_PREFIX + 'key'
OK_COLUMN = HIDDEN_PREFIX + 'ok'
MISSING_ROWID = '-'
LIMIT_REASON = 'Excluded by LIMIT/OFFSET'
AGGREGATE_ROW_KEY = 'aggregate'

_RE_BARE_IDENTIFIER = re.compile(r'^(?:"(?:[^"]|"")+"|[A-Za-z_][\w$]*)$')


# ============================================================================
# Helpers
# ============================================================================

def quote_identifier(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


def format_value(value: Any) -> str:
    """Render a value the way it appears in exclusion reasons."""
    if value is None:
        return 'NULL'
    if isinstance(value, bool):
        return 'TRUE' if value else 'FALSE'
    if isinstance(value, str):
        return f"'{value}'"
    return str(value)


def hashable_value(value: Any) -> Any:
    if isinstance(value, (list, tuple)):
        return tuple(hashable_value(item) for item in value)
    if isinstance(value, dict):
        return repr(sorted(value.items(), key=lambda item: str(item[0])))
    try:
        hash(value)
    except TypeError:
        return repr(value)
    return value


def row_signature(data: Dict[str, Any], columns: Sequence[str]) -> Tuple[Any, ...]:
    """Hashable tuple of a row's values in column order."""
    return tuple(hashable_value(data.get(column)) for column in columns)


def _null_ordering(descending: bool, nulls_first: Optional[bool]) -> bool:
    """True when NULLs must compare greater than every value before `reverse`."""
    nulls_last = not nulls_first
    return nulls_last != descending


def _sort_value(value: Any, nulls_high: bool) -> Tuple[int, Any]:
    if value is None:
        return (1, 0) if nulls_high else (0, 0)
    return (0, value) if nulls_high else (1, value)


@dataclass
class WorkingRow:
    """A row in flight, with its provenance key."""
    key: str
    data: Dict[str, Any]
    included: bool = True
    excluded_reason: Optional[str] = None
    sort_values: Tuple[Any, ...] = ()

    def exclude(self, reason: str):
        self.included = False
        self.excluded_reason = reason

    def to_state(self) -> RowState:
        return RowState(data=dict(self.data), included=self.included, excluded_reason=self.excluded_reason)


# ============================================================================
# Simulator
# ============================================================================

class StageSimulator:
    """Produces the data-flow trace for one planned query.

    `engine` is a SessionSnapshot (or anything with the same fetch /
    table_columns / evaluate_predicate methods).
    """

    def __init__(self, engine, max_rows: int = DEFAULT_MAX_ROWS, timeout_seconds: Optional[float] = None):
        self.engine = engine
        self.max_rows = max_rows
        self.timeout_seconds = timeout_seconds
        self._deadline: Optional[float] = None

        self.rows: List[WorkingRow] = []
        self.columns: List[str] = []
        self.key_sql = ''
        self.source_columns: Set[str] = set()
        self.group_exprs: Optional[List[str]] = None
        self.group_of: Dict[str, WorkingRow] = {}
        self.having_reason: Optional[str] = None
        self.having_excluded = 0
        self.where_predicate: Optional[str] = None

    def simulate(self, stages: Sequence[PlannedStage]) -> List[DataFlowStep]:
        """Run every stage and return one DataFlowStep per stage, same order."""
        if self.timeout_seconds is not None:
            self._deadline = time.monotonic() + self.timeout_seconds

        step_executors = {
            ExecutionStepType.FROM: self._execute_from_step,
            ExecutionStepType.JOIN: self._execute_join_step,
            ExecutionStepType.WHERE: self._execute_where_step,
            ExecutionStepType.GROUP_BY: self._execute_group_by_step,
            ExecutionStepType.HAVING: self._execute_having_step,
            ExecutionStepType.SELECT: self._execute_select_step,
            ExecutionStepType.DISTINCT: self._execute_distinct_step,
            ExecutionStepType.ORDER_BY: self._execute_order_by_step,
            ExecutionStepType.LIMIT: self._execute_limit_step,
            ExecutionStepType.OFFSET: self._execute_offset_step,
        }

        flow: List[DataFlowStep] = []
        for stage in stages:
            self._check_deadline()
            executor = step_executors.get(stage.type)
            if executor is None:
                raise VisualizationError(f"No executor for stage type {stage.type.value}")

            description, stats = executor(stage)
            DebugLogger.log("Stage {} {}: {}", stage.order, stage.type.value, description)
            flow.append(DataFlowStep(
                step_order=stage.order,
                step_type=stage.type,
                rows=[row.to_state() for row in self.rows],
                columns=list(self.columns),
                description=description,
                stats=stats,
            ))
        return flow

    # ------------------------------------------------------------------
    # Shared plumbing
    # ------------------------------------------------------------------

    def _check_deadline(self):
        if self._deadline is not None and time.monotonic() > self._deadline:
            raise QueryTimeoutError(self.timeout_seconds)

    def _check_row_cap(self, count: int, stage: PlannedStage):
        if count > self.max_rows:
            raise SQLExecutionError(
                f"{stage.type.value} stage produced more than {self.max_rows} rows",
                clause=stage.clause_text,
                details={'maxRows': self.max_rows},
            )

    def _included(self) -> List[WorkingRow]:
        return [row for row in self.rows if row.included]

    def _where_sql(self, where: Optional[str]) -> str:
        if not where:
            return ''
        return f"\nWHERE ({self.where_predicate or where})"

    @staticmethod
    def _key_expression(sources: Sequence[TableRef]) -> str:
        parts = [f"COALESCE(CAST({ref.qualifier}.rowid AS VARCHAR), '{MISSING_ROWID}')" for ref in sources]
        return f"concat_ws('|', {', '.join(parts)})"

    def _load_relation(self, stage, sources: Sequence[TableRef], source_sql: str):
        """Fetch the FROM/JOIN relation with one display column per source column."""
        columns_by_source = [(ref, self.engine.table_columns(ref.name, stage.clause_text)) for ref in sources]
        counts = Counter(normalize_identifier(col) for _, cols in columns_by_source for col in cols)

        select_parts = []
        display = []
        for ref, cols in columns_by_source:
            for col in cols:
                select_parts.append(f"{ref.qualifier}.{quote_identifier(col)}")
                if counts[normalize_identifier(col)] > 1:
                    display.append(f"{ref.display_qualifier}.{col}")
                else:
                    display.append(col)

        self.key_sql = self._key_expression(sources)
        self.source_columns = set(counts)
        order = ', '.join(f"{ref.qualifier}.rowid NULLS LAST" for ref in sources)
        sql = (
            f"SELECT {', '.join(select_parts)}, {self.key_sql} AS {KEY_COLUMN}\n"
            f"{source_sql}\nORDER BY {order}\nLIMIT {self.max_rows + 1}"
        )
        _, records = self.engine.fetch(sql, stage.clause_text)
        self._check_row_cap(len(records), stage)

        self.columns = unique_column_names(display)
        self.rows = [
            WorkingRow(key=record[-1], data=dict(zip(self.columns, record[:-1])))
            for record in records
        ]

    # ------------------------------------------------------------------
    # FROM / JOIN
    # ------------------------------------------------------------------

    def _execute_from_step(self, stage: ScanStage):
        self._load_relation(stage, stage.sources, stage.source_sql)
        names = ', '.join(ref.name for ref in stage.sources)
        return f"Loaded {len(self.rows)} rows from {names}", StepStats.from_rows(self.rows)

    def _execute_join_step(self, stage: JoinStage):
        previous = len(self.rows)
        self._load_relation(stage, stage.sources, stage.source_sql)
        join = stage.join
        description = f"{join.join_type} JOIN {join.table.name}: {previous} rows became {len(self.rows)} rows"
        return description, StepStats.from_rows(self.rows)

    # ------------------------------------------------------------------
    # WHERE
    # ------------------------------------------------------------------

    def _execute_where_step(self, stage: FilterStage):
        self.where_predicate = substitute_aliases(stage.predicate, stage.aliases, self.source_columns)
        outcomes = self.engine.evaluate_predicate(
            self.where_predicate, stage.source_sql, self.key_sql, stage.clause_text
        )
        reason = f"Does not match: {stage.predicate}"
        for row in self._included():
            outcome = outcomes.get(row.key)
            if outcome is True:
                continue
            row.exclude(reason if outcome is not None else f"{reason} (evaluated to NULL)")

        stats = StepStats.from_rows(self.rows)
        return f"{stats.included_rows} of {stats.total_rows} rows match {stage.predicate}", stats

    # ------------------------------------------------------------------
    # GROUP BY / HAVING
    # ------------------------------------------------------------------

    def _group_expression(self, key: GroupKey) -> str:
        # A source column wins over a select alias of the same name
        if key.alias_expression and normalize_identifier(key.expression) not in self.source_columns:
            return key.alias_expression
        return key.expression

    def _execute_group_by_step(self, stage: GroupStage):
        self.group_exprs = [self._group_expression(key) for key in stage.keys]
        sql = (
            f"SELECT list({self.key_sql}) AS {KEY_COLUMN}\n{stage.source_sql}"
            f"{self._where_sql(stage.where)}\nGROUP BY {', '.join(self.group_exprs)}"
        )
        _, records = self.engine.fetch(sql, stage.clause_text)

        group_index: Dict[str, int] = {}
        for idx, (members,) in enumerate(records):
            for member in members or []:
                group_index[member] = idx

        groups: Dict[int, WorkingRow] = {}
        population = 0
        for row in self._included():
            population += 1
            idx = group_index.get(row.key)
            if idx is None:
                DebugLogger.warn("Row {} was not assigned to any group", row.key)
                continue
            group = groups.get(idx)
            if group is None:
                group = WorkingRow(key=row.key, data=dict(row.data))
                groups[idx] = group
            self.group_of[row.key] = group

        self.rows = list(groups.values())
        keys = ', '.join(key.expression for key in stage.keys)
        description = f"Grouped {population} rows into {len(self.rows)} groups by {keys}"
        return description, StepStats.from_population(population, self.rows)

    @staticmethod
    def _having_reason(stage: HavingStage, ok: Optional[bool], values: Sequence[Any]) -> str:
        reason = f"Does not match: {stage.predicate}"
        if len(stage.aggregates) == 1:
            return f"{reason} (actual: {format_value(values[0])})"
        if stage.aggregates:
            actual = ', '.join(f"{call} = {format_value(value)}" for call, value in zip(stage.aggregates, values))
            return f"{reason} (actual: {actual})"
        if ok is None:
            return f"{reason} (evaluated to NULL)"
        return reason

    def _execute_having_step(self, stage: HavingStage):
        aggregates_sql = ''.join(
            f", {call} AS {HIDDEN_PREFIX}agg_{idx}" for idx, call in enumerate(stage.aggregates)
        )
        predicate = substitute_aliases(stage.predicate, stage.aliases, self.source_columns)
        condition = f"CAST(({predicate}) AS BOOLEAN) AS {OK_COLUMN}"
        where_sql = self._where_sql(stage.where)

        if self.group_exprs is not None:
            sql = (
                f"SELECT min({self.key_sql}) AS {KEY_COLUMN}, {condition}{aggregates_sql}\n"
                f"{stage.source_sql}{where_sql}\nGROUP BY {', '.join(self.group_exprs)}"
            )
            _, records = self.engine.fetch(sql, stage.clause_text)
            for key, ok, *values in records:
                group = self.group_of.get(key)
                if group is None or not group.included or ok is True:
                    continue
                group.exclude(self._having_reason(stage, ok, values))
            stats = StepStats.from_rows(self.rows)
            return f"{stats.included_rows} of {stats.total_rows} groups satisfy {stage.predicate}", stats

        # No GROUP BY: the whole input is one group
        sql = f"SELECT {condition}{aggregates_sql}\n{stage.source_sql}{where_sql}"
        _, records = self.engine.fetch(sql, stage.clause_text)
        ok, *values = records[0]
        if ok is not True:
            self.having_reason = self._having_reason(stage, ok, values)
            for row in self._included():
                row.exclude(self.having_reason)
                self.having_excluded += 1
        stats = StepStats.from_rows(self.rows)
        verdict = 'satisfies' if ok is True else 'does not satisfy'
        return f"The single group {verdict} {stage.predicate}", stats

    # ------------------------------------------------------------------
    # SELECT
    # ------------------------------------------------------------------

    def _sort_plan(self, stage: ProjectStage) -> Tuple[List[Tuple[str, Any]], List[str]]:
        """How each ORDER BY key gets its value, plus hidden columns to compute."""
        aliases = stage.aliases
        plan: List[Tuple[str, Any]] = []
        hidden: List[str] = []
        for idx, key in enumerate(stage.sort_keys):
            if key.is_ordinal:
                plan.append(('position', int(key.expression)))
            elif _RE_BARE_IDENTIFIER.match(key.expression) and normalize_identifier(key.expression) in aliases:
                plan.append(('alias', normalize_identifier(key.expression)))
            else:
                name = f"{HIDDEN_PREFIX}sort_{idx}"
                hidden.append(f"({key.expression}) AS {name}")
                plan.append(('hidden', name))
        return plan, hidden

    def _project(self, stage: ProjectStage, hidden: List[str], keyed: bool, where: Optional[str]):
        select_parts = [stage.list_text]
        if keyed:
            key_sql = f"min({self.key_sql})" if self.group_exprs is not None else self.key_sql
            select_parts.append(f"{key_sql} AS {KEY_COLUMN}")
        select_parts.extend(hidden)

        sql = f"SELECT {', '.join(select_parts)}\n{stage.source_sql}{self._where_sql(where)}"
        if self.group_exprs is not None:
            sql += f"\nGROUP BY {', '.join(self.group_exprs)}"
        names, records = self.engine.fetch(sql, stage.clause_text)

        visible = len(names) - len(hidden) - (1 if keyed else 0)
        columns = unique_column_names(names[:visible])
        projected = []
        for record in records:
            data = dict(zip(columns, record[:visible]))
            key = record[visible] if keyed else None
            extras = dict(zip(names[len(names) - len(hidden):], record[len(record) - len(hidden):]))
            projected.append((key, data, extras))
        return columns, projected

    def _sort_values(self, plan, columns: List[str], data: Dict[str, Any], extras: Dict[str, Any], stage):
        values = []
        for source, ref in plan:
            if source == 'position':
                if ref < 1 or ref > len(columns):
                    raise SQLExecutionError(
                        f"ORDER BY position {ref} is not in the SELECT list", clause=stage.clause_text
                    )
                values.append(data.get(columns[ref - 1]))
            elif source == 'alias':
                column = next((col for col in columns if normalize_identifier(col) == ref), None)
                values.append(data.get(column) if column is not None else None)
            else:
                values.append(extras.get(ref))
        return tuple(values)

    def _execute_select_step(self, stage: ProjectStage):
        plan, hidden = self._sort_plan(stage)

        if stage.aggregate:
            return self._select_aggregate(stage, plan, hidden)

        if self.group_exprs is not None:
            columns, projected = self._project(stage, hidden, keyed=True, where=stage.where)
            lookup = {self.group_of[key].key: (data, extras) for key, data, extras in projected if key in self.group_of}
        else:
            try:
                # Excluded rows keep their projected values for display
                columns, projected = self._project(stage, hidden, keyed=True, where=None)
            except SQLExecutionError:
                if not stage.where:
                    raise
                DebugLogger.log("Projection failed over excluded rows, retrying with WHERE")
                columns, projected = self._project(stage, hidden, keyed=True, where=stage.where)
            lookup = {key: (data, extras) for key, data, extras in projected}

        empty = {column: None for column in columns}
        for row in self.rows:
            data, extras = lookup.get(row.key, (dict(empty), {}))
            row.data = data
            row.sort_values = self._sort_values(plan, columns, data, extras, stage)
        self.columns = columns

        return f"Selected columns {', '.join(columns)}", StepStats.from_rows(self.rows)

    def _select_aggregate(self, stage: ProjectStage, plan, hidden: List[str]):
        """Aggregate without GROUP BY: the input collapses into one row."""
        population = len(self._included()) + self.having_excluded
        columns, projected = self._project(stage, hidden, keyed=False, where=stage.where)
        _, data, extras = projected[0]

        row = WorkingRow(key=AGGREGATE_ROW_KEY, data=data)
        row.sort_values = self._sort_values(plan, columns, data, extras, stage)
        if self.having_reason is not None:
            row.exclude(self.having_reason)
        self.rows = [row]
        self.columns = columns

        description = f"Aggregated {population} rows into one row with columns {', '.join(columns)}"
        return description, StepStats.from_population(population, self.rows)

    # ------------------------------------------------------------------
    # DISTINCT / ORDER BY / LIMIT / OFFSET
    # ------------------------------------------------------------------

    def _execute_distinct_step(self, stage: DistinctStage):
        included = self._included()
        seen = set()
        unique_rows = []
        for row in included:
            signature = row_signature(row.data, self.columns)
            if signature in seen:
                continue
            seen.add(signature)
            unique_rows.append(row)

        self.rows = unique_rows
        removed = len(included) - len(unique_rows)
        return f"Removed {removed} duplicate rows", StepStats.from_population(len(included), self.rows)

    def _execute_order_by_step(self, stage: SortStage):
        included = self._included()
        excluded = [row for row in self.rows if not row.included]

        # Stable multi-pass sort, least significant key first
        for idx in reversed(range(len(stage.keys))):
            key = stage.keys[idx]
            nulls_high = _null_ordering(key.descending, key.nulls_first)
            try:
                included.sort(key=lambda row: _sort_value(row.sort_values[idx], nulls_high), reverse=key.descending)
            except TypeError:
                included.sort(
                    key=lambda row: _sort_value(
                        None if row.sort_values[idx] is None else str(row.sort_values[idx]), nulls_high
                    ),
                    reverse=key.descending,
                )

        self.rows = included + excluded
        keys = ', '.join(
            f"{key.expression} {'DESC' if key.descending else 'ASC'}" for key in stage.keys
        )
        return f"Sorted {len(included)} rows by {keys}", StepStats.from_rows(self.rows)

    def _execute_limit_step(self, stage: LimitStage):
        self.rows = self._included()
        window_end = stage.offset + stage.count
        for position, row in enumerate(self.rows):
            if position >= window_end:
                row.exclude(LIMIT_REASON)
        kept = min(window_end, len(self.rows))
        if stage.offset:
            description = f"Kept the first {kept} rows (LIMIT {stage.count} + OFFSET {stage.offset})"
        else:
            description = f"Kept the first {kept} rows"
        return description, StepStats.from_rows(self.rows)

    def _execute_offset_step(self, stage: OffsetStage):
        self.rows = self._included()
        for position, row in enumerate(self.rows):
            if position < stage.count:
                row.exclude(LIMIT_REASON)
        stats = StepStats.from_rows(self.rows)
        return f"Skipped the first {min(stage.count, len(self.rows))} rows", stats
