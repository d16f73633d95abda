"""
Visualization data model.

Mirrors the frontend contract: every type has a to_dict() that emits the
camelCase field names the client expects.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class ExecutionStepType(str, Enum):
    FROM = 'FROM'
    JOIN = 'JOIN'
    WHERE = 'WHERE'
    GROUP_BY = 'GROUP BY'
    HAVING = 'HAVING'
    SELECT = 'SELECT'
    DISTINCT = 'DISTINCT'
    ORDER_BY = 'ORDER BY'
    LIMIT = 'LIMIT'
    OFFSET = 'OFFSET'


# Logical execution order, independent of clause order in the source text
EXECUTION_ORDER: List[ExecutionStepType] = [
    ExecutionStepType.FROM,
    ExecutionStepType.JOIN,
    ExecutionStepType.WHERE,
    ExecutionStepType.GROUP_BY,
    ExecutionStepType.HAVING,
    ExecutionStepType.SELECT,
    ExecutionStepType.DISTINCT,
    ExecutionStepType.ORDER_BY,
    ExecutionStepType.LIMIT,
    ExecutionStepType.OFFSET,
]

STEP_DESCRIPTIONS: Dict[ExecutionStepType, str] = {
    ExecutionStepType.FROM: 'Load data from table(s)',
    ExecutionStepType.JOIN: 'Combine rows from joined tables',
    ExecutionStepType.WHERE: 'Filter rows based on conditions',
    ExecutionStepType.GROUP_BY: 'Group rows by specified columns',
    ExecutionStepType.HAVING: 'Filter groups based on aggregate conditions',
    ExecutionStepType.SELECT: 'Choose which columns to include',
    ExecutionStepType.DISTINCT: 'Remove duplicate rows',
    ExecutionStepType.ORDER_BY: 'Sort the result set',
    ExecutionStepType.LIMIT: 'Restrict the number of rows',
    ExecutionStepType.OFFSET: 'Skip specified number of rows',
}


@dataclass(frozen=True)
class ExecutionStep:
    order: int
    type: ExecutionStepType
    clause: str
    description: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            'order': self.order,
            'type': self.type.value,
            'clause': self.clause,
            'description': self.description,
        }


@dataclass
class RowState:
    """One row's status at one stage."""
    data: Dict[str, Any]
    included: bool = True
    excluded_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {'data': dict(self.data), 'included': self.included}
        if self.excluded_reason is not None:
            payload['excludedReason'] = self.excluded_reason
        return payload


@dataclass(frozen=True)
class StepStats:
    total_rows: int
    included_rows: int
    excluded_rows: int

    @classmethod
    def from_rows(cls, rows: List[RowState]) -> 'StepStats':
        """Stats of a physical row list."""
        included = sum(1 for row in rows if row.included)
        return cls(total_rows=len(rows), included_rows=included, excluded_rows=len(rows) - included)

    @classmethod
    def from_population(cls, population: int, rows: List[RowState]) -> 'StepStats':
        """Stats of a stage that shrank `population` incoming rows into `rows`."""
        included = sum(1 for row in rows if row.included)
        # An aggregate over no rows still emits its one row
        population = max(population, included)
        return cls(total_rows=population, included_rows=included, excluded_rows=population - included)

    def to_dict(self) -> Dict[str, int]:
        return {
            'totalRows': self.total_rows,
            'includedRows': self.included_rows,
            'excludedRows': self.excluded_rows,
        }


@dataclass
class DataFlowStep:
    step_order: int
    step_type: ExecutionStepType
    rows: List[RowState]
    columns: List[str]
    description: str
    stats: StepStats

    def to_dict(self) -> Dict[str, Any]:
        return {
            'stepOrder': self.step_order,
            'stepType': self.step_type.value,
            'rows': [row.to_dict() for row in self.rows],
            'columns': list(self.columns),
            'description': self.description,
            'stats': self.stats.to_dict(),
        }


@dataclass
class TableData:
    """A simple relation snapshot."""
    table_name: str
    columns: List[str]
    rows: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'tableName': self.table_name,
            'columns': list(self.columns),
            'rows': [dict(row) for row in self.rows],
        }


@dataclass
class QueryVisualization:
    original_query: str
    execution_steps: List[ExecutionStep]
    data_flow: List[DataFlowStep]
    final_result: TableData

    def to_dict(self) -> Dict[str, Any]:
        return {
            'originalQuery': self.original_query,
            'executionSteps': [step.to_dict() for step in self.execution_steps],
            'dataFlow': [step.to_dict() for step in self.data_flow],
            'finalResult': self.final_result.to_dict(),
        }


@dataclass
class ExecutionResult:
    """Outcome of running an arbitrary statement in a session."""
    success: bool
    message: str
    affected_tables: List[str] = field(default_factory=list)
    data: Optional[TableData] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {'success': self.success, 'message': self.message}
        if self.affected_tables:
            payload['affectedTables'] = list(self.affected_tables)
        if self.data is not None:
            payload['data'] = self.data.to_dict()
        return payload
