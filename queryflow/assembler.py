"""
Result Assembler

Pairs planned stages with their data-flow trace and packages the final
QueryVisualization.
"""
from typing import List, Sequence

from queryflow.errors import VisualizationError
from queryflow.models import DataFlowStep, ExecutionStep, QueryVisualization, TableData
from queryflow.planner import PlannedStage

RESULT_TABLE_NAME = 'result'


def final_result(flow: Sequence[DataFlowStep]) -> TableData:
    """The rows still included after the last stage."""
    last = flow[-1]
    return TableData(
        table_name=RESULT_TABLE_NAME,
        columns=list(last.columns),
        rows=[dict(row.data) for row in last.rows if row.included],
    )


def assemble(stages: Sequence[PlannedStage], flow: List[DataFlowStep], query: str) -> QueryVisualization:
    if not stages or len(stages) != len(flow):
        raise VisualizationError(
            f"Planned {len(stages)} stages but simulated {len(flow)}",
            details={'stages': [stage.type.value for stage in stages]},
        )

    steps = []
    for stage, trace in zip(stages, flow):
        if stage.order != trace.step_order or stage.type != trace.step_type:
            raise VisualizationError(
                f"Stage {stage.order} ({stage.type.value}) does not match "
                f"trace {trace.step_order} ({trace.step_type.value})"
            )
        steps.append(ExecutionStep(
            order=stage.order,
            type=stage.type,
            clause=stage.clause_text,
            description=stage.description,
        ))

    return QueryVisualization(
        original_query=query,
        execution_steps=steps,
        data_flow=flow,
        final_result=final_result(flow),
    )
