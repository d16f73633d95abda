"""
Query visualization entry point.

visualize(session_id, query) parses the query, plans its logical stages,
simulates them against a consistent snapshot of the session's tables and
assembles the result. The whole run is bounded by the configured timeout.
"""
import threading
from collections import Counter
from typing import Optional

from queryflow.assembler import assemble
from queryflow.clause_parser import ClauseParser
from queryflow.config import Settings, load_settings
from queryflow.errors import ValidationError, VisualizationError
from queryflow.logs import DebugLogger
from queryflow.models import QueryVisualization, TableData
from queryflow.planner import ExecutionPlanner, LimitStage, OffsetStage
from queryflow.sessions import SessionSnapshot, SessionStore
from queryflow.simulator import StageSimulator, row_signature


class QueryVisualizer:
    """Executes SELECT queries stage by stage for visualization."""

    def __init__(self, store: SessionStore, settings: Optional[Settings] = None):
        self.store = store
        self.settings = settings or load_settings()

    def visualize(self, session_id: str, query: str) -> QueryVisualization:
        if not isinstance(session_id, str) or not session_id.strip():
            raise ValidationError("sessionId is required")
        if not isinstance(query, str) or not query.strip():
            raise ValidationError("query is required")

        session = self.store.get(session_id)
        structured = ClauseParser().parse(query)
        stages = ExecutionPlanner().plan(structured)

        with session.snapshot() as engine:
            timer = threading.Timer(self.settings.timeout_seconds, engine.interrupt)
            timer.daemon = True
            timer.start()
            try:
                simulator = StageSimulator(
                    engine,
                    max_rows=self.settings.max_rows,
                    timeout_seconds=self.settings.timeout_seconds,
                )
                flow = simulator.simulate(stages)
                visualization = assemble(stages, flow, query)
                windowed = any(isinstance(stage, (LimitStage, OffsetStage)) for stage in stages)
                self._cross_check(engine, query, visualization.final_result, windowed)
            finally:
                timer.cancel()

        DebugLogger.log(
            "Visualized query in session {}: {} stages, {} result rows",
            session_id, len(stages), len(visualization.final_result.rows),
        )
        return visualization

    def _cross_check(self, engine: SessionSnapshot, query: str, result: TableData, windowed: bool = False):
        """Compare the simulated result with the engine's own answer, as multisets.

        A LIMIT/OFFSET window over tied or unordered rows may legitimately pick
        different rows, so windowed queries only compare shapes.
        """
        expected = engine.execute(query)
        matches = len(expected.columns) == len(result.columns) and len(expected.rows) == len(result.rows)
        if matches and not windowed:
            simulated_rows = Counter(_comparable(row, result.columns) for row in result.rows)
            expected_rows = Counter(_comparable(row, expected.columns) for row in expected.rows)
            matches = simulated_rows == expected_rows
        if not matches:
            DebugLogger.warn(
                "Simulated result differs from engine result ({} vs {} rows) for query: {}",
                len(result.rows), len(expected.rows), query.strip(),
            )
            raise VisualizationError(
                "Simulated result does not match the engine result",
                details={
                    'simulatedRows': len(result.rows),
                    'engineRows': len(expected.rows),
                    'simulatedColumns': list(result.columns),
                    'engineColumns': list(expected.columns),
                },
            )


def _comparable(row, columns):
    # Floats compare to nine decimal places
    return tuple(
        round(value, 9) if isinstance(value, float) else value
        for value in row_signature(row, columns)
    )
