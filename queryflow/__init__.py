"""
QueryFlow: step-by-step SQL query execution visualizer.
"""
from queryflow.clause_parser import ClauseParser, parse
from queryflow.planner import ExecutionPlanner, plan
from queryflow.sessions import SessionStore
from queryflow.visualizer import QueryVisualizer

__all__ = ['ClauseParser', 'ExecutionPlanner', 'QueryVisualizer', 'SessionStore', 'parse', 'plan']
