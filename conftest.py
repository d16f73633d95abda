"""
Shared fixtures: a session store with a small users/departments schema.
"""
import pytest

from queryflow.config import Settings
from queryflow.sessions import SessionStore
from queryflow.visualizer import QueryVisualizer

SCHEMA_SQL = """
CREATE TABLE users (id INTEGER, name TEXT, age INTEGER, department_id INTEGER);
CREATE TABLE departments (id INTEGER, name TEXT, budget INTEGER);

INSERT INTO users VALUES
  (1, 'Alice', 30, 1),
  (2, 'Bob', 20, 1),
  (3, 'Charlie', 25, 2),
  (4, 'Dave', NULL, NULL);

INSERT INTO departments VALUES
  (1, 'Engineering', 500000),
  (2, 'Marketing', 300000),
  (3, 'Sales', 200000);
"""


@pytest.fixture
def store():
    store = SessionStore(ttl_seconds=3600)
    yield store
    store.clear()


@pytest.fixture
def session(store):
    session = store.create()
    session.execute_script(SCHEMA_SQL)
    return session


@pytest.fixture
def visualizer(store):
    return QueryVisualizer(store, Settings())


@pytest.fixture
def visualize(visualizer, session):
    """Visualize a query against the fixture schema."""
    def run(query):
        return visualizer.visualize(session.id, query)
    return run
