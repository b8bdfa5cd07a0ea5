"""Pytest configuration and fixtures."""

from typing import Any, Dict, List, Optional

import pytest

from stepflow.config import get_testing_config
from stepflow.core.adapters import AdapterRegistry, echo_adapter
from stepflow.core.autofix import AutoFixer
from stepflow.core.graph_manager import GraphManager
from stepflow.core.orchestrator import Orchestrator
from stepflow.core.registry import default_registry
from stepflow.core.resolver import FernetSecretStore
from stepflow.core.state_manager import StateManager
from stepflow.core.validator import GraphValidator
from stepflow.models.core import Edge, Graph, Step
from stepflow.storage.database import build_engine, create_tables, drop_tables, get_session_factory


def build_graph(steps: List[Dict[str, Any]], edges: Optional[List[Dict[str, Any]]] = None, **extra) -> Graph:
    """Build a Graph from plain dicts; edges get stable ids e0, e1, ..."""
    edge_models = []
    for index, edge in enumerate(edges or []):
        data = dict(edge)
        data.setdefault("id", f"e{index}")
        edge_models.append(Edge(**data))
    return Graph(steps=[Step(**s) for s in steps], edges=edge_models, **extra)


@pytest.fixture
def make_graph():
    """Factory for graphs built from plain dicts."""
    return build_graph


@pytest.fixture
def app_config():
    """Testing configuration: in-memory database, no retry backoff."""
    return get_testing_config()


@pytest.fixture
def engine():
    """Create a fresh in-memory database for each test."""
    test_engine = build_engine("sqlite:///:memory:")
    create_tables(test_engine)
    yield test_engine
    drop_tables(test_engine)
    test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return get_session_factory(engine)


@pytest.fixture
def registry():
    return default_registry()


@pytest.fixture
def validator(registry):
    return GraphValidator(registry)


@pytest.fixture
def autofixer(registry, validator):
    return AutoFixer(registry, validator)


@pytest.fixture
def state_manager(session_factory):
    """Create a StateManager instance for testing."""
    return StateManager(session_factory)


@pytest.fixture
def graph_manager(session_factory, validator):
    """Create a GraphManager instance for testing."""
    return GraphManager(session_factory, validator)


@pytest.fixture
def adapters():
    """Adapter registry with the deterministic echo adapter."""
    registry = AdapterRegistry()
    registry.register("echo", echo_adapter, "Echo adapter")
    return registry


@pytest.fixture
def secret_store():
    return FernetSecretStore()


@pytest.fixture
def orchestrator(registry, state_manager, adapters, app_config, validator, graph_manager, secret_store):
    """Create an Orchestrator instance for testing."""
    return Orchestrator(
        registry=registry,
        state_manager=state_manager,
        adapters=adapters,
        config=app_config,
        validator=validator,
        graph_manager=graph_manager,
        secret_store=secret_store,
    )
