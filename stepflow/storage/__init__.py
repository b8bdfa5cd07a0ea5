"""Database models and storage layer."""

from .database import (
    Base,
    build_engine,
    create_tables,
    drop_tables,
    get_database_engine,
    get_session_factory,
)
from .models import GraphModel, RunModel, StepRunModel

__all__ = [
    "Base",
    "build_engine",
    "create_tables",
    "drop_tables",
    "get_database_engine",
    "get_session_factory",
    "GraphModel",
    "RunModel",
    "StepRunModel",
]
