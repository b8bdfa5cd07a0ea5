"""HTTP API for the workflow engine."""

from .endpoints import init_dependencies, router

__all__ = ["router", "init_dependencies"]
