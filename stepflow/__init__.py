"""Graph-based workflow execution core."""

__version__ = "1.0.0"
