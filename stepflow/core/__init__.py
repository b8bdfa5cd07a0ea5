"""Core workflow engine components."""

from .exceptions import (
    WorkflowEngineError,
    GraphValidationError,
    StructuralError,
    SchemaError,
    CycleError,
    StepExecutionError,
    TransientStepError,
    PermanentStepError,
    ApprovalPending,
    OrchestratorError,
    RunNotFoundError,
    InvalidRunStateError,
    StateManagementError,
    StorageError,
    NotFoundError,
    ConfigurationError,
    SecretResolutionError,
)
from .logging import setup_logging, get_logger
from .registry import StepKindRegistry, default_registry
from .adapters import AdapterRegistry, echo_adapter
from .resolver import FernetSecretStore, VariableResolver
from .validator import GraphValidator
from .autofix import AutoFixer
from .graph_manager import GraphManager
from .state_manager import StateManager
from .orchestrator import Orchestrator

__all__ = [
    "WorkflowEngineError",
    "GraphValidationError",
    "StructuralError",
    "SchemaError",
    "CycleError",
    "StepExecutionError",
    "TransientStepError",
    "PermanentStepError",
    "ApprovalPending",
    "OrchestratorError",
    "RunNotFoundError",
    "InvalidRunStateError",
    "StateManagementError",
    "StorageError",
    "NotFoundError",
    "ConfigurationError",
    "SecretResolutionError",
    "setup_logging",
    "get_logger",
    "StepKindRegistry",
    "default_registry",
    "AdapterRegistry",
    "echo_adapter",
    "FernetSecretStore",
    "VariableResolver",
    "GraphValidator",
    "AutoFixer",
    "GraphManager",
    "StateManager",
    "Orchestrator",
]
