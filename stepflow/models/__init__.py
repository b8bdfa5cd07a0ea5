"""Data models for the workflow execution core."""

from .core import (
    StepKind,
    TriggerType,
    FailurePolicy,
    RunStatus,
    StepRunStatus,
    RunMode,
    RunTrigger,
    ErrorKind,
    VariableScope,
    VariableType,
    IssueSeverity,
    IssueCategory,
    Variable,
    Step,
    Edge,
    Graph,
    ValidationIssue,
    ValidationResult,
    AppliedFix,
    AutoFixResult,
    StepError,
    RunError,
    Run,
    StepRun,
    GraphSummary,
)

__all__ = [
    "StepKind",
    "TriggerType",
    "FailurePolicy",
    "RunStatus",
    "StepRunStatus",
    "RunMode",
    "RunTrigger",
    "ErrorKind",
    "VariableScope",
    "VariableType",
    "IssueSeverity",
    "IssueCategory",
    "Variable",
    "Step",
    "Edge",
    "Graph",
    "ValidationIssue",
    "ValidationResult",
    "AppliedFix",
    "AutoFixResult",
    "StepError",
    "RunError",
    "Run",
    "StepRun",
    "GraphSummary",
]
