"""Custom exceptions for the workflow execution core with detailed error information."""

import traceback
from datetime import datetime
from typing import Optional, Dict, Any, List
from enum import Enum


class ErrorSeverity(Enum):
    """Error severity levels for categorizing exceptions."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    """Categories of errors for better classification."""
    VALIDATION = "validation"
    EXECUTION = "execution"
    STORAGE = "storage"
    NETWORK = "network"
    CONFIGURATION = "configuration"
    SECURITY = "security"
    STATE = "state"


class WorkflowEngineError(Exception):
    """Base exception for all workflow engine errors."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        category: ErrorCategory = ErrorCategory.EXECUTION,
        details: Optional[Dict[str, Any]] = None,
        recoverable: bool = False,
        retry_after: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.severity = severity
        self.category = category
        self.details = details or {}
        self.recoverable = recoverable
        self.retry_after = retry_after
        self.context = context or {}
        self.timestamp = datetime.utcnow()
        self.traceback_info = traceback.format_stack()

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging and API responses."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "severity": self.severity.value,
            "category": self.category.value,
            "details": self.details,
            "recoverable": self.recoverable,
            "retry_after": self.retry_after,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "exception_type": self.__class__.__name__
        }

    def add_context(self, **kwargs):
        """Add additional context to the exception."""
        self.context.update(kwargs)
        return self

    def add_details(self, **kwargs):
        """Add additional details to the exception."""
        self.details.update(kwargs)
        return self


class GraphValidationError(WorkflowEngineError):
    """Raised when a graph has blocking validation findings."""

    def __init__(
        self,
        message: str,
        issues: Optional[List[Any]] = None,
        graph_name: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.VALIDATION,
            **kwargs
        )
        self.issues = list(issues or [])
        if graph_name:
            self.add_context(graph_name=graph_name)
        if self.issues:
            self.add_details(issues=[
                issue.model_dump(mode="json") if hasattr(issue, "model_dump") else issue
                for issue in self.issues
            ])

    @classmethod
    def from_issues(cls, issues: List[Any], graph_name: Optional[str] = None) -> "GraphValidationError":
        """Build the refinement matching the first blocking finding."""
        category = getattr(issues[0], "category", None) if issues else None
        category = getattr(category, "value", category)
        error_cls = {
            "structural": StructuralError,
            "port": StructuralError,
            "schema": SchemaError,
            "cycle": CycleError,
        }.get(category, cls)
        summary = "; ".join(getattr(issue, "message", str(issue)) for issue in issues)
        return error_cls(
            f"Graph validation failed: {summary}",
            issues=issues,
            graph_name=graph_name
        )


class StructuralError(GraphValidationError):
    """The graph cannot be interpreted as a runnable workflow."""


class SchemaError(GraphValidationError):
    """A step configuration does not match its kind's schema."""


class CycleError(GraphValidationError):
    """The top-level graph contains a cycle."""


class StepExecutionError(WorkflowEngineError):
    """Raised when a step fails to execute."""

    retryable = False

    def __init__(
        self,
        message: str,
        step_id: Optional[str] = None,
        run_id: Optional[str] = None,
        execution_time: Optional[float] = None,
        **kwargs
    ):
        kwargs.setdefault("severity", ErrorSeverity.HIGH)
        kwargs.setdefault("category", ErrorCategory.EXECUTION)
        kwargs.setdefault("recoverable", self.retryable)
        super().__init__(message, **kwargs)
        self.step_id = step_id
        self.run_id = run_id
        if step_id:
            self.add_context(step_id=step_id)
        if run_id:
            self.add_context(run_id=run_id)
        if execution_time:
            self.add_details(execution_time=execution_time)

    @property
    def kind(self) -> str:
        return "transient" if self.recoverable else "permanent"


class TransientStepError(StepExecutionError):
    """Step failure that may succeed on retry (timeout, 5xx, rate limit)."""

    retryable = True


class PermanentStepError(StepExecutionError):
    """Step failure that retrying will not fix."""


class ApprovalPending(Exception):
    """Signals that a step is waiting for human input.

    This is a suspension state, not a failure, and is not part of the
    WorkflowEngineError hierarchy.
    """

    def __init__(self, step_id: Optional[str] = None, prompt: Optional[str] = None,
                 approvers: Optional[List[str]] = None, timeout_seconds: Optional[float] = None):
        super().__init__(f"Step {step_id} is awaiting input")
        self.step_id = step_id
        self.prompt = prompt
        self.approvers = approvers or []
        self.timeout_seconds = timeout_seconds


class OrchestratorError(WorkflowEngineError):
    """Raised when orchestrator operations fail."""

    def __init__(
        self,
        message: str,
        run_id: Optional[str] = None,
        graph_id: Optional[str] = None,
        **kwargs
    ):
        kwargs.setdefault("severity", ErrorSeverity.HIGH)
        super().__init__(
            message,
            category=ErrorCategory.EXECUTION,
            **kwargs
        )
        if run_id:
            self.add_context(run_id=run_id)
        if graph_id:
            self.add_context(graph_id=graph_id)


class RunNotFoundError(OrchestratorError):
    """Raised when a run id does not exist."""


class InvalidRunStateError(OrchestratorError):
    """Raised when an operation is not allowed in the run's current status."""


class StateManagementError(WorkflowEngineError):
    """Raised when run or step run state transitions are invalid."""

    def __init__(
        self,
        message: str,
        run_id: Optional[str] = None,
        operation: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.STATE,
            **kwargs
        )
        if run_id:
            self.add_context(run_id=run_id)
        if operation:
            self.add_context(operation=operation)


class StorageError(WorkflowEngineError):
    """Raised when storage operations fail."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        table: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.STORAGE,
            recoverable=True,
            retry_after=3,
            **kwargs
        )
        if operation:
            self.add_context(operation=operation)
        if table:
            self.add_context(table=table)


class NotFoundError(StorageError):
    """Raised when a stored record does not exist."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, **kwargs)
        self.recoverable = False
        self.retry_after = None


class ConfigurationError(WorkflowEngineError):
    """Raised when configuration is invalid or missing."""

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.CONFIGURATION,
            **kwargs
        )
        if config_key:
            self.add_context(config_key=config_key)


class SecretResolutionError(WorkflowEngineError):
    """Raised when the secret store cannot decrypt a value."""

    def __init__(self, message: str, secret_name: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.SECURITY,
            **kwargs
        )
        if secret_name:
            self.add_context(secret_name=secret_name)


def create_error_response(error: WorkflowEngineError) -> Dict[str, Any]:
    """Create a standardized error response from a WorkflowEngineError."""
    return {
        "error": error.error_code,
        "message": error.message,
        "details": {
            **error.details,
            "severity": error.severity.value,
            "category": error.category.value,
            "recoverable": error.recoverable,
            "retry_after": error.retry_after,
            "timestamp": error.timestamp.isoformat()
        },
        "context": error.context
    }
