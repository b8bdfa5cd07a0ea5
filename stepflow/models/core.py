"""Core Pydantic models for the workflow execution core."""

import re
import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


STEP_ID_PATTERN = re.compile(r'^[a-zA-Z0-9_-]+$')


class StepKind(str, Enum):
    """Closed set of step kinds understood by the engine."""
    START = "start"
    LLM = "llm"
    TOOL = "tool"
    CONDITION = "condition"
    SWITCH = "switch"
    ROUTER = "router"
    MAP = "map"
    FOREACH = "foreach"
    LOOP = "loop"
    JOIN = "join"
    AGGREGATE = "aggregate"
    WAIT = "wait"
    HUMAN_IN_LOOP = "human_in_loop"
    GUARDRAILS = "guardrails"
    EVALUATOR = "evaluator"
    SUBFLOW = "subflow"
    LOG = "log"
    ERROR = "error"


class TriggerType(str, Enum):
    """Flavors of entry point that normalize to a start step."""
    MANUAL = "manual"
    SCHEDULE = "schedule"
    WEBHOOK = "webhook"


# Authored kinds that collapse onto StepKind.START
TRIGGER_ALIASES: Dict[str, TriggerType] = {
    "start": TriggerType.MANUAL,
    "trigger": TriggerType.MANUAL,
    "manual": TriggerType.MANUAL,
    "manual_trigger": TriggerType.MANUAL,
    "schedule": TriggerType.SCHEDULE,
    "schedule_trigger": TriggerType.SCHEDULE,
    "webhook": TriggerType.WEBHOOK,
    "webhook_trigger": TriggerType.WEBHOOK,
}


class FailurePolicy(str, Enum):
    """What happens to a run when a step fails permanently."""
    ABORT = "abort"
    CONTINUE = "continue"
    FALLBACK = "fallback"


class RunStatus(str, Enum):
    """Enumeration of run statuses."""
    PENDING = "pending"
    RUNNING = "running"
    AWAITING_INPUT = "awaiting_input"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class StepRunStatus(str, Enum):
    """Enumeration of step run statuses."""
    PENDING = "pending"
    RUNNING = "running"
    AWAITING_INPUT = "awaiting_input"
    COMPLETED = "completed"
    FAILED = "failed"


class RunMode(str, Enum):
    """Execution modes."""
    TEST = "test"
    PRODUCTION = "production"


class RunTrigger(str, Enum):
    """How a run was started."""
    MANUAL = "manual"
    SCHEDULE = "schedule"
    WEBHOOK = "webhook"
    INTERNAL = "internal"


class ErrorKind(str, Enum):
    """Classification of a step failure."""
    TRANSIENT = "transient"
    PERMANENT = "permanent"


class VariableScope(str, Enum):
    """Namespace levels for variables, lowest precedence first."""
    SYSTEM = "system"
    TENANT = "tenant"
    WORKFLOW = "workflow"
    RUN = "run"


class VariableType(str, Enum):
    """Declared variable value types."""
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    JSON = "json"


class IssueSeverity(str, Enum):
    """Severity of a validation finding."""
    ERROR = "error"
    WARNING = "warning"


class IssueCategory(str, Enum):
    """Validator pass that produced a finding."""
    STRUCTURAL = "structural"
    PORT = "port"
    SCHEMA = "schema"
    CYCLE = "cycle"
    DATA_FLOW = "data_flow"


class Variable(BaseModel):
    """A scoped variable available to placeholder resolution."""
    scope: VariableScope = Field(..., description="Scope the variable is defined at")
    name: str = Field(..., description="Variable name")
    type: VariableType = Field(default=VariableType.STRING, description="Declared value type")
    value: Any = Field(None, description="Value, or ciphertext when secret")
    secret: bool = Field(default=False, description="Whether value is encrypted secret material")

    @field_validator('name')
    @classmethod
    def validate_name(cls, name):
        """Ensure variable name is usable inside a placeholder."""
        if not name or not re.match(r'^[A-Za-z_][\w.-]*$', name):
            raise ValueError(f"Invalid variable name: {name!r}")
        return name


class Step(BaseModel):
    """Definition of a workflow step."""
    id: str = Field(..., description="Unique identifier for the step")
    name: str = Field(default="", description="Human readable step name")
    kind: StepKind = Field(..., description="Step kind")
    config: Dict[str, Any] = Field(default_factory=dict, description="Kind specific configuration")
    trigger_type: Optional[TriggerType] = Field(None, description="Original trigger flavor for start steps")
    max_retries: Optional[int] = Field(None, description="Total attempt budget for this step")
    timeout_seconds: Optional[float] = Field(None, description="Deadline for a single invocation")
    on_error: FailurePolicy = Field(default=FailurePolicy.ABORT, description="Failure policy")

    @model_validator(mode='before')
    @classmethod
    def normalize_trigger_kinds(cls, data):
        """Collapse every trigger flavor onto the canonical start kind."""
        if isinstance(data, dict):
            kind = data.get("kind")
            if isinstance(kind, Enum):
                kind = kind.value
            if isinstance(kind, str) and kind.lower() in TRIGGER_ALIASES:
                data = dict(data)
                flavor = TRIGGER_ALIASES[kind.lower()]
                config = data.get("config") or {}
                if kind.lower() in ("start", "trigger") and config.get("trigger_type"):
                    flavor = TriggerType(config["trigger_type"])
                data["kind"] = StepKind.START
                data.setdefault("trigger_type", flavor)
                if data["trigger_type"] is None:
                    data["trigger_type"] = flavor
        return data

    @field_validator('id')
    @classmethod
    def validate_id_format(cls, id_value):
        """Ensure step ID follows valid format."""
        if not id_value or not id_value.strip():
            raise ValueError("Step ID cannot be empty")
        if not STEP_ID_PATTERN.match(id_value.strip()):
            raise ValueError("Step ID must contain only alphanumeric characters, underscores, and hyphens")
        return id_value.strip()

    @field_validator('max_retries')
    @classmethod
    def validate_max_retries(cls, value):
        if value is not None and value < 0:
            raise ValueError("max_retries cannot be negative")
        return value

    @field_validator('timeout_seconds')
    @classmethod
    def validate_timeout(cls, timeout):
        """Ensure timeout is positive if specified."""
        if timeout is not None and timeout <= 0:
            raise ValueError("Timeout must be positive")
        return timeout


class Edge(BaseModel):
    """A directed, ported connection between two steps."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()), description="Edge identifier")
    source: str = Field(..., description="Source step ID")
    source_port: Optional[str] = Field(None, description="Output port on the source step")
    target: str = Field(..., description="Target step ID")
    target_port: Optional[str] = Field(None, description="Merge key at the target step")
    label: Optional[str] = Field(None, description="Optional branch label")

    @field_validator('source', 'target')
    @classmethod
    def validate_step_ids(cls, step_id):
        """Ensure step references are not blank."""
        if not step_id or not step_id.strip():
            raise ValueError("Step ID cannot be empty")
        return step_id.strip()

    @field_validator('source_port', 'label')
    @classmethod
    def blank_to_none(cls, value):
        if value is not None and not value.strip():
            return None
        return value.strip() if value is not None else None


class Graph(BaseModel):
    """A workflow version: steps plus edges.

    Construction does not check references: dangling edges,
    duplicate step ids and missing start steps are reported by the
    validator as itemized findings rather than raised here.
    """
    id: str = Field(default_factory=lambda: str(uuid.uuid4()), description="Graph identifier")
    name: str = Field(default="workflow", description="Name of the workflow")
    description: str = Field(default="", description="Description of the workflow")
    version: int = Field(default=1, description="Workflow version number")
    steps: List[Step] = Field(default_factory=list, description="Steps in the graph")
    edges: List[Edge] = Field(default_factory=list, description="Edges connecting steps")
    variables: List[Variable] = Field(default_factory=list, description="Workflow scoped variables")
    entry_point: Optional[str] = Field(None, description="Primary start step reference")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Free-form metadata")

    def find_start_nodes(self) -> List[Step]:
        """Return every canonical start step in declaration order."""
        return [step for step in self.steps if step.kind == StepKind.START]

    def step_map(self) -> Dict[str, Step]:
        """Map step id to step, first declaration wins."""
        steps: Dict[str, Step] = {}
        for step in self.steps:
            steps.setdefault(step.id, step)
        return steps

    def get_step(self, step_id: str) -> Optional[Step]:
        return self.step_map().get(step_id)

    def outgoing(self, step_id: str) -> List[Edge]:
        return [edge for edge in self.edges if edge.source == step_id]

    def incoming(self, step_id: str) -> List[Edge]:
        return [edge for edge in self.edges if edge.target == step_id]

    def sink_steps(self) -> List[Step]:
        """Steps without outgoing edges."""
        sources = {edge.source for edge in self.edges}
        return [step for step in self.steps if step.id not in sources]

    def find_reachable(self, roots: List[str]) -> set:
        """Breadth-first reachability from the given step ids."""
        adjacency: Dict[str, List[str]] = {}
        for edge in self.edges:
            adjacency.setdefault(edge.source, []).append(edge.target)

        visited = set()
        queue = list(roots)
        while queue:
            current = queue.pop(0)
            if current in visited:
                continue
            visited.add(current)
            queue.extend(n for n in adjacency.get(current, []) if n not in visited)
        return visited


class ValidationIssue(BaseModel):
    """One itemized validator finding."""
    code: str = Field(..., description="Machine readable finding code")
    category: IssueCategory = Field(..., description="Validator pass that produced the finding")
    severity: IssueSeverity = Field(default=IssueSeverity.ERROR, description="error or warning")
    message: str = Field(..., description="Human readable message")
    step_id: Optional[str] = Field(None, description="Step the finding refers to")
    edge_id: Optional[str] = Field(None, description="Edge the finding refers to")
    field: Optional[str] = Field(None, description="Offending field, dotted")
    suggested_fix: Optional[str] = Field(None, description="Suggested remedy")
    path: List[str] = Field(default_factory=list, description="Step path for cycle findings")


class ValidationResult(BaseModel):
    """Result of graph validation."""
    is_valid: bool = Field(..., description="Whether the graph is valid")
    errors: List[ValidationIssue] = Field(default_factory=list, description="Blocking findings")
    warnings: List[ValidationIssue] = Field(default_factory=list, description="Non-blocking findings")


class AppliedFix(BaseModel):
    """A repair applied by the auto-fixer."""
    code: str = Field(..., description="Code of the finding that was repaired")
    description: str = Field(..., description="What was changed")
    step_id: Optional[str] = None
    edge_id: Optional[str] = None
    field: Optional[str] = None
    before: Any = None
    after: Any = None


class AutoFixResult(BaseModel):
    """Applied fixes plus the repaired graph."""
    fixes: List[AppliedFix] = Field(default_factory=list)
    graph: Graph
    unfixed: List[ValidationIssue] = Field(default_factory=list)


class StepError(BaseModel):
    """Failure details recorded on a step run."""
    kind: ErrorKind
    message: str


class RunError(BaseModel):
    """Failure surfaced on a run."""
    step_id: Optional[str] = None
    kind: ErrorKind = ErrorKind.PERMANENT
    message: str


class Run(BaseModel):
    """One execution instance of a workflow graph."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    graph_id: Optional[str] = None
    graph_snapshot: Dict[str, Any] = Field(default_factory=dict, description="Graph the run executes")
    status: RunStatus = RunStatus.PENDING
    mode: RunMode = RunMode.TEST
    trigger: RunTrigger = RunTrigger.MANUAL
    input: Any = None
    output: Any = None
    variables: List[Variable] = Field(default_factory=list, description="Run scoped variables")
    error: Optional[RunError] = None
    pending_step_run_id: Optional[str] = None
    resume_token: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED)


class StepRun(BaseModel):
    """Execution record of a single step attempt within a run."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    run_id: str
    step_id: str
    status: StepRunStatus = StepRunStatus.PENDING
    attempt: int = 1
    sequence_number: int = 0
    input: Any = None
    output: Any = None
    selected_ports: List[str] = Field(default_factory=list)
    error: Optional[StepError] = None
    duration_ms: Optional[int] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (StepRunStatus.COMPLETED, StepRunStatus.FAILED)


class GraphSummary(BaseModel):
    """Summary information about a stored graph."""
    id: str = Field(..., description="Unique graph identifier")
    name: str = Field(..., description="Name of the graph")
    description: str = Field(..., description="Description of the graph")
    version: int = Field(default=1, description="Workflow version")
    step_count: int = Field(..., description="Number of steps in the graph")
    created_at: datetime = Field(..., description="When the graph was created")
