"""Step-kind registry: config schemas, repair defaults and declared ports.

The registry is an immutable value built by :func:`default_registry` and
handed explicitly to the validator, auto-fixer, orchestrator and
executors. Each kind's configuration schema is a Pydantic model; the
validator reports its validation errors as schema findings and the
executors use it to coerce resolved (textual) configuration into typed
values.
"""

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Literal, Mapping, Optional, Tuple, Type, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

from ..models.core import Edge, FailurePolicy, Step, StepKind
from .exceptions import ConfigurationError


ERROR_PORT = "error"
OUTPUT_PORT = "output"

# Legacy branch labels accepted on condition edges
CONDITION_LABEL_ALIASES = {"yes": "true", "no": "false"}

NAME_PATTERN = r'^[A-Za-z0-9_-]+$'


class StepConfig(BaseModel):
    """Base for per-kind configuration models."""
    model_config = ConfigDict(extra="forbid")


class StartConfig(StepConfig):
    trigger_type: Optional[Literal["manual", "schedule", "webhook"]] = None
    input_schema: Optional[Dict[str, Any]] = None


class LLMConfig(StepConfig):
    provider: str = Field(..., min_length=1)
    model: str = Field(..., min_length=1)
    prompt: str = Field(..., min_length=1)
    system_prompt: Optional[str] = None
    temperature: float = Field(0.7, ge=0.0, le=2.0)
    max_tokens: Optional[int] = Field(None, ge=1)
    output_format: Literal["text", "json"] = "text"


class ToolConfig(StepConfig):
    adapter: str = Field(..., pattern=r'^[A-Za-z0-9_.-]+$')
    operation: Optional[str] = None
    arguments: Dict[str, Any] = Field(default_factory=dict)


class ConditionConfig(StepConfig):
    expression: str = Field(..., min_length=1)


class SwitchCase(BaseModel):
    name: str = Field(..., pattern=NAME_PATTERN)
    expression: Optional[str] = None
    is_default: bool = False


class SwitchConfig(StepConfig):
    cases: List[SwitchCase] = Field(..., min_length=1)


class Route(BaseModel):
    name: str = Field(..., pattern=NAME_PATTERN)
    expression: Optional[str] = None
    description: Optional[str] = None


class RouterConfig(StepConfig):
    routes: List[Route] = Field(..., min_length=1)
    provider: Optional[str] = None
    model: Optional[str] = None
    prompt: Optional[str] = None


class MapConfig(StepConfig):
    body: Dict[str, Any]
    items_path: Optional[str] = None
    parallel: bool = True
    max_workers: int = Field(10, ge=1, le=100)


class LoopConfig(StepConfig):
    body: Dict[str, Any]
    condition: Optional[str] = None
    items_path: Optional[str] = None
    max_iterations: int = Field(100, ge=1, le=10000)


class JoinConfig(StepConfig):
    mode: Literal["all", "any", "race"] = "all"


class AggregateOperation(BaseModel):
    operation: Literal["sum", "count", "avg", "min", "max", "first", "last", "concat"]
    field: Optional[str] = None
    output_field: Optional[str] = None


class AggregateConfig(JoinConfig):
    operations: List[AggregateOperation] = Field(default_factory=list)


class WaitConfig(StepConfig):
    duration_ms: Optional[int] = Field(None, ge=0)
    until: Optional[str] = None
    signal: Optional[str] = Field(None, pattern=NAME_PATTERN)

    @model_validator(mode='after')
    def require_wait_source(self):
        if self.duration_ms is None and not self.until and not self.signal:
            raise ValueError("one of duration_ms, until or signal is required")
        return self


class HumanInLoopConfig(StepConfig):
    prompt: str = "Approval required"
    approvers: List[str] = Field(default_factory=list)
    timeout_seconds: Optional[float] = Field(None, gt=0)


class GuardrailRule(BaseModel):
    type: Literal["contains", "regex", "max_length", "pii"]
    value: Any = None


class GuardrailsConfig(StepConfig):
    rules: List[GuardrailRule] = Field(..., min_length=1)
    action: Literal["block", "warn", "redact"] = "block"
    target_path: Optional[str] = None


class EvaluatorCriterion(BaseModel):
    type: Literal["min_length", "max_length", "contains", "required_fields", "regex"]
    value: Any = None


class EvaluatorConfig(StepConfig):
    criteria: List[EvaluatorCriterion] = Field(..., min_length=1)
    threshold: float = Field(1.0, ge=0.0, le=1.0)
    action: Literal["block", "warn", "redact"] = "warn"
    target_path: Optional[str] = None


class SubflowConfig(StepConfig):
    graph: Optional[Dict[str, Any]] = None
    workflow_id: Optional[str] = None
    input_mapping: Optional[Dict[str, str]] = None

    @model_validator(mode='after')
    def require_graph_source(self):
        if not self.graph and not self.workflow_id:
            raise ValueError("either graph or workflow_id is required")
        return self


class LogConfig(StepConfig):
    message: str = "{{input}}"
    level: Literal["debug", "info", "warning", "error"] = "info"


class ErrorConfig(StepConfig):
    message: str = Field(..., min_length=1)


OutputType = Union[str, Callable[[Step], str]]


@dataclass(frozen=True)
class KindSpec:
    """Static description of one step kind."""
    kind: StepKind
    config_model: Type[StepConfig]
    description: str = ""
    default_config: Mapping[str, Any] = field(default_factory=dict)
    output_ports: Tuple[str, ...] = (OUTPUT_PORT,)
    default_port: Optional[str] = OUTPUT_PORT
    input_type: OutputType = "any"
    output_type: OutputType = "any"
    branching: bool = False
    dynamic_ports: Optional[Callable[[Dict[str, Any]], List[str]]] = None

    def __post_init__(self):
        object.__setattr__(self, "default_config", MappingProxyType(dict(self.default_config)))

    def parse_config(self, config: Dict[str, Any]) -> StepConfig:
        """Validate and coerce a resolved configuration dict."""
        return self.config_model.model_validate(config or {})


def _switch_ports(config: Dict[str, Any]) -> List[str]:
    ports = []
    for case in config.get("cases") or []:
        if isinstance(case, dict) and case.get("name") and not case.get("is_default"):
            ports.append(str(case["name"]))
    ports.append("default")
    return ports


def _router_ports(config: Dict[str, Any]) -> List[str]:
    return [
        str(route["name"]) for route in config.get("routes") or []
        if isinstance(route, dict) and route.get("name")
    ]


def _llm_output_type(step: Step) -> str:
    return "object" if step.config.get("output_format") == "json" else "string"


def _iteration_input_type(step: Step) -> str:
    return "any" if step.config.get("items_path") else "array"


def _loop_input_type(step: Step) -> str:
    if step.config.get("condition") or step.config.get("items_path"):
        return "any"
    return "array"


class StepKindRegistry:
    """Immutable lookup of kind specs, passed explicitly to consumers."""

    def __init__(self, specs: Mapping[StepKind, KindSpec]):
        self._specs = MappingProxyType(dict(specs))

    def __contains__(self, kind) -> bool:
        return kind in self._specs

    def kinds(self) -> List[StepKind]:
        return list(self._specs)

    def get(self, kind: StepKind) -> KindSpec:
        """Return the spec for a kind.

        Raises:
            ConfigurationError: If the kind has no registered spec
        """
        try:
            return self._specs[kind]
        except KeyError:
            raise ConfigurationError(f"No spec registered for step kind '{kind}'", config_key=str(kind))

    def ports_for(self, step: Step) -> List[str]:
        """Declared output ports of a step, including its error port under fallback."""
        spec = self.get(step.kind)
        if spec.dynamic_ports is not None:
            ports = spec.dynamic_ports(step.config or {})
        else:
            ports = list(spec.output_ports)
        if step.on_error == FailurePolicy.FALLBACK and ERROR_PORT not in ports:
            ports.append(ERROR_PORT)
        return ports

    def default_port_for(self, step: Step) -> Optional[str]:
        spec = self.get(step.kind)
        if spec.dynamic_ports is not None:
            ports = spec.dynamic_ports(step.config or {})
            if step.kind == StepKind.SWITCH:
                return "default"
            return ports[0] if ports else None
        return spec.default_port

    def resolve_source_port(self, step: Step, edge: Edge) -> Tuple[Optional[str], bool]:
        """Effective source port of an edge.

        Policy, in order: an explicit ``source_port``; a ``label`` naming a
        declared port (condition also accepts ``yes``/``no``); the kind's
        default port. Returns the port and whether it was implicit.
        """
        if edge.source_port:
            return edge.source_port, False
        ports = self.ports_for(step)
        if edge.label:
            label = edge.label.lower() if step.kind == StepKind.CONDITION else edge.label
            if step.kind == StepKind.CONDITION:
                label = CONDITION_LABEL_ALIASES.get(label, label)
            if label in ports:
                return label, True
        return self.default_port_for(step), True

    def input_type_for(self, step: Step) -> str:
        spec = self.get(step.kind)
        return spec.input_type(step) if callable(spec.input_type) else spec.input_type

    def output_type_for(self, step: Step) -> str:
        spec = self.get(step.kind)
        return spec.output_type(step) if callable(spec.output_type) else spec.output_type

    def is_branching(self, step: Step) -> bool:
        return self.get(step.kind).branching

    def describe(self) -> List[Dict[str, Any]]:
        """Summaries for API consumers."""
        return [
            {
                "kind": spec.kind.value,
                "description": spec.description,
                "output_ports": list(spec.output_ports) if spec.dynamic_ports is None else [],
                "default_port": spec.default_port,
                "branching": spec.branching,
                "default_config": dict(spec.default_config),
                "config_schema": spec.config_model.model_json_schema(),
            }
            for spec in self._specs.values()
        ]


def default_registry() -> StepKindRegistry:
    """Build the registry of built-in step kinds."""
    specs = [
        KindSpec(StepKind.START, StartConfig, "Entry point; passes the run input through"),
        KindSpec(
            StepKind.LLM, LLMConfig, "Model invocation through an adapter",
            default_config={"provider": "echo", "model": "echo-1", "prompt": "{{input}}"},
            output_type=_llm_output_type,
        ),
        KindSpec(StepKind.TOOL, ToolConfig, "Tool invocation through an adapter"),
        KindSpec(
            StepKind.CONDITION, ConditionConfig, "Boolean branch",
            default_config={"expression": "true"},
            output_ports=("true", "false"), default_port="true", branching=True,
        ),
        KindSpec(
            StepKind.SWITCH, SwitchConfig, "First matching case branch",
            default_port="default", branching=True, dynamic_ports=_switch_ports,
        ),
        KindSpec(
            StepKind.ROUTER, RouterConfig, "Expression or classification routing",
            default_port=None, branching=True, dynamic_ports=_router_ports,
        ),
        KindSpec(
            StepKind.MAP, MapConfig, "Run a body graph per element",
            default_config={"parallel": True, "max_workers": 10},
            input_type=_iteration_input_type, output_type="object",
        ),
        KindSpec(
            StepKind.FOREACH, MapConfig, "Run a body graph per element",
            default_config={"parallel": True, "max_workers": 10},
            input_type=_iteration_input_type, output_type="object",
        ),
        KindSpec(
            StepKind.LOOP, LoopConfig, "Repeat a body graph",
            default_config={"max_iterations": 100},
            input_type=_loop_input_type, output_type="object",
        ),
        KindSpec(StepKind.JOIN, JoinConfig, "Merge upstream branches", default_config={"mode": "all"},
                 output_type="object"),
        KindSpec(StepKind.AGGREGATE, AggregateConfig, "Merge and reduce upstream branches",
                 default_config={"mode": "all", "operations": []}, output_type="object"),
        KindSpec(StepKind.WAIT, WaitConfig, "Suspend for a duration or signal",
                 default_config={"duration_ms": 1000}),
        KindSpec(
            StepKind.HUMAN_IN_LOOP, HumanInLoopConfig, "Suspend until an approver responds",
            default_config={"prompt": "Approval required"},
            output_ports=("approved", "rejected", "timeout"), default_port="approved", branching=True,
        ),
        KindSpec(StepKind.GUARDRAILS, GuardrailsConfig, "Content safety checks",
                 default_config={"action": "block"}),
        KindSpec(StepKind.EVALUATOR, EvaluatorConfig, "Quality criteria scoring",
                 default_config={"action": "warn", "threshold": 1.0}, output_type="object"),
        KindSpec(StepKind.SUBFLOW, SubflowConfig, "Nested graph as one step"),
        KindSpec(StepKind.LOG, LogConfig, "Log a rendered message",
                 default_config={"message": "{{input}}", "level": "info"}),
        KindSpec(StepKind.ERROR, ErrorConfig, "Stop the branch with an error",
                 default_config={"message": "Workflow stopped"}),
    ]
    return StepKindRegistry({spec.kind: spec for spec in specs})
