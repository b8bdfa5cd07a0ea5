"""Graph validator: ordered passes producing itemized findings."""

from typing import Any, Dict, List, Set

from pydantic import ValidationError

from ..models.core import (
    Edge,
    Graph,
    IssueCategory,
    IssueSeverity,
    Step,
    StepKind,
    ValidationIssue,
    ValidationResult,
)
from .logging import get_logger
from .registry import ERROR_PORT, StepKindRegistry

logger = get_logger(__name__)

# Source output type -> target input types it may feed
TYPE_COMPATIBILITY: Dict[str, Set[str]] = {
    "string": {"string", "any"},
    "number": {"number", "string", "any"},
    "boolean": {"boolean", "string", "any"},
    "object": {"object", "any"},
    "array": {"array", "any"},
    "any": {"any", "string", "number", "boolean", "object", "array"},
}

# Config keys holding nested graphs, per kind
NESTED_GRAPH_FIELDS = {
    StepKind.MAP: "body",
    StepKind.FOREACH: "body",
    StepKind.LOOP: "body",
    StepKind.SUBFLOW: "graph",
}

WHITE, GRAY, BLACK = 0, 1, 2


def is_compatible(source_type: str, target_type: str) -> bool:
    return target_type in TYPE_COMPATIBILITY.get(source_type, {"any"})


def _schema_code(error_type: str) -> str:
    if error_type == "missing":
        return "missing_required_field"
    if error_type == "extra_forbidden":
        return "unknown_field"
    if error_type in ("literal_error", "enum"):
        return "invalid_enum_value"
    if error_type.startswith(("greater_than", "less_than")):
        return "out_of_range"
    if error_type == "string_pattern_mismatch":
        return "pattern_mismatch"
    if error_type in ("too_short", "too_long", "string_too_short", "string_too_long"):
        return "invalid_length"
    if error_type.endswith("_type") or error_type.endswith("_parsing"):
        return "invalid_field_type"
    return "invalid_value"


def _has_placeholder(value: Any) -> bool:
    return isinstance(value, str) and "${" in value


class GraphValidator:
    """Validates graphs against the step-kind registry.

    Passes run cheap-first: structural, port validity, config schema,
    cycle detection and data-flow compatibility. A dangling edge stops
    validation after the structural pass, since later passes assume
    every edge endpoint exists.
    """

    def __init__(self, registry: StepKindRegistry):
        self.registry = registry

    def validate(self, graph: Graph, fail_fast: bool = False) -> ValidationResult:
        """
        Validate a graph.

        Args:
            graph: The graph to validate
            fail_fast: Stop after the first pass that reports an error

        Returns:
            ValidationResult: Blocking errors and non-blocking warnings
        """
        logger.debug(f"Validating graph: {graph.name}")
        issues = self._validate_structure(graph)

        passes = (
            self._validate_ports,
            self._validate_schemas,
            self._validate_cycles,
            self._validate_data_flow,
        )
        stop = any(issue.code == "dangling_edge" for issue in issues)
        for check in passes:
            if stop or (fail_fast and self._has_errors(issues)):
                break
            issues.extend(check(graph))

        errors = [i for i in issues if i.severity == IssueSeverity.ERROR]
        warnings = [i for i in issues if i.severity == IssueSeverity.WARNING]
        logger.debug(f"Graph validation completed. Valid: {not errors}, "
                     f"Errors: {len(errors)}, Warnings: {len(warnings)}")
        return ValidationResult(is_valid=not errors, errors=errors, warnings=warnings)

    @staticmethod
    def _has_errors(issues: List[ValidationIssue]) -> bool:
        return any(i.severity == IssueSeverity.ERROR for i in issues)

    def _validate_structure(self, graph: Graph) -> List[ValidationIssue]:
        issues: List[ValidationIssue] = []
        structural = IssueCategory.STRUCTURAL

        starts = graph.find_start_nodes()
        if not starts:
            issues.append(ValidationIssue(
                code="missing_start", category=structural,
                message="Graph has no start step",
                suggested_fix="Add a step of kind 'start' (or a trigger kind)",
            ))

        seen: Set[str] = set()
        for step in graph.steps:
            if step.id in seen:
                issues.append(ValidationIssue(
                    code="duplicate_step_id", category=structural, step_id=step.id,
                    message=f"Duplicate step id '{step.id}'",
                    suggested_fix="Give every step a unique id",
                ))
            seen.add(step.id)

        dangling = False
        for edge in graph.edges:
            for end, step_id in (("source", edge.source), ("target", edge.target)):
                if step_id not in seen:
                    dangling = True
                    issues.append(ValidationIssue(
                        code="dangling_edge", category=structural, edge_id=edge.id, field=end,
                        message=f"Edge {edge.source} -> {edge.target} references non-existent {end} '{step_id}'",
                        suggested_fix=f"Remove the edge or add step '{step_id}'",
                    ))

        start_ids = [step.id for step in starts]
        if starts and graph.entry_point and graph.entry_point not in start_ids:
            issues.append(ValidationIssue(
                code="missing_start_reference", category=structural, field="entry_point",
                message=f"Entry point '{graph.entry_point}' is not a start step",
                suggested_fix=f"Point entry_point at '{start_ids[0]}'",
            ))

        if dangling:
            return issues

        connected = {edge.source for edge in graph.edges} | {edge.target for edge in graph.edges}
        sole_start = len(graph.step_map()) == 1 and bool(starts)
        disconnected = set()
        for step in graph.step_map().values():
            if step.id not in connected and not sole_start:
                disconnected.add(step.id)
                issues.append(ValidationIssue(
                    code="disconnected_step", category=structural, step_id=step.id,
                    message=f"Step '{step.id}' has no incoming or outgoing edges",
                    suggested_fix="Connect the step or remove it",
                ))

        if starts:
            reachable = graph.find_reachable(start_ids)
            for step in graph.step_map().values():
                if step.id not in reachable and step.id not in disconnected:
                    issues.append(ValidationIssue(
                        code="unreachable_step", category=structural, step_id=step.id,
                        message=f"Step '{step.id}' is not reachable from any start step",
                        suggested_fix="Add an edge from a reachable step",
                    ))
        return issues

    def _validate_ports(self, graph: Graph) -> List[ValidationIssue]:
        issues: List[ValidationIssue] = []
        steps = graph.step_map()
        wired: Dict[str, Set[str]] = {}

        for edge in graph.edges:
            source = steps[edge.source]
            port, implicit = self.registry.resolve_source_port(source, edge)
            ports = self.registry.ports_for(source)
            if port is None or port not in ports:
                shown = edge.source_port or edge.label or port
                issues.append(ValidationIssue(
                    code="invalid_source_port", category=IssueCategory.PORT,
                    step_id=source.id, edge_id=edge.id, field="source_port",
                    message=f"Step '{source.id}' ({source.kind.value}) has no output port '{shown}'",
                    suggested_fix=f"Use one of: {', '.join(ports) or '(none declared)'}",
                ))
                continue
            wired.setdefault(source.id, set()).add(port)
            if implicit and self.registry.is_branching(source):
                issues.append(ValidationIssue(
                    code="implicit_source_port", category=IssueCategory.PORT,
                    severity=IssueSeverity.WARNING, step_id=source.id, edge_id=edge.id,
                    field="source_port",
                    message=f"Edge {edge.source} -> {edge.target} has no source_port; using '{port}'",
                    suggested_fix=f"Set source_port to '{port}' explicitly",
                ))

        for step_id, used in wired.items():
            step = steps[step_id]
            if not self.registry.is_branching(step):
                continue
            for port in self.registry.ports_for(step):
                if port != ERROR_PORT and port not in used:
                    issues.append(ValidationIssue(
                        code="unwired_branch_port", category=IssueCategory.PORT,
                        severity=IssueSeverity.WARNING, step_id=step_id, field="source_port",
                        message=f"Port '{port}' of step '{step_id}' has no outgoing edge",
                        suggested_fix=f"Connect port '{port}' if that branch needs handling",
                    ))
        return issues

    def _validate_schemas(self, graph: Graph) -> List[ValidationIssue]:
        issues: List[ValidationIssue] = []
        for step in graph.step_map().values():
            if step.kind not in self.registry:
                issues.append(ValidationIssue(
                    code="unknown_kind", category=IssueCategory.SCHEMA, step_id=step.id, field="kind",
                    message=f"Step kind '{step.kind.value}' is not registered",
                ))
                continue
            issues.extend(self._validate_config(step))
            issues.extend(self._validate_nested(step))
        return issues

    def _validate_config(self, step: Step) -> List[ValidationIssue]:
        spec = self.registry.get(step.kind)
        try:
            spec.config_model.model_validate(step.config or {})
            return []
        except ValidationError as e:
            errors = e.errors()

        issues = []
        for error in errors:
            code = _schema_code(error["type"])
            # Placeholders are only typed once resolved at dispatch
            if code == "invalid_field_type" and _has_placeholder(error.get("input")):
                continue
            loc = ".".join(str(part) for part in error.get("loc", ()))
            field = f"config.{loc}" if loc else "config"
            suggested = None
            if code == "missing_required_field":
                default = spec.default_config.get(loc) if loc else None
                suggested = f"Set {field} (default: {default!r})" if default is not None else f"Set {field}"
            issues.append(ValidationIssue(
                code=code, category=IssueCategory.SCHEMA, step_id=step.id, field=field,
                message=f"Step '{step.id}': {field}: {error['msg']}",
                suggested_fix=suggested,
            ))
        return issues

    def _validate_nested(self, step: Step) -> List[ValidationIssue]:
        key = NESTED_GRAPH_FIELDS.get(step.kind)
        body = (step.config or {}).get(key) if key else None
        if not isinstance(body, dict):
            return []

        prefix = f"config.{key}"
        try:
            nested = Graph.model_validate(body)
        except ValidationError as e:
            return [ValidationIssue(
                code="invalid_value", category=IssueCategory.SCHEMA, step_id=step.id, field=prefix,
                message=f"Step '{step.id}': {prefix} is not a valid graph: {e.error_count()} error(s)",
            )]

        result = self.validate(nested)
        issues = []
        for issue in result.errors + result.warnings:
            label = f"{step.id}.{key}" + (f".{issue.step_id}" if issue.step_id else "")
            issues.append(issue.model_copy(update={
                "step_id": step.id,
                "field": f"{prefix}.{issue.field}" if issue.field else prefix,
                "message": f"[{label}] {issue.message}",
            }))
        return issues

    def _validate_cycles(self, graph: Graph) -> List[ValidationIssue]:
        """Three-color DFS; every back edge is reported with the path it closes."""
        steps = graph.step_map()
        adjacency: Dict[str, List[Edge]] = {step_id: [] for step_id in steps}
        for edge in graph.edges:
            adjacency[edge.source].append(edge)

        roots = [s.id for s in graph.find_start_nodes()] + list(steps)
        color = {step_id: WHITE for step_id in steps}
        issues: List[ValidationIssue] = []

        for root in roots:
            if color[root] != WHITE:
                continue
            color[root] = GRAY
            path = [root]
            stack = [(root, iter(adjacency[root]))]
            while stack:
                node, children = stack[-1]
                edge = next(children, None)
                if edge is None:
                    color[node] = BLACK
                    stack.pop()
                    path.pop()
                    continue
                target = edge.target
                if color[target] == GRAY:
                    cycle = path[path.index(target):] + [target]
                    issues.append(ValidationIssue(
                        code="cycle_detected", category=IssueCategory.CYCLE,
                        step_id=node, edge_id=edge.id, path=cycle,
                        message=f"Cycle detected: {' -> '.join(cycle)}",
                        suggested_fix=f"Remove edge {node} -> {target} or model the repetition as a loop step",
                    ))
                elif color[target] == WHITE:
                    color[target] = GRAY
                    path.append(target)
                    stack.append((target, iter(adjacency[target])))
        return issues

    def _validate_data_flow(self, graph: Graph) -> List[ValidationIssue]:
        issues: List[ValidationIssue] = []
        steps = graph.step_map()
        fan_in: Dict[str, int] = {}
        for edge in graph.edges:
            fan_in[edge.target] = fan_in.get(edge.target, 0) + 1

        for edge in graph.edges:
            # Merged inputs arrive as an object keyed by upstream step
            if fan_in[edge.target] > 1:
                continue
            source, target = steps[edge.source], steps[edge.target]
            port, _ = self.registry.resolve_source_port(source, edge)
            if port == ERROR_PORT:
                continue
            source_type = self.registry.output_type_for(source)
            target_type = self.registry.input_type_for(target)
            if not is_compatible(source_type, target_type):
                issues.append(ValidationIssue(
                    code="type_mismatch", category=IssueCategory.DATA_FLOW,
                    severity=IssueSeverity.WARNING, step_id=target.id, edge_id=edge.id,
                    message=(f"Step '{source.id}' produces {source_type} but "
                             f"'{target.id}' expects {target_type}"),
                    suggested_fix="Insert a step that reshapes the data, or set items_path",
                ))
        return issues
