"""Deterministic local repairs for validator findings."""

import copy
from typing import Any, Dict, List, Optional

from ..models.core import AppliedFix, AutoFixResult, Edge, Graph, Step, ValidationIssue
from .logging import get_logger
from .registry import ERROR_PORT, StepKindRegistry
from .validator import GraphValidator

logger = get_logger(__name__)

_MISSING = object()


def _lookup_default(defaults: Dict[str, Any], path: str) -> Any:
    if path in defaults:
        return defaults[path]
    current: Any = defaults
    for part in path.split("."):
        if isinstance(current, dict) and part in current:
            current = current[part]
        else:
            return _MISSING
    return current


def _assign(config: Dict[str, Any], path: str, value: Any) -> bool:
    parts = path.split(".")
    current = config
    for part in parts[:-1]:
        nxt = current.get(part)
        if nxt is None:
            nxt = current[part] = {}
        if not isinstance(nxt, dict):
            return False
        current = nxt
    current[parts[-1]] = value
    return True


class AutoFixer:
    """Applies repairs to a copy of the graph.

    Only findings with a known local repair are touched; everything else
    is returned as unfixed. The caller re-validates the result.
    """

    def __init__(self, registry: StepKindRegistry, validator: Optional[GraphValidator] = None):
        self.registry = registry
        self.validator = validator or GraphValidator(registry)

    def fix(self, graph: Graph, issues: Optional[List[ValidationIssue]] = None) -> AutoFixResult:
        """
        Repair a graph.

        Args:
            graph: The graph to repair; it is not modified
            issues: Findings to repair; validates the graph when omitted

        Returns:
            AutoFixResult: Applied fixes, the repaired copy and unfixed findings
        """
        if issues is None:
            issues = self.validator.validate(graph).errors

        working = graph.model_copy(deep=True)
        fixes: List[AppliedFix] = []
        unfixed: List[ValidationIssue] = []
        handlers = {
            "missing_required_field": self._fill_default,
            "unknown_field": self._drop_unknown_field,
            "invalid_source_port": self._repair_port,
            "missing_start_reference": self._repair_entry_point,
            "cycle_detected": self._break_cycle,
        }

        for issue in issues:
            handler = handlers.get(issue.code)
            fix = handler(working, issue) if handler else None
            if fix is None:
                unfixed.append(issue)
                continue
            logger.info(f"Applied fix for {issue.code}: {fix.description}")
            fixes.append(fix)

        return AutoFixResult(fixes=fixes, graph=working, unfixed=unfixed)

    def _fill_default(self, graph: Graph, issue: ValidationIssue) -> Optional[AppliedFix]:
        step = graph.get_step(issue.step_id) if issue.step_id else None
        field = issue.field or ""
        if step is None or not field.startswith("config."):
            return None
        path = field[len("config."):]
        # Nested body findings are not repaired in place
        if path.split(".", 1)[0] in ("body", "graph"):
            return None

        default = _lookup_default(dict(self.registry.get(step.kind).default_config), path)
        if default is _MISSING or default is None:
            return None
        if not _assign(step.config, path, copy.deepcopy(default)):
            return None
        return AppliedFix(
            code=issue.code, step_id=step.id, field=field,
            description=f"Set {field} on step '{step.id}' to its default",
            before=None, after=default,
        )

    def _drop_unknown_field(self, graph: Graph, issue: ValidationIssue) -> Optional[AppliedFix]:
        step = graph.get_step(issue.step_id) if issue.step_id else None
        field = issue.field or ""
        key = field[len("config."):] if field.startswith("config.") else ""
        if step is None or not key or "." in key or key not in (step.config or {}):
            return None
        before = step.config.pop(key)
        return AppliedFix(
            code=issue.code, step_id=step.id, field=field,
            description=f"Removed unknown field {field} from step '{step.id}'",
            before=before, after=None,
        )

    def _repair_port(self, graph: Graph, issue: ValidationIssue) -> Optional[AppliedFix]:
        edge = self._find_edge(graph, issue.edge_id)
        source = graph.get_step(edge.source) if edge else None
        if edge is None or source is None:
            return None

        port = self._choose_port(graph, source, edge)
        if port is None:
            return None
        before = edge.source_port or edge.label
        edge.source_port = port
        return AppliedFix(
            code=issue.code, step_id=source.id, edge_id=edge.id, field="source_port",
            description=f"Rewrote edge {edge.source} -> {edge.target} to port '{port}'",
            before=before, after=port,
        )

    def _choose_port(self, graph: Graph, source: Step, edge: Edge) -> Optional[str]:
        """Default port, or the next declared port no valid sibling edge occupies."""
        ports = [p for p in self.registry.ports_for(source) if p != ERROR_PORT]
        default = self.registry.default_port_for(source)
        if not ports:
            return None

        occupied = set()
        for sibling in graph.outgoing(source.id):
            if sibling.id == edge.id:
                continue
            port, _ = self.registry.resolve_source_port(source, sibling)
            if port in ports:
                occupied.add(port)

        candidates = ([default] if default in ports else []) + [p for p in ports if p != default]
        for candidate in candidates:
            if candidate not in occupied:
                return candidate
        return candidates[0]

    def _repair_entry_point(self, graph: Graph, issue: ValidationIssue) -> Optional[AppliedFix]:
        starts = graph.find_start_nodes()
        if not starts:
            return None
        before = graph.entry_point
        graph.entry_point = starts[0].id
        return AppliedFix(
            code=issue.code, step_id=starts[0].id, field="entry_point",
            description=f"Pointed entry_point at start step '{starts[0].id}'",
            before=before, after=starts[0].id,
        )

    def _break_cycle(self, graph: Graph, issue: ValidationIssue) -> Optional[AppliedFix]:
        edge = self._find_edge(graph, issue.edge_id)
        if edge is None:
            return None
        graph.edges = [e for e in graph.edges if e.id != edge.id]
        return AppliedFix(
            code=issue.code, edge_id=edge.id, step_id=edge.source,
            description=f"Removed back edge {edge.source} -> {edge.target} closing {' -> '.join(issue.path)}",
            before={"source": edge.source, "target": edge.target}, after=None,
        )

    @staticmethod
    def _find_edge(graph: Graph, edge_id: Optional[str]) -> Optional[Edge]:
        if not edge_id:
            return None
        for edge in graph.edges:
            if edge.id == edge_id:
                return edge
        return None
