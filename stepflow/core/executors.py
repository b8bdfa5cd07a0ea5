"""Step executors: one execution strategy per step kind.

Every executor receives the typed configuration produced by the kind's
config model (after placeholder resolution), the step input and an
:class:`ExecutionContext`, and returns a :class:`StepResult`. Failures
are raised as :class:`TransientStepError` (retryable) or
:class:`PermanentStepError`; ``human_in_loop`` raises
:class:`ApprovalPending` to suspend.
"""

import asyncio
import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from ..config import AppConfig
from ..models.core import Graph, Step, StepKind
from .adapters import AdapterError, AdapterRegistry
from .exceptions import ApprovalPending, PermanentStepError, TransientStepError
from .expressions import (
    ExpressionError,
    build_context,
    evaluate_condition,
    expand_templates,
    get_path,
    render_template,
)
from .logging import get_logger, log_with_context
from .registry import StepKindRegistry
from .resolver import mask_secrets

logger = get_logger(__name__)

REDACTED = "[REDACTED]"

PII_PATTERNS = {
    "email": re.compile(r'[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}'),
    "phone": re.compile(r'(?<!\d)(?:\+?\d{1,3}[\s.-]?)?(?:\(\d{3}\)|\d{3})[\s.-]?\d{3}[\s.-]?\d{4}(?!\d)'),
    "credit_card": re.compile(r'(?<!\d)(?:\d[ -]?){13,16}(?!\d)'),
    "ssn": re.compile(r'(?<!\d)\d{3}-\d{2}-\d{4}(?!\d)'),
}


@dataclass
class StepResult:
    """Output of a step plus the ports it selected (None selects every port)."""
    output: Any = None
    ports: Optional[List[str]] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ExecutionContext:
    """Collaborators available to an executor for one invocation."""
    run_id: str
    step: Step
    registry: StepKindRegistry
    adapters: AdapterRegistry
    config: AppConfig
    run_subgraph: Callable[[Graph, Any, str], Awaitable[Any]]
    wait_for_signal: Callable[[str, float], Awaitable[Any]]
    load_graph: Optional[Callable[[str], Graph]] = None
    secrets: Set[str] = field(default_factory=set)

    def fail(self, message: str) -> PermanentStepError:
        return PermanentStepError(message, step_id=self.step.id, run_id=self.run_id)

    def mask(self, value: Any) -> Any:
        return mask_secrets(value, self.secrets)


class StepExecutor:
    """Base class for step execution strategies."""

    async def execute(self, config: Any, input_data: Any, context: ExecutionContext) -> StepResult:
        raise NotImplementedError


def _adapter_failure(error: AdapterError, context: ExecutionContext) -> Exception:
    message = f"{error.kind.value}: {error.message}"
    if error.is_transient:
        return TransientStepError(message, step_id=context.step.id, run_id=context.run_id)
    return context.fail(message)


def _as_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, default=str)


class StartExecutor(StepExecutor):
    async def execute(self, config, input_data, context):
        return StepResult(output=input_data)


class LLMExecutor(StepExecutor):
    """Renders the prompt against the input and calls the provider adapter."""

    async def execute(self, config, input_data, context):
        scope = build_context(input_data)
        payload = {
            "prompt": _as_text(render_template(config.prompt, scope)),
            "system": render_template(config.system_prompt, scope) if config.system_prompt else None,
            "temperature": config.temperature,
            "max_tokens": config.max_tokens,
            "output_format": config.output_format,
            "input": input_data,
        }
        response = await context.adapters.invoke(config.provider, config.model, payload)
        if response.error is not None:
            raise _adapter_failure(response.error, context)

        content = response.content
        if config.output_format == "json" and isinstance(content, str):
            try:
                content = json.loads(content)
            except json.JSONDecodeError as e:
                raise context.fail(f"Malformed JSON output from {config.provider}/{config.model}: {e}")
        return StepResult(output=content, metadata={"usage": response.usage or {}})


class ToolExecutor(StepExecutor):
    async def execute(self, config, input_data, context):
        arguments = expand_templates(config.arguments, build_context(input_data))
        response = await context.adapters.invoke(
            config.adapter, config.operation, {"arguments": arguments, "input": input_data}
        )
        if response.error is not None:
            raise _adapter_failure(response.error, context)
        return StepResult(output=response.content, metadata={"usage": response.usage or {}})


def _evaluate(expression: str, input_data: Any, context: ExecutionContext) -> bool:
    try:
        return evaluate_condition(expression, input_data)
    except ExpressionError as e:
        raise context.fail(str(e))


class ConditionExecutor(StepExecutor):
    async def execute(self, config, input_data, context):
        result = _evaluate(config.expression, input_data, context)
        return StepResult(output=input_data, ports=["true" if result else "false"])


class SwitchExecutor(StepExecutor):
    """First matching case wins; otherwise the ``default`` port."""

    async def execute(self, config, input_data, context):
        for case in config.cases:
            if case.is_default or not case.expression:
                continue
            if _evaluate(case.expression, input_data, context):
                return StepResult(output=input_data, ports=[case.name])
        return StepResult(output=input_data, ports=["default"])


class RouterExecutor(StepExecutor):
    """Selects routes by expression, or asks a model to classify the input.

    With expressions every matching route is selected. Without them the
    adapter's answer is matched against route names. Both modes fall
    back to the first route.
    """

    async def execute(self, config, input_data, context):
        routes = config.routes
        if any(route.expression for route in routes):
            selected = [
                route.name for route in routes
                if route.expression and _evaluate(route.expression, input_data, context)
            ]
            return StepResult(output=input_data, ports=selected or [routes[0].name])

        if not config.provider:
            raise context.fail("Router without route expressions requires a provider for classification")

        options = "\n".join(
            f"- {route.name}" + (f": {route.description}" if route.description else "") for route in routes
        )
        if config.prompt:
            prompt = _as_text(render_template(config.prompt, build_context(input_data, {"routes": options})))
        else:
            prompt = (
                "Classify the input into exactly one of the following routes and "
                f"answer with the route name only.\n{options}\n\nInput:\n{_as_text(input_data)}"
            )
        response = await context.adapters.invoke(
            config.provider, config.model, {"prompt": prompt, "input": input_data}
        )
        if response.error is not None:
            raise _adapter_failure(response.error, context)

        answer = _as_text(response.content).strip().lower()
        for route in routes:
            if route.name.lower() == answer:
                return StepResult(output=input_data, ports=[route.name])
        logger.info(f"Router {context.step.id} got unknown route {answer!r}; using {routes[0].name}")
        return StepResult(output=input_data, ports=[routes[0].name])


def _items_from(config, input_data: Any, context: ExecutionContext) -> List[Any]:
    items = get_path(input_data, config.items_path) if config.items_path else input_data
    if items is None:
        return []
    if not isinstance(items, list):
        raise context.fail(
            f"Expected an array at '{config.items_path or '$'}', got {type(items).__name__}"
        )
    return items


def _body_graph(body: Dict[str, Any], context: ExecutionContext) -> Graph:
    try:
        return Graph.model_validate(body)
    except ValueError as e:
        raise context.fail(f"Invalid body graph: {e}")


class MapExecutor(StepExecutor):
    """Runs the body graph once per element, in parallel unless configured sequential."""

    async def execute(self, config, input_data, context):
        items = _items_from(config, input_data, context)
        body = _body_graph(config.body, context)
        step_id = context.step.id

        if "max_workers" in config.model_fields_set:
            workers = config.max_workers
        else:
            workers = context.config.map_max_workers

        if config.parallel:
            semaphore = asyncio.Semaphore(workers)

            async def _run(index: int, item: Any):
                async with semaphore:
                    return await context.run_subgraph(body, item, f"{step_id}[{index}]")

            outcomes = await asyncio.gather(
                *(_run(index, item) for index, item in enumerate(items)),
                return_exceptions=True,
            )
        else:
            outcomes = []
            for index, item in enumerate(items):
                try:
                    outcomes.append(await context.run_subgraph(body, item, f"{step_id}[{index}]"))
                except (PermanentStepError, TransientStepError) as e:
                    outcomes.append(e)

        results: List[Any] = []
        errors: List[Dict[str, Any]] = []
        for index, outcome in enumerate(outcomes):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                results.append(None)
                errors.append({"index": index, "message": str(outcome)})
            else:
                results.append(outcome)

        if items and len(errors) == len(items):
            raise context.fail(f"All {len(items)} items failed; first error: {errors[0]['message']}")
        return StepResult(output={"items": results, "count": len(items), "errors": errors})


class LoopExecutor(StepExecutor):
    """Sequential iteration over items, or a while-loop on ``condition``."""

    async def execute(self, config, input_data, context):
        body = _body_graph(config.body, context)
        step_id = context.step.id
        if "max_iterations" in config.model_fields_set:
            limit = config.max_iterations
        else:
            limit = context.config.max_loop_iterations

        history: List[Any] = []
        if config.condition:
            output = input_data
            iteration = 0
            while iteration < limit:
                scope = {"iteration": iteration, "output": output, "input": input_data}
                if not _evaluate(config.condition, scope, context):
                    break
                output = await context.run_subgraph(body, output, f"{step_id}[{iteration}]")
                history.append(output)
                iteration += 1
            else:
                logger.warning(f"Loop {step_id} stopped at max_iterations={limit}")
            return StepResult(output={"items": history, "count": iteration, "output": output})

        items = _items_from(config, input_data, context)
        if len(items) > limit:
            raise context.fail(f"Loop over {len(items)} items exceeds max_iterations={limit}")
        for index, item in enumerate(items):
            history.append(await context.run_subgraph(body, item, f"{step_id}[{index}]"))
        return StepResult(output={
            "items": history,
            "count": len(history),
            "output": history[-1] if history else None,
        })


class JoinExecutor(StepExecutor):
    """Merges upstream outputs keyed by upstream step (or target port)."""

    async def execute(self, config, input_data, context):
        if isinstance(input_data, dict):
            return StepResult(output=dict(input_data))
        return StepResult(output={"value": input_data})


def _flatten(values: List[Any]) -> List[Any]:
    flat: List[Any] = []
    for value in values:
        if isinstance(value, list):
            flat.extend(value)
        elif isinstance(value, dict) and isinstance(value.get("items"), list):
            flat.extend(value["items"])
        else:
            flat.append(value)
    return flat


def _numbers(values: List[Any]) -> List[float]:
    return [v for v in values if isinstance(v, (int, float)) and not isinstance(v, bool)]


def aggregate_values(operation: str, values: List[Any]) -> Any:
    if operation == "count":
        return len(values)
    if operation == "first":
        return values[0] if values else None
    if operation == "last":
        return values[-1] if values else None
    if operation == "concat":
        if values and all(isinstance(v, str) for v in values):
            return "".join(values)
        return _flatten(values)
    numbers = _numbers(values)
    if operation == "sum":
        return sum(numbers)
    if operation == "avg":
        return sum(numbers) / len(numbers) if numbers else None
    if operation == "min":
        return min(numbers) if numbers else None
    if operation == "max":
        return max(numbers) if numbers else None
    raise ValueError(f"Unknown aggregate operation: {operation}")


class AggregateExecutor(JoinExecutor):
    async def execute(self, config, input_data, context):
        merged = (await super().execute(config, input_data, context)).output
        values = _flatten(list(merged.values()))
        output: Dict[str, Any] = {"inputs": merged}
        for op in config.operations:
            selected = [get_path(v, op.field) for v in values] if op.field else values
            key = op.output_field or (f"{op.operation}_{op.field}" if op.field else op.operation)
            output[key] = aggregate_values(op.operation, selected)
        return StepResult(output=output)


def _parse_until(value: str) -> datetime:
    moment = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


class WaitExecutor(StepExecutor):
    """Sleeps or awaits a named signal; never longer than ``max_wait_seconds``."""

    async def execute(self, config, input_data, context):
        cap = context.config.max_wait_seconds
        if config.signal:
            try:
                payload = await context.wait_for_signal(config.signal, cap)
            except asyncio.TimeoutError:
                raise context.fail(f"Signal '{config.signal}' not received within {cap}s")
            return StepResult(output=payload if payload is not None else input_data)

        if config.duration_ms is not None:
            delay = config.duration_ms / 1000.0
        else:
            try:
                delay = (_parse_until(config.until) - datetime.now(timezone.utc)).total_seconds()
            except ValueError as e:
                raise context.fail(f"Invalid 'until' timestamp: {e}")
        delay = max(0.0, min(delay, cap))
        await asyncio.sleep(delay)
        return StepResult(output=input_data, metadata={"waited_seconds": delay})


class HumanInLoopExecutor(StepExecutor):
    async def execute(self, config, input_data, context):
        prompt = render_template(config.prompt, build_context(input_data))
        raise ApprovalPending(
            step_id=context.step.id, prompt=_as_text(prompt), approvers=config.approvers,
            timeout_seconds=config.timeout_seconds,
        )


def approval_ports(payload: Any) -> List[str]:
    """Port selected by an approver's resume payload."""
    if isinstance(payload, dict):
        decision = str(payload.get("decision", "")).lower()
        if decision == "timeout":
            return ["timeout"]
        if decision == "rejected" or payload.get("approved") is False:
            return ["rejected"]
    return ["approved"]


def _map_strings(value: Any, fn: Callable[[str], str]) -> Any:
    if isinstance(value, str):
        return fn(value)
    if isinstance(value, dict):
        return {k: _map_strings(v, fn) for k, v in value.items()}
    if isinstance(value, list):
        return [_map_strings(v, fn) for v in value]
    return value


def _rule_patterns(rule) -> List[re.Pattern]:
    if rule.type == "contains":
        terms = rule.value if isinstance(rule.value, list) else [rule.value]
        return [re.compile(re.escape(str(t)), re.IGNORECASE) for t in terms if t]
    if rule.type == "regex":
        return [re.compile(str(rule.value))]
    if rule.type == "pii":
        kinds = rule.value if isinstance(rule.value, list) else list(PII_PATTERNS)
        return [PII_PATTERNS[k] for k in kinds if k in PII_PATTERNS]
    return []


class GuardrailsExecutor(StepExecutor):
    """Checks content against rules, then blocks, flags or redacts."""

    async def execute(self, config, input_data, context):
        target = get_path(input_data, config.target_path) if config.target_path else input_data
        text = _as_text(target)

        violations: List[Dict[str, Any]] = []
        patterns: List[re.Pattern] = []
        max_length: Optional[int] = None
        for rule in config.rules:
            if rule.type == "max_length":
                limit = int(rule.value)
                if len(text) > limit:
                    violations.append({"rule": "max_length", "detail": f"{len(text)} > {limit}"})
                    max_length = limit if max_length is None else min(max_length, limit)
                continue
            try:
                rule_patterns = _rule_patterns(rule)
            except re.error as e:
                raise context.fail(f"Invalid guardrail pattern: {e}")
            hits = sum(len(p.findall(text)) for p in rule_patterns)
            if hits:
                violations.append({"rule": rule.type, "detail": f"{hits} match(es)"})
                patterns.extend(rule_patterns)

        if not violations:
            return StepResult(output={"passed": True, "flagged": False, "violations": [], "output": input_data})

        if config.action == "block":
            summary = ", ".join(v["rule"] for v in violations)
            raise context.fail(f"Guardrails blocked output ({summary})")

        if config.action == "warn":
            return StepResult(output={"passed": False, "flagged": True, "violations": violations,
                                      "output": input_data})

        def _redact(value: str) -> str:
            for pattern in patterns:
                value = pattern.sub(REDACTED, value)
            if max_length is not None and len(value) > max_length:
                value = value[:max_length]
            return value

        return StepResult(output={"passed": False, "flagged": True, "violations": violations,
                                  "output": _map_strings(input_data, _redact)})


class EvaluatorExecutor(StepExecutor):
    """Scores content against criteria; fails the threshold per ``action``."""

    async def execute(self, config, input_data, context):
        target = get_path(input_data, config.target_path) if config.target_path else input_data
        text = _as_text(target)

        results = []
        for criterion in config.criteria:
            value = criterion.value
            if criterion.type == "min_length":
                ok = len(text) >= int(value)
            elif criterion.type == "max_length":
                ok = len(text) <= int(value)
            elif criterion.type == "contains":
                terms = value if isinstance(value, list) else [value]
                ok = all(str(t).lower() in text.lower() for t in terms)
            elif criterion.type == "required_fields":
                fields = value if isinstance(value, list) else [value]
                ok = isinstance(target, dict) and all(get_path(target, str(f)) is not None for f in fields)
            else:
                try:
                    ok = re.search(str(value), text) is not None
                except re.error as e:
                    raise context.fail(f"Invalid evaluator pattern: {e}")
            results.append({"type": criterion.type, "passed": ok})

        score = sum(1 for r in results if r["passed"]) / len(results)
        passed = score >= config.threshold
        output = {"score": score, "passed": passed, "flagged": not passed, "results": results,
                  "output": input_data}
        if passed:
            return StepResult(output=output)
        if config.action == "block":
            raise context.fail(f"Evaluation score {score:.2f} below threshold {config.threshold:.2f}")
        if config.action == "redact":
            output["output"] = REDACTED
        return StepResult(output=output)


class SubflowExecutor(StepExecutor):
    async def execute(self, config, input_data, context):
        if config.graph:
            graph = _body_graph(config.graph, context)
        else:
            if context.load_graph is None:
                raise context.fail("Subflow by workflow_id requires a graph loader")
            try:
                graph = context.load_graph(config.workflow_id)
            except Exception as e:
                raise context.fail(f"Cannot load subflow '{config.workflow_id}': {e}")

        if config.input_mapping:
            scope = build_context(input_data)
            sub_input = {key: get_path(scope, path) for key, path in config.input_mapping.items()}
        else:
            sub_input = input_data
        output = await context.run_subgraph(graph, sub_input, f"{context.step.id}/{graph.name}")
        return StepResult(output=output)


_LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


class LogExecutor(StepExecutor):
    async def execute(self, config, input_data, context):
        message = _as_text(render_template(config.message, build_context(input_data)))
        log_with_context(logger, _LOG_LEVELS[config.level], context.mask(message), step_id=context.step.id)
        return StepResult(output=input_data, metadata={"message": context.mask(message)})


class ErrorExecutor(StepExecutor):
    async def execute(self, config, input_data, context):
        raise context.fail(_as_text(render_template(config.message, build_context(input_data))))


def default_executors() -> Dict[StepKind, StepExecutor]:
    """Kind to executor-strategy table."""
    map_executor = MapExecutor()
    return {
        StepKind.START: StartExecutor(),
        StepKind.LLM: LLMExecutor(),
        StepKind.TOOL: ToolExecutor(),
        StepKind.CONDITION: ConditionExecutor(),
        StepKind.SWITCH: SwitchExecutor(),
        StepKind.ROUTER: RouterExecutor(),
        StepKind.MAP: map_executor,
        StepKind.FOREACH: map_executor,
        StepKind.LOOP: LoopExecutor(),
        StepKind.JOIN: JoinExecutor(),
        StepKind.AGGREGATE: AggregateExecutor(),
        StepKind.WAIT: WaitExecutor(),
        StepKind.HUMAN_IN_LOOP: HumanInLoopExecutor(),
        StepKind.GUARDRAILS: GuardrailsExecutor(),
        StepKind.EVALUATOR: EvaluatorExecutor(),
        StepKind.SUBFLOW: SubflowExecutor(),
        StepKind.LOG: LogExecutor(),
        StepKind.ERROR: ErrorExecutor(),
    }
