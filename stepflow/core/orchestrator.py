"""Run orchestration: readiness scheduling, dispatch, retries and suspension.

Each run is driven by its own asyncio task. Ready steps are dispatched
as concurrent tasks; the driving task is the only writer of the run's
scheduling state, and StepRun records are created and transitioned by
the task executing that step. Nested graphs (map/loop bodies and
subflows) reuse the same scheduler and dispatch path in memory, without
persisting StepRuns.
"""

import asyncio
import time
import traceback
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Deque, Dict, List, Optional, Set, Tuple

from pydantic import ValidationError

from ..config import AppConfig, get_config
from ..models.core import (
    Edge,
    ErrorKind,
    FailurePolicy,
    Graph,
    Run,
    RunError,
    RunMode,
    RunStatus,
    RunTrigger,
    Step,
    StepError,
    StepKind,
    StepRun,
    StepRunStatus,
    Variable,
)
from .adapters import AdapterRegistry
from .error_recovery import RetryConfig
from .exceptions import (
    ApprovalPending,
    GraphValidationError,
    InvalidRunStateError,
    NotFoundError,
    OrchestratorError,
    PermanentStepError,
    RunNotFoundError,
    StepExecutionError,
    TransientStepError,
    WorkflowEngineError,
)
from .executors import ExecutionContext, StepExecutor, StepResult, approval_ports, default_executors
from .graph_manager import GraphManager
from .logging import ErrorRecoveryLogger, clear_logging_context, get_logger, set_logging_context
from .registry import ERROR_PORT, StepKindRegistry
from .resolver import SecretStore, VariableResolver, mask_secrets
from .state_manager import StateManager
from .validator import GraphValidator

logger = get_logger(__name__)

MERGING_KINDS = {StepKind.JOIN, StepKind.AGGREGATE}
SUSPENDING_KINDS = {StepKind.WAIT, StepKind.HUMAN_IN_LOOP}
CONTAINER_KINDS = {StepKind.MAP, StepKind.FOREACH, StepKind.LOOP, StepKind.SUBFLOW}
MAX_NESTING_DEPTH = 10


class EdgeState(str, Enum):
    PENDING = "pending"
    DELIVERED = "delivered"
    PRUNED = "pruned"
    FAILED = "failed"


@dataclass
class ReadyStep:
    step: Step
    input: Any
    upstream_failed: List[str] = field(default_factory=list)


class GraphScheduler:
    """Edge-state bookkeeping for one graph execution.

    An edge stays pending until its source finishes, then becomes
    delivered (its port was selected), pruned (branch not taken, or the
    source was skipped) or failed (the source failed under ``continue``).
    A step is ready once every incoming edge is resolved and at least one
    delivered; a step whose incoming edges are all pruned is skipped,
    without a StepRun, and prunes its own outgoing edges. Join/aggregate
    in ``race`` mode is ready on the first delivery.
    """

    def __init__(self, graph: Graph, registry: StepKindRegistry, run_input: Any):
        self.registry = registry
        self.run_input = run_input
        self.steps = graph.step_map()
        self.incoming: Dict[str, List[Edge]] = {step_id: [] for step_id in self.steps}
        self.outgoing: Dict[str, List[Edge]] = {step_id: [] for step_id in self.steps}
        self.edge_port: Dict[str, Optional[str]] = {}
        for edge in graph.edges:
            if edge.source not in self.steps or edge.target not in self.steps:
                continue
            self.outgoing[edge.source].append(edge)
            self.incoming[edge.target].append(edge)
            self.edge_port[edge.id] = registry.resolve_source_port(self.steps[edge.source], edge)[0]
        self.edge_state: Dict[str, EdgeState] = {edge_id: EdgeState.PENDING for edge_id in self.edge_port}
        self.status: Dict[str, str] = {}
        self.outputs: Dict[str, Any] = {}
        self.start_ids: Set[str] = {step.id for step in graph.find_start_nodes()}
        self._delivery_order: Dict[str, int] = {}

    def ready(self) -> List[ReadyStep]:
        """Claim every step that became ready, propagating skips."""
        ready: List[ReadyStep] = []
        changed = True
        while changed:
            changed = False
            for step_id, step in self.steps.items():
                if step_id in self.status:
                    continue
                if step_id in self.start_ids:
                    self.status[step_id] = "dispatched"
                    ready.append(ReadyStep(step, self.run_input))
                    continue

                edges = self.incoming[step_id]
                mode = self._join_mode(step)
                delivered = self._delivered(edges)
                if mode == "race" and delivered:
                    first = delivered[0]
                    self.status[step_id] = "dispatched"
                    ready.append(ReadyStep(step, {self._merge_key(first): self.outputs[first.source]}))
                    continue
                if any(self.edge_state[e.id] == EdgeState.PENDING for e in edges):
                    continue

                failed = [e.source for e in edges if self.edge_state[e.id] == EdgeState.FAILED]
                if mode == "all" and failed:
                    self.status[step_id] = "dispatched"
                    ready.append(ReadyStep(step, self._compose(step, delivered), upstream_failed=failed))
                elif delivered:
                    self.status[step_id] = "dispatched"
                    ready.append(ReadyStep(step, self._compose(step, delivered)))
                else:
                    self.status[step_id] = "skipped"
                    self._resolve_outgoing(step_id, EdgeState.PRUNED)
                    changed = True
        return ready

    @staticmethod
    def _join_mode(step: Step) -> Optional[str]:
        if step.kind not in MERGING_KINDS:
            return None
        return str((step.config or {}).get("mode") or "all")

    def _delivered(self, edges: List[Edge]) -> List[Edge]:
        delivered = [e for e in edges if self.edge_state[e.id] == EdgeState.DELIVERED]
        return sorted(delivered, key=lambda e: self._delivery_order[e.id])

    @staticmethod
    def _merge_key(edge: Edge) -> str:
        return edge.target_port or edge.source

    def _compose(self, step: Step, delivered: List[Edge]) -> Any:
        if step.kind not in MERGING_KINDS and len(delivered) == 1:
            return self.outputs[delivered[0].source]
        return {self._merge_key(edge): self.outputs[edge.source] for edge in delivered}

    def _resolve_outgoing(self, step_id: str, state: EdgeState):
        for edge in self.outgoing[step_id]:
            if self.edge_state[edge.id] == EdgeState.PENDING:
                self.edge_state[edge.id] = state

    def complete(self, step_id: str, output: Any, ports: List[str]):
        """Record a step's output and deliver the edges on its selected ports."""
        self.status[step_id] = "completed"
        self.outputs[step_id] = output
        for edge in self.outgoing[step_id]:
            if self.edge_port[edge.id] in ports:
                self.edge_state[edge.id] = EdgeState.DELIVERED
                self._delivery_order[edge.id] = len(self._delivery_order)
            else:
                self.edge_state[edge.id] = EdgeState.PRUNED

    def fail(self, step_id: str):
        self.status[step_id] = "failed"
        self._resolve_outgoing(step_id, EdgeState.FAILED)

    def suspend(self, step_id: str):
        self.status[step_id] = "suspended"

    def suspended(self) -> List[str]:
        return [step_id for step_id, status in self.status.items() if status == "suspended"]

    def result(self) -> Any:
        """Output of the completed steps that delivered nothing downstream."""
        sinks = {}
        for step_id in self.steps:
            if self.status.get(step_id) != "completed":
                continue
            if any(self.edge_state[e.id] == EdgeState.DELIVERED for e in self.outgoing[step_id]):
                continue
            sinks[step_id] = self.outputs[step_id]
        if not sinks:
            return None
        if len(sinks) == 1:
            return next(iter(sinks.values()))
        return sinks


class RunControl:
    """Cooperative flags shared between a run's driver and its API callers."""

    def __init__(self, parent: Optional["RunControl"] = None):
        self.parent = parent
        self.cancelled = False
        self.halted = False
        self.failure: Optional[RunError] = None
        self.resumes: Deque[Tuple[str, Any, List[str]]] = deque()
        self.wake = asyncio.Event()

    @property
    def stopped(self) -> bool:
        if self.halted or self.cancelled:
            return True
        return self.parent is not None and self.parent.stopped


@dataclass
class _Outcome:
    step_id: str
    status: str
    output: Any = None
    ports: List[str] = field(default_factory=list)
    error: Optional[StepExecutionError] = None
    interrupted: bool = False


@dataclass
class _RunContext:
    run_id: str
    resolver: VariableResolver
    semaphore: asyncio.Semaphore
    control: RunControl
    signals: Dict[str, asyncio.Future]
    persist: bool = True
    depth: int = 0
    attempts: Dict[str, int] = field(default_factory=dict)
    sequence: int = 0
    pending: Dict[str, str] = field(default_factory=dict)
    task: Optional[asyncio.Task] = None
    done: asyncio.Event = field(default_factory=asyncio.Event)


def _error_output(step_id: str, kind: str, message: str) -> Dict[str, Any]:
    return {"error": {"step_id": step_id, "kind": kind, "message": message}}


def _approval_deadline(step_run: StepRun) -> Optional[datetime]:
    output = step_run.output if isinstance(step_run.output, dict) else {}
    expires_at = output.get("expires_at")
    return datetime.fromisoformat(expires_at) if expires_at else None


class Orchestrator:
    """Executes validated graphs as persisted runs."""

    def __init__(
        self,
        registry: StepKindRegistry,
        state_manager: StateManager,
        adapters: AdapterRegistry,
        config: Optional[AppConfig] = None,
        validator: Optional[GraphValidator] = None,
        graph_manager: Optional[GraphManager] = None,
        secret_store: Optional[SecretStore] = None,
        variables: Optional[List[Variable]] = None,
        executors: Optional[Dict[StepKind, StepExecutor]] = None,
    ):
        self.registry = registry
        self.state_manager = state_manager
        self.adapters = adapters
        self.config = config or get_config()
        self.validator = validator or GraphValidator(registry)
        self.graph_manager = graph_manager
        self.executors = executors or default_executors()
        self._resolver = VariableResolver(variables or [], secret_store)
        self._retry = RetryConfig.from_app_config(self.config)
        self._recovery_logger = ErrorRecoveryLogger("orchestrator")
        self._active: Dict[str, _RunContext] = {}
        self._approval_timers: Dict[str, asyncio.Task] = {}

    async def execute(
        self,
        graph: Graph,
        input: Any = None,
        mode: RunMode = RunMode.TEST,
        trigger: Optional[RunTrigger] = None,
        variables: Optional[List[Variable]] = None,
        graph_id: Optional[str] = None,
    ) -> Run:
        """
        Validate a graph and start a run of it.

        Args:
            graph: The graph to execute
            input: Run input handed to every start step
            mode: Test or production mode
            trigger: How the run was started; defaults to the start step's trigger type
            variables: Run scoped variables
            graph_id: Stored graph id, when running a stored graph

        Returns:
            Run: The created run, still pending; use wait_for_run to await it

        Raises:
            GraphValidationError: If validation reports errors; no run is created
        """
        result = self.validator.validate(graph)
        if not result.is_valid:
            logger.warning(f"Refusing to run invalid graph '{graph.name}': {len(result.errors)} error(s)")
            raise GraphValidationError.from_issues(result.errors, graph_name=graph.name)

        if trigger is None:
            start = graph.find_start_nodes()[0]
            trigger = RunTrigger(start.trigger_type.value) if start.trigger_type else RunTrigger.MANUAL

        run = Run(
            graph_id=graph_id or graph.id,
            graph_snapshot=graph.model_dump(mode="json"),
            mode=mode,
            trigger=trigger,
            input=input,
            variables=list(variables or []),
        )
        self.state_manager.create_run(run)
        self._launch(run, graph, GraphScheduler(graph, self.registry, input))
        return run

    def _launch(self, run: Run, graph: Graph, scheduler: GraphScheduler, sequence: int = 0,
                attempts: Optional[Dict[str, int]] = None, pending: Optional[Dict[str, str]] = None):
        rc = _RunContext(
            run_id=run.id,
            resolver=self._resolver.with_variables(list(graph.variables) + list(run.variables)),
            semaphore=asyncio.Semaphore(self.config.max_concurrent_steps),
            control=RunControl(),
            signals={},
            sequence=sequence,
            attempts=dict(attempts or {}),
            pending=dict(pending or {}),
        )
        self._active[run.id] = rc
        rc.task = asyncio.create_task(self._run(rc, scheduler))

    async def _run(self, rc: _RunContext, scheduler: GraphScheduler):
        set_logging_context(run_id=rc.run_id, operation="run")
        try:
            run = self.state_manager.get_run(rc.run_id)
            if run.status == RunStatus.CANCELLED:
                return
            if run.status == RunStatus.PENDING:
                self.state_manager.update_run(rc.run_id, status=RunStatus.RUNNING, started_at=datetime.utcnow())
            logger.info(f"Run {rc.run_id} started")
            await self._drive(rc, scheduler)
            self._finalize(rc, scheduler)
        except Exception as e:
            logger.error(f"Run {rc.run_id} crashed: {str(e)}", exc_info=True)
            try:
                self.state_manager.update_run(
                    rc.run_id,
                    status=RunStatus.FAILED,
                    error=RunError(kind=ErrorKind.PERMANENT, message=str(e)),
                    completed_at=datetime.utcnow(),
                )
            except WorkflowEngineError as update_error:
                logger.error(f"Could not mark run {rc.run_id} failed: {update_error.message}")
        finally:
            self._active.pop(rc.run_id, None)
            rc.done.set()
            clear_logging_context()

    async def _drive(self, rc: _RunContext, scheduler: GraphScheduler):
        """Dispatch ready steps until nothing is ready or in flight."""
        in_flight: Dict[asyncio.Task, str] = {}
        control = rc.control
        while True:
            while control.resumes:
                step_id, output, ports = control.resumes.popleft()
                scheduler.complete(step_id, output, ports)

            if not control.stopped:
                for ready in scheduler.ready():
                    task = asyncio.create_task(self._invoke_step(rc, ready))
                    in_flight[task] = ready.step.id

            if not in_flight:
                if control.resumes:
                    continue
                return

            control.wake.clear()
            waker = asyncio.create_task(control.wake.wait())
            try:
                done, _ = await asyncio.wait([*in_flight, waker], return_when=asyncio.FIRST_COMPLETED)
            except asyncio.CancelledError:
                waker.cancel()
                for task in in_flight:
                    task.cancel()
                raise
            if not waker.done():
                waker.cancel()
            for task in done:
                if task is waker:
                    continue
                in_flight.pop(task)
                self._apply(scheduler, control, task.result())

    def _apply(self, scheduler: GraphScheduler, control: RunControl, outcome: _Outcome):
        if outcome.status == "completed":
            scheduler.complete(outcome.step_id, outcome.output, outcome.ports)
            return
        if outcome.status == "suspended":
            scheduler.suspend(outcome.step_id)
            return

        step = scheduler.steps[outcome.step_id]
        error = outcome.error
        if outcome.interrupted:
            # Run already stopping; the stop reason stands
            scheduler.fail(step.id)
            return
        if step.on_error == FailurePolicy.CONTINUE:
            scheduler.fail(step.id)
        elif step.on_error == FailurePolicy.FALLBACK:
            scheduler.complete(step.id, _error_output(step.id, error.kind, error.message), [ERROR_PORT])
        else:
            scheduler.fail(step.id)
            if control.failure is None:
                control.failure = RunError(step_id=step.id, kind=ErrorKind(error.kind), message=error.message)
            control.halted = True

    def _finalize(self, rc: _RunContext, scheduler: GraphScheduler):
        run = self.state_manager.get_run(rc.run_id)
        now = datetime.utcnow()
        if rc.control.cancelled or run.status == RunStatus.CANCELLED:
            logger.info(f"Run {rc.run_id} cancelled")
            return

        if rc.control.failure is not None:
            self.state_manager.update_run(rc.run_id, status=RunStatus.FAILED,
                                          error=rc.control.failure, completed_at=now)
            logger.error(f"Run {rc.run_id} failed at step '{rc.control.failure.step_id}': "
                         f"{rc.control.failure.message}")
        elif rc.control.halted:
            self.state_manager.update_run(
                rc.run_id, status=RunStatus.FAILED, completed_at=now,
                error=RunError(kind=ErrorKind.PERMANENT, message="Run interrupted by shutdown"),
            )
        elif scheduler.suspended():
            step_id = scheduler.suspended()[0]
            self.state_manager.update_run(
                rc.run_id,
                status=RunStatus.AWAITING_INPUT,
                pending_step_run_id=rc.pending.get(step_id),
                resume_token=uuid.uuid4().hex,
            )
            logger.info(f"Run {rc.run_id} awaiting input at step '{step_id}'")
        else:
            self.state_manager.update_run(rc.run_id, status=RunStatus.COMPLETED,
                                          output=scheduler.result(), completed_at=now)
            logger.info(f"Run {rc.run_id} completed")

    def _effective_ports(self, step: Step, ports: Optional[List[str]]) -> List[str]:
        if ports is not None:
            return list(ports)
        return [p for p in self.registry.ports_for(step) if p != ERROR_PORT]

    def _record_start(self, rc: _RunContext, step: Step, attempt: int, input_data: Any) -> Optional[StepRun]:
        if not rc.persist:
            return None
        rc.sequence += 1
        return self.state_manager.create_step_run(StepRun(
            run_id=rc.run_id, step_id=step.id, attempt=attempt,
            sequence_number=rc.sequence, input=input_data,
        ))

    def _record(self, record: Optional[StepRun], **changes):
        if record is not None:
            self.state_manager.update_step_run(record.id, **changes)

    async def _invoke_step(self, rc: _RunContext, ready: ReadyStep) -> _Outcome:
        """Run one step through its attempt budget, recording each attempt."""
        step = ready.step
        spec = self.registry.get(step.kind)
        executor = self.executors[step.kind]
        budget = step.max_retries if step.max_retries is not None else self.config.default_max_retries
        retry = self._retry.with_attempts(budget)
        timeout = step.timeout_seconds or self.config.step_timeout
        first = rc.attempts.get(step.id, 0) + 1
        message = ""

        for number in range(1, retry.max_attempts + 1):
            if number > 1 and rc.control.stopped:
                logger.info(f"Step '{step.id}' not retried: run stopped during backoff")
                return _Outcome(step.id, "failed", interrupted=True, error=PermanentStepError(
                    f"Run stopped before retry: {message}", step_id=step.id, run_id=rc.run_id,
                ))
            attempt = first + number - 1
            rc.attempts[step.id] = attempt
            record = self._record_start(rc, step, attempt, ready.input)
            set_logging_context(run_id=rc.run_id, step_id=step.id, attempt=attempt)
            started = time.monotonic()
            secrets: Set[str] = set()
            try:
                if ready.upstream_failed:
                    raise PermanentStepError(
                        f"Upstream step(s) failed: {', '.join(ready.upstream_failed)}",
                        step_id=step.id, run_id=rc.run_id,
                    )
                resolved = rc.resolver.resolve(step.config)
                secrets = resolved.secret_values
                try:
                    config = spec.parse_config(resolved.config)
                except ValidationError as e:
                    raise PermanentStepError(
                        f"Invalid configuration after resolution: {mask_secrets(str(e), secrets)}",
                        step_id=step.id, run_id=rc.run_id,
                    )

                self._record(record, status=StepRunStatus.RUNNING, started_at=datetime.utcnow())
                logger.debug(f"Dispatching step '{step.id}' ({step.kind.value}) with config {resolved.masked}")
                context = self._execution_context(rc, step, secrets)
                try:
                    result = await self._call(rc, executor, step, config, ready.input, context, timeout)
                except ApprovalPending as pending:
                    if not rc.persist:
                        raise PermanentStepError(
                            "human_in_loop is not supported inside nested graphs",
                            step_id=step.id, run_id=rc.run_id,
                        )
                    request = {"prompt": pending.prompt, "approvers": pending.approvers}
                    if pending.timeout_seconds:
                        deadline = datetime.utcnow() + timedelta(seconds=pending.timeout_seconds)
                        request["expires_at"] = deadline.isoformat()
                    self._record(record, status=StepRunStatus.AWAITING_INPUT, output=request)
                    if record is not None:
                        rc.pending[step.id] = record.id
                        if pending.timeout_seconds:
                            self._arm_approval_timer(rc.run_id, record.id, pending.timeout_seconds)
                    logger.info(f"Step '{step.id}' awaiting input")
                    return _Outcome(step.id, "suspended")

                output = mask_secrets(result.output, secrets)
                ports = self._effective_ports(step, result.ports)
                self._record(
                    record, status=StepRunStatus.COMPLETED, output=output, selected_ports=ports,
                    duration_ms=int((time.monotonic() - started) * 1000), completed_at=datetime.utcnow(),
                )
                if number > 1:
                    self._recovery_logger.log_recovery_success(step.id, number)
                return _Outcome(step.id, "completed", output=output, ports=ports)

            except asyncio.TimeoutError:
                error: StepExecutionError = TransientStepError(
                    f"Step timed out after {timeout}s", step_id=step.id, run_id=rc.run_id
                )
            except StepExecutionError as e:
                error = e
            except WorkflowEngineError as e:
                error = PermanentStepError(e.message, step_id=step.id, run_id=rc.run_id)
            except Exception as e:
                logger.error(mask_secrets(
                    f"Unexpected error in step '{step.id}': {str(e)}\n{traceback.format_exc()}", secrets
                ))
                error = PermanentStepError(f"{type(e).__name__}: {str(e)}", step_id=step.id, run_id=rc.run_id)

            message = mask_secrets(error.message, secrets)
            duration_ms = int((time.monotonic() - started) * 1000)
            if retry.should_retry(error, number) and not rc.control.stopped:
                self._record(record, status=StepRunStatus.FAILED, duration_ms=duration_ms,
                             error=StepError(kind=ErrorKind.TRANSIENT, message=message),
                             completed_at=datetime.utcnow())
                self._recovery_logger.log_recovery_attempt(
                    step.id, TransientStepError(message, step_id=step.id, run_id=rc.run_id),
                    number, retry.max_attempts,
                )
                await asyncio.sleep(retry.get_delay(number))
                continue

            if error.retryable:
                message = f"Retries exhausted after {number} attempt(s): {message}"
            final = PermanentStepError(message, step_id=step.id, run_id=rc.run_id)
            self._record(record, status=StepRunStatus.FAILED, duration_ms=duration_ms,
                         error=StepError(kind=ErrorKind.PERMANENT, message=message),
                         completed_at=datetime.utcnow())
            if error.retryable:
                self._recovery_logger.log_recovery_failure(step.id, final, number)
            else:
                logger.warning(f"Step '{step.id}' failed: {message}")
            return _Outcome(step.id, "failed", error=final)

    async def _call(self, rc: _RunContext, executor: StepExecutor, step: Step, config: Any,
                    input_data: Any, context: ExecutionContext, timeout: float) -> StepResult:
        # Suspending and container kinds hold no worker slot and carry no deadline
        if step.kind in SUSPENDING_KINDS or step.kind in CONTAINER_KINDS:
            return await executor.execute(config, input_data, context)
        async with rc.semaphore:
            return await asyncio.wait_for(executor.execute(config, input_data, context), timeout)

    def _execution_context(self, rc: _RunContext, step: Step, secrets: Optional[Set[str]] = None) -> ExecutionContext:
        async def run_subgraph(graph: Graph, data: Any, label: str) -> Any:
            return await self._run_nested(rc, graph, data, label)

        async def wait_for_signal(name: str, timeout: float) -> Any:
            future = rc.signals.get(name)
            if future is None:
                future = rc.signals[name] = asyncio.get_running_loop().create_future()
            return await asyncio.wait_for(asyncio.shield(future), timeout)

        return ExecutionContext(
            run_id=rc.run_id,
            step=step,
            registry=self.registry,
            adapters=self.adapters,
            config=self.config,
            run_subgraph=run_subgraph,
            wait_for_signal=wait_for_signal,
            load_graph=self.graph_manager.get_graph if self.graph_manager else None,
            secrets=set(secrets or ()),
        )

    async def _run_nested(self, rc: _RunContext, graph: Graph, data: Any, label: str) -> Any:
        """Execute a body or subflow graph in memory and return its output."""
        if rc.depth + 1 > MAX_NESTING_DEPTH:
            raise PermanentStepError(f"Nesting deeper than {MAX_NESTING_DEPTH} levels at {label}", run_id=rc.run_id)

        result = self.validator.validate(graph)
        if not result.is_valid:
            summary = "; ".join(issue.message for issue in result.errors)
            raise PermanentStepError(f"Nested graph {label} is invalid: {summary}", run_id=rc.run_id)

        nested = _RunContext(
            run_id=rc.run_id,
            resolver=rc.resolver.with_variables(graph.variables),
            semaphore=rc.semaphore,
            control=RunControl(parent=rc.control),
            signals=rc.signals,
            persist=False,
            depth=rc.depth + 1,
        )
        scheduler = GraphScheduler(graph, self.registry, data)
        await self._drive(nested, scheduler)

        failure = nested.control.failure
        if failure is not None:
            raise PermanentStepError(
                f"Nested graph {label} failed at step '{failure.step_id}': {failure.message}", run_id=rc.run_id
            )
        if rc.control.stopped:
            raise PermanentStepError(f"Nested graph {label} stopped before completion", run_id=rc.run_id)
        return scheduler.result()

    async def wait_for_run(self, run_id: str, timeout: Optional[float] = None) -> Run:
        """
        Wait until a run stops executing (terminal or awaiting input).

        Raises:
            RunNotFoundError: If the run does not exist
            asyncio.TimeoutError: If the run is still executing after ``timeout`` seconds
        """
        rc = self._active.get(run_id)
        if rc is not None:
            await asyncio.wait_for(rc.done.wait(), timeout)
        return self.get_run(run_id)

    def get_run(self, run_id: str) -> Run:
        try:
            return self.state_manager.get_run(run_id)
        except NotFoundError:
            raise RunNotFoundError(f"Run '{run_id}' not found", run_id=run_id)

    def list_runs(self, graph_id: Optional[str] = None, status: Optional[RunStatus] = None,
                  limit: int = 100) -> List[Run]:
        return self.state_manager.list_runs(graph_id=graph_id, status=status, limit=limit)

    def list_step_runs(self, run_id: str) -> List[StepRun]:
        self.get_run(run_id)
        return self.state_manager.list_step_runs(run_id)

    def is_active(self, run_id: str) -> bool:
        return run_id in self._active

    async def resume(self, run_id: str, step_run_id: str, payload: Any,
                     resume_token: Optional[str] = None) -> Run:
        """
        Complete a suspended human_in_loop step with ``payload`` and continue the run.

        Args:
            run_id: ID of the run
            step_run_id: ID of the StepRun awaiting input
            payload: Approver response; becomes the step's output
            resume_token: Optional token issued when the run suspended

        Returns:
            Run: The run, back in ``running`` status

        Raises:
            RunNotFoundError: If the run or step run does not exist
            InvalidRunStateError: If the run or step run is not awaiting input
        """
        run = self.get_run(run_id)
        if run.status not in (RunStatus.AWAITING_INPUT, RunStatus.RUNNING):
            raise InvalidRunStateError(f"Run '{run_id}' is {run.status.value}, not awaiting input", run_id=run_id)
        if resume_token is not None and run.resume_token and resume_token != run.resume_token:
            raise InvalidRunStateError("Resume token does not match", run_id=run_id)
        try:
            step_run = self.state_manager.get_step_run(step_run_id)
        except NotFoundError:
            raise RunNotFoundError(f"Step run '{step_run_id}' not found", run_id=run_id)
        if step_run.run_id != run_id or step_run.status != StepRunStatus.AWAITING_INPUT:
            raise InvalidRunStateError(f"Step run '{step_run_id}' is not awaiting input", run_id=run_id)

        timer = self._approval_timers.pop(step_run_id, None)
        if timer is not None:
            timer.cancel()
        deadline = _approval_deadline(step_run)
        if deadline is not None and datetime.utcnow() >= deadline and approval_ports(payload) != ["timeout"]:
            logger.warning(f"Response for step '{step_run.step_id}' arrived after its deadline; taking the timeout port")
            payload = {"decision": "timeout"}

        ports = approval_ports(payload)
        self.state_manager.update_step_run(
            step_run_id, status=StepRunStatus.COMPLETED, output=payload,
            selected_ports=ports, completed_at=datetime.utcnow(),
        )
        logger.info(f"Run {run_id} resumed at step '{step_run.step_id}' via port '{ports[0]}'")

        rc = self._active.get(run_id)
        if rc is not None:
            rc.pending.pop(step_run.step_id, None)
            rc.control.resumes.append((step_run.step_id, payload, ports))
            rc.control.wake.set()
            return self.get_run(run_id)

        graph = Graph.model_validate(run.graph_snapshot)
        scheduler, sequence, attempts, pending = self._restore(graph, run, self.state_manager.list_step_runs(run_id))
        if run.status == RunStatus.AWAITING_INPUT:
            run = self.state_manager.update_run(run_id, status=RunStatus.RUNNING,
                                                pending_step_run_id=None, resume_token=None)
        self._launch(run, graph, scheduler, sequence, attempts, pending)
        return run

    def _restore(self, graph: Graph, run: Run, step_runs: List[StepRun]):
        """Rebuild scheduling state from the ledger (latest attempt per step)."""
        scheduler = GraphScheduler(graph, self.registry, run.input)
        latest: Dict[str, StepRun] = {}
        attempts: Dict[str, int] = {}
        for step_run in step_runs:
            attempts[step_run.step_id] = max(attempts.get(step_run.step_id, 0), step_run.attempt)
            latest[step_run.step_id] = step_run
        sequence = max((sr.sequence_number for sr in step_runs), default=0)

        pending: Dict[str, str] = {}
        for step_run in sorted(latest.values(), key=lambda sr: sr.sequence_number):
            step = scheduler.steps.get(step_run.step_id)
            if step is None:
                continue
            if step_run.status == StepRunStatus.COMPLETED:
                scheduler.complete(step.id, step_run.output, step_run.selected_ports)
            elif step_run.status == StepRunStatus.AWAITING_INPUT:
                scheduler.suspend(step.id)
                pending[step.id] = step_run.id
            elif step_run.status == StepRunStatus.FAILED:
                error = step_run.error
                if error is not None and error.kind == ErrorKind.TRANSIENT:
                    continue
                message = error.message if error else "failed"
                if step.on_error == FailurePolicy.FALLBACK:
                    scheduler.complete(step.id, _error_output(step.id, "permanent", message), [ERROR_PORT])
                else:
                    scheduler.fail(step.id)
            # Attempts left pending or running are dispatched again
        return scheduler, sequence, attempts, pending

    async def cancel(self, run_id: str) -> Run:
        """
        Cancel a run; in-flight steps finish but nothing new is dispatched.

        Raises:
            RunNotFoundError: If the run does not exist
            InvalidRunStateError: If the run is already terminal
        """
        run = self.get_run(run_id)
        if run.is_terminal:
            raise InvalidRunStateError(f"Run '{run_id}' is already {run.status.value}", run_id=run_id)

        rc = self._active.get(run_id)
        if rc is not None:
            rc.control.cancelled = True
            rc.control.wake.set()

        now = datetime.utcnow()
        run = self.state_manager.update_run(run_id, status=RunStatus.CANCELLED, completed_at=now)
        for step_run in self.state_manager.list_step_runs(run_id):
            if step_run.status == StepRunStatus.AWAITING_INPUT:
                timer = self._approval_timers.pop(step_run.id, None)
                if timer is not None:
                    timer.cancel()
                self.state_manager.update_step_run(
                    step_run.id, status=StepRunStatus.FAILED, completed_at=now,
                    error=StepError(kind=ErrorKind.PERMANENT, message="Run cancelled"),
                )
        logger.info(f"Run {run_id} cancelled")
        return run

    def signal(self, run_id: str, name: str, payload: Any = None) -> None:
        """
        Deliver a named signal to a run's waiting steps.

        Raises:
            RunNotFoundError: If the run does not exist
            InvalidRunStateError: If the run is not executing
        """
        rc = self._active.get(run_id)
        if rc is None:
            self.get_run(run_id)
            raise InvalidRunStateError(f"Run '{run_id}' is not executing", run_id=run_id)
        future = rc.signals.get(name)
        if future is None:
            future = rc.signals[name] = asyncio.get_running_loop().create_future()
        if not future.done():
            future.set_result(payload)
        logger.info(f"Signal '{name}' delivered to run {run_id}")

    def _arm_approval_timer(self, run_id: str, step_run_id: str, delay: float):
        self._approval_timers[step_run_id] = asyncio.create_task(
            self._expire_approval(run_id, step_run_id, delay)
        )

    async def _expire_approval(self, run_id: str, step_run_id: str, delay: float):
        await asyncio.sleep(delay)
        self._approval_timers.pop(step_run_id, None)
        logger.info(f"Approval deadline passed for step run {step_run_id} of run {run_id}")
        try:
            await self.resume(run_id, step_run_id, {"decision": "timeout"})
        except OrchestratorError as e:
            logger.debug(f"Approval deadline for step run {step_run_id} ignored: {e.message}")
        except WorkflowEngineError as e:
            logger.error(f"Could not expire step run {step_run_id} of run {run_id}: {e.message}")

    def restore_approval_timers(self) -> int:
        """
        Re-arm approval deadlines of runs suspended in the ledger.

        Deadlines already past fire immediately. Must be called from a
        running event loop.

        Returns:
            int: Number of deadlines armed
        """
        armed = 0
        for run in self.state_manager.list_runs(status=RunStatus.AWAITING_INPUT, limit=None):
            for step_run in self.state_manager.list_step_runs(run.id):
                deadline = _approval_deadline(step_run)
                if step_run.status != StepRunStatus.AWAITING_INPUT or deadline is None:
                    continue
                if step_run.id in self._approval_timers:
                    continue
                delay = max(0.0, (deadline - datetime.utcnow()).total_seconds())
                self._arm_approval_timer(run.id, step_run.id, delay)
                armed += 1
        if armed:
            logger.info(f"Re-armed {armed} approval deadline(s)")
        return armed

    async def shutdown(self, timeout: float = 10.0):
        """Stop dispatching, wait for in-flight steps, then cancel stragglers."""
        for timer in self._approval_timers.values():
            timer.cancel()
        self._approval_timers.clear()
        contexts = list(self._active.values())
        for rc in contexts:
            rc.control.halted = True
            rc.control.wake.set()
        tasks = [rc.task for rc in contexts if rc.task is not None]
        if not tasks:
            return
        _, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        logger.info(f"Orchestrator shut down ({len(tasks)} active run(s))")
