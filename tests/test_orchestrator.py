"""Tests for run orchestration."""

import asyncio
import logging

import pytest

from stepflow.core.adapters import AdapterError, AdapterErrorKind, AdapterResponse
from stepflow.core.exceptions import (
    GraphValidationError,
    InvalidRunStateError,
    RunNotFoundError,
    StructuralError,
)
from stepflow.core.orchestrator import Orchestrator
from stepflow.core.resolver import MASK
from stepflow.models.core import (
    ErrorKind,
    RunStatus,
    RunTrigger,
    StepRunStatus,
    Variable,
    VariableScope,
)


START = {"id": "start", "kind": "start"}
ECHO_LLM = {"provider": "echo", "model": "echo-1", "prompt": "{{input}}"}


async def run_to_rest(orchestrator, graph, input=None, **kwargs):
    run = await orchestrator.execute(graph, input=input, **kwargs)
    return await orchestrator.wait_for_run(run.id, timeout=5)


def by_step(step_runs):
    grouped = {}
    for step_run in step_runs:
        grouped.setdefault(step_run.step_id, []).append(step_run)
    return grouped


async def settle(predicate, timeout=5.0):
    """Poll until predicate() holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        assert loop.time() < deadline, "condition not reached in time"
        await asyncio.sleep(0.01)


class TestExecute:
    """Test cases for starting and completing runs."""

    @pytest.mark.asyncio
    async def test_linear_run_completes(self, orchestrator, make_graph):
        graph = make_graph(
            [START, {"id": "llm", "kind": "llm", "config": ECHO_LLM}],
            [{"source": "start", "target": "llm"}],
        )
        run = await run_to_rest(orchestrator, graph, "hello")

        assert run.status == RunStatus.COMPLETED
        assert run.output == "hello"
        assert run.trigger == RunTrigger.MANUAL
        step_runs = orchestrator.list_step_runs(run.id)
        assert [(sr.step_id, sr.status, sr.sequence_number) for sr in step_runs] == [
            ("start", StepRunStatus.COMPLETED, 1),
            ("llm", StepRunStatus.COMPLETED, 2),
        ]
        assert step_runs[1].selected_ports == ["output"]

    @pytest.mark.asyncio
    async def test_execute_returns_pending_run(self, orchestrator, make_graph):
        run = await orchestrator.execute(make_graph([START]), input=1)
        assert run.status == RunStatus.PENDING
        finished = await orchestrator.wait_for_run(run.id, timeout=5)
        assert finished.status == RunStatus.COMPLETED
        assert finished.output == 1

    @pytest.mark.asyncio
    async def test_invalid_graph_creates_no_run(self, orchestrator, state_manager, make_graph):
        graph = make_graph([{"id": "a", "kind": "log"}, {"id": "b", "kind": "log"}],
                           [{"source": "a", "target": "b"}])
        with pytest.raises(StructuralError) as excinfo:
            await orchestrator.execute(graph)
        assert excinfo.value.issues[0].code == "missing_start"
        assert state_manager.list_runs() == []

    @pytest.mark.asyncio
    async def test_cyclic_graph_is_rejected(self, orchestrator, make_graph):
        graph = make_graph(
            [START, {"id": "a", "kind": "log"}, {"id": "b", "kind": "log"}],
            [{"source": "start", "target": "a"}, {"source": "a", "target": "b"}, {"source": "b", "target": "a"}],
        )
        with pytest.raises(GraphValidationError):
            await orchestrator.execute(graph)

    @pytest.mark.asyncio
    async def test_trigger_follows_start_flavor(self, orchestrator, make_graph):
        run = await run_to_rest(orchestrator, make_graph([{"id": "hook", "kind": "webhook_trigger"}]), {})
        assert run.trigger == RunTrigger.WEBHOOK

    @pytest.mark.asyncio
    async def test_unknown_run(self, orchestrator):
        with pytest.raises(RunNotFoundError):
            orchestrator.get_run("missing")


class TestBranching:
    """Edges on unselected ports are pruned, and pruned targets are skipped."""

    @pytest.mark.asyncio
    async def test_untaken_branch_is_skipped_without_step_run(self, orchestrator, make_graph):
        graph = make_graph(
            [START, {"id": "check", "kind": "condition", "config": {"expression": "approved"}},
             {"id": "notify", "kind": "log"}],
            [{"source": "start", "target": "check"},
             {"source": "check", "target": "notify", "source_port": "true"}],
        )
        run = await run_to_rest(orchestrator, graph, {"approved": False})

        assert run.status == RunStatus.COMPLETED
        assert run.output == {"approved": False}
        steps = by_step(orchestrator.list_step_runs(run.id))
        assert set(steps) == {"start", "check"}
        assert steps["check"][0].selected_ports == ["false"]

    @pytest.mark.asyncio
    async def test_skips_cascade_downstream(self, orchestrator, make_graph):
        graph = make_graph(
            [START, {"id": "check", "kind": "condition", "config": {"expression": "false"}},
             {"id": "a", "kind": "log"}, {"id": "b", "kind": "log"}, {"id": "other", "kind": "log"}],
            [{"source": "start", "target": "check"},
             {"source": "check", "target": "a", "source_port": "true"},
             {"source": "a", "target": "b"},
             {"source": "check", "target": "other", "source_port": "false"}],
        )
        run = await run_to_rest(orchestrator, graph, "x")
        assert set(by_step(orchestrator.list_step_runs(run.id))) == {"start", "check", "other"}
        assert run.output == "x"

    @pytest.mark.asyncio
    async def test_join_merges_branches(self, orchestrator, make_graph):
        graph = make_graph(
            [START, {"id": "left", "kind": "llm", "config": {**ECHO_LLM, "prompt": "L:{{input}}"}},
             {"id": "right", "kind": "llm", "config": {**ECHO_LLM, "prompt": "R:{{input}}"}},
             {"id": "merge", "kind": "join", "config": {"mode": "all"}}],
            [{"source": "start", "target": "left"}, {"source": "start", "target": "right"},
             {"source": "left", "target": "merge"}, {"source": "right", "target": "merge"}],
        )
        run = await run_to_rest(orchestrator, graph, "in")

        assert run.status == RunStatus.COMPLETED
        assert run.output == {"left": "L:in", "right": "R:in"}
        steps = by_step(orchestrator.list_step_runs(run.id))
        assert steps["merge"][0].input == {"left": "L:in", "right": "R:in"}

    @pytest.mark.asyncio
    async def test_join_merges_only_delivered_branches(self, orchestrator, make_graph):
        graph = make_graph(
            [START, {"id": "check", "kind": "condition", "config": {"expression": "true"}},
             {"id": "merge", "kind": "join"}],
            [{"source": "start", "target": "check"},
             {"source": "check", "target": "merge", "source_port": "true", "target_port": "yes"},
             {"source": "check", "target": "merge", "source_port": "false", "target_port": "no"}],
        )
        run = await run_to_rest(orchestrator, graph, 5)
        assert run.output == {"yes": 5}

    @pytest.mark.asyncio
    async def test_race_join_takes_first_arrival(self, orchestrator, make_graph):
        graph = make_graph(
            [START, {"id": "fast", "kind": "log"},
             {"id": "slow", "kind": "wait", "config": {"duration_ms": 100}},
             {"id": "first", "kind": "join", "config": {"mode": "race"}}],
            [{"source": "start", "target": "fast"}, {"source": "start", "target": "slow"},
             {"source": "fast", "target": "first"}, {"source": "slow", "target": "first"}],
        )
        run = await run_to_rest(orchestrator, graph, "v")
        assert run.output == {"fast": "v"}
        assert len(by_step(orchestrator.list_step_runs(run.id))["first"]) == 1


class TestRetriesAndFailures:
    """Test cases for retry budgets and failure policies."""

    @pytest.mark.asyncio
    async def test_transient_failures_use_the_whole_budget(self, orchestrator, adapters, make_graph):
        adapters.register("flaky", lambda model, payload: AdapterResponse(
            error=AdapterError(AdapterErrorKind.SERVER_ERROR, "503 upstream")
        ))
        graph = make_graph(
            [START, {"id": "call", "kind": "tool", "max_retries": 3, "config": {"adapter": "flaky"}}],
            [{"source": "start", "target": "call"}],
        )
        run = await run_to_rest(orchestrator, graph, {})

        attempts = by_step(orchestrator.list_step_runs(run.id))["call"]
        assert [sr.attempt for sr in attempts] == [1, 2, 3]
        assert all(sr.status == StepRunStatus.FAILED for sr in attempts)
        assert [sr.error.kind for sr in attempts] == [ErrorKind.TRANSIENT, ErrorKind.TRANSIENT, ErrorKind.PERMANENT]
        assert attempts[-1].error.message.startswith("Retries exhausted after 3 attempt(s)")
        assert run.status == RunStatus.FAILED
        assert run.error.step_id == "call"

    @pytest.mark.asyncio
    async def test_recovers_within_budget(self, orchestrator, adapters, make_graph):
        calls = []

        def sometimes(model, payload):
            calls.append(1)
            if len(calls) < 3:
                return AdapterResponse(error=AdapterError(AdapterErrorKind.RATE_LIMITED, "slow down"))
            return AdapterResponse(content="done")

        adapters.register("sometimes", sometimes)
        graph = make_graph(
            [START, {"id": "call", "kind": "tool", "config": {"adapter": "sometimes"}}],
            [{"source": "start", "target": "call"}],
        )
        run = await run_to_rest(orchestrator, graph, {})
        assert run.status == RunStatus.COMPLETED
        assert run.output == "done"
        statuses = [sr.status for sr in by_step(orchestrator.list_step_runs(run.id))["call"]]
        assert statuses == [StepRunStatus.FAILED, StepRunStatus.FAILED, StepRunStatus.COMPLETED]

    @pytest.mark.asyncio
    async def test_permanent_failure_is_not_retried(self, orchestrator, make_graph):
        graph = make_graph(
            [START, {"id": "stop", "kind": "error", "max_retries": 5, "config": {"message": "bad input {{input}}"}},
             {"id": "after", "kind": "log"}],
            [{"source": "start", "target": "stop"}, {"source": "stop", "target": "after"}],
        )
        run = await run_to_rest(orchestrator, graph, "x")

        assert run.status == RunStatus.FAILED
        assert run.error.message == "bad input x"
        steps = by_step(orchestrator.list_step_runs(run.id))
        assert len(steps["stop"]) == 1
        assert "after" not in steps

    @pytest.mark.asyncio
    async def test_step_timeout_is_transient(self, orchestrator, adapters, make_graph):
        async def sluggish(model, payload):
            await asyncio.sleep(1)

        adapters.register("sluggish", sluggish)
        graph = make_graph(
            [START, {"id": "call", "kind": "tool", "timeout_seconds": 0.05, "max_retries": 1,
                     "config": {"adapter": "sluggish"}}],
            [{"source": "start", "target": "call"}],
        )
        run = await run_to_rest(orchestrator, graph, {})
        assert run.status == RunStatus.FAILED
        assert "timed out" in run.error.message
        assert run.error.message.startswith("Retries exhausted after 1 attempt(s)")

    @pytest.mark.asyncio
    async def test_continue_policy_keeps_other_branches(self, orchestrator, make_graph):
        graph = make_graph(
            [START, {"id": "risky", "kind": "error", "on_error": "continue", "config": {"message": "nope"}},
             {"id": "after", "kind": "log"}, {"id": "safe", "kind": "log"}],
            [{"source": "start", "target": "risky"}, {"source": "risky", "target": "after"},
             {"source": "start", "target": "safe"}],
        )
        run = await run_to_rest(orchestrator, graph, "ok")

        assert run.status == RunStatus.COMPLETED
        assert run.output == "ok"
        steps = by_step(orchestrator.list_step_runs(run.id))
        assert steps["risky"][0].status == StepRunStatus.FAILED
        assert "after" not in steps

    @pytest.mark.asyncio
    async def test_join_all_fails_when_upstream_failed(self, orchestrator, make_graph):
        graph = make_graph(
            [START, {"id": "risky", "kind": "error", "on_error": "continue", "config": {"message": "nope"}},
             {"id": "safe", "kind": "log"}, {"id": "merge", "kind": "join"}],
            [{"source": "start", "target": "risky"}, {"source": "start", "target": "safe"},
             {"source": "risky", "target": "merge"}, {"source": "safe", "target": "merge"}],
        )
        run = await run_to_rest(orchestrator, graph, "ok")

        assert run.status == RunStatus.FAILED
        assert run.error.step_id == "merge"
        assert "risky" in run.error.message

    @pytest.mark.asyncio
    async def test_fallback_routes_error_payload(self, orchestrator, make_graph):
        graph = make_graph(
            [START, {"id": "risky", "kind": "error", "on_error": "fallback", "config": {"message": "broken"}},
             {"id": "handler", "kind": "log"}, {"id": "happy", "kind": "log"}],
            [{"source": "start", "target": "risky"},
             {"source": "risky", "target": "handler", "source_port": "error"},
             {"source": "risky", "target": "happy"}],
        )
        run = await run_to_rest(orchestrator, graph, {})

        assert run.status == RunStatus.COMPLETED
        assert run.output == {"error": {"step_id": "risky", "kind": "permanent", "message": "broken"}}
        steps = by_step(orchestrator.list_step_runs(run.id))
        assert steps["risky"][0].status == StepRunStatus.FAILED
        assert "happy" not in steps

    @pytest.mark.asyncio
    async def test_abort_lets_in_flight_sibling_finish(self, orchestrator, adapters, make_graph):
        async def slow(model, payload):
            await asyncio.sleep(0.1)
            return AdapterResponse(content="slow done")

        adapters.register("slow", slow)
        graph = make_graph(
            [START, {"id": "boom", "kind": "error", "config": {"message": "broken"}},
             {"id": "slow", "kind": "tool", "config": {"adapter": "slow"}}, {"id": "after", "kind": "log"}],
            [{"source": "start", "target": "boom"}, {"source": "start", "target": "slow"},
             {"source": "slow", "target": "after"}],
        )
        run = await run_to_rest(orchestrator, graph, {})

        assert run.status == RunStatus.FAILED
        assert run.error.step_id == "boom"
        steps = by_step(orchestrator.list_step_runs(run.id))
        assert steps["slow"][0].status == StepRunStatus.COMPLETED
        assert steps["slow"][0].output == "slow done"
        assert "after" not in steps


class TestRetryBackoff:
    """Stopping a run while a step waits out its retry backoff."""

    @pytest.fixture
    def slow_orchestrator(self, registry, state_manager, adapters, app_config):
        config = app_config.model_copy(update={"retry_base_delay": 0.3, "retry_max_delay": 1.0})
        return Orchestrator(registry, state_manager, adapters, config=config)

    @pytest.fixture
    def calls(self, adapters):
        calls = []

        def failing(model, payload):
            calls.append(1)
            return AdapterResponse(error=AdapterError(AdapterErrorKind.SERVER_ERROR, "503 upstream"))

        adapters.register("failing", failing)
        return calls

    @pytest.mark.asyncio
    async def test_cancel_during_backoff_stops_retries(self, slow_orchestrator, calls, make_graph):
        graph = make_graph(
            [START, {"id": "call", "kind": "tool", "max_retries": 3, "config": {"adapter": "failing"}}],
            [{"source": "start", "target": "call"}],
        )
        run = await slow_orchestrator.execute(graph, input={})
        await settle(lambda: calls)
        await asyncio.sleep(0.1)
        await slow_orchestrator.cancel(run.id)
        finished = await slow_orchestrator.wait_for_run(run.id, timeout=5)

        assert finished.status == RunStatus.CANCELLED
        assert len(calls) == 1
        assert len(by_step(slow_orchestrator.list_step_runs(run.id))["call"]) == 1

    @pytest.mark.asyncio
    async def test_abort_during_backoff_keeps_failure_reason(self, slow_orchestrator, adapters, calls, make_graph):
        async def rejecting(model, payload):
            await asyncio.sleep(0.1)
            return AdapterResponse(error=AdapterError(AdapterErrorKind.CLIENT_ERROR, "400 rejected"))

        adapters.register("rejecting", rejecting)
        graph = make_graph(
            [START, {"id": "call", "kind": "tool", "max_retries": 3, "config": {"adapter": "failing"}},
             {"id": "reject", "kind": "tool", "config": {"adapter": "rejecting"}}],
            [{"source": "start", "target": "call"}, {"source": "start", "target": "reject"}],
        )
        run = await run_to_rest(slow_orchestrator, graph, {})

        assert run.status == RunStatus.FAILED
        assert run.error.step_id == "reject"
        assert "400 rejected" in run.error.message
        assert len(calls) == 1
        assert len(by_step(slow_orchestrator.list_step_runs(run.id))["call"]) == 1


class TestNestedGraphs:

    @pytest.mark.asyncio
    async def test_map_runs_body_in_memory(self, orchestrator, make_graph):
        body = {
            "steps": [{"id": "s", "kind": "start"},
                      {"id": "fmt", "kind": "llm", "config": {**ECHO_LLM, "prompt": "item {{value}}"}}],
            "edges": [{"source": "s", "target": "fmt"}],
        }
        graph = make_graph([START, {"id": "each", "kind": "map", "config": {"body": body}}],
                           [{"source": "start", "target": "each"}])
        run = await run_to_rest(orchestrator, graph, [1, 2])

        assert run.output == {"items": ["item 1", "item 2"], "count": 2, "errors": []}
        assert [sr.step_id for sr in orchestrator.list_step_runs(run.id)] == ["start", "each"]

    @pytest.mark.asyncio
    async def test_subflow_loads_stored_graph(self, orchestrator, graph_manager, make_graph):
        child = make_graph(
            [START, {"id": "shout", "kind": "llm", "config": {**ECHO_LLM, "prompt": "{{input}}!"}}],
            [{"source": "start", "target": "shout"}],
            name="child",
        )
        child_id = graph_manager.create_graph(child)
        parent = make_graph([START, {"id": "sub", "kind": "subflow", "config": {"workflow_id": child_id}}],
                            [{"source": "start", "target": "sub"}])
        run = await run_to_rest(orchestrator, parent, "hey")
        assert run.status == RunStatus.COMPLETED
        assert run.output == "hey!"

    @pytest.mark.asyncio
    async def test_failing_body_fails_container(self, orchestrator, make_graph):
        body = {
            "steps": [{"id": "s", "kind": "start"}, {"id": "boom", "kind": "error", "config": {"message": "inner"}}],
            "edges": [{"source": "s", "target": "boom"}],
        }
        graph = make_graph([START, {"id": "sub", "kind": "subflow", "config": {"graph": body}}],
                           [{"source": "start", "target": "sub"}])
        run = await run_to_rest(orchestrator, graph, {})
        assert run.status == RunStatus.FAILED
        assert "inner" in run.error.message


class TestSuspension:
    """Test cases for human_in_loop, resume, cancel and signals."""

    def _approval_graph(self, make_graph):
        return make_graph(
            [START, {"id": "approve", "kind": "human_in_loop",
                     "config": {"prompt": "Ship {{version}}?", "approvers": ["ops"]}},
             {"id": "ship", "kind": "log"}, {"id": "halt", "kind": "log"}],
            [{"source": "start", "target": "approve"},
             {"source": "approve", "target": "ship", "source_port": "approved"},
             {"source": "approve", "target": "halt", "source_port": "rejected"}],
        )

    @pytest.mark.asyncio
    async def test_human_in_loop_suspends_and_resumes(self, orchestrator, make_graph):
        run = await run_to_rest(orchestrator, self._approval_graph(make_graph), {"version": "1.2"})

        assert run.status == RunStatus.AWAITING_INPUT
        assert run.resume_token
        pending = orchestrator.state_manager.get_step_run(run.pending_step_run_id)
        assert pending.status == StepRunStatus.AWAITING_INPUT
        assert pending.output == {"prompt": "Ship 1.2?", "approvers": ["ops"]}

        await orchestrator.resume(run.id, pending.id, {"approved": True}, resume_token=run.resume_token)
        finished = await orchestrator.wait_for_run(run.id, timeout=5)

        assert finished.status == RunStatus.COMPLETED
        assert finished.output == {"approved": True}
        steps = by_step(orchestrator.list_step_runs(run.id))
        assert steps["approve"][0].selected_ports == ["approved"]
        assert "ship" in steps and "halt" not in steps

    @pytest.mark.asyncio
    async def test_resume_from_ledger_in_new_orchestrator(self, orchestrator, registry, state_manager, adapters,
                                                          app_config, make_graph):
        run = await run_to_rest(orchestrator, self._approval_graph(make_graph), {"version": "2"})

        restarted = Orchestrator(registry, state_manager, adapters, config=app_config)
        await restarted.resume(run.id, run.pending_step_run_id, {"decision": "rejected"})
        finished = await restarted.wait_for_run(run.id, timeout=5)

        assert finished.status == RunStatus.COMPLETED
        steps = by_step(restarted.list_step_runs(run.id))
        assert "halt" in steps and "ship" not in steps
        assert len(steps["start"]) == 1

    @pytest.mark.asyncio
    async def test_resume_rejects_wrong_token(self, orchestrator, make_graph):
        run = await run_to_rest(orchestrator, self._approval_graph(make_graph), {})
        with pytest.raises(InvalidRunStateError):
            await orchestrator.resume(run.id, run.pending_step_run_id, {}, resume_token="wrong")

    @pytest.mark.asyncio
    async def test_resume_completed_run_is_rejected(self, orchestrator, make_graph):
        run = await run_to_rest(orchestrator, make_graph([START]), 1)
        with pytest.raises(InvalidRunStateError):
            await orchestrator.resume(run.id, "any", {})

    @pytest.mark.asyncio
    async def test_cancel_awaiting_run(self, orchestrator, make_graph):
        run = await run_to_rest(orchestrator, self._approval_graph(make_graph), {})
        cancelled = await orchestrator.cancel(run.id)

        assert cancelled.status == RunStatus.CANCELLED
        pending = orchestrator.state_manager.get_step_run(run.pending_step_run_id)
        assert pending.status == StepRunStatus.FAILED
        assert pending.error.message == "Run cancelled"
        with pytest.raises(InvalidRunStateError):
            await orchestrator.cancel(run.id)

    @pytest.mark.asyncio
    async def test_cancel_stops_dispatch(self, orchestrator, adapters, make_graph):
        gate = asyncio.Event()

        async def gated(model, payload):
            await gate.wait()
            return AdapterResponse(content="released")

        adapters.register("gated", gated)
        graph = make_graph(
            [START, {"id": "hold", "kind": "tool", "config": {"adapter": "gated"}}, {"id": "next", "kind": "log"}],
            [{"source": "start", "target": "hold"}, {"source": "hold", "target": "next"}],
        )
        run = await orchestrator.execute(graph, input={})
        assert orchestrator.is_active(run.id)
        await asyncio.sleep(0.05)
        await orchestrator.cancel(run.id)
        gate.set()
        finished = await orchestrator.wait_for_run(run.id, timeout=5)

        assert finished.status == RunStatus.CANCELLED
        assert not orchestrator.is_active(run.id)
        assert "next" not in by_step(orchestrator.list_step_runs(run.id))

    @pytest.mark.asyncio
    async def test_signal_releases_wait(self, orchestrator, make_graph):
        graph = make_graph(
            [START, {"id": "hold", "kind": "wait", "config": {"signal": "go"}}, {"id": "done", "kind": "log"}],
            [{"source": "start", "target": "hold"}, {"source": "hold", "target": "done"}],
        )
        run = await orchestrator.execute(graph, input="start")
        orchestrator.signal(run.id, "go", {"released": True})
        finished = await orchestrator.wait_for_run(run.id, timeout=5)

        assert finished.status == RunStatus.COMPLETED
        assert finished.output == {"released": True}
        with pytest.raises(InvalidRunStateError):
            orchestrator.signal(run.id, "go")

    @pytest.mark.asyncio
    async def test_wait_holds_no_worker_slot(self, registry, state_manager, adapters, app_config, make_graph):
        calls = []

        async def worker(model, payload):
            calls.append(1)
            return AdapterResponse(content="worked")

        adapters.register("worker", worker)
        orchestrator = Orchestrator(registry, state_manager, adapters,
                                    config=app_config.model_copy(update={"max_concurrent_steps": 1}))
        graph = make_graph(
            [START, {"id": "hold", "kind": "wait", "config": {"signal": "go"}},
             {"id": "work", "kind": "tool", "config": {"adapter": "worker"}}],
            [{"source": "start", "target": "hold"}, {"source": "start", "target": "work"}],
        )
        run = await orchestrator.execute(graph, input={})
        await settle(lambda: calls)

        assert orchestrator.is_active(run.id)
        orchestrator.signal(run.id, "go")
        finished = await orchestrator.wait_for_run(run.id, timeout=5)
        assert finished.status == RunStatus.COMPLETED
        steps = by_step(orchestrator.list_step_runs(run.id))
        assert steps["work"][0].status == StepRunStatus.COMPLETED
        assert steps["hold"][0].status == StepRunStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_shutdown_marks_interrupted_runs_failed(self, orchestrator, adapters, make_graph):
        gate = asyncio.Event()

        async def gated(model, payload):
            await gate.wait()
            return AdapterResponse(content="late")

        adapters.register("gated", gated)
        graph = make_graph(
            [START, {"id": "hold", "kind": "tool", "config": {"adapter": "gated"}}, {"id": "next", "kind": "log"}],
            [{"source": "start", "target": "hold"}, {"source": "hold", "target": "next"}],
        )
        run = await orchestrator.execute(graph, input={})
        await asyncio.sleep(0.05)
        asyncio.get_running_loop().call_later(0.05, gate.set)
        await orchestrator.shutdown(timeout=5)

        stopped = orchestrator.get_run(run.id)
        assert stopped.status == RunStatus.FAILED
        assert stopped.error.message == "Run interrupted by shutdown"
        assert "next" not in by_step(orchestrator.list_step_runs(run.id))


class TestApprovalDeadlines:
    """human_in_loop steps with timeout_seconds take the timeout port once the deadline passes."""

    def _deadline_graph(self, make_graph, timeout_seconds):
        return make_graph(
            [START, {"id": "approve", "kind": "human_in_loop",
                     "config": {"prompt": "Ship?", "timeout_seconds": timeout_seconds}},
             {"id": "ship", "kind": "log"}, {"id": "expired", "kind": "log"}],
            [{"source": "start", "target": "approve"},
             {"source": "approve", "target": "ship", "source_port": "approved"},
             {"source": "approve", "target": "expired", "source_port": "timeout"}],
        )

    @pytest.mark.asyncio
    async def test_deadline_takes_timeout_port(self, orchestrator, make_graph):
        run = await orchestrator.execute(self._deadline_graph(make_graph, 0.05), input={})
        await settle(lambda: orchestrator.get_run(run.id).status == RunStatus.COMPLETED)
        finished = await orchestrator.wait_for_run(run.id, timeout=5)

        assert finished.output == {"decision": "timeout"}
        steps = by_step(orchestrator.list_step_runs(run.id))
        assert steps["approve"][0].selected_ports == ["timeout"]
        assert "expired" in steps and "ship" not in steps

    @pytest.mark.asyncio
    async def test_pending_request_records_deadline(self, orchestrator, make_graph):
        run = await run_to_rest(orchestrator, self._deadline_graph(make_graph, 60), {})

        assert run.status == RunStatus.AWAITING_INPUT
        pending = orchestrator.state_manager.get_step_run(run.pending_step_run_id)
        assert pending.output["prompt"] == "Ship?"
        assert "expires_at" in pending.output
        await orchestrator.cancel(run.id)

    @pytest.mark.asyncio
    async def test_late_response_takes_timeout_port(self, orchestrator, registry, state_manager, adapters,
                                                    app_config, make_graph):
        run = await run_to_rest(orchestrator, self._deadline_graph(make_graph, 0.2), {})
        await orchestrator.shutdown()
        await asyncio.sleep(0.3)
        assert orchestrator.get_run(run.id).status == RunStatus.AWAITING_INPUT

        restarted = Orchestrator(registry, state_manager, adapters, config=app_config)
        await restarted.resume(run.id, run.pending_step_run_id, {"approved": True})
        finished = await restarted.wait_for_run(run.id, timeout=5)

        assert finished.status == RunStatus.COMPLETED
        steps = by_step(restarted.list_step_runs(run.id))
        assert steps["approve"][0].selected_ports == ["timeout"]
        assert "expired" in steps and "ship" not in steps

    @pytest.mark.asyncio
    async def test_restart_rearms_deadlines(self, orchestrator, registry, state_manager, adapters,
                                            app_config, make_graph):
        run = await run_to_rest(orchestrator, self._deadline_graph(make_graph, 0.2), {})
        await orchestrator.shutdown()

        restarted = Orchestrator(registry, state_manager, adapters, config=app_config)
        assert restarted.restore_approval_timers() == 1
        await settle(lambda: restarted.get_run(run.id).status == RunStatus.COMPLETED)
        await restarted.wait_for_run(run.id, timeout=5)

        steps = by_step(restarted.list_step_runs(run.id))
        assert steps["approve"][0].output == {"decision": "timeout"}
        assert "expired" in steps


class TestSecrets:

    @pytest.mark.asyncio
    async def test_secret_values_are_masked(self, orchestrator, secret_store, make_graph):
        graph = make_graph(
            [START, {"id": "call", "kind": "tool",
                     "config": {"adapter": "echo", "arguments": {"auth": "Bearer ${secret.api_key}",
                                                                 "region": "${region}"}}}],
            [{"source": "start", "target": "call"}],
        )
        variables = [
            Variable(scope=VariableScope.RUN, name="api_key", value=secret_store.encrypt("sk-123"), secret=True),
            Variable(scope=VariableScope.RUN, name="region", value="eu"),
        ]
        run = await run_to_rest(orchestrator, graph, {}, variables=variables)

        assert run.status == RunStatus.COMPLETED
        assert run.output == {"auth": f"Bearer {MASK}", "region": "eu"}
        stored = orchestrator.list_step_runs(run.id)[-1]
        assert "sk-123" not in str(stored.output)
        assert all(v.value != "sk-123" for v in run.variables)

    @pytest.mark.asyncio
    async def test_secrets_stay_out_of_retry_logs(self, orchestrator, adapters, secret_store, make_graph, caplog):
        adapters.register("leaky", lambda model, payload: AdapterResponse(
            error=AdapterError(AdapterErrorKind.SERVER_ERROR, f"bad auth {payload['arguments']['auth']}")
        ))
        graph = make_graph(
            [START, {"id": "call", "kind": "tool", "max_retries": 2,
                     "config": {"adapter": "leaky", "arguments": {"auth": "${secret.api_key}"}}}],
            [{"source": "start", "target": "call"}],
        )
        variables = [Variable(scope=VariableScope.RUN, name="api_key",
                              value=secret_store.encrypt("sk-PLAINTEXT"), secret=True)]
        caplog.set_level(logging.DEBUG, logger="stepflow")
        run = await run_to_rest(orchestrator, graph, {}, variables=variables)

        assert run.status == RunStatus.FAILED
        assert MASK in run.error.message
        recovery = [r for r in caplog.records if r.name == "stepflow.recovery.orchestrator"]
        assert len(recovery) == 2
        assert all(MASK in r.extra_fields["error_message"] for r in recovery)
        for record in caplog.records:
            assert "sk-PLAINTEXT" not in record.getMessage()
            assert "sk-PLAINTEXT" not in str(getattr(record, "extra_fields", {}))

    @pytest.mark.asyncio
    async def test_log_step_masks_secrets(self, orchestrator, secret_store, make_graph, caplog):
        graph = make_graph(
            [START, {"id": "note", "kind": "log", "config": {"message": "token=${secret.api_key}"}}],
            [{"source": "start", "target": "note"}],
        )
        variables = [Variable(scope=VariableScope.RUN, name="api_key",
                              value=secret_store.encrypt("sk-PLAINTEXT"), secret=True)]
        caplog.set_level(logging.DEBUG, logger="stepflow")
        run = await run_to_rest(orchestrator, graph, {}, variables=variables)

        assert run.status == RunStatus.COMPLETED
        assert f"token={MASK}" in caplog.text
        assert "sk-PLAINTEXT" not in caplog.text
