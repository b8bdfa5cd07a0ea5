"""Tests for the graph validator passes."""

import pytest

from stepflow.models.core import IssueCategory, IssueSeverity


def codes(issues):
    return [issue.code for issue in issues]


START = {"id": "start", "kind": "start"}
LLM_CONFIG = {"provider": "echo", "model": "echo-1", "prompt": "{{input}}"}


class TestStructuralPass:
    """Test cases for structural findings."""

    def test_valid_linear_graph(self, validator, make_graph):
        graph = make_graph(
            [START, {"id": "llm", "kind": "llm", "config": LLM_CONFIG}],
            [{"source": "start", "target": "llm"}],
        )
        result = validator.validate(graph)
        assert result.is_valid
        assert result.errors == []

    def test_missing_start(self, validator, make_graph):
        graph = make_graph([{"id": "a", "kind": "log"}, {"id": "b", "kind": "log"}],
                           [{"source": "a", "target": "b"}])
        result = validator.validate(graph)
        assert not result.is_valid
        assert "missing_start" in codes(result.errors)
        assert result.errors[0].category == IssueCategory.STRUCTURAL

    def test_sole_start_step_is_valid(self, validator, make_graph):
        assert validator.validate(make_graph([START])).is_valid

    def test_duplicate_step_id(self, validator, make_graph):
        graph = make_graph(
            [START, {"id": "a", "kind": "log"}, {"id": "a", "kind": "log"}],
            [{"source": "start", "target": "a"}],
        )
        assert "duplicate_step_id" in codes(validator.validate(graph).errors)

    def test_dangling_edge_stops_later_passes(self, validator, make_graph):
        graph = make_graph(
            [START, {"id": "cond", "kind": "condition", "config": {}}],
            [{"source": "start", "target": "cond"}, {"source": "cond", "target": "ghost"}],
        )
        result = validator.validate(graph)
        assert codes(result.errors) == ["dangling_edge"]
        assert result.errors[0].edge_id == "e1"
        assert result.errors[0].field == "target"

    def test_disconnected_and_unreachable(self, validator, make_graph):
        graph = make_graph(
            [START, {"id": "a", "kind": "log"}, {"id": "island", "kind": "log"},
             {"id": "x", "kind": "log"}, {"id": "y", "kind": "log"}],
            [{"source": "start", "target": "a"}, {"source": "x", "target": "y"}],
        )
        result = validator.validate(graph)
        assert "disconnected_step" in codes(result.errors)
        unreachable = {i.step_id for i in result.errors if i.code == "unreachable_step"}
        assert unreachable == {"x", "y"}

    def test_entry_point_must_be_a_start_step(self, validator, make_graph):
        graph = make_graph(
            [START, {"id": "a", "kind": "log"}],
            [{"source": "start", "target": "a"}],
            entry_point="a",
        )
        assert "missing_start_reference" in codes(validator.validate(graph).errors)


class TestPortPass:

    def test_invalid_source_port(self, validator, make_graph):
        graph = make_graph(
            [START, {"id": "cond", "kind": "condition", "config": {"expression": "true"}},
             {"id": "a", "kind": "log"}, {"id": "b", "kind": "log"}],
            [{"source": "start", "target": "cond"},
             {"source": "cond", "target": "a", "source_port": "true"},
             {"source": "cond", "target": "b", "source_port": "maybe"}],
        )
        result = validator.validate(graph)
        issue = next(i for i in result.errors if i.code == "invalid_source_port")
        assert issue.category == IssueCategory.PORT
        assert issue.edge_id == "e2"
        assert "true, false" in issue.suggested_fix

    def test_implicit_port_and_unwired_branch_warnings(self, validator, make_graph):
        graph = make_graph(
            [START, {"id": "cond", "kind": "condition", "config": {"expression": "true"}},
             {"id": "a", "kind": "log"}],
            [{"source": "start", "target": "cond"}, {"source": "cond", "target": "a"}],
        )
        result = validator.validate(graph)
        assert result.is_valid
        warnings = codes(result.warnings)
        assert "implicit_source_port" in warnings
        assert "unwired_branch_port" in warnings
        assert all(w.severity == IssueSeverity.WARNING for w in result.warnings)


class TestSchemaPass:
    """Test cases for config schema findings."""

    def test_missing_required_field(self, validator, make_graph):
        graph = make_graph(
            [START, {"id": "llm", "kind": "llm", "config": {"provider": "echo", "prompt": "hi"}}],
            [{"source": "start", "target": "llm"}],
        )
        issue = validator.validate(graph).errors[0]
        assert issue.code == "missing_required_field"
        assert issue.field == "config.model"
        assert issue.step_id == "llm"
        assert "echo-1" in issue.suggested_fix

    @pytest.mark.parametrize("config, code", [
        ({**LLM_CONFIG, "output_format": "xml"}, "invalid_enum_value"),
        ({**LLM_CONFIG, "temperature": 5}, "out_of_range"),
        ({**LLM_CONFIG, "prompt": ""}, "invalid_length"),
        ({**LLM_CONFIG, "temperature": "hot"}, "invalid_field_type"),
    ])
    def test_schema_codes(self, validator, make_graph, config, code):
        graph = make_graph([START, {"id": "llm", "kind": "llm", "config": config}],
                           [{"source": "start", "target": "llm"}])
        assert code in codes(validator.validate(graph).errors)

    def test_unknown_config_key(self, validator, make_graph):
        graph = make_graph([START, {"id": "llm", "kind": "llm", "config": {**LLM_CONFIG, "temprature": 0.2}}],
                           [{"source": "start", "target": "llm"}])
        issue = validator.validate(graph).errors[0]
        assert issue.code == "unknown_field"
        assert issue.field == "config.temprature"
        assert issue.step_id == "llm"

    def test_pattern_mismatch(self, validator, make_graph):
        graph = make_graph([START, {"id": "t", "kind": "tool", "config": {"adapter": "bad name!"}}],
                           [{"source": "start", "target": "t"}])
        assert "pattern_mismatch" in codes(validator.validate(graph).errors)

    def test_placeholder_skips_type_check(self, validator, make_graph):
        graph = make_graph(
            [START, {"id": "llm", "kind": "llm", "config": {**LLM_CONFIG, "temperature": "${run.temp}"}}],
            [{"source": "start", "target": "llm"}],
        )
        assert validator.validate(graph).is_valid

    def test_nested_body_findings_are_prefixed(self, validator, make_graph):
        body = {
            "steps": [{"id": "s", "kind": "start"}, {"id": "inner", "kind": "llm", "config": {"provider": "echo"}}],
            "edges": [{"source": "s", "target": "inner"}],
        }
        graph = make_graph([START, {"id": "each", "kind": "map", "config": {"body": body}}],
                           [{"source": "start", "target": "each"}])
        errors = validator.validate(graph).errors
        nested = [i for i in errors if i.code == "missing_required_field"]
        assert nested
        assert all(i.step_id == "each" for i in nested)
        assert {i.field for i in nested} >= {"config.body.config.model", "config.body.config.prompt"}
        assert nested[0].message.startswith("[each.body.inner]")


class TestCyclePass:

    def test_cycle_reported_with_path(self, validator, make_graph):
        graph = make_graph(
            [START, {"id": "a", "kind": "log"}, {"id": "b", "kind": "log"}],
            [{"source": "start", "target": "a"}, {"source": "a", "target": "b"}, {"source": "b", "target": "a"}],
        )
        result = validator.validate(graph)
        issue = next(i for i in result.errors if i.code == "cycle_detected")
        assert issue.category == IssueCategory.CYCLE
        assert issue.path == ["a", "b", "a"]
        assert issue.edge_id == "e2"
        assert issue.step_id == "b"

    def test_self_loop(self, validator, make_graph):
        graph = make_graph(
            [START, {"id": "a", "kind": "log"}],
            [{"source": "start", "target": "a"}, {"source": "a", "target": "a"}],
        )
        issue = next(i for i in validator.validate(graph).errors if i.code == "cycle_detected")
        assert issue.path == ["a", "a"]

    def test_diamond_is_not_a_cycle(self, validator, make_graph):
        graph = make_graph(
            [START, {"id": "a", "kind": "log"}, {"id": "b", "kind": "log"}, {"id": "j", "kind": "join"}],
            [{"source": "start", "target": "a"}, {"source": "start", "target": "b"},
             {"source": "a", "target": "j"}, {"source": "b", "target": "j"}],
        )
        assert "cycle_detected" not in codes(validator.validate(graph).errors)


class TestDataFlowPass:

    def test_type_mismatch_warning(self, validator, make_graph):
        graph = make_graph(
            [START, {"id": "llm", "kind": "llm", "config": LLM_CONFIG},
             {"id": "each", "kind": "map", "config": {"body": {"steps": [{"id": "s", "kind": "start"}]}}}],
            [{"source": "start", "target": "llm"}, {"source": "llm", "target": "each"}],
        )
        result = validator.validate(graph)
        assert result.is_valid
        mismatch = next(w for w in result.warnings if w.code == "type_mismatch")
        assert mismatch.step_id == "each"
        assert mismatch.category == IssueCategory.DATA_FLOW


class TestValidationProperties:

    def test_validation_is_idempotent(self, validator, make_graph):
        graph = make_graph(
            [{"id": "a", "kind": "log"}, {"id": "b", "kind": "llm", "config": {}}],
            [{"source": "a", "target": "b"}, {"source": "b", "target": "a"}],
        )
        first = validator.validate(graph)
        second = validator.validate(graph)
        assert first.model_dump() == second.model_dump()

    def test_fail_fast_stops_after_first_failing_pass(self, validator, make_graph):
        graph = make_graph(
            [{"id": "a", "kind": "log"}, {"id": "b", "kind": "llm", "config": {}}],
            [{"source": "a", "target": "b"}],
        )
        result = validator.validate(graph, fail_fast=True)
        assert {i.category for i in result.errors} == {IssueCategory.STRUCTURAL}
