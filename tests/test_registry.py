"""Tests for the step-kind registry and default-port policy."""

import pytest
from pydantic import ValidationError

from stepflow.core.exceptions import ConfigurationError
from stepflow.core.registry import StepKindRegistry
from stepflow.models.core import Edge, Step, StepKind


class TestStepKindRegistry:
    """Test cases for kind specs and ports."""

    def test_every_kind_is_registered(self, registry):
        assert set(registry.kinds()) == set(StepKind)

    def test_unregistered_kind_raises(self):
        empty = StepKindRegistry({})
        with pytest.raises(ConfigurationError):
            empty.get(StepKind.LOG)

    def test_default_config_is_read_only(self, registry):
        with pytest.raises(TypeError):
            registry.get(StepKind.LLM).default_config["model"] = "other"

    def test_condition_ports(self, registry):
        step = Step(id="c", kind="condition", config={"expression": "true"})
        assert registry.ports_for(step) == ["true", "false"]
        assert registry.default_port_for(step) == "true"
        assert registry.is_branching(step)

    def test_switch_ports_follow_cases(self, registry):
        step = Step(id="s", kind="switch", config={"cases": [
            {"name": "high", "expression": "score > 5"},
            {"name": "other", "is_default": True},
        ]})
        assert registry.ports_for(step) == ["high", "default"]
        assert registry.default_port_for(step) == "default"

    def test_router_ports_follow_routes(self, registry):
        step = Step(id="r", kind="router", config={"routes": [{"name": "billing"}, {"name": "tech"}]})
        assert registry.ports_for(step) == ["billing", "tech"]
        assert registry.default_port_for(step) == "billing"

    def test_fallback_adds_error_port(self, registry):
        step = Step(id="t", kind="tool", on_error="fallback", config={"adapter": "echo"})
        assert registry.ports_for(step) == ["output", "error"]

    def test_parse_config_coerces_values(self, registry):
        config = registry.get(StepKind.LLM).parse_config(
            {"provider": "echo", "model": "m", "prompt": "hi", "temperature": "0.2"}
        )
        assert config.temperature == 0.2

    def test_parse_config_rejects_invalid(self, registry):
        with pytest.raises(ValidationError):
            registry.get(StepKind.WAIT).parse_config({})

    def test_describe(self, registry):
        described = {entry["kind"]: entry for entry in registry.describe()}
        assert described["condition"]["output_ports"] == ["true", "false"]
        assert "properties" in described["llm"]["config_schema"]


class TestSourcePortPolicy:
    """Explicit port, then a label naming a port, then the kind default."""

    def _condition(self):
        return Step(id="c", kind="condition", config={"expression": "true"})

    def test_explicit_port_wins(self, registry):
        edge = Edge(source="c", target="x", source_port="false", label="true")
        assert registry.resolve_source_port(self._condition(), edge) == ("false", False)

    @pytest.mark.parametrize("label, port", [("false", "false"), ("No", "false"), ("yes", "true")])
    def test_condition_labels(self, registry, label, port):
        edge = Edge(source="c", target="x", label=label)
        assert registry.resolve_source_port(self._condition(), edge) == (port, True)

    def test_unknown_label_falls_back_to_default(self, registry):
        edge = Edge(source="c", target="x", label="maybe")
        assert registry.resolve_source_port(self._condition(), edge) == ("true", True)

    def test_plain_step_uses_output(self, registry):
        step = Step(id="l", kind="log")
        assert registry.resolve_source_port(step, Edge(source="l", target="x")) == ("output", True)
