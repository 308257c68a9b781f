"""Tests for the workflow registry and YAML loading."""

import textwrap

import pytest

from ledgercore.errors import UnknownWorkflow, WorkflowDisabled
from ledgercore.workflows.models import WorkflowDefinition, WorkflowStep
from ledgercore.workflows.registry import WorkflowRegistry, load_workflows, resolve_handler

import workflow_handlers


def _noop(input, results):
    return None


@pytest.fixture
def registry():
    """A registry with one workflow."""
    return WorkflowRegistry([
        WorkflowDefinition("payroll", steps=[WorkflowStep("collect", _noop)], name="Payroll"),
    ])


@pytest.fixture
def workflows_file(tmp_path):
    """A YAML file with two workflows."""
    path = tmp_path / "workflows.yaml"
    path.write_text(textwrap.dedent("""
        workflows:
          - id: totals
            name: Compute totals
            step_timeout_seconds: 5
            steps:
              - name: collect
                handler: workflow_handlers:collect
              - name: total
                handler: workflow_handlers:total
                timeout_seconds: 1
          - id: archived
            enabled: false
            steps:
              - name: collect
                handler: workflow_handlers:collect
    """))
    return str(path)


class TestWorkflowRegistry:
    """Test cases for WorkflowRegistry."""

    def test_resolve(self, registry):
        """Test resolving an enabled workflow."""
        assert registry.resolve("payroll").name == "Payroll"
        assert "payroll" in registry
        assert len(registry) == 1

    def test_unknown(self, registry):
        """Test resolving an unknown workflow."""
        with pytest.raises(UnknownWorkflow) as exc_info:
            registry.resolve("missing")

        assert exc_info.value.kind == "unknown_workflow"

    def test_disable_enable(self, registry):
        """Test toggling a workflow."""
        registry.disable("payroll")

        with pytest.raises(WorkflowDisabled):
            registry.resolve("payroll")
        assert registry.get("payroll").enabled is False

        registry.enable("payroll")
        assert registry.resolve("payroll").enabled is True

    def test_duplicate_rejected(self, registry):
        """Test registering the same id twice."""
        with pytest.raises(ValueError):
            registry.register(WorkflowDefinition("payroll", steps=[WorkflowStep("x", _noop)]))

    def test_replace(self, registry):
        """Test replacing a definition explicitly."""
        registry.register(WorkflowDefinition("payroll", steps=[WorkflowStep("x", _noop)]), replace=True)

        assert registry.get("payroll").step_names == ["x"]

    def test_invalid_definition_rejected(self, registry):
        """Test that definitions are validated on registration."""
        with pytest.raises(ValueError):
            registry.register(WorkflowDefinition("empty"))

    def test_list_sorted(self, registry):
        """Test listing definitions."""
        registry.register(WorkflowDefinition("audit", steps=[WorkflowStep("x", _noop)]))

        assert [d.workflow_id for d in registry.list()] == ["audit", "payroll"]


class TestYamlLoading:
    """Test cases for YAML workflow definitions."""

    def test_load_workflows(self, workflows_file):
        """Test parsing definitions and handlers."""
        definitions = {d.workflow_id: d for d in load_workflows(workflows_file)}

        totals = definitions["totals"]
        assert totals.name == "Compute totals"
        assert totals.step_timeout_seconds == 5
        assert totals.steps[0].handler is workflow_handlers.collect
        assert totals.steps[1].timeout_seconds == 1
        assert definitions["archived"].enabled is False

    def test_registry_load_yaml(self, workflows_file):
        """Test loading into a registry."""
        registry = WorkflowRegistry()

        assert registry.load_yaml(workflows_file) == 2
        with pytest.raises(WorkflowDisabled):
            registry.resolve("archived")

    def test_missing_file(self, tmp_path):
        """Test loading a file that does not exist."""
        with pytest.raises(FileNotFoundError):
            load_workflows(str(tmp_path / "missing.yaml"))

    def test_resolve_handler_format(self):
        """Test rejecting handler paths without a colon."""
        with pytest.raises(ValueError):
            resolve_handler("workflow_handlers.collect")

    def test_resolve_handler_not_callable(self):
        """Test rejecting attributes that cannot be called."""
        with pytest.raises(ValueError):
            resolve_handler("workflow_handlers:NOT_CALLABLE")
