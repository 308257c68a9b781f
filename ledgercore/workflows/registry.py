"""
Workflow Registry

Known workflow definitions, with loading from YAML.
"""

import importlib
import logging
from pathlib import Path
from typing import Optional

import yaml

from ledgercore.errors import UnknownWorkflow, WorkflowDisabled
from ledgercore.workflows.models import StepHandler, WorkflowDefinition, WorkflowStep

logger = logging.getLogger(__name__)


class WorkflowRegistry:
    """
    Holds workflow definitions by id.

    Example:
        >>> registry = WorkflowRegistry()
        >>> registry.register(WorkflowDefinition("sync", steps=[WorkflowStep("pull", pull)]))
        >>> registry.resolve("sync").step_names
        ['pull']
    """

    def __init__(self, definitions: Optional[list[WorkflowDefinition]] = None):
        self._definitions: dict[str, WorkflowDefinition] = {}
        for definition in definitions or []:
            self.register(definition)

    def register(self, definition: WorkflowDefinition, replace: bool = False) -> WorkflowDefinition:
        """
        Register a workflow.

        Args:
            definition: The workflow definition
            replace: Allow overwriting an existing id

        Returns:
            The registered definition
        """
        definition.validate()
        if definition.workflow_id in self._definitions and not replace:
            raise ValueError(f"Workflow already registered: {definition.workflow_id}")

        self._definitions[definition.workflow_id] = definition
        logger.info(f"Registered workflow {definition.workflow_id} ({len(definition.steps)} steps)")
        return definition

    def get(self, workflow_id: str) -> WorkflowDefinition:
        """Get a definition whether or not it is enabled."""
        definition = self._definitions.get(workflow_id)
        if definition is None:
            raise UnknownWorkflow(workflow_id)
        return definition

    def resolve(self, workflow_id: str) -> WorkflowDefinition:
        """Get a definition that is allowed to run."""
        definition = self.get(workflow_id)
        if not definition.enabled:
            raise WorkflowDisabled(workflow_id)
        return definition

    def enable(self, workflow_id: str):
        self.get(workflow_id).enabled = True
        logger.info(f"Workflow enabled: {workflow_id}")

    def disable(self, workflow_id: str):
        self.get(workflow_id).enabled = False
        logger.info(f"Workflow disabled: {workflow_id}")

    def list(self) -> list[WorkflowDefinition]:
        return sorted(self._definitions.values(), key=lambda d: d.workflow_id)

    def __contains__(self, workflow_id: str) -> bool:
        return workflow_id in self._definitions

    def __len__(self) -> int:
        return len(self._definitions)

    def load_yaml(self, file_path: str, replace: bool = False) -> int:
        """
        Load workflows from a YAML file.

        Args:
            file_path: Path to YAML file
            replace: Allow overwriting already registered ids

        Returns:
            Number of workflows loaded
        """
        definitions = load_workflows(file_path)
        for definition in definitions:
            self.register(definition, replace=replace)
        return len(definitions)


def resolve_handler(path: str) -> StepHandler:
    """Import a handler given as ``package.module:function``."""
    module_name, separator, attribute = path.partition(":")
    if not separator or not module_name or not attribute:
        raise ValueError(f"Handler must look like 'package.module:function', got {path!r}")

    module = importlib.import_module(module_name)
    handler = module
    for part in attribute.split("."):
        handler = getattr(handler, part)

    if not callable(handler):
        raise ValueError(f"Handler {path} is not callable")
    return handler


def load_workflows(file_path: str) -> list[WorkflowDefinition]:
    """
    Parse workflow definitions from YAML.

    Expected layout::

        workflows:
          - id: payroll-close
            name: Close payroll period
            step_timeout_seconds: 30
            steps:
              - name: collect
                handler: myapp.payroll:collect_timesheets
    """
    path = Path(file_path)
    if not path.exists():
        raise FileNotFoundError(f"Workflow file not found: {file_path}")

    with open(path, "r") as f:
        data = yaml.safe_load(f) or {}

    return [_definition_from_yaml(item) for item in data.get("workflows", [])]


def _definition_from_yaml(data: dict) -> WorkflowDefinition:
    """Convert YAML data to a WorkflowDefinition."""
    steps = [
        WorkflowStep(
            name=step["name"],
            handler=resolve_handler(step["handler"]),
            timeout_seconds=step.get("timeout_seconds"),
            description=step.get("description", ""),
        )
        for step in data.get("steps", [])
    ]

    return WorkflowDefinition(
        workflow_id=data["id"],
        name=data.get("name", data["id"]),
        description=data.get("description", ""),
        enabled=data.get("enabled", True),
        steps=steps,
        step_timeout_seconds=data.get("step_timeout_seconds"),
        run_timeout_seconds=data.get("run_timeout_seconds"),
    )
