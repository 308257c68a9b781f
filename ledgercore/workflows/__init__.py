"""
Workflows Package

Named step sequences and the runner that executes and audits them.
"""

from ledgercore.workflows.models import (
    RunErrorKind,
    RunStatus,
    StepResult,
    StepStatus,
    WorkflowDefinition,
    WorkflowRun,
    WorkflowStep,
)
from ledgercore.workflows.registry import WorkflowRegistry, load_workflows
from ledgercore.workflows.runner import WorkflowRunner

__all__ = [
    "RunErrorKind",
    "RunStatus",
    "StepResult",
    "StepStatus",
    "WorkflowDefinition",
    "WorkflowRun",
    "WorkflowStep",
    "WorkflowRegistry",
    "load_workflows",
    "WorkflowRunner",
]
