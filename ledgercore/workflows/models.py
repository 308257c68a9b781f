"""
Workflow Models

Data models for workflow definitions and their runs.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Union
import uuid

from ledgercore.audit.models import parse_timestamp
from ledgercore.errors import InvalidRunTransition


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse(value: Optional[str]) -> Optional[datetime]:
    return parse_timestamp(value) if value else None


class RunStatus(str, Enum):
    """Status of a workflow run."""
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class StepStatus(str, Enum):
    """Status of a workflow step."""
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


class RunErrorKind(str, Enum):
    """Why a run failed."""
    STEP_ERROR = "step_error"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


# (input, results of earlier steps keyed by step name) -> payload
StepHandler = Callable[[dict, dict], Union[Any, Awaitable[Any]]]


@dataclass
class WorkflowStep:
    """One step of a workflow."""

    name: str
    handler: StepHandler
    timeout_seconds: Optional[float] = None
    description: str = ""


@dataclass
class WorkflowDefinition:
    """A named, ordered list of steps."""

    workflow_id: str
    steps: list[WorkflowStep] = field(default_factory=list)
    name: str = ""
    description: str = ""
    enabled: bool = True

    # Override WorkflowConfig bounds for this workflow
    step_timeout_seconds: Optional[float] = None
    run_timeout_seconds: Optional[float] = None

    @property
    def step_names(self) -> list[str]:
        return [s.name for s in self.steps]

    def validate(self):
        """Reject definitions the runner cannot execute."""
        if not self.workflow_id:
            raise ValueError("Workflow id is required")
        if not self.steps:
            raise ValueError(f"Workflow {self.workflow_id} has no steps")

        names = self.step_names
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"Workflow {self.workflow_id} has duplicate steps: {', '.join(duplicates)}")

    def to_dict(self) -> dict:
        """Convert to dictionary (handlers are omitted)."""
        return {
            "workflow_id": self.workflow_id,
            "name": self.name,
            "description": self.description,
            "enabled": self.enabled,
            "steps": [
                {"name": s.name, "timeout_seconds": s.timeout_seconds, "description": s.description}
                for s in self.steps
            ],
            "step_timeout_seconds": self.step_timeout_seconds,
            "run_timeout_seconds": self.run_timeout_seconds,
        }


@dataclass
class StepResult:
    """Outcome of a single step."""

    step_name: str = ""
    index: int = 0
    status: StepStatus = StepStatus.PENDING

    # Timing
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None

    # Result data
    output: Any = None
    error: Optional[str] = None
    error_kind: Optional[RunErrorKind] = None

    @property
    def succeeded(self) -> bool:
        return self.status == StepStatus.SUCCESS

    def start(self):
        """Mark step as started."""
        self.status = StepStatus.RUNNING
        self.started_at = _utcnow()

    def complete_success(self, output: Any = None):
        """Mark step as successful."""
        self.status = StepStatus.SUCCESS
        self.completed_at = _utcnow()
        self.output = output
        self._calculate_duration()

    def complete_failure(self, error: str, kind: RunErrorKind = RunErrorKind.STEP_ERROR):
        """Mark step as failed."""
        self.status = StepStatus.FAILED
        self.completed_at = _utcnow()
        self.error = error
        self.error_kind = kind
        self._calculate_duration()

    def _calculate_duration(self):
        """Calculate step duration."""
        if self.started_at and self.completed_at:
            self.duration_ms = int(
                (self.completed_at - self.started_at).total_seconds() * 1000
            )

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "step_name": self.step_name,
            "index": self.index,
            "status": self.status.value,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "duration_ms": self.duration_ms,
            "output": self.output,
            "error": self.error,
            "error_kind": self.error_kind.value if self.error_kind else None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "StepResult":
        """Create from dictionary."""
        return cls(
            step_name=data.get("step_name", ""),
            index=data.get("index", 0),
            status=StepStatus(data.get("status", "pending")),
            started_at=_parse(data.get("started_at")),
            completed_at=_parse(data.get("completed_at")),
            duration_ms=data.get("duration_ms"),
            output=data.get("output"),
            error=data.get("error"),
            error_kind=RunErrorKind(data["error_kind"]) if data.get("error_kind") else None,
        )


@dataclass
class WorkflowRun:
    """
    A single execution attempt of a workflow.

    Created ``running``; becomes ``completed`` or ``failed`` exactly once.
    """

    workflow_id: str = ""
    id: str = field(default_factory=lambda: f"run_{uuid.uuid4().hex[:12]}")
    tenant_id: str = "default"

    status: RunStatus = RunStatus.RUNNING
    input: dict = field(default_factory=dict)
    actor_id: Optional[str] = None

    # Timing
    started_at: datetime = field(default_factory=_utcnow)
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None

    # Append-only while running
    step_results: list[StepResult] = field(default_factory=list)

    # Failure
    error_message: Optional[str] = None
    error_kind: Optional[RunErrorKind] = None

    cancel_requested: bool = False
    metadata: dict = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status != RunStatus.RUNNING

    @property
    def outputs(self) -> dict:
        """Outputs of successful steps keyed by step name."""
        return {s.step_name: s.output for s in self.step_results if s.succeeded}

    def record_step(self, step: StepResult):
        """Append a finished step result."""
        if self.is_terminal:
            raise InvalidRunTransition(self.id, self.status.value, f"step:{step.step_name}")
        self.step_results.append(step)

    def complete(self, at: Optional[datetime] = None):
        """Transition to completed."""
        self._finish(RunStatus.COMPLETED, at)

    def fail(self, message: str, kind: RunErrorKind = RunErrorKind.STEP_ERROR, at: Optional[datetime] = None):
        """Transition to failed."""
        self._finish(RunStatus.FAILED, at)
        self.error_message = message
        self.error_kind = kind

    def elapsed_ms(self, until: datetime) -> int:
        """Milliseconds from start to ``until``."""
        return int((until - self.started_at).total_seconds() * 1000)

    def _finish(self, status: RunStatus, at: Optional[datetime] = None):
        if self.is_terminal:
            raise InvalidRunTransition(self.id, self.status.value, status.value)
        self.status = status
        self.completed_at = at or _utcnow()
        self._calculate_duration()

    def _calculate_duration(self):
        """Calculate total duration."""
        if self.started_at and self.completed_at:
            self.duration_ms = int(
                (self.completed_at - self.started_at).total_seconds() * 1000
            )

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "workflow_id": self.workflow_id,
            "status": self.status.value,
            "input": self.input,
            "actor_id": self.actor_id,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "duration_ms": self.duration_ms,
            "step_results": [s.to_dict() for s in self.step_results],
            "error_message": self.error_message,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "cancel_requested": self.cancel_requested,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "WorkflowRun":
        """Create from dictionary."""
        return cls(
            id=data["id"],
            tenant_id=data.get("tenant_id", "default"),
            workflow_id=data.get("workflow_id", ""),
            status=RunStatus(data.get("status", "running")),
            input=data.get("input", {}),
            actor_id=data.get("actor_id"),
            started_at=_parse(data.get("started_at")) or _utcnow(),
            completed_at=_parse(data.get("completed_at")),
            duration_ms=data.get("duration_ms"),
            step_results=[StepResult.from_dict(s) for s in data.get("step_results", [])],
            error_message=data.get("error_message"),
            error_kind=RunErrorKind(data["error_kind"]) if data.get("error_kind") else None,
            cancel_requested=data.get("cancel_requested", False),
            metadata=data.get("metadata", {}),
        )

    def get_summary(self) -> str:
        """Get human-readable summary."""
        succeeded = sum(1 for s in self.step_results if s.succeeded)
        lines = [
            f"Workflow Run: {self.id} ({self.workflow_id})",
            f"   Status: {self.status.value.upper()}",
            f"   Duration: {self.duration_ms}ms" if self.duration_ms is not None else "   Duration: N/A",
            f"   Steps: {succeeded}/{len(self.step_results)} succeeded",
        ]

        if self.error_message:
            lines.append(f"   Error ({self.error_kind.value if self.error_kind else 'unknown'}): {self.error_message}")

        return "\n".join(lines)
