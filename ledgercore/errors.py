"""
Errors

Error taxonomy shared by the ledger, workflow runner and cache.
Every error carries a stable ``kind`` so callers can tell a chain break
from a transient contention blip without isinstance chains.
"""

from typing import Optional


class LedgerCoreError(Exception):
    """Base error for ledgercore."""

    kind = "internal"


class ChainIntegrityError(LedgerCoreError):
    """Verification found a broken link. Never auto-repaired."""

    kind = "chain_integrity"

    def __init__(self, record_id: str, reason: str = ""):
        self.record_id = record_id
        self.reason = reason
        message = f"Audit chain broken at record {record_id}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class ConcurrentAppendConflict(LedgerCoreError):
    """The chain tail moved between read and write. Safe to retry."""

    kind = "concurrent_append_conflict"

    def __init__(self, tenant_id: str, expected_digest: str, actual_digest: str):
        self.tenant_id = tenant_id
        self.expected_digest = expected_digest
        self.actual_digest = actual_digest
        super().__init__(
            f"Tail of ledger '{tenant_id}' moved: expected {expected_digest[:12]}, "
            f"found {actual_digest[:12]}"
        )


class AppendRetryExhausted(LedgerCoreError):
    """Append kept conflicting past the retry bound."""

    kind = "append_retry_exhausted"

    def __init__(self, tenant_id: str, attempts: int):
        self.tenant_id = tenant_id
        self.attempts = attempts
        super().__init__(f"Append to ledger '{tenant_id}' failed after {attempts} attempts")


class StoreUnavailableError(LedgerCoreError):
    """The persistent store could not complete an operation. Nothing was written."""

    kind = "store_unavailable"


class UnknownWorkflow(LedgerCoreError):
    """No workflow is registered under the requested id."""

    kind = "unknown_workflow"

    def __init__(self, workflow_id: str):
        self.workflow_id = workflow_id
        super().__init__(f"Unknown workflow: {workflow_id}")


class WorkflowDisabled(LedgerCoreError):
    """The workflow exists but is disabled."""

    kind = "workflow_disabled"

    def __init__(self, workflow_id: str):
        self.workflow_id = workflow_id
        super().__init__(f"Workflow is disabled: {workflow_id}")


class StepExecutionError(LedgerCoreError):
    """A step handler raised. The original error is kept as ``__cause__``."""

    kind = "step_execution"

    def __init__(self, step_name: str, message: str):
        self.step_name = step_name
        super().__init__(f"Step '{step_name}' failed: {message}")


class WorkflowTimeoutError(LedgerCoreError):
    """A step or a whole run exceeded its time bound."""

    kind = "timeout"

    def __init__(self, message: str, step_name: Optional[str] = None):
        self.step_name = step_name
        super().__init__(message)


class WorkflowCancelled(LedgerCoreError):
    """A run was cancelled by an external request."""

    kind = "cancelled"


class InvalidRunTransition(LedgerCoreError):
    """A run that is already terminal was asked to transition again."""

    kind = "invalid_transition"

    def __init__(self, run_id: str, current_status: str, requested_status: str):
        self.run_id = run_id
        self.current_status = current_status
        self.requested_status = requested_status
        super().__init__(
            f"Run {run_id} is already {current_status}; cannot transition to {requested_status}"
        )


class NotFound(LedgerCoreError):
    """Lookup of an unknown run, record or key."""

    kind = "not_found"


class RunNotFound(NotFound):
    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(f"Workflow run not found: {run_id}")


class RecordNotFound(NotFound):
    def __init__(self, record_id: str):
        self.record_id = record_id
        super().__init__(f"Audit record not found: {record_id}")
