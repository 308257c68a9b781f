"""
Workflow Runner (LangGraph-based)

Executes a workflow's steps strictly in sequence and records the run's
lifecycle in the audit ledger:

    started -> [step ...] -> completed | failed

A run only changes state once the matching record is in the ledger, so
a store outage leaves the run open rather than finished without a trace.
"""

import asyncio
import inspect
import logging
import threading
from collections import OrderedDict
from datetime import datetime, timezone
from functools import partial
from typing import Any, Callable, Optional, TypedDict

from langgraph.graph import StateGraph, END

from ledgercore.audit.ledger import AuditLedger
from ledgercore.audit.models import AuditActionType
from ledgercore.config import WorkflowConfig
from ledgercore.errors import (
    RunNotFound,
    StepExecutionError,
    WorkflowCancelled,
    WorkflowTimeoutError,
)
from ledgercore.workflows.models import (
    RunErrorKind,
    StepResult,
    WorkflowDefinition,
    WorkflowRun,
    WorkflowStep,
)
from ledgercore.workflows.registry import WorkflowRegistry

logger = logging.getLogger(__name__)

RESOURCE_TYPE = "workflow_run"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


async def _offload(call: Callable[[], Any], then: Optional[Callable[[], None]] = None) -> Any:
    """
    Run blocking ledger or store I/O in a worker thread.

    A write that was handed to the thread lands regardless of cancellation,
    so a cancelled caller waits for it and still applies ``then``.
    """
    pending = asyncio.ensure_future(asyncio.to_thread(call))
    try:
        result = await asyncio.shield(pending)
    except asyncio.CancelledError:
        await pending
        if then is not None:
            then()
        raise
    if then is not None:
        then()
    return result


# =============================================================================
# State Definition
# =============================================================================

class WorkflowState(TypedDict):
    """State that flows through the step graph."""

    run_id: str
    input: dict

    # Outputs of successful steps keyed by step name
    results: dict

    should_continue: bool


def _node_name(index: int) -> str:
    return f"step_{index}"


def _route(state: WorkflowState) -> str:
    return "continue" if state["should_continue"] else "end"


# =============================================================================
# Runner
# =============================================================================

class WorkflowRunner:
    """
    Runs registered workflows for one tenant.

    Each workflow compiles once into a linear LangGraph where every step
    node routes to END as soon as a step fails or the run turns terminal.
    The runner only touches the ledger for the instant of an append, never
    across a running step, and does so from a worker thread so the event
    loop keeps serving other runs while the store is slow.

    Example:
        >>> runner = WorkflowRunner(ledger, registry)
        >>> run = await runner.start("payroll-close", {"period": "2024-05"})
        >>> run.status
        <RunStatus.COMPLETED: 'completed'>
    """

    def __init__(
            self,
            ledger: AuditLedger,
            registry: Optional[WorkflowRegistry] = None,
            config: Optional[WorkflowConfig] = None,
    ):
        """
        Initialize the runner.

        Args:
            ledger: Audit ledger receiving lifecycle records
            registry: Known workflows
            config: Execution bounds and audit options
        """
        self.ledger = ledger
        self.registry = registry or WorkflowRegistry()
        self.config = config or WorkflowConfig()

        self._graphs: dict[str, tuple[WorkflowDefinition, Any]] = {}

        # Runs owned by this runner
        self._active: dict[str, WorkflowRun] = {}
        self._history: "OrderedDict[str, WorkflowRun]" = OrderedDict()
        self._tasks: dict[str, asyncio.Task] = {}
        self._executing: set[str] = set()

        # Runs whose terminal record is being written
        self._finishing: set[str] = set()
        # Orders step records against cancel() from the loop thread
        self._closing = threading.Lock()

        # Statistics
        self._stats: dict[str, dict] = {}

    @property
    def tenant_id(self) -> str:
        return self.ledger.tenant_id

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    async def start(
            self,
            workflow_id: str,
            input: Optional[dict] = None,
            actor_id: Optional[str] = None,
            wait: bool = True,
    ) -> WorkflowRun:
        """
        Start a workflow run.

        Args:
            workflow_id: Registered workflow to run
            input: Input passed to every step
            actor_id: Caller identity recorded in the ledger
            wait: Return once the run is terminal; otherwise run in the background

        Returns:
            The run (terminal when ``wait`` is true)

        Raises:
            UnknownWorkflow: no such workflow
            WorkflowDisabled: the workflow is disabled
            StoreUnavailableError: a lifecycle record could not be written
        """
        definition = self.registry.resolve(workflow_id)

        run = WorkflowRun(
            workflow_id=workflow_id,
            tenant_id=self.tenant_id,
            input=dict(input or {}),
            actor_id=actor_id,
        )

        # Nothing exists until the started record is in the ledger
        await _offload(partial(
            self.ledger.append,
            AuditActionType.WORKFLOW_STARTED.value,
            RESOURCE_TYPE,
            run.id,
            actor_id=actor_id,
            payload={
                "workflow_id": workflow_id,
                "steps": definition.step_names,
                "input": run.input,
                "started_at": run.started_at.isoformat(),
            },
        ))

        self._active[run.id] = run
        self._workflow_stats(workflow_id)["started"] += 1
        await self._save(run)

        logger.info(f"Started run {run.id} of {workflow_id} ({len(definition.steps)} steps)")

        if wait:
            return await self._execute(run, definition)

        task = asyncio.create_task(self._execute(run, definition), name=run.id)
        task.add_done_callback(self._task_done)
        self._tasks[run.id] = task
        return run

    async def wait(self, run_id: str) -> WorkflowRun:
        """Wait for a background run to finish, re-raising anything it raised."""
        task = self._tasks.get(run_id)
        if task is not None:
            try:
                await task
            finally:
                self._tasks.pop(run_id, None)
        return self.get(run_id)

    def get(self, run_id: str) -> WorkflowRun:
        """
        Get a run by id.

        Raises:
            RunNotFound: no such run for this tenant
        """
        run = self._active.get(run_id) or self._history.get(run_id)
        if run is not None:
            return run

        data = self.ledger.store.get_run(self.tenant_id, run_id)
        if data is None:
            raise RunNotFound(run_id)
        return WorkflowRun.from_dict(data)

    def list_runs(self, workflow_id: Optional[str] = None, limit: int = 10) -> list[WorkflowRun]:
        """Recent runs, newest first."""
        rows = self.ledger.store.list_runs(self.tenant_id, workflow_id=workflow_id, limit=limit)
        return [WorkflowRun.from_dict(row) for row in rows]

    def cancel(self, run_id: str, actor_id: Optional[str] = None, reason: str = "") -> bool:
        """
        Cancel a running run.

        The run fails immediately with kind ``cancelled``. A step already in
        flight is left to finish on its own; its result is discarded. A run
        left open by a store outage is closed the same way.

        Returns:
            True if the run was cancelled, False if it was already terminal
            or is in the middle of closing

        Raises:
            RunNotFound: no such run for this tenant
            StoreUnavailableError: the failed record could not be written;
                the run stays open
        """
        run = self._active.get(run_id)
        if run is None:
            self.get(run_id)
            return False

        error = WorkflowCancelled(f"Run {run_id} cancelled: {reason}" if reason else f"Run {run_id} cancelled")
        message = str(error)

        with self._closing:
            if run.is_terminal or run.id in self._finishing:
                return False

            finished_at = _utcnow()
            self.ledger.append(
                AuditActionType.WORKFLOW_FAILED.value,
                RESOURCE_TYPE,
                run.id,
                actor_id=actor_id or run.actor_id,
                payload=self._failure_payload(run, message, RunErrorKind.CANCELLED, None, finished_at),
            )
            run.cancel_requested = True
            self._mark_failed(run, message, RunErrorKind.CANCELLED, finished_at)

        self.ledger.store.save_run(run.to_dict())
        if run.id not in self._executing:
            self._retire(run)
        return True

    def get_statistics(self) -> dict:
        """Get runner statistics."""
        totals = {"started": 0, "completed": 0, "failed": 0}
        for stats in self._stats.values():
            for key in totals:
                totals[key] += stats[key]

        return {
            "tenant_id": self.tenant_id,
            **totals,
            "running": sum(1 for r in self._active.values() if not r.is_terminal),
            "workflows": {k: dict(v) for k, v in self._stats.items()},
        }

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    async def _execute(self, run: WorkflowRun, definition: WorkflowDefinition) -> WorkflowRun:
        graph = self._graph_for(definition)
        run_timeout = definition.run_timeout_seconds or self.config.run_timeout_seconds

        initial_state: WorkflowState = {
            "run_id": run.id,
            "input": run.input,
            "results": {},
            "should_continue": True,
        }

        self._executing.add(run.id)
        try:
            invocation = graph.ainvoke(
                initial_state,
                config={"recursion_limit": len(definition.steps) + 10},
            )
            if run_timeout is None:
                await invocation
            else:
                await asyncio.wait_for(invocation, timeout=run_timeout)

        except asyncio.TimeoutError:
            if run_timeout is None:
                raise
            if not run.is_terminal:
                error = WorkflowTimeoutError(f"Run exceeded {run_timeout}s")
                await self._fail(run, str(error), RunErrorKind.TIMEOUT)

        except asyncio.CancelledError:
            if not run.is_terminal:
                await self._fail(run, str(WorkflowCancelled(f"Run {run.id} task was cancelled")), RunErrorKind.CANCELLED)
            raise

        except Exception as e:
            logger.error(f"Run {run.id} aborted by runner error: {e}")
            raise

        else:
            if not run.is_terminal:
                await self._complete(run)

        finally:
            self._executing.discard(run.id)
            self._retire(run)

        logger.info(run.get_summary())
        return run

    def _task_done(self, task: asyncio.Task):
        if task.cancelled():
            return
        error = task.exception()
        if error is None:
            self._tasks.pop(task.get_name(), None)
        else:
            # Kept so wait() can re-raise it
            logger.error(f"Background run {task.get_name()} raised: {error!r}")

    def _graph_for(self, definition: WorkflowDefinition):
        """Compile (once per definition) the linear step graph."""
        cached = self._graphs.get(definition.workflow_id)
        if cached is not None and cached[0] is definition:
            return cached[1]

        workflow = StateGraph(WorkflowState)

        for index, step in enumerate(definition.steps):
            workflow.add_node(_node_name(index), self._make_step_node(definition, index, step))

        workflow.set_entry_point(_node_name(0))

        last = len(definition.steps) - 1
        for index in range(last):
            workflow.add_conditional_edges(
                _node_name(index),
                _route,
                {
                    "continue": _node_name(index + 1),
                    "end": END,
                }
            )

        # Final step always ends
        workflow.add_edge(_node_name(last), END)

        compiled = workflow.compile()
        self._graphs[definition.workflow_id] = (definition, compiled)
        return compiled

    def _make_step_node(self, definition: WorkflowDefinition, index: int, step: WorkflowStep):
        async def step_node(state: WorkflowState) -> WorkflowState:
            run = self._active[state["run_id"]]
            if run.is_terminal:
                return {**state, "should_continue": False}

            ok, output = await self._execute_step(run, definition, index, step, state)
            results = {**state["results"], step.name: output} if ok else state["results"]

            return {
                **state,
                "results": results,
                "should_continue": ok and not run.is_terminal,
            }

        step_node.__name__ = f"{definition.workflow_id}.{step.name}"
        return step_node

    async def _execute_step(
            self,
            run: WorkflowRun,
            definition: WorkflowDefinition,
            index: int,
            step: WorkflowStep,
            state: WorkflowState,
    ) -> tuple[bool, Any]:
        timeout = next(
            (t for t in (
                step.timeout_seconds,
                definition.step_timeout_seconds,
                self.config.step_timeout_seconds,
            ) if t is not None),
            None,
        )

        result = StepResult(step_name=step.name, index=index)
        result.start()
        logger.info(f"Run {run.id}: step {index + 1}/{len(definition.steps)} '{step.name}'")

        error: Optional[Exception] = None
        try:
            output = await self._call_handler(step, state["input"], dict(state["results"]), timeout)
        except asyncio.TimeoutError:
            # Only the runner's own bound gets here; handler errors arrive wrapped
            error = WorkflowTimeoutError(f"Step '{step.name}' exceeded {timeout}s", step_name=step.name)
            result.complete_failure(str(error), RunErrorKind.TIMEOUT)
        except StepExecutionError as e:
            error = e
            result.complete_failure(str(error), RunErrorKind.STEP_ERROR)
        else:
            result.complete_success(output)

        if run.is_terminal:
            logger.info(f"Run {run.id} ended while '{step.name}' was in flight; result discarded")
            return False, None

        keep = partial(self._keep_step, run, result)
        if self.config.audit_steps:
            await _offload(partial(self._append_step_record, run, step, index, result), then=keep)
        else:
            keep()

        if run.is_terminal:
            return False, None
        await self._save(run)

        if error is not None:
            await self._fail(run, str(error), result.error_kind, failed_step=step.name)
            return False, None

        return True, output

    @staticmethod
    async def _call_handler(step: WorkflowStep, input: dict, results: dict, timeout: Optional[float]) -> Any:
        async def invoke():
            try:
                if inspect.iscoroutinefunction(step.handler):
                    output = await step.handler(input, results)
                else:
                    # Sync handlers run off-loop so a timeout can still fire
                    output = await asyncio.to_thread(step.handler, input, results)
                if inspect.isawaitable(output):
                    output = await output
            except Exception as e:
                # A handler's own TimeoutError is a step error, not the step bound
                raise StepExecutionError(step.name, str(e) or type(e).__name__) from e
            return output

        if timeout is None:
            return await invoke()
        return await asyncio.wait_for(invoke(), timeout=timeout)

    def _append_step_record(self, run: WorkflowRun, step: WorkflowStep, index: int, result: StepResult) -> bool:
        """Append a step record unless the run closed in the meantime."""
        with self._closing:
            if run.is_terminal:
                return False
            self.ledger.append(
                AuditActionType.WORKFLOW_STEP.value,
                RESOURCE_TYPE,
                run.id,
                actor_id=run.actor_id,
                payload={
                    "workflow_id": run.workflow_id,
                    "step": step.name,
                    "index": index,
                    "status": result.status.value,
                    "duration_ms": result.duration_ms,
                    "error": result.error,
                },
            )
            return True

    @staticmethod
    def _keep_step(run: WorkflowRun, result: StepResult):
        if not run.is_terminal:
            run.record_step(result)

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    async def _complete(self, run: WorkflowRun):
        if not self._claim(run):
            return

        finished_at = _utcnow()
        stats = dict(self._workflow_stats(run.workflow_id))
        stats["completed"] += 1
        stats["total_duration_ms"] += run.elapsed_ms(finished_at)

        def mark_completed():
            run.complete(at=finished_at)
            self._count(run, "completed")

        try:
            await _offload(
                partial(
                    self.ledger.append,
                    AuditActionType.WORKFLOW_COMPLETED.value,
                    RESOURCE_TYPE,
                    run.id,
                    actor_id=run.actor_id,
                    payload={
                        "workflow_id": run.workflow_id,
                        "duration_ms": run.elapsed_ms(finished_at),
                        "steps_completed": len(run.step_results),
                        "stats": stats,
                    },
                ),
                then=mark_completed,
            )
        finally:
            self._finishing.discard(run.id)

        await self._save(run)

    async def _fail(
            self,
            run: WorkflowRun,
            message: str,
            kind: RunErrorKind,
            failed_step: Optional[str] = None,
    ):
        if not self._claim(run):
            return

        finished_at = _utcnow()
        try:
            await _offload(
                partial(
                    self.ledger.append,
                    AuditActionType.WORKFLOW_FAILED.value,
                    RESOURCE_TYPE,
                    run.id,
                    actor_id=run.actor_id,
                    payload=self._failure_payload(run, message, kind, failed_step, finished_at),
                ),
                then=partial(self._mark_failed, run, message, kind, finished_at),
            )
        finally:
            self._finishing.discard(run.id)

        await self._save(run)

    def _failure_payload(
            self,
            run: WorkflowRun,
            message: str,
            kind: RunErrorKind,
            failed_step: Optional[str],
            finished_at: datetime,
    ) -> dict:
        stats = dict(self._workflow_stats(run.workflow_id))
        stats["failed"] += 1
        stats["total_duration_ms"] += run.elapsed_ms(finished_at)

        return {
            "workflow_id": run.workflow_id,
            "error_kind": kind.value,
            "error_message": message,
            "failed_step": failed_step,
            "steps_completed": sum(1 for s in run.step_results if s.succeeded),
            "duration_ms": run.elapsed_ms(finished_at),
            "stats": stats,
        }

    def _mark_failed(self, run: WorkflowRun, message: str, kind: RunErrorKind, finished_at: datetime):
        run.fail(message, kind, at=finished_at)
        self._count(run, "failed")
        logger.error(f"Run {run.id} failed ({kind.value}): {message}")

    def _claim(self, run: WorkflowRun) -> bool:
        """Reserve the run's single terminal record."""
        if run.is_terminal or run.id in self._finishing:
            return False
        self._finishing.add(run.id)
        return True

    # -------------------------------------------------------------------------
    # Bookkeeping
    # -------------------------------------------------------------------------

    async def _save(self, run: WorkflowRun):
        await _offload(partial(self.ledger.store.save_run, run.to_dict()))

    def _retire(self, run: WorkflowRun):
        """Move a finished run from the active set into bounded history."""
        if not run.is_terminal:
            # Still reachable through cancel() once the store recovers
            logger.warning(f"Run {run.id} left open: its terminal record was not written")
            return
        self._active.pop(run.id, None)
        self._history[run.id] = run
        while len(self._history) > self.config.max_history:
            self._history.popitem(last=False)

    def _count(self, run: WorkflowRun, outcome: str):
        stats = self._workflow_stats(run.workflow_id)
        stats[outcome] += 1
        stats["total_duration_ms"] += run.duration_ms or 0

    def _workflow_stats(self, workflow_id: str) -> dict:
        return self._stats.setdefault(
            workflow_id,
            {"started": 0, "completed": 0, "failed": 0, "total_duration_ms": 0},
        )
