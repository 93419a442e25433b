"""
Multi-run workflow orchestrator.

Hosts many concurrent runs on one event loop, checkpoints every state
mutation through a WorkflowStateManager, routes control signals by run id,
recovers interrupted runs from their last checkpoint, and keeps metrics.
"""

from __future__ import annotations

import asyncio
import logging
from threading import Lock
from typing import Any, Callable, Dict, List, Optional

from ..config import EngineConfig, get_config
from ..exceptions import InvalidTransitionError, RunNotFoundError
from ..utils.retry import RetryPolicy, SleepFn
from .state_manager import InMemoryStateManager, WorkflowStateManager
from .workflow_engine.core import WorkflowEngine, WorkflowRun
from .workflow_engine.executors import StepExecutor
from .workflow_engine.steps import (
    ExecutionStage,
    ExecutionState,
    FailureKind,
    StepResult,
    WorkflowDefinition,
    WorkflowResult,
)

logger = logging.getLogger(__name__)

RunCallback = Callable[[str, str, ExecutionState], None]

_CALLBACK_EVENTS = {
    "executing": "started",
    "paused": "paused",
    "resumed": "resumed",
    "complete": "completed",
    "failed": "failed",
}

CALLBACK_EVENTS = ("started", "paused", "resumed", "step_completed", "step_failed", "completed", "failed")


class WorkflowOrchestrator:
    """Main workflow orchestration engine."""

    def __init__(
        self,
        executor: StepExecutor,
        state_manager: Optional[WorkflowStateManager] = None,
        retry_policy: Optional[RetryPolicy] = None,
        config: Optional[EngineConfig] = None,
        enable_metrics: bool = True,
        sleep: SleepFn = asyncio.sleep,
    ):
        """Initialize workflow orchestrator.

        Args:
            executor: Step executor used by every run
            state_manager: Checkpoint persistence (in-memory by default)
            retry_policy: Retry policy; built from config when omitted
            config: Engine configuration (global config by default)
            enable_metrics: Enable metrics collection
            sleep: Coroutine used for retry backoff delays
        """
        self.config = config or get_config()
        self.state_manager = state_manager or InMemoryStateManager()
        self.engine = WorkflowEngine(
            executor,
            retry_policy=retry_policy or self.config.retry_policy(),
            step_timeout=self.config.step_timeout,
            sleep=sleep,
        )
        self.enable_metrics = enable_metrics

        self._workflows: Dict[str, WorkflowDefinition] = {}
        self._runs: Dict[str, WorkflowRun] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._callbacks: Dict[str, List[RunCallback]] = {}
        self._lock = Lock()

        # Metrics
        self._metrics = {
            "workflows_started": 0,
            "workflows_completed": 0,
            "workflows_failed": 0,
            "workflows_cancelled": 0,
            "steps_executed": 0,
            "steps_failed": 0,
            "total_cost": 0.0,
        }

    def register_workflow(self, definition: WorkflowDefinition) -> str:
        """Register a workflow definition.

        Returns:
            Workflow ID
        """
        with self._lock:
            self._workflows[definition.id] = definition
        logger.info(f"Registered workflow: {definition.name} ({definition.id})")
        return definition.id

    def get_workflow(self, workflow_id: str) -> WorkflowDefinition:
        """Look up a registered definition.

        Raises:
            ValueError: If the workflow is not registered
        """
        definition = self._workflows.get(workflow_id)
        if definition is None:
            raise ValueError(f"Workflow {workflow_id} not found")
        return definition

    def start(
        self,
        workflow_id: str,
        inputs: Optional[Dict[str, Any]] = None,
        run_id: Optional[str] = None,
        checkpoint: Optional[ExecutionState] = None,
    ) -> str:
        """Start a run as a task on the running event loop.

        Definition and input problems raise here, before any task is created.

        Returns:
            Run ID

        Raises:
            ValueError: If the workflow is not registered
            GraphValidationError: If the definition is invalid
            InputValidationError: If a required workflow input is missing
        """
        definition = self.get_workflow(workflow_id)
        inputs = dict(inputs or {})
        run = self.engine.prepare(definition, inputs, run_id=run_id, checkpoint=checkpoint)
        context = {"workflow_id": workflow_id, "inputs": inputs}

        self.state_manager.save_state(run.run_id, run.snapshot(), context)
        run.add_listener(self._checkpoint_listener(run.run_id))

        with self._lock:
            self._runs[run.run_id] = run
            if self.enable_metrics:
                self._metrics["workflows_started"] += 1

        task = asyncio.create_task(run.execute(), name=f"genflow-run-{run.run_id}")
        task.add_done_callback(lambda t, rid=run.run_id: self._on_task_done(rid, t))
        self._tasks[run.run_id] = task
        logger.info(f"Started run {run.run_id} of workflow {definition.name}")
        return run.run_id

    def recover(self, run_id: str, workflow_id: Optional[str] = None) -> str:
        """Restart an interrupted or failed run from its last checkpoint.

        Successful node results are carried over and not executed again.

        Args:
            run_id: Run to restart
            workflow_id: Registered workflow to run instead of the one saved
                with the checkpoint (a definition reloaded from disk gets a new id)

        Raises:
            RunNotFoundError: If no checkpoint exists
            InvalidTransitionError: If the run is still live or already complete
        """
        if run_id in self._runs and not self._runs[run_id].snapshot().is_terminal():
            raise InvalidTransitionError(f"run '{run_id}' is still running")

        checkpoint = self.state_manager.load_state(run_id)
        if checkpoint is None:
            raise RunNotFoundError(run_id)
        if checkpoint.stage is ExecutionStage.COMPLETE:
            raise InvalidTransitionError(f"run '{run_id}' already completed")

        context = self.state_manager.load_context(run_id)
        workflow_id = workflow_id or context.get("workflow_id")
        if workflow_id is None:
            raise RunNotFoundError(run_id)

        logger.info(
            f"Recovering run {run_id} from checkpoint "
            f"({checkpoint.nodes_completed}/{checkpoint.total_nodes} nodes completed)"
        )
        return self.start(workflow_id, context.get("inputs") or {}, run_id=run_id, checkpoint=checkpoint)

    async def wait(self, run_id: str) -> WorkflowResult:
        """Wait for a run started by this orchestrator to finish."""
        task = self._tasks.get(run_id)
        if task is None:
            raise RunNotFoundError(run_id)
        return await task

    # Control surface routing

    def pause(self, run_id: str) -> None:
        self._live_run(run_id).control.pause()

    def resume(self, run_id: str) -> None:
        self._live_run(run_id).control.resume()

    def cancel(self, run_id: str) -> None:
        self._live_run(run_id).control.cancel()

    def progress(self, run_id: str) -> ExecutionState:
        """Latest snapshot of a live run, or its last checkpoint.

        Raises:
            RunNotFoundError: If the run is neither live nor checkpointed
        """
        run = self._runs.get(run_id)
        if run is not None:
            return run.control.progress()
        state = self.state_manager.load_state(run_id)
        if state is None:
            raise RunNotFoundError(run_id)
        return state

    def list_runs(self) -> Dict[str, ExecutionStage]:
        """Stages of all runs known to this process or its state manager."""
        runs = dict(self.state_manager.list_states())
        for run_id, run in list(self._runs.items()):
            runs[run_id] = run.snapshot().stage
        return runs

    def add_callback(self, event: str, callback: RunCallback) -> None:
        """Add event callback.

        Args:
            event: One of CALLBACK_EVENTS
            callback: Called with ``(run_id, event, snapshot)``

        Raises:
            ValueError: If the event name is unknown
        """
        if event not in CALLBACK_EVENTS:
            raise ValueError(f"unknown callback event '{event}'")
        self._callbacks.setdefault(event, []).append(callback)

    def get_metrics(self) -> Dict[str, Any]:
        """Get orchestrator metrics."""
        with self._lock:
            return self._metrics.copy()

    def _live_run(self, run_id: str) -> WorkflowRun:
        run = self._runs.get(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        return run

    def _checkpoint_listener(self, run_id: str):
        def on_event(event: Dict[str, Any], state: ExecutionState) -> None:
            self.state_manager.save_state(run_id, state)
            kind = event["type"]

            if kind == "step_result":
                result = StepResult.from_dict(event["result"])
                self._record_step(result)
                self._notify_callbacks(
                    run_id, "step_completed" if result.success else "step_failed", state
                )
            elif kind in _CALLBACK_EVENTS:
                if kind in ("complete", "failed"):
                    self._record_finish(state)
                self._notify_callbacks(run_id, _CALLBACK_EVENTS[kind], state)

        return on_event

    def _record_step(self, result: StepResult) -> None:
        if not self.enable_metrics:
            return
        with self._lock:
            self._metrics["steps_executed"] += 1
            if result.success:
                self._metrics["total_cost"] += result.cost
            else:
                self._metrics["steps_failed"] += 1

    def _record_finish(self, state: ExecutionState) -> None:
        if not self.enable_metrics:
            return
        with self._lock:
            if state.stage is ExecutionStage.COMPLETE:
                self._metrics["workflows_completed"] += 1
            elif state.failure_kind is FailureKind.CANCELLED:
                self._metrics["workflows_cancelled"] += 1
            else:
                self._metrics["workflows_failed"] += 1

    def _notify_callbacks(self, run_id: str, event: str, state: ExecutionState) -> None:
        for callback in self._callbacks.get(event, []):
            try:
                callback(run_id, event, state)
            except Exception as e:
                logger.error(f"Callback error: {e}")

    def _on_task_done(self, run_id: str, task: asyncio.Task) -> None:
        if task.cancelled():
            logger.warning(f"Task for run {run_id} was cancelled before finishing")
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Run {run_id} crashed: {error}")
