"""
Core workflow engine.

This module contains the control loop that walks an execution order one node
at a time, resolves node inputs from upstream outputs and workflow inputs,
invokes the step executor under the retry policy, and reacts to pause,
resume and cancel signals at every suspension point.
"""

from __future__ import annotations

import asyncio
import copy
import logging
import time
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from ...exceptions import (
    InputValidationError,
    NodeNotFoundError,
    OutputAssemblyError,
    TerminalStepError,
    UnresolvedInputError,
    WorkflowCancelledError,
)
from ...utils.retry import RetryExhaustedError, RetryPolicy, RetryStats, SleepFn, call_with_retry
from .control import ControlSurface
from .executors import StepExecutor
from .graph import build_execution_order
from .state import ExecutionStateStore, StateListener
from .steps import (
    ExecutionStage,
    ExecutionState,
    FailureKind,
    InputBinding,
    NodeDef,
    StepResult,
    WorkflowDefinition,
    WorkflowResult,
)

logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = "cancelled by caller"


class StepInvoker:
    """Runs one node through the executor with timeout and retry policy."""

    def __init__(
        self,
        executor: StepExecutor,
        retry_policy: Optional[RetryPolicy] = None,
        step_timeout: Optional[float] = None,
        sleep: SleepFn = asyncio.sleep,
        clock: Callable[[], datetime] = datetime.now,
    ):
        """Initialize the invoker.

        Args:
            executor: Step executor performing the actual work
            retry_policy: Retry policy applied to every node
            step_timeout: Per-attempt timeout in seconds (None disables it)
            sleep: Coroutine used for backoff delays
            clock: Wall-clock source for result timestamps
        """
        self.executor = executor
        self.retry_policy = retry_policy or RetryPolicy()
        self.step_timeout = step_timeout
        self._sleep = sleep
        self._clock = clock

    async def invoke(self, node: NodeDef, inputs: Dict[str, Any]) -> StepResult:
        """Execute ``node`` and return its final StepResult.

        Only the final attempt's cost and execution time are reported. Never
        raises for step failures; they come back as ``success=False``.
        """
        stats = RetryStats()
        attempt_started = [time.monotonic(), self._clock()]

        async def attempt() -> StepResult:
            attempt_started[0] = time.monotonic()
            attempt_started[1] = self._clock()
            call = self.executor.execute(node, inputs)
            if self.step_timeout:
                result = await asyncio.wait_for(call, timeout=self.step_timeout)
            else:
                result = await call
            if not result.success:
                raise TerminalStepError(result.error or "step reported failure", node.id, result.cost)
            return result

        try:
            result = await call_with_retry(
                attempt, self.retry_policy, f"node {node.id}", stats=stats, sleep=self._sleep
            )
            error = None
        except RetryExhaustedError as e:
            result, error = None, str(e)
        except Exception as e:
            result, error = None, str(e) or type(e).__name__

        elapsed_ms = (time.monotonic() - attempt_started[0]) * 1000
        finished_at = self._clock()

        if result is not None:
            return replace(
                result,
                node_id=node.id,
                success=True,
                execution_time_ms=elapsed_ms,
                attempts=stats.attempts,
                started_at=attempt_started[1],
                finished_at=finished_at,
            )

        return StepResult(
            node_id=node.id,
            success=False,
            outputs={},
            cost=0.0,
            execution_time_ms=elapsed_ms,
            error=error,
            attempts=stats.attempts,
            started_at=attempt_started[1],
            finished_at=finished_at,
        )


class BaseRun:
    """State, control surface and suspension logic shared by every run variant."""

    def __init__(
        self,
        run_id: str,
        total_nodes: int,
        invoker: StepInvoker,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.run_id = run_id
        self.invoker = invoker
        self._clock = clock
        self.store = ExecutionStateStore(run_id, total_nodes, clock=clock)
        self.control = ControlSurface(self.store)
        self._started = time.monotonic()

    def add_listener(self, listener: StateListener) -> None:
        self.store.add_listener(listener)

    def snapshot(self) -> ExecutionState:
        return self.store.snapshot()

    async def _suspension_point(self) -> None:
        """Block while paused; raise WorkflowCancelledError if cancelled."""
        if self.control.is_cancelled:
            raise WorkflowCancelledError(CANCELLED_MESSAGE)

        if self.control.is_paused:
            self.store.mark_paused()
            logger.info(f"Run {self.run_id} paused")
            await self.control.wait_while_paused()
            if self.control.is_cancelled:
                raise WorkflowCancelledError(CANCELLED_MESSAGE)
            self.store.mark_resumed()
            logger.info(f"Run {self.run_id} resumed")

    def _elapsed_ms(self) -> float:
        return (time.monotonic() - self._started) * 1000

    def _complete(self, outputs: Dict[str, Any]) -> WorkflowResult:
        state = self.store.mark_complete()
        logger.info(
            f"Run {self.run_id} completed: cost ${state.total_cost:.4f}, "
            f"time {self._elapsed_ms() / 1000:.1f}s"
        )
        return self._result(state, outputs)

    def _fail(self, error: str, kind: FailureKind) -> WorkflowResult:
        state = self.store.mark_failed(error, kind)
        logger.error(f"Run {self.run_id} failed ({kind.value}): {error}")
        return self._result(state, {})

    def _result(self, state: ExecutionState, outputs: Dict[str, Any]) -> WorkflowResult:
        return WorkflowResult(
            run_id=self.run_id,
            success=state.stage is ExecutionStage.COMPLETE,
            outputs=outputs,
            total_cost=state.total_cost,
            total_time_ms=self._elapsed_ms(),
            results=dict(state.results),
            stage=state.stage,
            error=state.terminal_error,
            failure_kind=state.failure_kind,
        )


class WorkflowRun(BaseRun):
    """One execution of a WorkflowDefinition over a precomputed execution order."""

    def __init__(
        self,
        definition: WorkflowDefinition,
        inputs: Dict[str, Any],
        execution_order: List[str],
        invoker: StepInvoker,
        run_id: Optional[str] = None,
        checkpoint: Optional[ExecutionState] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        super().__init__(run_id or str(uuid.uuid4()), len(execution_order), invoker, clock=clock)
        self.definition = definition
        self.inputs = dict(inputs)
        self.execution_order = list(execution_order)

        self._outputs: Dict[str, Dict[str, Any]] = {}
        self._bindings: Dict[Tuple[str, str], InputBinding] = {
            (b.target_node_id, b.target_slot): b for b in definition.inputs
        }

        if checkpoint is not None:
            carried = [
                r for node_id, r in checkpoint.results.items()
                if r.success and node_id in self.execution_order
            ]
            if carried:
                self.store.seed(carried)
                for result in carried:
                    self._outputs[result.node_id] = copy.deepcopy(result.outputs)
                logger.info(
                    f"Run {self.run_id} resuming with {len(carried)} completed node(s) "
                    "from checkpoint"
                )

    async def execute(self) -> WorkflowResult:
        """Drive the execution order to completion or to a terminal failure."""
        self.control.bind()
        self.store.mark_executing()
        total = len(self.execution_order)

        logger.info(f"Starting run {self.run_id} of workflow {self.definition.name} ({self.definition.id})")
        logger.info(f"Execution order: {' -> '.join(self.execution_order)}")

        try:
            for index, node_id in enumerate(self.execution_order):
                if node_id in self._outputs:
                    logger.info(f"Skipping node {node_id} (completed in checkpoint)")
                    continue

                await self._suspension_point()

                node = self.definition.get_node(node_id)
                if node is None:
                    raise NodeNotFoundError(node_id)

                self.store.record_step_start(node_id, index)
                logger.info(f"Executing node {index + 1}/{total}: {node_id} ({node.type})")

                try:
                    node_inputs = self.resolve_inputs(node)
                except UnresolvedInputError as e:
                    now = self._clock()
                    self.store.record_step_result(
                        StepResult(
                            node_id=node_id,
                            success=False,
                            error=str(e),
                            attempts=0,
                            started_at=now,
                            finished_at=now,
                        )
                    )
                    raise

                result = await self.invoker.invoke(node, node_inputs)
                self.store.record_step_result(result)

                if not result.success:
                    raise TerminalStepError(f"Node {node_id} failed: {result.error}", node_id)

                self._outputs[node_id] = copy.deepcopy(result.outputs)
                logger.info(
                    f"Node {node_id} completed: cost ${result.cost:.4f}, "
                    f"time {result.execution_time_ms / 1000:.1f}s, "
                    f"outputs {', '.join(result.outputs) or '-'}"
                )

            outputs = self.collect_outputs()

        except WorkflowCancelledError as e:
            return self._fail(str(e), FailureKind.CANCELLED)
        except (NodeNotFoundError, UnresolvedInputError) as e:
            return self._fail(str(e), FailureKind.DEFINITION)
        except TerminalStepError as e:
            return self._fail(str(e), FailureKind.STEP)
        except OutputAssemblyError as e:
            return self._fail(str(e), FailureKind.OUTPUT)

        return self._complete(outputs)

    def resolve_inputs(self, node: NodeDef) -> Dict[str, Any]:
        """Resolve the declared input slots of ``node``.

        A connected slot reads the upstream node's output; otherwise a
        workflow input binding supplies the caller's value or the binding
        default; otherwise the slot stays unset.

        Raises:
            UnresolvedInputError: If an upstream node has not produced the slot
        """
        resolved: Dict[str, Any] = {}
        incoming = {conn.target_slot: conn for conn in self.definition.incoming(node.id)}

        for slot in node.inputs:
            conn = incoming.get(slot)
            if conn is not None:
                upstream = self._outputs.get(conn.source_node_id)
                if upstream is None or conn.source_slot not in upstream:
                    raise UnresolvedInputError(
                        node.id, slot, conn.source_node_id, conn.source_slot
                    )
                resolved[slot] = upstream[conn.source_slot]
                continue

            binding = self._bindings.get((node.id, slot))
            if binding is None:
                continue
            if binding.name in self.inputs:
                resolved[slot] = self.inputs[binding.name]
            elif binding.default is not None:
                resolved[slot] = binding.default

        return resolved

    def collect_outputs(self) -> Dict[str, Any]:
        """Assemble workflow outputs from the output bindings.

        Raises:
            OutputAssemblyError: If a bound node output is missing
        """
        outputs: Dict[str, Any] = {}
        for binding in self.definition.outputs:
            node_outputs = self._outputs.get(binding.source_node_id)
            if node_outputs is None or binding.source_slot not in node_outputs:
                raise OutputAssemblyError(binding.name, binding.source_node_id, binding.source_slot)
            outputs[binding.name] = node_outputs[binding.source_slot]
        return outputs


class WorkflowEngine:
    """Entry point for running workflow definitions."""

    def __init__(
        self,
        executor: StepExecutor,
        retry_policy: Optional[RetryPolicy] = None,
        step_timeout: Optional[float] = None,
        sleep: SleepFn = asyncio.sleep,
        clock: Callable[[], datetime] = datetime.now,
    ):
        """Initialize workflow engine.

        Args:
            executor: Step executor used for every node
            retry_policy: Retry policy applied to every node
            step_timeout: Per-attempt timeout in seconds
            sleep: Coroutine used for backoff delays
            clock: Wall-clock source
        """
        self.invoker = StepInvoker(
            executor, retry_policy=retry_policy, step_timeout=step_timeout, sleep=sleep, clock=clock
        )
        self._clock = clock

    def prepare(
        self,
        definition: WorkflowDefinition,
        inputs: Optional[Dict[str, Any]] = None,
        execution_order: Optional[List[str]] = None,
        run_id: Optional[str] = None,
        checkpoint: Optional[ExecutionState] = None,
    ) -> WorkflowRun:
        """Create a run without starting it, so callers can hold its control surface.

        Raises:
            GraphValidationError: If no order is given and the definition is invalid
            InputValidationError: If a required workflow input is missing
        """
        inputs = dict(inputs or {})
        missing = [
            b.name for b in definition.inputs
            if b.required and b.name not in inputs and b.default is None
        ]
        if missing:
            raise InputValidationError(missing)

        order = execution_order if execution_order is not None else build_execution_order(definition)
        return WorkflowRun(
            definition,
            inputs,
            order,
            self.invoker,
            run_id=run_id,
            checkpoint=checkpoint,
            clock=self._clock,
        )

    async def run(
        self,
        definition: WorkflowDefinition,
        inputs: Optional[Dict[str, Any]] = None,
        execution_order: Optional[List[str]] = None,
        run_id: Optional[str] = None,
        checkpoint: Optional[ExecutionState] = None,
    ) -> WorkflowResult:
        """Prepare and execute a run in one call."""
        run = self.prepare(definition, inputs, execution_order, run_id=run_id, checkpoint=checkpoint)
        return await run.execute()
