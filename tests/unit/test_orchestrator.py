"""Tests for the multi-run workflow orchestrator."""
from __future__ import annotations

import asyncio
import logging

import pytest

from genflow.exceptions import (
    GraphValidationError,
    InvalidTransitionError,
    RunNotFoundError,
    TerminalStepError,
)
from genflow.orchestration.orchestrator import CALLBACK_EVENTS, WorkflowOrchestrator
from genflow.orchestration.state_manager import InMemoryStateManager
from genflow.orchestration.workflow_engine.steps import (
    ExecutionStage,
    FailureKind,
    WorkflowDefinition,
)


async def _until_stage(orchestrator, run_id, stage, attempts=200):
    for _ in range(attempts):
        if orchestrator.progress(run_id).stage is stage:
            return
        await asyncio.sleep(0)
    raise AssertionError(f"run {run_id} never reached {stage.value}")


class TestOrchestrator:
    """Tests for starting, tracking and controlling runs."""

    def setup_method(self):
        self.state_manager = InMemoryStateManager()

    def _orchestrator(self, executor, policy):
        return WorkflowOrchestrator(executor, state_manager=self.state_manager, retry_policy=policy)

    @pytest.mark.asyncio
    async def test_run_to_completion(self, scripted_executor, no_delay_policy, chain):
        orchestrator = self._orchestrator(scripted_executor(), no_delay_policy)
        workflow_id = orchestrator.register_workflow(chain())

        run_id = orchestrator.start(workflow_id, {"seed": "s"}, run_id="run-ok")
        result = await orchestrator.wait(run_id)

        assert run_id == "run-ok"
        assert result.success is True
        assert result.outputs == {"final": "c:out"}
        assert self.state_manager.load_state(run_id).stage is ExecutionStage.COMPLETE
        assert self.state_manager.load_context(run_id) == {"workflow_id": workflow_id, "inputs": {"seed": "s"}}
        assert orchestrator.list_runs() == {run_id: ExecutionStage.COMPLETE}

    @pytest.mark.asyncio
    async def test_callbacks_follow_run_events(self, scripted_executor, no_delay_policy, chain):
        executor = scripted_executor({"c": [TerminalStepError("refused")]})
        orchestrator = self._orchestrator(executor, no_delay_policy)
        seen = []
        for event in CALLBACK_EVENTS:
            orchestrator.add_callback(event, lambda run_id, name, state: seen.append(name))

        run_id = orchestrator.start(orchestrator.register_workflow(chain()), {"seed": 1})
        await orchestrator.wait(run_id)

        assert seen == ["started", "step_completed", "step_completed", "step_failed", "failed"]

    def test_unknown_callback_event(self, scripted_executor, no_delay_policy):
        orchestrator = self._orchestrator(scripted_executor(), no_delay_policy)

        with pytest.raises(ValueError, match="unknown callback event"):
            orchestrator.add_callback("exploded", lambda *args: None)

    @pytest.mark.asyncio
    async def test_callback_errors_do_not_stop_run(self, scripted_executor, no_delay_policy, chain, caplog):
        orchestrator = self._orchestrator(scripted_executor(), no_delay_policy)

        def broken(run_id, event, state):
            raise RuntimeError("callback exploded")

        orchestrator.add_callback("step_completed", broken)

        with caplog.at_level(logging.ERROR):
            run_id = orchestrator.start(orchestrator.register_workflow(chain()), {"seed": 1})
            result = await orchestrator.wait(run_id)

        assert result.success is True
        assert "callback exploded" in caplog.text

    @pytest.mark.asyncio
    async def test_metrics(self, scripted_executor, no_delay_policy, chain):
        executor = scripted_executor({"b": [TerminalStepError("no")]}, default_cost=0.5)
        orchestrator = self._orchestrator(executor, no_delay_policy)
        workflow_id = orchestrator.register_workflow(chain())

        await orchestrator.wait(orchestrator.start(workflow_id, {"seed": 1}))
        await orchestrator.wait(orchestrator.start(workflow_id, {"seed": 2}))

        metrics = orchestrator.get_metrics()
        assert metrics["workflows_started"] == 2
        assert metrics["workflows_failed"] == 1
        assert metrics["workflows_completed"] == 1
        assert metrics["steps_executed"] == 5
        assert metrics["steps_failed"] == 1
        assert metrics["total_cost"] == 2.0

    @pytest.mark.asyncio
    async def test_pause_resume_by_run_id(self, scripted_executor, no_delay_policy, chain):
        executor = scripted_executor()
        orchestrator = self._orchestrator(executor, no_delay_policy)
        run_id = orchestrator.start(orchestrator.register_workflow(chain()), {"seed": 1})

        orchestrator.pause(run_id)
        await _until_stage(orchestrator, run_id, ExecutionStage.PAUSED)
        assert executor.calls == []
        assert self.state_manager.load_state(run_id).stage is ExecutionStage.PAUSED

        orchestrator.resume(run_id)
        result = await orchestrator.wait(run_id)

        assert result.success is True
        assert executor.called_nodes == ["a", "b", "c"]

    @pytest.mark.asyncio
    async def test_cancel_by_run_id(self, scripted_executor, no_delay_policy, chain):
        orchestrator = self._orchestrator(scripted_executor(), no_delay_policy)
        run_id = orchestrator.start(orchestrator.register_workflow(chain()), {"seed": 1})

        orchestrator.cancel(run_id)
        result = await orchestrator.wait(run_id)

        assert result.cancelled is True
        assert result.error == "cancelled by caller"
        assert orchestrator.get_metrics()["workflows_cancelled"] == 1

    @pytest.mark.asyncio
    async def test_unknown_run(self, scripted_executor, no_delay_policy):
        orchestrator = self._orchestrator(scripted_executor(), no_delay_policy)

        for signal in (orchestrator.pause, orchestrator.resume, orchestrator.cancel, orchestrator.progress):
            with pytest.raises(RunNotFoundError, match="run 'ghost' not found"):
                signal("ghost")
        with pytest.raises(RunNotFoundError):
            await orchestrator.wait("ghost")

    def test_unknown_workflow(self, scripted_executor, no_delay_policy):
        orchestrator = self._orchestrator(scripted_executor(), no_delay_policy)

        with pytest.raises(ValueError, match="Workflow nope not found"):
            orchestrator.start("nope")

    @pytest.mark.asyncio
    async def test_invalid_definition_rejected_before_start(self, scripted_executor, no_delay_policy):
        definition = WorkflowDefinition.model_validate(
            {
                "nodes": [{"id": "a", "type": "x", "inputs": ["in"]}],
                "connections": [
                    {"source_node_id": "ghost", "source_slot": "out", "target_node_id": "a", "target_slot": "in"}
                ],
            }
        )
        orchestrator = self._orchestrator(scripted_executor(), no_delay_policy)

        with pytest.raises(GraphValidationError):
            orchestrator.start(orchestrator.register_workflow(definition))

        assert orchestrator.list_runs() == {}

    @pytest.mark.asyncio
    async def test_progress_falls_back_to_checkpoint(self, scripted_executor, no_delay_policy, chain):
        first = self._orchestrator(scripted_executor(), no_delay_policy)
        run_id = first.start(first.register_workflow(chain()), {"seed": 1})
        await first.wait(run_id)

        second = self._orchestrator(scripted_executor(), no_delay_policy)

        assert second.progress(run_id).stage is ExecutionStage.COMPLETE
        assert second.list_runs() == {run_id: ExecutionStage.COMPLETE}


class TestRecovery:
    """Tests for restarting runs from checkpoints."""

    def setup_method(self):
        self.state_manager = InMemoryStateManager()

    @pytest.mark.asyncio
    async def test_recover_failed_run_skips_completed_nodes(self, scripted_executor, no_delay_policy, chain):
        executor = scripted_executor({"b": [TerminalStepError("first time")]})
        orchestrator = WorkflowOrchestrator(executor, self.state_manager, retry_policy=no_delay_policy)
        definition = chain()
        run_id = orchestrator.start(orchestrator.register_workflow(definition), {"seed": 1})
        failed = await orchestrator.wait(run_id)
        assert failed.failure_kind is FailureKind.STEP

        # New process: same state manager, fresh orchestrator
        restarted = WorkflowOrchestrator(executor, self.state_manager, retry_policy=no_delay_policy)
        restarted.register_workflow(definition)

        assert restarted.recover(run_id) == run_id
        result = await restarted.wait(run_id)

        assert result.success is True
        assert executor.called_nodes == ["a", "b", "b", "c"]
        assert result.total_cost == 3.0

    @pytest.mark.asyncio
    async def test_recover_rejects_completed_and_live_runs(self, scripted_executor, no_delay_policy, chain):
        orchestrator = WorkflowOrchestrator(scripted_executor(), self.state_manager, retry_policy=no_delay_policy)
        workflow_id = orchestrator.register_workflow(chain())

        live = orchestrator.start(workflow_id, {"seed": 1})
        with pytest.raises(InvalidTransitionError, match="still running"):
            orchestrator.recover(live)
        await orchestrator.wait(live)

        with pytest.raises(InvalidTransitionError, match="already completed"):
            orchestrator.recover(live)

    def test_recover_unknown_run(self, scripted_executor, no_delay_policy):
        orchestrator = WorkflowOrchestrator(scripted_executor(), self.state_manager, retry_policy=no_delay_policy)

        with pytest.raises(RunNotFoundError):
            orchestrator.recover("ghost")
