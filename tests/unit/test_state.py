"""Tests for the event-sourced execution state store."""
from __future__ import annotations

import logging
import threading
from datetime import datetime

import pytest

from genflow.exceptions import InvalidTransitionError
from genflow.orchestration.workflow_engine.state import ExecutionStateStore, apply_event
from genflow.orchestration.workflow_engine.steps import (
    ExecutionStage,
    ExecutionState,
    FailureKind,
    StepResult,
)

FIXED = datetime(2024, 5, 1, 9, 30, 0)


def _store(total: int = 3) -> ExecutionStateStore:
    return ExecutionStateStore("run-1", total, clock=lambda: FIXED)


def _ok(node_id: str, cost: float = 1.0) -> StepResult:
    return StepResult(node_id=node_id, success=True, outputs={"out": node_id}, cost=cost)


def _failed(node_id: str, cost: float = 5.0) -> StepResult:
    return StepResult(node_id=node_id, success=False, cost=cost, error="boom")


class TestStageTransitions:
    """Tests for the stage machine."""

    def test_initial_state(self):
        state = _store().snapshot()

        assert state.run_id == "run-1"
        assert state.stage is ExecutionStage.INITIALIZING
        assert state.total_nodes == 3
        assert state.nodes_completed == 0
        assert state.overall_progress == 0.0

    def test_pause_and_resume(self):
        store = _store()
        store.mark_executing()

        assert store.mark_paused().stage is ExecutionStage.PAUSED
        assert store.mark_resumed().stage is ExecutionStage.EXECUTING

    def test_results_rejected_before_executing(self):
        store = _store()

        with pytest.raises(InvalidTransitionError, match="cannot apply 'step_result' while initializing"):
            store.record_step_result(_ok("a"))

    def test_results_rejected_while_paused(self):
        store = _store()
        store.mark_executing()
        store.mark_paused()

        with pytest.raises(InvalidTransitionError):
            store.record_step_start("a", 0)

    @pytest.mark.parametrize("finish", ["complete", "failed"])
    def test_terminal_stages_absorb(self, finish):
        store = _store()
        store.mark_executing()
        if finish == "complete":
            store.mark_complete()
        else:
            store.mark_failed("boom")

        for mutate in (
            store.mark_executing,
            store.mark_paused,
            store.mark_resumed,
            store.mark_complete,
            lambda: store.mark_failed("again"),
            lambda: store.record_step_result(_ok("a")),
        ):
            with pytest.raises(InvalidTransitionError):
                mutate()

    def test_failed_from_paused(self):
        store = _store()
        store.mark_executing()
        store.mark_paused()

        state = store.mark_failed("cancelled by caller", FailureKind.CANCELLED)

        assert state.stage is ExecutionStage.FAILED
        assert state.failure_kind is FailureKind.CANCELLED
        assert state.terminal_error == "cancelled by caller"

    def test_unknown_event(self):
        with pytest.raises(InvalidTransitionError, match="unknown state event"):
            apply_event(ExecutionState(run_id="r"), {"type": "teleport", "at": FIXED.isoformat()})


class TestAccounting:
    """Tests for progress and cost bookkeeping."""

    def test_progress_and_cost_follow_successes(self):
        store = _store(total=3)
        store.mark_executing()

        state = store.record_step_result(_ok("a", cost=1.5))

        assert state.nodes_completed == 1
        assert state.overall_progress == 33.33
        assert state.total_cost == 1.5

    def test_failed_result_adds_no_cost_or_progress(self):
        store = _store(total=2)
        store.mark_executing()
        store.record_step_result(_ok("a", cost=2.0))

        state = store.record_step_result(_failed("b", cost=5.0))

        assert state.nodes_completed == 1
        assert state.total_cost == 2.0
        assert state.overall_progress == 50.0
        assert set(state.results) == {"a", "b"}

    def test_complete_sets_full_progress(self):
        store = _store(total=2)
        store.mark_executing()
        store.record_step_result(_ok("a"))

        assert store.mark_complete().overall_progress == 100.0

    def test_second_result_for_node_rejected(self):
        store = _store()
        store.mark_executing()
        store.record_step_result(_ok("a"))

        with pytest.raises(InvalidTransitionError, match="already recorded"):
            store.record_step_result(_ok("a"))

    def test_step_start_tracks_position(self):
        store = _store()
        store.mark_executing()

        state = store.record_step_start("b", 1)

        assert state.current_node_id == "b"
        assert state.current_index == 1

    def test_seed_carries_only_successes(self):
        store = _store(total=3)

        state = store.seed([_ok("a", cost=2.0), _failed("b")])

        assert set(state.results) == {"a"}
        assert state.nodes_completed == 1
        assert state.total_cost == 2.0
        assert state.stage is ExecutionStage.INITIALIZING


class TestSnapshots:
    """Tests for snapshot isolation and concurrent readers."""

    def test_snapshot_is_a_copy(self):
        store = _store()
        store.mark_executing()
        store.record_step_result(_ok("a"))

        snapshot = store.snapshot()
        snapshot.results.clear()

        assert "a" in store.snapshot().results

    def test_snapshot_outputs_are_detached(self):
        store = _store()
        store.mark_executing()
        store.record_step_result(_ok("a"))

        store.snapshot().results["a"].outputs["out"] = "tampered.mp4"

        assert store.snapshot().results["a"].outputs == {"out": "a"}
        assert store.events()[-1]["result"]["outputs"] == {"out": "a"}

    def test_recorded_result_is_independent_of_caller(self):
        store = _store()
        store.mark_executing()
        produced = {"out": ["frame.png"]}

        returned = store.record_step_result(StepResult(node_id="a", success=True, outputs=produced))
        produced["out"].append("late.png")
        returned.results["a"].outputs["out"].append("other.png")

        assert store.snapshot().results["a"].outputs == {"out": ["frame.png"]}

    def test_event_log_copies_are_detached(self):
        store = _store()
        store.mark_executing()
        store.record_step_result(_ok("a"))
        store.add_listener(lambda event, state: event["result"]["outputs"].clear())
        store.record_step_result(_ok("b"))

        store.events()[1]["result"]["outputs"]["out"] = "tampered"
        replayed = ExecutionStateStore.replay("run-1", 3, store.events(), clock=lambda: FIXED)

        assert replayed.snapshot().results["a"].outputs == {"out": "a"}
        assert replayed.snapshot().results["b"].outputs == {"out": "b"}

    def test_readers_never_see_torn_state(self):
        store = ExecutionStateStore("run-1", 200)
        store.mark_executing()
        torn = []
        done = threading.Event()

        def reader():
            while not done.is_set():
                state = store.snapshot()
                succeeded = [r for r in state.results.values() if r.success]
                if state.nodes_completed != len(succeeded):
                    torn.append(state)
                if state.total_cost != sum(r.cost for r in succeeded):
                    torn.append(state)

        thread = threading.Thread(target=reader)
        thread.start()
        try:
            for i in range(200):
                store.record_step_result(_ok(f"n{i}", cost=0.5))
        finally:
            done.set()
            thread.join()

        assert torn == []
        assert store.snapshot().total_cost == 100.0


class TestEventLog:
    """Tests for listeners, the event log and replay."""

    def test_events_are_logged_in_order(self):
        store = _store()
        store.mark_executing()
        store.record_step_start("a", 0)
        store.record_step_result(_ok("a"))
        store.mark_complete()

        assert [e["type"] for e in store.events()] == ["executing", "step_started", "step_result", "complete"]
        assert all(e["at"] == FIXED.isoformat() for e in store.events())

    def test_replay_rebuilds_identical_state(self):
        store = _store(total=2)
        store.seed([_ok("a", cost=0.5)])
        store.mark_executing()
        store.record_step_start("b", 1)
        store.mark_paused()
        store.mark_resumed()
        store.record_step_result(_failed("b"))
        store.mark_failed("Node b failed: boom")

        replayed = ExecutionStateStore.replay("run-1", 2, store.events(), clock=lambda: FIXED)

        assert replayed.snapshot().to_dict() == store.snapshot().to_dict()
        assert replayed.events() == store.events()

    def test_listeners_receive_event_and_snapshot(self):
        store = _store()
        seen = []
        store.add_listener(lambda event, state: seen.append((event["type"], state.stage)))

        store.mark_executing()
        store.mark_complete()

        assert seen == [("executing", ExecutionStage.EXECUTING), ("complete", ExecutionStage.COMPLETE)]

    def test_listener_errors_are_logged_not_raised(self, caplog):
        store = _store()

        def broken(event, state):
            raise RuntimeError("listener exploded")

        store.add_listener(broken)

        with caplog.at_level(logging.ERROR):
            state = store.mark_executing()

        assert state.stage is ExecutionStage.EXECUTING
        assert "listener exploded" in caplog.text


class TestSerialization:
    """Tests for state to_dict/from_dict."""

    def test_round_trip(self):
        store = _store(total=2)
        store.mark_executing()
        store.record_step_result(
            StepResult(
                node_id="a",
                success=True,
                outputs={"out": [1, 2]},
                cost=0.25,
                execution_time_ms=12.5,
                attempts=2,
                started_at=FIXED,
                finished_at=FIXED,
            )
        )
        store.mark_failed("stopped", FailureKind.CANCELLED)
        state = store.snapshot()

        restored = ExecutionState.from_dict(state.to_dict())

        assert restored == state
        assert restored.results["a"].attempts == 2
        assert restored.failure_kind is FailureKind.CANCELLED
