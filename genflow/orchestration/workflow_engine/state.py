"""
Execution state store.

The store owns the ExecutionState of one run. Every mutation is expressed
as a small event dict, applied by a pure transition function and swapped in
as a new immutable snapshot under a lock, so concurrent readers never see a
half-applied update. The event log can be persisted and replayed to rebuild
the exact same state after a restart.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import replace
from datetime import datetime
from threading import Lock
from typing import Any, Callable, Dict, Iterable, List, Optional

from ...exceptions import InvalidTransitionError
from .steps import ExecutionStage, ExecutionState, FailureKind, StepResult

logger = logging.getLogger(__name__)

StateListener = Callable[[Dict[str, Any], ExecutionState], None]

_ALLOWED_FROM = {
    "seeded": {ExecutionStage.INITIALIZING},
    "executing": {ExecutionStage.INITIALIZING},
    "paused": {ExecutionStage.EXECUTING},
    "resumed": {ExecutionStage.PAUSED},
    "step_started": {ExecutionStage.EXECUTING},
    "step_result": {ExecutionStage.EXECUTING},
    "complete": {ExecutionStage.EXECUTING},
    "failed": {ExecutionStage.INITIALIZING, ExecutionStage.EXECUTING, ExecutionStage.PAUSED},
}


def _detached(state: ExecutionState) -> ExecutionState:
    return replace(
        state,
        results={
            node_id: replace(r, outputs=copy.deepcopy(r.outputs))
            for node_id, r in state.results.items()
        },
    )


def _recount(state: ExecutionState, results: Dict[str, StepResult], at: datetime) -> ExecutionState:
    completed = sum(1 for r in results.values() if r.success)
    total_cost = sum(r.cost for r in results.values() if r.success)
    progress = state.overall_progress
    if state.total_nodes:
        progress = max(progress, round(completed / state.total_nodes * 100, 2))
    return replace(
        state,
        results=results,
        nodes_completed=completed,
        total_cost=total_cost,
        overall_progress=progress,
        updated_at=at,
    )


def apply_event(state: ExecutionState, event: Dict[str, Any]) -> ExecutionState:
    """Return the state that results from applying ``event`` to ``state``.

    Raises:
        InvalidTransitionError: If the event is not allowed in the current stage
    """
    kind = event["type"]
    if kind not in _ALLOWED_FROM:
        raise InvalidTransitionError(f"unknown state event '{kind}'")
    if state.stage not in _ALLOWED_FROM[kind]:
        raise InvalidTransitionError(f"cannot apply '{kind}' while {state.stage.value}")

    at = datetime.fromisoformat(event["at"])

    if kind == "seeded":
        results = dict(state.results)
        for data in event["results"]:
            result = StepResult.from_dict(data)
            results[result.node_id] = result
        return _recount(state, results, at)

    if kind == "executing":
        return replace(state, stage=ExecutionStage.EXECUTING, updated_at=at)

    if kind == "paused":
        return replace(state, stage=ExecutionStage.PAUSED, updated_at=at)

    if kind == "resumed":
        return replace(state, stage=ExecutionStage.EXECUTING, updated_at=at)

    if kind == "step_started":
        return replace(
            state,
            current_node_id=event["node_id"],
            current_index=event["index"],
            updated_at=at,
        )

    if kind == "step_result":
        result = StepResult.from_dict(event["result"])
        if result.node_id in state.results:
            raise InvalidTransitionError(f"result for node '{result.node_id}' already recorded")
        results = dict(state.results)
        results[result.node_id] = result
        return _recount(state, results, at)

    if kind == "complete":
        return replace(state, stage=ExecutionStage.COMPLETE, overall_progress=100.0, updated_at=at)

    # failed
    return replace(
        state,
        stage=ExecutionStage.FAILED,
        terminal_error=event["error"],
        failure_kind=FailureKind(event["kind"]),
        updated_at=at,
    )


class ExecutionStateStore:
    """Single-writer, multi-reader holder of one run's ExecutionState."""

    def __init__(
        self,
        run_id: str,
        total_nodes: int,
        clock: Callable[[], datetime] = datetime.now,
    ):
        """Initialize the store in the INITIALIZING stage.

        Args:
            run_id: Identifier of the run this state belongs to
            total_nodes: Number of nodes in the execution order
            clock: Time source, injectable for deterministic tests
        """
        now = clock()
        self._clock = clock
        self._state = ExecutionState(
            run_id=run_id, total_nodes=total_nodes, started_at=now, updated_at=now
        )
        self._events: List[Dict[str, Any]] = []
        self._listeners: List[StateListener] = []
        self._lock = Lock()

    @property
    def run_id(self) -> str:
        return self._state.run_id

    def snapshot(self) -> ExecutionState:
        """Return a read-only copy of the current state; safe from any thread."""
        with self._lock:
            state = self._state
        return _detached(state)

    def events(self) -> List[Dict[str, Any]]:
        """Return a copy of the event log."""
        with self._lock:
            return copy.deepcopy(self._events)

    def add_listener(self, listener: StateListener) -> None:
        """Register a callback invoked with ``(event, snapshot)`` after each mutation."""
        self._listeners.append(listener)

    def seed(self, results: Iterable[StepResult]) -> ExecutionState:
        """Carry successful results over from an earlier checkpoint."""
        return self._commit(
            {"type": "seeded", "results": [r.to_dict() for r in results if r.success]}
        )

    def mark_executing(self) -> ExecutionState:
        return self._commit({"type": "executing"})

    def mark_paused(self) -> ExecutionState:
        return self._commit({"type": "paused"})

    def mark_resumed(self) -> ExecutionState:
        return self._commit({"type": "resumed"})

    def record_step_start(self, node_id: str, index: int) -> ExecutionState:
        return self._commit({"type": "step_started", "node_id": node_id, "index": index})

    def record_step_result(self, result: StepResult) -> ExecutionState:
        """Store a node's result; cost and progress are recomputed from all results."""
        return self._commit({"type": "step_result", "result": result.to_dict()})

    def mark_complete(self) -> ExecutionState:
        return self._commit({"type": "complete"})

    def mark_failed(self, error: str, kind: FailureKind = FailureKind.STEP) -> ExecutionState:
        return self._commit({"type": "failed", "error": error, "kind": kind.value})

    def _commit(self, event: Dict[str, Any]) -> ExecutionState:
        event["at"] = self._clock().isoformat()
        with self._lock:
            self._state = apply_event(self._state, event)
            self._events.append(event)
            state = self._state

        for listener in self._listeners:
            try:
                listener(copy.deepcopy(event), _detached(state))
            except Exception as e:
                logger.error(f"State listener error for run {state.run_id}: {e}")
        return _detached(state)

    @classmethod
    def replay(
        cls,
        run_id: str,
        total_nodes: int,
        events: Iterable[Dict[str, Any]],
        clock: Callable[[], datetime] = datetime.now,
    ) -> "ExecutionStateStore":
        """Rebuild a store by re-applying a persisted event log.

        Listeners are not notified during replay.
        """
        store = cls(run_id, total_nodes, clock=clock)
        first: Optional[datetime] = None
        for event in events:
            event = copy.deepcopy(event)
            store._state = apply_event(store._state, event)
            store._events.append(event)
            if first is None:
                first = datetime.fromisoformat(event["at"])
        if first is not None:
            store._state = replace(store._state, started_at=first)
        return store
