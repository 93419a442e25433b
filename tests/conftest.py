"""Global pytest fixtures and configuration.

This module provides shared fixtures for all tests including:
- A scripted step executor that records every call
- Workflow definition builders (chains and diamonds)
- A zero-delay retry policy and a recording sleep function
- A ticking clock for deterministic timestamps
"""
from __future__ import annotations

import asyncio
import inspect
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence

import pytest

from genflow.config import reset_config
from genflow.orchestration.workflow_engine.executors import StepExecutor
from genflow.orchestration.workflow_engine.steps import NodeDef, StepResult, WorkflowDefinition
from genflow.utils.retry import RetryPolicy


class ScriptedExecutor(StepExecutor):
    """Executor whose per-node outcomes are scripted up front.

    Each node id maps to a list of outcomes consumed one per attempt: an
    exception is raised, a StepResult is returned as is, a dict is turned
    into a StepResult. Once a node's script is used up (or absent) the node
    succeeds with ``{"out": "<id>:out"}`` and ``default_cost``.
    """

    def __init__(
        self,
        script: Optional[Dict[str, Sequence[Any]]] = None,
        default_cost: float = 1.0,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.script = {node_id: list(outcomes) for node_id, outcomes in (script or {}).items()}
        self.default_cost = default_cost
        self.clock = clock or datetime.now
        self.calls: List[tuple] = []
        self.invoked_at: Dict[str, datetime] = {}
        self.before: Dict[str, Callable[[NodeDef], Any]] = {}

    @property
    def called_nodes(self) -> List[str]:
        return [node_id for node_id, _ in self.calls]

    async def execute(self, node: NodeDef, inputs: Dict[str, Any]) -> StepResult:
        self.calls.append((node.id, dict(inputs)))
        self.invoked_at.setdefault(node.id, self.clock())

        hook = self.before.get(node.id)
        if hook is not None:
            value = hook(node)
            if inspect.isawaitable(value):
                await value

        outcomes = self.script.get(node.id)
        outcome = outcomes.pop(0) if outcomes else None

        if isinstance(outcome, BaseException):
            raise outcome
        if isinstance(outcome, StepResult):
            return outcome
        if isinstance(outcome, dict):
            return StepResult(
                node_id=node.id,
                success=outcome.get("success", True),
                outputs=outcome.get("outputs", {"out": f"{node.id}:out"}),
                cost=outcome.get("cost", self.default_cost),
                error=outcome.get("error"),
            )
        return StepResult(
            node_id=node.id, success=True, outputs={"out": f"{node.id}:out"}, cost=self.default_cost
        )


class TickClock:
    """Clock that advances one second on every call."""

    def __init__(self, start: datetime = datetime(2024, 1, 1, 12, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        self.now = self.now + timedelta(seconds=1)
        return self.now


def chain_definition(node_ids: Sequence[str] = ("a", "b", "c"), with_io: bool = True) -> WorkflowDefinition:
    """Linear chain where each node's ``out`` feeds the next node's ``in``.

    With ``with_io`` the first node reads the workflow input ``seed`` and the
    last node's output is published as ``final``.
    """
    nodes = [{"id": node_id, "type": "step", "inputs": ["in"]} for node_id in node_ids]
    connections = [
        {"source_node_id": src, "source_slot": "out", "target_node_id": dst, "target_slot": "in"}
        for src, dst in zip(node_ids, node_ids[1:])
    ]
    data: Dict[str, Any] = {"name": "chain", "nodes": nodes, "connections": connections}
    if with_io:
        data["inputs"] = [{"name": "seed", "target_node_id": node_ids[0], "target_slot": "in"}]
        data["outputs"] = [{"name": "final", "source_node_id": node_ids[-1], "source_slot": "out"}]
    return WorkflowDefinition.model_validate(data)


def diamond_definition() -> WorkflowDefinition:
    """``src`` feeds ``left`` and ``right``, both feed ``join``."""
    return WorkflowDefinition.model_validate(
        {
            "name": "diamond",
            "nodes": [
                {"id": "src", "type": "step", "inputs": []},
                {"id": "left", "type": "step", "inputs": ["in"]},
                {"id": "right", "type": "step", "inputs": ["in"]},
                {"id": "join", "type": "step", "inputs": ["l", "r"]},
            ],
            "connections": [
                {"source_node_id": "src", "source_slot": "out", "target_node_id": "left", "target_slot": "in"},
                {"source_node_id": "src", "source_slot": "out", "target_node_id": "right", "target_slot": "in"},
                {"source_node_id": "left", "source_slot": "out", "target_node_id": "join", "target_slot": "l"},
                {"source_node_id": "right", "source_slot": "out", "target_node_id": "join", "target_slot": "r"},
            ],
            "outputs": [{"name": "result", "source_node_id": "join", "source_slot": "out"}],
        }
    )


async def wait_for_stage(run, stage, attempts: int = 200) -> None:
    """Yield to the loop until ``run`` reaches ``stage``."""
    for _ in range(attempts):
        if run.snapshot().stage is stage:
            return
        await asyncio.sleep(0)
    raise AssertionError(f"run never reached {stage.value}; still {run.snapshot().stage.value}")


@pytest.fixture
def scripted_executor():
    """Factory for ScriptedExecutor instances."""
    return ScriptedExecutor


@pytest.fixture
def no_delay_policy() -> RetryPolicy:
    """Three attempts without any backoff delay."""
    return RetryPolicy(initial_delay=0.0, max_delay=0.0, max_attempts=3)


@pytest.fixture
def recorded_sleeps():
    """Sleep replacement that records requested delays and returns immediately."""
    delays: List[float] = []

    async def sleep(delay: float) -> None:
        delays.append(delay)

    sleep.delays = delays
    return sleep


@pytest.fixture
def tick_clock() -> TickClock:
    return TickClock()


@pytest.fixture
def chain():
    return chain_definition


@pytest.fixture
def diamond():
    return diamond_definition


@pytest.fixture
def stage_waiter():
    return wait_for_stage


@pytest.fixture(autouse=True)
def isolated_config(monkeypatch, tmp_path):
    """Keep tests away from the user's environment and state database."""
    for key in (
        "GENFLOW_RETRY_INITIAL_DELAY",
        "GENFLOW_RETRY_BACKOFF",
        "GENFLOW_RETRY_MAX_ATTEMPTS",
        "GENFLOW_RETRY_MAX_DELAY",
        "GENFLOW_RETRY_JITTER",
        "GENFLOW_STEP_TIMEOUT",
        "GENFLOW_STATE_RETENTION_DAYS",
        "GENFLOW_LOG_LEVEL",
    ):
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("GENFLOW_STATE_DB", str(tmp_path / "state" / "workflows.db"))
    reset_config()
    yield
    reset_config()
