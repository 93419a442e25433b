"""
Workflow execution engine.

This package contains the engine components:
- steps: Definition models, StepResult and ExecutionState
- graph: Definition validation and execution order
- state: Event-sourced execution state store
- control: Pause/resume/cancel signals and progress queries
- core: The DAG control loop
- executors: Step executor contract and adapters
"""

from __future__ import annotations

# Export main public API
from .steps import (
    Connection,
    ExecutionStage,
    ExecutionState,
    FailureKind,
    InputBinding,
    NodeDef,
    OutputBinding,
    StepResult,
    WorkflowDefinition,
    WorkflowResult,
)

from .graph import build_execution_order, execution_levels, find_problems, to_dag, validate_definition
from .state import ExecutionStateStore, apply_event
from .control import ControlSurface
from .core import BaseRun, StepInvoker, WorkflowEngine, WorkflowRun
from .executors import CallableStepExecutor, StepExecutor, coerce_result, load_executor

__all__ = [
    # Models
    "Connection",
    "ExecutionStage",
    "ExecutionState",
    "FailureKind",
    "InputBinding",
    "NodeDef",
    "OutputBinding",
    "StepResult",
    "WorkflowDefinition",
    "WorkflowResult",

    # Graph
    "build_execution_order",
    "execution_levels",
    "find_problems",
    "to_dag",
    "validate_definition",

    # State and control
    "ExecutionStateStore",
    "apply_event",
    "ControlSurface",

    # Engine
    "BaseRun",
    "StepInvoker",
    "WorkflowEngine",
    "WorkflowRun",

    # Executors
    "CallableStepExecutor",
    "StepExecutor",
    "coerce_result",
    "load_executor",
]
