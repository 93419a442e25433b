"""Workflow orchestration: engine, linear pipelines and multi-run hosting."""

from .orchestrator import WorkflowOrchestrator
from .pipelines import LinearRun, LinearStep, SeriesVideoPipeline, SingleVideoPipeline, VideoScenario
from .state_manager import InMemoryStateManager, PersistentStateManager, WorkflowStateManager
from .workflow_engine import (
    CallableStepExecutor,
    ControlSurface,
    ExecutionStage,
    ExecutionState,
    ExecutionStateStore,
    FailureKind,
    StepExecutor,
    StepResult,
    WorkflowDefinition,
    WorkflowEngine,
    WorkflowResult,
    WorkflowRun,
    build_execution_order,
)

__all__ = [
    # Engine
    "WorkflowEngine",
    "WorkflowRun",
    "build_execution_order",
    # Models
    "ExecutionStage",
    "ExecutionState",
    "FailureKind",
    "StepResult",
    "WorkflowDefinition",
    "WorkflowResult",
    # State and control
    "ControlSurface",
    "ExecutionStateStore",
    # Executors
    "CallableStepExecutor",
    "StepExecutor",
    # Linear pipelines
    "LinearRun",
    "LinearStep",
    "SeriesVideoPipeline",
    "SingleVideoPipeline",
    "VideoScenario",
    # Hosting
    "WorkflowOrchestrator",
    "InMemoryStateManager",
    "PersistentStateManager",
    "WorkflowStateManager",
]
