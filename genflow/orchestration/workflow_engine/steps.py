"""
Workflow data models.

This module defines the workflow definition (nodes, connections and
workflow-level bindings), the per-node StepResult, the ExecutionState
snapshot and the final WorkflowResult.
"""

from __future__ import annotations

import copy
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class ExecutionStage(Enum):
    """Workflow execution stage."""

    INITIALIZING = "initializing"
    EXECUTING = "executing"
    PAUSED = "paused"
    COMPLETE = "complete"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in {ExecutionStage.COMPLETE, ExecutionStage.FAILED}


class FailureKind(Enum):
    """Why a run ended in the FAILED stage."""

    STEP = "step"
    CANCELLED = "cancelled"
    DEFINITION = "definition"
    OUTPUT = "output"


class _DefinitionModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


class NodeDef(_DefinitionModel):
    """A single node. The engine never interprets ``type`` or ``config``."""

    id: str
    type: str
    inputs: List[str] = Field(default_factory=list)
    label: Optional[str] = None
    config: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("inputs", mode="before")
    @classmethod
    def normalize_slots(cls, v):
        """Accept slot objects (``{"name": ...}``) as well as plain names."""
        if v is None:
            return []
        return [slot["name"] if isinstance(slot, dict) else slot for slot in v]


class Connection(_DefinitionModel):
    """Data dependency from one node's output slot to another node's input slot."""

    source_node_id: str
    source_slot: str
    target_node_id: str
    target_slot: str


class InputBinding(_DefinitionModel):
    """Maps a workflow-level input name onto a node input slot."""

    name: str
    target_node_id: str
    target_slot: str
    required: bool = False
    default: Any = Field(default=None, alias="defaultValue")


class OutputBinding(_DefinitionModel):
    """Maps a node output slot onto a workflow-level output name."""

    name: str
    source_node_id: str
    source_slot: str


class WorkflowDefinition(_DefinitionModel):
    """Workflow definition with validation."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str = "workflow"
    description: str = ""
    version: str = "1.0.0"
    nodes: List[NodeDef]
    connections: List[Connection] = Field(default_factory=list)
    inputs: List[InputBinding] = Field(default_factory=list)
    outputs: List[OutputBinding] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("nodes")
    @classmethod
    def validate_nodes(cls, v):
        """Validate node definitions."""
        if not v:
            raise ValueError("Workflow must have at least one node")

        node_ids = set()
        for node in v:
            if node.id in node_ids:
                raise ValueError(f"Duplicate node ID: {node.id}")
            node_ids.add(node.id)

        return v

    def get_node(self, node_id: str) -> Optional[NodeDef]:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def incoming(self, node_id: str) -> List[Connection]:
        """Connections whose target is ``node_id``."""
        return [conn for conn in self.connections if conn.target_node_id == node_id]


@dataclass(frozen=True)
class StepResult:
    """Outcome of one node; produced once per node per run."""

    node_id: str
    success: bool
    outputs: Dict[str, Any] = field(default_factory=dict)
    cost: float = 0.0
    execution_time_ms: float = 0.0
    error: Optional[str] = None
    attempts: int = 1
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "node_id": self.node_id,
            "success": self.success,
            "outputs": copy.deepcopy(self.outputs),
            "cost": self.cost,
            "execution_time_ms": self.execution_time_ms,
            "error": self.error,
            "attempts": self.attempts,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StepResult":
        return cls(
            node_id=data["node_id"],
            success=data["success"],
            outputs=copy.deepcopy(data.get("outputs") or {}),
            cost=data.get("cost", 0.0),
            execution_time_ms=data.get("execution_time_ms", 0.0),
            error=data.get("error"),
            attempts=data.get("attempts", 1),
            started_at=_parse_time(data.get("started_at")),
            finished_at=_parse_time(data.get("finished_at")),
        )


@dataclass(frozen=True)
class ExecutionState:
    """Read-only snapshot of workflow progress."""

    run_id: str
    stage: ExecutionStage = ExecutionStage.INITIALIZING
    current_node_id: Optional[str] = None
    current_index: int = 0
    total_nodes: int = 0
    nodes_completed: int = 0
    overall_progress: float = 0.0
    total_cost: float = 0.0
    results: Dict[str, StepResult] = field(default_factory=dict)
    terminal_error: Optional[str] = None
    failure_kind: Optional[FailureKind] = None
    started_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def is_terminal(self) -> bool:
        """Check if workflow is in terminal state."""
        return self.stage.is_terminal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "stage": self.stage.value,
            "current_node_id": self.current_node_id,
            "current_index": self.current_index,
            "total_nodes": self.total_nodes,
            "nodes_completed": self.nodes_completed,
            "overall_progress": self.overall_progress,
            "total_cost": self.total_cost,
            "results": {node_id: r.to_dict() for node_id, r in self.results.items()},
            "terminal_error": self.terminal_error,
            "failure_kind": self.failure_kind.value if self.failure_kind else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExecutionState":
        return cls(
            run_id=data["run_id"],
            stage=ExecutionStage(data["stage"]),
            current_node_id=data.get("current_node_id"),
            current_index=data.get("current_index", 0),
            total_nodes=data.get("total_nodes", 0),
            nodes_completed=data.get("nodes_completed", 0),
            overall_progress=data.get("overall_progress", 0.0),
            total_cost=data.get("total_cost", 0.0),
            results={
                node_id: StepResult.from_dict(r)
                for node_id, r in (data.get("results") or {}).items()
            },
            terminal_error=data.get("terminal_error"),
            failure_kind=FailureKind(data["failure_kind"]) if data.get("failure_kind") else None,
            started_at=_parse_time(data.get("started_at")),
            updated_at=_parse_time(data.get("updated_at")),
        )


@dataclass
class WorkflowResult:
    """Final result of workflow execution."""

    run_id: str
    success: bool
    outputs: Dict[str, Any]
    total_cost: float
    total_time_ms: float
    results: Dict[str, StepResult]
    stage: ExecutionStage
    error: Optional[str] = None
    failure_kind: Optional[FailureKind] = None

    @property
    def cancelled(self) -> bool:
        return self.failure_kind is FailureKind.CANCELLED


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None
