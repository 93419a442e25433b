"""Exception hierarchy for genflow."""
from __future__ import annotations

from typing import List, Optional


class GenflowError(Exception):
    """Base class for all engine errors."""


class GraphValidationError(GenflowError):
    """Raised when a workflow definition cannot be turned into an execution order.

    Attributes:
        problems: Every problem found, so callers can report them all at once
    """

    def __init__(self, problems: List[str]):
        self.problems = list(problems)
        super().__init__("; ".join(self.problems) or "invalid workflow definition")


class NodeNotFoundError(GenflowError):
    """Execution order references a node id the definition does not contain."""

    def __init__(self, node_id: str):
        self.node_id = node_id
        super().__init__(f"node not found for id '{node_id}'")


class UnresolvedInputError(GenflowError):
    """An incoming connection points at an output that does not exist."""

    def __init__(self, node_id: str, slot: str, source_node_id: str, source_slot: str):
        self.node_id = node_id
        self.slot = slot
        self.source_node_id = source_node_id
        self.source_slot = source_slot
        super().__init__(
            f"unresolved input slot '{slot}' on node '{node_id}': "
            f"upstream node '{source_node_id}' produced no such output '{source_slot}'"
        )


class OutputAssemblyError(GenflowError):
    """A workflow output binding could not be read from the node results."""

    def __init__(self, name: str, source_node_id: str, source_slot: str):
        self.name = name
        self.source_node_id = source_node_id
        self.source_slot = source_slot
        super().__init__(
            f"workflow output '{name}' missing: node '{source_node_id}' "
            f"has no output '{source_slot}'"
        )


class StepError(GenflowError):
    """Failure reported by a step executor.

    Attributes:
        node_id: Node that failed, when known
        cost: Cost already incurred by the failed attempt
    """

    def __init__(self, message: str, node_id: Optional[str] = None, cost: float = 0.0):
        self.node_id = node_id
        self.cost = cost
        super().__init__(message)


class RetryableStepError(StepError):
    """Transient failure (network, rate limit, service hiccup)."""


class TerminalStepError(StepError):
    """Permanent failure; remaining attempts are skipped."""


class WorkflowCancelledError(GenflowError):
    """The caller cancelled the run."""

    def __init__(self, message: str = "cancelled by caller"):
        super().__init__(message)


class InvalidTransitionError(GenflowError):
    """A state mutation was attempted that the stage machine does not allow."""


class RunNotFoundError(GenflowError):
    """No live run or checkpoint exists for the given run id."""

    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(f"run '{run_id}' not found")


class ConfigurationError(GenflowError):
    """Invalid engine configuration value."""


class InputValidationError(GenflowError):
    """Required workflow-level inputs were not supplied."""

    def __init__(self, missing: List[str]):
        self.missing = list(missing)
        super().__init__(f"missing required workflow input(s): {', '.join(self.missing)}")
