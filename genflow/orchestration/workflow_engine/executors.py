"""
Step executor contract and adapters.

A step executor performs one unit of work for a node (call a generation
service, run ffmpeg, ...) and returns a StepResult, or raises
RetryableStepError / TerminalStepError. The engine owns retries, timing and
cost accounting; executors only report what a single attempt did.
"""

from __future__ import annotations

import asyncio
import importlib
import inspect
import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Union

from ...exceptions import TerminalStepError
from .steps import NodeDef, StepResult

logger = logging.getLogger(__name__)

HandlerReturn = Union[StepResult, Mapping[str, Any]]
Handler = Callable[[NodeDef, Dict[str, Any]], Union[HandlerReturn, Awaitable[HandlerReturn]]]


class StepExecutor(ABC):
    """Abstract base class for step executors."""

    @abstractmethod
    async def execute(self, node: NodeDef, inputs: Dict[str, Any]) -> StepResult:
        """Execute a single attempt of a node.

        Args:
            node: Node definition (``type`` and ``config`` select the work)
            inputs: Resolved input slot values

        Returns:
            StepResult of this attempt

        Raises:
            RetryableStepError: Transient failure, worth another attempt
            TerminalStepError: Permanent failure
        """
        pass


class CallableStepExecutor(StepExecutor):
    """Dispatch nodes to plain functions keyed by node type.

    Handlers may be sync or async and return either a StepResult or a
    mapping with ``outputs`` and ``cost`` keys. Sync handlers run in the
    default thread pool so they do not block the control loop.
    """

    def __init__(self, handlers: Optional[Dict[str, Handler]] = None):
        self._handlers: Dict[str, Handler] = dict(handlers or {})

    def register(self, node_type: str, handler: Handler) -> None:
        self._handlers[node_type] = handler

    async def execute(self, node: NodeDef, inputs: Dict[str, Any]) -> StepResult:
        handler = self._handlers.get(node.type)
        if handler is None:
            raise TerminalStepError(f"no handler registered for node type '{node.type}'", node.id)

        if inspect.iscoroutinefunction(handler):
            value = await handler(node, inputs)
        else:
            loop = asyncio.get_running_loop()
            value = await loop.run_in_executor(None, handler, node, inputs)
            if inspect.isawaitable(value):
                value = await value

        return coerce_result(node.id, value)


def coerce_result(node_id: str, value: HandlerReturn) -> StepResult:
    """Turn a handler's return value into a StepResult."""
    if isinstance(value, StepResult):
        return value
    if isinstance(value, Mapping):
        return StepResult(
            node_id=node_id,
            success=bool(value.get("success", True)),
            outputs=dict(value.get("outputs") or {}),
            cost=float(value.get("cost", 0.0)),
            error=value.get("error"),
        )
    raise TerminalStepError(
        f"handler for node '{node_id}' returned {type(value).__name__}, "
        "expected StepResult or mapping",
        node_id,
    )


def load_executor(target: str) -> StepExecutor:
    """Import an executor from a ``module:attribute`` path.

    The attribute may be a StepExecutor instance, a StepExecutor subclass, or
    a zero-argument factory returning one.

    Raises:
        ValueError: If the path is malformed or does not yield a StepExecutor
    """
    module_name, _, attr = target.partition(":")
    if not module_name or not attr:
        raise ValueError(f"executor must be given as 'module:attribute', got '{target}'")

    module = importlib.import_module(module_name)
    obj = getattr(module, attr)
    if isinstance(obj, StepExecutor):
        return obj
    if callable(obj):
        executor = obj()
        if isinstance(executor, StepExecutor):
            logger.debug(f"Loaded step executor {type(executor).__name__} from {target}")
            return executor
    raise ValueError(f"'{target}' is not a StepExecutor or a factory returning one")
