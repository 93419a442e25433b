"""
Control surface for a running workflow.

Signals (pause, resume, cancel) only flip flags; the control loop observes
them at its suspension points. Queries read the state store's snapshot and
never go through the control loop.
"""

from __future__ import annotations

import asyncio
import logging
from threading import Lock
from typing import Optional

from .state import ExecutionStateStore
from .steps import ExecutionState

logger = logging.getLogger(__name__)


class ControlSurface:
    """Signals and queries for one run. Safe to call from any thread."""

    def __init__(self, store: ExecutionStateStore):
        self._store = store
        self._lock = Lock()
        self._paused = False
        self._cancelled = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._wakeup: Optional[asyncio.Event] = None

    @property
    def run_id(self) -> str:
        return self._store.run_id

    @property
    def is_paused(self) -> bool:
        with self._lock:
            return self._paused

    @property
    def is_cancelled(self) -> bool:
        with self._lock:
            return self._cancelled

    # Signals

    def pause(self) -> None:
        """Stop the control loop before it starts the next node."""
        if self._ignore_signal("pause"):
            return
        with self._lock:
            already = self._paused
            self._paused = True
        if not already:
            logger.info(f"Pause signal received for run {self.run_id}")
        self._wake()

    def resume(self) -> None:
        """Let a paused control loop continue at its next suspension point."""
        if self._ignore_signal("resume"):
            return
        with self._lock:
            was_paused = self._paused
            self._paused = False
        if was_paused:
            logger.info(f"Resume signal received for run {self.run_id}")
        self._wake()

    def cancel(self) -> None:
        """End the run as FAILED at the next suspension point, paused or not."""
        if self._ignore_signal("cancel"):
            return
        with self._lock:
            already = self._cancelled
            self._cancelled = True
        if not already:
            logger.info(f"Cancel signal received for run {self.run_id}")
        self._wake()

    # Queries

    def progress(self) -> ExecutionState:
        return self._store.snapshot()

    def total_cost(self) -> float:
        return self._store.snapshot().total_cost

    def status(self) -> str:
        return self._store.snapshot().stage.value

    # Control loop side

    def bind(self) -> None:
        """Attach to the running event loop; called by the control loop before it starts."""
        self._loop = asyncio.get_running_loop()
        self._wakeup = asyncio.Event()

    async def wait_while_paused(self) -> None:
        """Block until resumed or cancelled."""
        if self._wakeup is None:
            self.bind()
        while True:
            self._wakeup.clear()
            with self._lock:
                if not self._paused or self._cancelled:
                    return
            await self._wakeup.wait()

    def _ignore_signal(self, name: str) -> bool:
        if self._store.snapshot().is_terminal():
            logger.debug(f"Ignoring {name} signal for finished run {self.run_id}")
            return True
        return False

    def _wake(self) -> None:
        loop, wakeup = self._loop, self._wakeup
        if loop is None or wakeup is None or loop.is_closed():
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            wakeup.set()
        else:
            loop.call_soon_threadsafe(wakeup.set)
