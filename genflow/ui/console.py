"""Console rendering for the genflow CLI.

ConsoleManager adapts output to the environment:
- Rich panels, tables and a live progress bar when attached to a TTY
- JSON lines for machine consumption (``--json-output``)
- Plain text otherwise
"""

from __future__ import annotations

import json
import logging
import sys
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping

from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn, TimeElapsedColumn
from rich.table import Table

from ..orchestration.workflow_engine.steps import ExecutionStage, ExecutionState, WorkflowResult
from ..utils.logging_factory import LoggingFactory

_STAGE_STYLES = {
    ExecutionStage.INITIALIZING: "white",
    ExecutionStage.EXECUTING: "blue",
    ExecutionStage.PAUSED: "yellow",
    ExecutionStage.COMPLETE: "green",
    ExecutionStage.FAILED: "red",
}


class ThreadSafeConsole:
    """Thread-safe wrapper around Rich Console."""

    def __init__(self, console: Console):
        self._console = console
        self._lock = threading.RLock()

    @property
    def raw(self) -> Console:
        return self._console

    def print(self, *args, **kwargs):
        with self._lock:
            self._console.print(*args, **kwargs)


class ConsoleManager:
    """Manages console output with Rich integration."""

    def __init__(self, verbose: bool = False, json_output: bool = False, console: Console | None = None):
        self.verbose = verbose
        self.json_output = json_output
        self.is_tty = sys.stderr.isatty()

        if self.json_output:
            self.console = None
        else:
            self.console = ThreadSafeConsole(console or Console(stderr=True))

    def log_handler(self) -> logging.Handler:
        """Console handler matching the output mode."""
        if self.json_output:
            handler = logging.StreamHandler(sys.stderr)
            handler.setFormatter(logging.Formatter("%(message)s"))
            return handler
        return RichHandler(
            console=self.console.raw,
            show_time=True,
            show_path=self.verbose,
            rich_tracebacks=True,
        )

    def setup_logging(self, level: int | None = None, log_dir: Path | None = None) -> None:
        """Initialize logging with this console's handler.

        Args:
            level: Root level; DEBUG when verbose, INFO otherwise, if not given
            log_dir: Also write genflow.log into this directory
        """
        if level is None:
            level = logging.DEBUG if self.verbose else logging.INFO
        LoggingFactory.initialize(log_dir=log_dir, level=level, handlers=[self.log_handler()])
        if self.verbose:
            LoggingFactory.configure_verbose(True)

    @contextmanager
    def progress_context(self, description: str, total: int = 100):
        """Yield a tracker whose ``update(state)`` renders run progress."""
        if self.json_output:
            yield JsonProgressTracker(description)
            return

        if not (self.is_tty and self.console is not None):
            yield FallbackProgressTracker(description)
            return

        progress = Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
            TextColumn("${task.fields[cost]:.4f}"),
            TimeElapsedColumn(),
            console=self.console.raw,
        )
        progress.start()
        try:
            task_id = progress.add_task(description, total=total, cost=0.0)
            yield RichProgressTracker(progress, task_id)
        finally:
            progress.stop()

    def print_execution_order(self, name: str, order: List[str], levels: List[List[str]]) -> None:
        if self.json_output:
            self._emit({"type": "execution_order", "workflow": name, "order": order, "levels": levels})
            return
        if self.console:
            title = f"Execution order: {name}"
            table = Table(title=title, min_width=len(title) + 4)
            table.add_column("#", justify="right", style="dim")
            table.add_column("Node", style="cyan")
            table.add_column("Level", justify="right")
            level_of = {node_id: i for i, level in enumerate(levels) for node_id in level}
            for index, node_id in enumerate(order, start=1):
                table.add_row(str(index), node_id, str(level_of.get(node_id, "-")))
            self.console.print(table)
        else:
            print(f"Execution order for {name}: {' -> '.join(order)}", file=sys.stderr)

    def print_problems(self, problems: Iterable[str]) -> None:
        problems = list(problems)
        if self.json_output:
            self._emit({"type": "invalid_definition", "problems": problems})
        elif self.console:
            body = "\n".join(f"- {problem}" for problem in problems)
            self.console.print(Panel(body, title="Invalid workflow definition", style="red"))
        else:
            for problem in problems:
                print(f"ERROR: {problem}", file=sys.stderr)

    def print_result(self, result: WorkflowResult) -> None:
        """Print the final result panel and the per-node table."""
        if self.json_output:
            self._emit(
                {
                    "type": "result",
                    "run_id": result.run_id,
                    "success": result.success,
                    "stage": result.stage.value,
                    "total_cost": result.total_cost,
                    "total_time_ms": result.total_time_ms,
                    "outputs": result.outputs,
                    "error": result.error,
                    "failure_kind": result.failure_kind.value if result.failure_kind else None,
                },
                stream=sys.stdout,
            )
            return

        lines = [
            f"Run: {result.run_id}",
            f"Stage: {result.stage.value}",
            f"Total cost: ${result.total_cost:.4f}",
            f"Total time: {result.total_time_ms / 1000:.1f}s",
        ]
        if result.error:
            lines.append(f"Error: {result.error}")
        for name, value in result.outputs.items():
            lines.append(f"{name}: {value}")

        if self.console:
            self.console.print(
                Panel("\n".join(lines), title="Workflow result", style=_STAGE_STYLES[result.stage])
            )
            self.console.print(self._results_table(result.results.values()))
        else:
            print("\n".join(lines), file=sys.stderr)

    def print_state(self, state: ExecutionState) -> None:
        if self.json_output:
            self._emit({"type": "state", "state": state.to_dict()}, stream=sys.stdout)
            return
        summary = (
            f"Stage: {state.stage.value}  "
            f"Progress: {state.overall_progress:.0f}% ({state.nodes_completed}/{state.total_nodes})  "
            f"Cost: ${state.total_cost:.4f}"
        )
        if state.terminal_error:
            summary += f"\nError: {state.terminal_error}"
        if self.console:
            self.console.print(Panel(summary, title=f"Run {state.run_id}", style=_STAGE_STYLES[state.stage]))
            self.console.print(self._results_table(state.results.values()))
        else:
            print(summary, file=sys.stderr)

    def print_runs(self, runs: Mapping[str, ExecutionStage]) -> None:
        if self.json_output:
            self._emit({"type": "runs", "runs": {k: v.value for k, v in runs.items()}}, stream=sys.stdout)
        elif self.console:
            table = Table(title="Runs")
            table.add_column("Run", style="cyan")
            table.add_column("Stage", style="bold")
            for run_id, stage in runs.items():
                table.add_row(run_id, f"[{_STAGE_STYLES[stage]}]{stage.value}[/]")
            self.console.print(table)
        else:
            for run_id, stage in runs.items():
                print(f"{run_id}\t{stage.value}", file=sys.stderr)

    def print_message(self, message: str, style: str = "white") -> None:
        if self.json_output:
            self._emit({"type": "message", "message": message})
        elif self.console:
            self.console.print(f"[{style}]{message}[/]")
        else:
            print(message, file=sys.stderr)

    def _results_table(self, results) -> Table:
        table = Table(title="Node results")
        table.add_column("Node", style="cyan")
        table.add_column("Status", style="bold")
        table.add_column("Attempts", justify="right")
        table.add_column("Cost", justify="right", style="green")
        table.add_column("Time", justify="right")
        table.add_column("Error", style="red")
        for r in results:
            table.add_row(
                r.node_id,
                "[green]ok[/]" if r.success else "[red]failed[/]",
                str(r.attempts),
                f"${r.cost:.4f}",
                f"{r.execution_time_ms / 1000:.1f}s",
                r.error or "",
            )
        return table

    def _emit(self, payload: Dict[str, Any], stream=None) -> None:
        payload = {"timestamp": datetime.now().isoformat(), **payload}
        print(json.dumps(payload, default=str), file=stream or sys.stderr)


class RichProgressTracker:
    """Progress tracker using Rich progress bars."""

    def __init__(self, progress: Progress, task_id: Any):
        self.progress = progress
        self.task_id = task_id

    def update(self, state: ExecutionState) -> None:
        description = f"{state.current_node_id or 'starting'} [{state.stage.value}]"
        self.progress.update(
            self.task_id,
            completed=state.overall_progress,
            description=description,
            cost=state.total_cost,
        )


class JsonProgressTracker:
    """Progress tracker for JSON output (stderr)."""

    def __init__(self, description: str):
        self.description = description
        self._lock = threading.Lock()

    def update(self, state: ExecutionState) -> None:
        data = {
            "timestamp": datetime.now().isoformat(),
            "type": "progress",
            "run": self.description,
            "stage": state.stage.value,
            "node": state.current_node_id,
            "percentage": state.overall_progress,
            "total_cost": state.total_cost,
        }
        with self._lock:
            print(json.dumps(data), file=sys.stderr)


class FallbackProgressTracker:
    """Fallback progress tracker for non-TTY environments."""

    def __init__(self, description: str):
        self.description = description
        self.last_reported = -10.0
        self._lock = threading.Lock()

    def update(self, state: ExecutionState) -> None:
        with self._lock:
            if state.overall_progress - self.last_reported >= 10 or state.is_terminal():
                print(
                    f"{self.description}: {state.overall_progress:.0f}% "
                    f"({state.stage.value}, ${state.total_cost:.4f})",
                    file=sys.stderr,
                )
                self.last_reported = state.overall_progress
