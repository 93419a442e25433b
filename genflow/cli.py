"""Command line interface for genflow.

Validates workflow definitions, runs them with a live progress display and
checkpointing, and inspects persisted runs.
"""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from . import __version__
from .config import EngineConfig, get_config
from .exceptions import ConfigurationError, GenflowError, GraphValidationError
from .orchestration.orchestrator import CALLBACK_EVENTS, WorkflowOrchestrator
from .orchestration.state_manager import InMemoryStateManager, PersistentStateManager
from .orchestration.workflow_engine.executors import load_executor
from .orchestration.workflow_engine.graph import build_execution_order, execution_levels, find_problems
from .orchestration.workflow_engine.steps import WorkflowDefinition, WorkflowResult
from .ui.console import ConsoleManager

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_WORKFLOW_FAILED = 1
EXIT_USAGE = 2


def create_parser() -> argparse.ArgumentParser:
    """Create and configure the argument parser."""
    parser = argparse.ArgumentParser(
        prog="genflow",
        description="Durable generation-workflow engine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""Examples:
  # Check a definition and print its execution order
  genflow validate pipeline.json

  # Run it with an executor factory from your own module
  genflow run pipeline.json --executor my_steps:build_executor --input prompt="a red fox"

  # Resume a failed or interrupted run from its checkpoint
  genflow run pipeline.json --executor my_steps:build_executor --resume RUN_ID

  # Inspect persisted runs
  genflow runs list
  genflow runs show RUN_ID
  genflow runs cleanup --days 7

Exit codes:
  0  workflow completed
  1  workflow failed or was cancelled
  2  invalid usage, configuration or definition
        """,
    )

    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    parser.add_argument(
        "--json-output",
        action="store_true",
        help="Emit machine-readable JSON events instead of rich output",
    )
    parser.add_argument("--log-dir", type=Path, help="Also write genflow.log into this directory")
    parser.add_argument(
        "--state-db", type=Path, help="Run checkpoint database (default: GENFLOW_STATE_DB)"
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands", required=True)

    validate_parser = subparsers.add_parser(
        "validate",
        help="Validate a workflow definition",
        description="Report every definition problem, or print the execution order",
    )
    validate_parser.add_argument("definition", type=Path, help="Workflow definition JSON file")

    run_parser = subparsers.add_parser(
        "run",
        help="Run a workflow definition",
        description="Run a workflow, checkpointing every state change",
    )
    run_parser.add_argument("definition", type=Path, help="Workflow definition JSON file")
    run_parser.add_argument(
        "--executor",
        required=True,
        help="Step executor as module:attribute (instance, class or factory)",
    )
    run_parser.add_argument("--inputs", type=Path, help="JSON file with workflow input values")
    run_parser.add_argument(
        "--input",
        action="append",
        default=[],
        metavar="NAME=VALUE",
        help="Workflow input value (JSON or plain string); repeatable",
    )
    run_parser.add_argument("--run-id", help="Explicit run id (default: random)")
    run_parser.add_argument("--resume", metavar="RUN_ID", help="Resume a run from its checkpoint")
    run_parser.add_argument(
        "--no-persist", action="store_true", help="Keep checkpoints in memory only"
    )

    runs_parser = subparsers.add_parser("runs", help="Inspect persisted runs")
    runs_sub = runs_parser.add_subparsers(dest="runs_command", required=True)
    runs_sub.add_parser("list", help="List runs and their stages")
    show_parser = runs_sub.add_parser("show", help="Show a run's last checkpoint")
    show_parser.add_argument("run_id", help="Run id")
    cleanup_parser = runs_sub.add_parser("cleanup", help="Delete old finished runs")
    cleanup_parser.add_argument(
        "--days", type=int, help="Age threshold (default: GENFLOW_STATE_RETENTION_DAYS)"
    )

    return parser


def load_definition(path: Path) -> WorkflowDefinition:
    """Read and parse a definition file.

    Raises:
        OSError: If the file cannot be read
        ValidationError: If the JSON does not describe a definition
    """
    return WorkflowDefinition.model_validate_json(path.read_text(encoding="utf-8"))


def parse_inputs(inputs_file: Optional[Path], pairs: List[str]) -> Dict[str, Any]:
    """Merge workflow inputs from a JSON file and NAME=VALUE pairs.

    Pair values are decoded as JSON when possible and kept as strings otherwise.

    Raises:
        ValueError: If a pair has no '=' or the file is not a JSON object
    """
    inputs: Dict[str, Any] = {}
    if inputs_file:
        data = json.loads(inputs_file.read_text(encoding="utf-8"))
        if not isinstance(data, dict):
            raise ValueError(f"{inputs_file} must contain a JSON object")
        inputs.update(data)

    for pair in pairs:
        name, sep, raw = pair.partition("=")
        if not sep or not name:
            raise ValueError(f"input must be given as NAME=VALUE, got '{pair}'")
        try:
            inputs[name] = json.loads(raw)
        except json.JSONDecodeError:
            inputs[name] = raw
    return inputs


def _state_manager(args: argparse.Namespace, config: EngineConfig):
    if getattr(args, "no_persist", False):
        return InMemoryStateManager()
    return PersistentStateManager(args.state_db or config.state_db)


def validate_command(args: argparse.Namespace, console_manager: ConsoleManager) -> int:
    try:
        definition = load_definition(args.definition)
    except OSError as e:
        console_manager.print_problems([f"cannot read {args.definition}: {e}"])
        return EXIT_USAGE
    except ValidationError as e:
        console_manager.print_problems([_format_validation_error(err) for err in e.errors()])
        return EXIT_USAGE

    problems = find_problems(definition)
    if problems:
        console_manager.print_problems(problems)
        return EXIT_USAGE

    levels = execution_levels(definition)
    order = build_execution_order(definition)
    console_manager.print_execution_order(definition.name, order, levels)
    return EXIT_OK


def run_command(
    args: argparse.Namespace, console_manager: ConsoleManager, config: EngineConfig
) -> int:
    if args.resume and (args.input or args.inputs):
        console_manager.print_message(
            "ERROR: --resume reuses the inputs stored in the checkpoint; drop --input/--inputs",
            style="red",
        )
        return EXIT_USAGE

    try:
        definition = load_definition(args.definition)
        inputs = parse_inputs(args.inputs, args.input)
        executor = load_executor(args.executor)
    except ValidationError as e:
        console_manager.print_problems([_format_validation_error(err) for err in e.errors()])
        return EXIT_USAGE
    except (OSError, ValueError, ImportError, AttributeError) as e:
        console_manager.print_message(f"ERROR: {e}", style="red")
        return EXIT_USAGE

    orchestrator = WorkflowOrchestrator(
        executor, state_manager=_state_manager(args, config), config=config
    )
    orchestrator.register_workflow(definition)

    try:
        result = asyncio.run(_run_workflow(orchestrator, definition, inputs, args, console_manager))
    except GraphValidationError as e:
        console_manager.print_problems(e.problems)
        return EXIT_USAGE
    except GenflowError as e:
        console_manager.print_message(f"ERROR: {e}", style="red")
        return EXIT_USAGE

    console_manager.print_result(result)
    return EXIT_OK if result.success else EXIT_WORKFLOW_FAILED


async def _run_workflow(
    orchestrator: WorkflowOrchestrator,
    definition: WorkflowDefinition,
    inputs: Dict[str, Any],
    args: argparse.Namespace,
    console_manager: ConsoleManager,
) -> WorkflowResult:
    with console_manager.progress_context(definition.name) as tracker:
        for event in CALLBACK_EVENTS:
            orchestrator.add_callback(event, lambda run_id, name, state: tracker.update(state))

        if args.resume:
            run_id = orchestrator.recover(args.resume, workflow_id=definition.id)
        else:
            run_id = orchestrator.start(definition.id, inputs, run_id=args.run_id)

        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGINT, orchestrator.cancel, run_id)
        except (NotImplementedError, RuntimeError):
            logger.debug("Signal handlers not supported; Ctrl-C will abort without checkpointing")

        try:
            return await orchestrator.wait(run_id)
        finally:
            try:
                loop.remove_signal_handler(signal.SIGINT)
            except (NotImplementedError, RuntimeError):
                pass


def runs_command(
    args: argparse.Namespace, console_manager: ConsoleManager, config: EngineConfig
) -> int:
    state_manager = _state_manager(args, config)

    if args.runs_command == "list":
        console_manager.print_runs(state_manager.list_states())
        return EXIT_OK

    if args.runs_command == "show":
        state = state_manager.load_state(args.run_id)
        if state is None:
            console_manager.print_message(f"ERROR: run '{args.run_id}' not found", style="red")
            return EXIT_WORKFLOW_FAILED
        console_manager.print_state(state)
        return EXIT_OK

    days = args.days if args.days is not None else config.state_retention_days
    removed = state_manager.cleanup_old_states(days)
    console_manager.print_message(f"Removed {removed} run(s) older than {days} day(s)", style="green")
    return EXIT_OK


def _format_validation_error(error: Dict[str, Any]) -> str:
    location = ".".join(str(part) for part in error.get("loc", ()))
    return f"{location}: {error.get('msg')}" if location else str(error.get("msg"))


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point.

    Returns:
        Exit code (0 success, 1 workflow failure, 2 usage error)
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    console_manager = ConsoleManager(verbose=args.verbose, json_output=args.json_output)

    try:
        config = get_config()
    except ConfigurationError as e:
        console_manager.print_message(f"ERROR: {e}", style="red")
        return EXIT_USAGE

    level = logging.DEBUG if args.verbose else getattr(logging, config.log_level)
    console_manager.setup_logging(level=level, log_dir=args.log_dir)

    try:
        if args.command == "validate":
            return validate_command(args, console_manager)
        elif args.command == "run":
            return run_command(args, console_manager, config)
        elif args.command == "runs":
            return runs_command(args, console_manager, config)
        else:
            parser.print_help()
            return EXIT_USAGE
    except KeyboardInterrupt:
        logger.error("Operation cancelled by user")
        return EXIT_WORKFLOW_FAILED


if __name__ == "__main__":
    sys.exit(main())
