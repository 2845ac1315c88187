"""
Command-line interface for flowrun.

Usage:
    flowrun validate graph.json --handlers handlers.py
    flowrun run graph.json --handlers handlers.py --input '{"fetch": {"url": "..."}}'
    flowrun run graph.json --handlers handlers.py --concurrency 8 --output report.json --events
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from flowrun.config import RunSettings
from flowrun.errors import ConfigError
from flowrun.graph.edge import GraphSpec
from flowrun.graph.validator import ValidatedGraph, validate_graph
from flowrun.observability import configure_logging
from flowrun.runner.handler_registry import HandlerRegistry
from flowrun.runtime.run_controller import Run
from flowrun.schemas.run import RunReport, RunStatus

logger = logging.getLogger(__name__)


def _load_graph(path: str) -> GraphSpec:
    graph_path = Path(path)
    if not graph_path.exists():
        raise ConfigError(f"Graph file not found: {graph_path}")
    try:
        return GraphSpec.from_json_file(graph_path)
    except json.JSONDecodeError as e:
        raise ConfigError(f"Graph file is not valid JSON: {e}") from e
    except ValidationError as e:
        errors = [f"{'.'.join(map(str, err['loc']))}: {err['msg']}" for err in e.errors()]
        raise ConfigError(errors) from e


def _load_registry(path: str | None) -> HandlerRegistry | None:
    if path is None:
        return None
    registry = HandlerRegistry()
    count = registry.discover_from_module(Path(path))
    logger.debug(f"Discovered {count} handler(s) in {path}")
    return registry


def _parse_inputs(raw: str | None) -> dict[str, dict[str, Any]] | None:
    if not raw:
        return None
    try:
        inputs = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ConfigError(f"--input is not valid JSON: {e}") from e
    if not isinstance(inputs, dict):
        raise ConfigError("--input must be a JSON object of {node_id: {port: value}}")
    return inputs


def _with_concurrency(settings: RunSettings, limit: int) -> RunSettings:
    try:
        return RunSettings.model_validate({**settings.model_dump(), "concurrency_limit": limit})
    except ValidationError as e:
        raise ConfigError(f"--concurrency must be at least 1, got {limit}") from e


def _print_errors(error: ConfigError) -> None:
    print("Configuration error:", file=sys.stderr)
    for message in error.errors:
        print(f"  - {message}", file=sys.stderr)
    if error.cycle:
        print(f"  cycle: {' -> '.join(error.cycle)}", file=sys.stderr)


def cmd_validate(args: argparse.Namespace) -> int:
    """Validate a graph file, optionally against a handler module."""
    try:
        graph = _load_graph(args.graph)
        registry = _load_registry(args.handlers)
        validated = validate_graph(graph, registry)
    except ConfigError as e:
        _print_errors(e)
        return 1

    _print_structure(validated)
    return 0


def _print_structure(validated: ValidatedGraph) -> None:
    print(f"✓ Graph '{validated.id}' is valid ({len(validated.order)} nodes)")
    for node_id in validated.order:
        node = validated.node(node_id)
        preds = sorted(validated.predecessors[node_id])
        after = f" <- {', '.join(preds)}" if preds else ""
        print(f"  [{validated.ranks[node_id]}] {node_id} ({node.node_type}){after}")


def cmd_run(args: argparse.Namespace) -> int:
    """Execute a graph and print its report."""
    try:
        graph = _load_graph(args.graph)
        registry = _load_registry(args.handlers)
        inputs = _parse_inputs(args.input)
        settings = graph.effective_settings()
        if args.concurrency is not None:
            settings = _with_concurrency(settings, args.concurrency)
        run = Run(graph, registry, inputs=inputs, settings=settings)
    except ConfigError as e:
        _print_errors(e)
        return 1

    report = asyncio.run(_execute(run, show_events=args.events))

    if args.output:
        Path(args.output).write_text(report.model_dump_json(indent=2))
    _print_report(report)
    return 0 if report.status == RunStatus.COMPLETED else 1


async def _execute(run: Run, show_events: bool) -> RunReport:
    run.start()
    if show_events:
        async for event in run.events():
            print(json.dumps(event.to_dict(), default=str), flush=True)
    return await run.wait()


def _print_report(report: RunReport) -> None:
    print(
        f"Run {report.run_id}: {report.status.value} in {report.duration_ms}ms "
        f"({len(report.succeeded)} succeeded, {len(report.failed)} failed, "
        f"{len(report.skipped)} skipped)"
    )
    for record in report.failures:
        error = record.last_error
        detail = f"{error.kind.value}: {error.message}" if error else "unknown error"
        print(f"  ✗ {record.node_id} after {record.attempts} attempt(s): {detail}")
    for node_id in report.skipped:
        causes = report.nodes[node_id].root_causes
        if causes:
            print(f"  ⊘ {node_id} (root cause: {', '.join(causes)})")
    if report.status == RunStatus.COMPLETED:
        print(json.dumps(report.outputs, indent=2, default=str))


def register_commands(subparsers: argparse._SubParsersAction) -> None:
    validate_parser = subparsers.add_parser("validate", help="Validate a graph file")
    validate_parser.add_argument("graph", help="Path to the graph JSON file")
    validate_parser.add_argument(
        "--handlers",
        help="Python module registering handlers; node types are checked against it",
    )
    validate_parser.set_defaults(func=cmd_validate)

    run_parser = subparsers.add_parser("run", help="Execute a graph")
    run_parser.add_argument("graph", help="Path to the graph JSON file")
    run_parser.add_argument("--handlers", required=True, help="Python module registering handlers")
    run_parser.add_argument(
        "--input",
        "-i",
        help='Bootstrap inputs as JSON, e.g. \'{"fetch": {"url": "..."}}\'',
    )
    run_parser.add_argument("--concurrency", "-c", type=int, help="Maximum nodes running at once")
    run_parser.add_argument("--output", "-o", help="Write the full report JSON to this file")
    run_parser.add_argument(
        "--events",
        action="store_true",
        help="Print every run event as a JSON line while the run progresses",
    )
    run_parser.set_defaults(func=cmd_run)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="flowrun",
        description="flowrun - Execute workflow task graphs",
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        help="Logging level (DEBUG, INFO, WARNING, ERROR)",
    )
    parser.add_argument(
        "--log-format",
        choices=["auto", "json", "human"],
        default="auto",
        help="Log output format",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)
    register_commands(subparsers)

    args = parser.parse_args(argv)
    configure_logging(level=args.log_level, format=args.log_format)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
