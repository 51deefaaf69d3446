"""CLI entrypoint for taskgraph."""

import logging
import os
from collections.abc import Callable
from pathlib import Path

import rich_click as click

from taskgraph_engine import __version__
from taskgraph_engine.errors import ValidationError
from taskgraph_engine.orchestrator.controllers import (
    CommandResult,
    CompileCommand,
    ExportCommand,
    InspectTaskCommand,
    ListTasksCommand,
    ReplayCommand,
    RunCommand,
    StatusCommand,
    TaskGraphCliController,
    ValidateCommand,
)

click.rich_click.USE_MARKDOWN = True
CONTROLLER = TaskGraphCliController()

CONFIG_ERROR_EXIT_CODE = 2
DB_PATH_OPTION = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite audit log path (defaults to `TASKGRAPH_DB_PATH`).",
)


@click.group()
@click.version_option(version=__version__, prog_name="taskgraph")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=lambda: os.getenv("TASKGRAPH_LOG_LEVEL", "INFO").upper(),
    show_default="TASKGRAPH_LOG_LEVEL or INFO",
    help="Log verbosity.",
)
def taskgraph(log_level: str) -> None:
    """Self-healing task graph orchestrator."""

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@taskgraph.command("run")
@DB_PATH_OPTION
@click.option(
    "--graph",
    "graph_path",
    type=click.Path(path_type=Path, dir_okay=False),
    required=True,
    help="Task graph JSON document or markdown plan.",
)
@click.option(
    "--max-iterations",
    type=click.IntRange(min=0),
    default=None,
    help="Stop dispatching after this many executions (0 = unbounded).",
)
@click.option(
    "--max-parallelism",
    type=click.IntRange(min=1),
    default=None,
    help="Override `TASKGRAPH_MAX_PARALLELISM`.",
)
@click.option(
    "--infer-deps",
    is_flag=True,
    default=False,
    help="Infer tag-based dependencies when the source is a markdown plan.",
)
@click.option(
    "--routing",
    "routing_policy",
    default=None,
    metavar="smart|fixed:<name>",
    help="Override `TASKGRAPH_ROUTING_POLICY` for tier-0 backend selection.",
)
def run(
    db_path: Path | None,
    graph_path: Path,
    max_iterations: int | None,
    max_parallelism: int | None,
    infer_deps: bool,
    routing_policy: str | None,
) -> None:
    """Drive a task graph until every task is complete or blocked."""

    _finish(
        lambda: CONTROLLER.run(
            RunCommand(
                db_path=db_path,
                graph_path=graph_path,
                max_iterations=max_iterations,
                max_parallelism=max_parallelism,
                infer_dependencies=infer_deps,
                routing_policy=routing_policy,
            ),
        ),
    )


@taskgraph.command("compile")
@click.option(
    "--plan",
    "plan_path",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    required=True,
    help="Markdown plan with task seeds.",
)
@click.option(
    "--out",
    "output_path",
    type=click.Path(path_type=Path, dir_okay=False),
    required=True,
    help="Where to write the task graph JSON.",
)
@click.option("--infer-deps", is_flag=True, default=False, help="Infer tag-based dependencies.")
def compile_plan(plan_path: Path, output_path: Path, infer_deps: bool) -> None:
    """Compile a markdown plan into a validated task graph document."""

    _finish(
        lambda: CONTROLLER.compile(
            CompileCommand(
                plan_path=plan_path,
                output_path=output_path,
                infer_dependencies=infer_deps,
            ),
        ),
    )


@taskgraph.command("validate")
@click.option(
    "--graph",
    "graph_path",
    type=click.Path(path_type=Path, dir_okay=False),
    required=True,
    help="Task graph JSON document or markdown plan.",
)
@click.option("--infer-deps", is_flag=True, default=False, help="Infer tag-based dependencies.")
def validate(graph_path: Path, infer_deps: bool) -> None:
    """Validate a task graph without running it."""

    _finish(
        lambda: CONTROLLER.validate(
            ValidateCommand(graph_path=graph_path, infer_dependencies=infer_deps),
        ),
    )


@taskgraph.command("status")
@DB_PATH_OPTION
def status(db_path: Path | None) -> None:
    """Show task counts by status."""

    _finish(lambda: CONTROLLER.status(StatusCommand(db_path=db_path)))


@taskgraph.command("tasks")
@DB_PATH_OPTION
@click.option(
    "--status",
    type=click.Choice(
        ["pending", "running", "stuck", "error", "complete", "blocked"],
        case_sensitive=False,
    ),
    default=None,
    help="Optional status filter.",
)
def tasks(db_path: Path | None, status: str | None) -> None:
    """List tasks with status, attempt and tier."""

    _finish(lambda: CONTROLLER.list_tasks(ListTasksCommand(db_path=db_path, status=status)))


@taskgraph.command("inspect")
@DB_PATH_OPTION
@click.option("--task-id", required=True, help="Task id.")
def inspect(db_path: Path | None, task_id: str) -> None:
    """Inspect one task: attempts, confidences, diagnosis and audit history."""

    _finish(
        lambda: CONTROLLER.inspect_task(InspectTaskCommand(db_path=db_path, task_id=task_id)),
    )


@taskgraph.command("replay")
@DB_PATH_OPTION
def replay(db_path: Path | None) -> None:
    """Rebuild state from the audit log and report any inconsistency."""

    _finish(lambda: CONTROLLER.replay(ReplayCommand(db_path=db_path)))


@taskgraph.command("export")
@DB_PATH_OPTION
@click.option(
    "--out",
    "output_path",
    type=click.Path(path_type=Path, dir_okay=False),
    required=True,
    help="Where to write the graph document with runtime status.",
)
def export(db_path: Path | None, output_path: Path) -> None:
    """Export the current snapshot in task graph document form."""

    _finish(lambda: CONTROLLER.export(ExportCommand(db_path=db_path, output_path=output_path)))


def _finish(action: Callable[[], CommandResult]) -> None:
    try:
        result = action()
    except ValidationError as error:
        _emit_lines([f"Invalid task graph ({len(error.problems)} problem(s)):"])
        _emit_lines([f"  - {problem}" for problem in error.problems])
        raise SystemExit(CONFIG_ERROR_EXIT_CODE) from error
    except ValueError as error:
        _emit_lines([f"Configuration error: {error}"])
        raise SystemExit(CONFIG_ERROR_EXIT_CODE) from error
    _emit_lines(result.lines)
    if result.exit_code:
        raise SystemExit(result.exit_code)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    taskgraph()
