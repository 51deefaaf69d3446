"""Controllers for taskgraph CLI commands."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from taskgraph_engine.config import Settings, parse_routing_policy
from taskgraph_engine.graph.models import TaskStatus
from taskgraph_engine.graph.plan_compiler import compile_plan
from taskgraph_engine.graph.store import (
    TaskGraphStore,
    load_graph,
    save_graph_document,
    validate_document,
)
from taskgraph_engine.orchestrator.backend.registry import BackendRegistry
from taskgraph_engine.orchestrator.engine import TaskGraphEngine
from taskgraph_engine.orchestrator.reporting import (
    export_document,
    render_counts,
    render_run_summary,
    render_task_details,
    render_task_list,
)
from taskgraph_engine.state import find_replay_mismatches
from taskgraph_engine.storage.repository import AuditLogRepository


@dataclass(slots=True)
class RunCommand:
    """CLI input for driving a task graph to completion."""

    db_path: Path | None
    graph_path: Path
    max_iterations: int | None
    max_parallelism: int | None = None
    infer_dependencies: bool = False
    routing_policy: str | None = None


@dataclass(slots=True)
class CompileCommand:
    """CLI input for markdown plan compilation."""

    plan_path: Path
    output_path: Path
    infer_dependencies: bool


@dataclass(slots=True)
class ValidateCommand:
    graph_path: Path
    infer_dependencies: bool = False


@dataclass(slots=True)
class StatusCommand:
    db_path: Path | None


@dataclass(slots=True)
class ListTasksCommand:
    """CLI input for task listing."""

    db_path: Path | None
    status: str | None


@dataclass(slots=True)
class InspectTaskCommand:
    """CLI input for task inspection."""

    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class ReplayCommand:
    db_path: Path | None


@dataclass(slots=True)
class ExportCommand:
    db_path: Path | None
    output_path: Path


@dataclass(slots=True)
class CommandResult:
    """Lines to render plus the process exit code."""

    lines: list[str]
    exit_code: int = 0


class TaskGraphCliController:
    """Coordinates run, compile and inspection CLI operations."""

    def run(self, command: RunCommand) -> CommandResult:
        settings = Settings.from_env(db_path=command.db_path)
        if command.max_parallelism is not None:
            settings.scheduler.max_parallelism = command.max_parallelism
        if command.infer_dependencies:
            settings.scheduler.infer_dependencies = True
        if command.routing_policy is not None:
            (
                settings.backends.routing_policy,
                settings.backends.fixed_backend,
            ) = parse_routing_policy(command.routing_policy)
        settings.validate()
        registry = BackendRegistry.from_settings(settings.backends)
        missing = registry.missing(settings.backends.role_names())
        if missing:
            raise ValueError(
                "No command template for backend(s): "
                f"{', '.join(sorted(missing))}. Configure TASKGRAPH_BACKENDS.",
            )

        with _repository(settings) as repository:
            engine = TaskGraphEngine(
                settings=settings,
                repository=repository,
                graph_store=TaskGraphStore(
                    command.graph_path,
                    infer_dependencies=settings.scheduler.infer_dependencies,
                ),
                registry=registry,
            )
            summary = engine.run(max_iterations=command.max_iterations)
            state = repository.snapshot()

        return CommandResult(
            lines=render_run_summary(summary, state, db_path=settings.db_path),
            exit_code=0 if state.all_complete() else 1,
        )

    def compile(self, command: CompileCommand) -> CommandResult:
        document = compile_plan(
            command.plan_path.read_text("utf-8"),
            infer_dependencies=command.infer_dependencies,
        )
        graph = validate_document(document)
        save_graph_document(command.output_path, graph.to_document())
        ready = sum(1 for task in graph.tasks.values() if not task.depends_on)
        return CommandResult(
            lines=[
                f"Wrote task graph: {command.output_path}",
                f"Phases: {len(graph.phases)} Tasks: {len(graph.tasks)} Ready to start: {ready}",
            ],
        )

    def validate(self, command: ValidateCommand) -> CommandResult:
        graph = load_graph(command.graph_path, infer_dependencies=command.infer_dependencies)
        return CommandResult(
            lines=[
                f"Valid task graph: {command.graph_path}",
                f"Phases: {len(graph.phases)} Tasks: {len(graph.tasks)}",
            ],
        )

    def status(self, command: StatusCommand) -> CommandResult:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            state = repository.snapshot()
        return CommandResult(lines=[render_counts(state)])

    def list_tasks(self, command: ListTasksCommand) -> CommandResult:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            state = repository.snapshot()
        tasks = list(state.tasks.values())
        status_filter = _parse_status(command.status)
        if status_filter is not None:
            tasks = [task for task in tasks if task.status == status_filter]
        return CommandResult(lines=render_task_list(tasks))

    def inspect_task(self, command: InspectTaskCommand) -> CommandResult:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            task = repository.snapshot().get(command.task_id)
            events = repository.list_events(task_id=command.task_id)
        if task is None:
            return CommandResult(lines=[f"Task not found: {command.task_id}"], exit_code=1)
        return CommandResult(lines=render_task_details(task, events))

    def replay(self, command: ReplayCommand) -> CommandResult:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            events = repository.list_events()
        problems = find_replay_mismatches(events)
        if problems:
            return CommandResult(
                lines=["Replay mismatch:", *(f"  - {problem}" for problem in problems)],
                exit_code=1,
            )
        return CommandResult(lines=[f"Replay consistent: {len(events)} event(s)"])

    def export(self, command: ExportCommand) -> CommandResult:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            state = repository.snapshot()
        save_graph_document(command.output_path, export_document(state))
        return CommandResult(
            lines=[f"Exported {len(state.tasks)} task(s): {command.output_path}"],
        )


def _parse_status(value: str | None) -> TaskStatus | None:
    if value is None:
        return None
    return TaskStatus(value.strip().lower())


@contextmanager
def _repository(settings: Settings) -> Iterator[AuditLogRepository]:
    repository = AuditLogRepository(
        db_path=settings.db_path,
        busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()

