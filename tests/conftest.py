"""Shared test fixtures."""

from __future__ import annotations

import json
import sys
import threading
from collections.abc import Callable
from pathlib import Path

import pytest

from taskgraph_engine.config import SchedulerSettings, Settings
from taskgraph_engine.graph.models import OutcomeResult, TaskSpec
from taskgraph_engine.graph.store import TaskGraphStore
from taskgraph_engine.orchestrator.backend.base import ExecutionContext, Outcome
from taskgraph_engine.orchestrator.backend.registry import BackendRegistry
from taskgraph_engine.orchestrator.engine import TaskGraphEngine
from taskgraph_engine.orchestrator.monitor import Clock
from taskgraph_engine.storage.repository import AuditLogRepository

ECHO_AGENT_COMMAND_TEMPLATE = (
    f"{sys.executable} -m taskgraph_engine.orchestrator.backend.echo_agent "
    "--task-manifest {task_manifest}"
)


class ScriptedBackend:
    """In-process backend returning a fixed result; optionally blocks until cancelled."""

    def __init__(
        self,
        name: str,
        *,
        confidence: int = 90,
        result: OutcomeResult = OutcomeResult.SUCCESS,
        block: bool = False,
        on_execute: Callable[[TaskSpec, ExecutionContext], None] | None = None,
    ) -> None:
        self.name = name
        self.confidence = confidence
        self.result = result
        self.block = block
        self.on_execute = on_execute
        self.calls: list[tuple[str, int, int, str]] = []
        self._lock = threading.Lock()

    def execute(
        self,
        task: TaskSpec,
        context: ExecutionContext,
        timeout_seconds: float,
    ) -> Outcome:
        with self._lock:
            self.calls.append((task.task_id, context.attempt_no, context.tier, context.mode.value))
        if self.on_execute is not None:
            self.on_execute(task, context)
        if self.block:
            context.cancel_event.wait(timeout_seconds)
            return Outcome(
                result=OutcomeResult.FAILURE,
                confidence=0,
                rationale="cancelled",
                cancelled=True,
            )
        return Outcome(
            result=self.result,
            confidence=self.confidence,
            rationale=f"{self.name} {context.mode.value} attempt {context.attempt_no}",
            root_cause=(
                f"root cause seen by {self.name}" if context.mode.value == "analyze" else None
            ),
        )


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    workspace = tmp_path / "workspace"
    workspace.mkdir()
    return Settings(
        db_path=tmp_path / "audit.db",
        workspace_root=workspace,
        workdir_root=tmp_path / "work",
        scheduler=SchedulerSettings(max_parallelism=4, tick_seconds=0.01),
    )


@pytest.fixture()
def repository(settings: Settings):
    repo = AuditLogRepository(settings.db_path)
    repo.init_schema()
    try:
        yield repo
    finally:
        repo.close()


@pytest.fixture()
def scripted_registry() -> Callable[..., BackendRegistry]:
    """Registry with ``claude`` and ``codex`` bound to scripted backends."""

    def _build(**kwargs) -> BackendRegistry:
        registry = BackendRegistry()
        for name in ("claude", "codex"):
            registry.register(name, ScriptedBackend(name, **kwargs))
        return registry

    return _build


@pytest.fixture()
def write_graph(tmp_path: Path) -> Callable[..., Path]:
    """Write a single-phase (or multi-phase) graph document and return its path."""

    def _write(*phases: list[dict], name: str = "graph.json") -> Path:
        path = tmp_path / name
        document = {
            "phases": [
                {"name": f"phase-{index}", "tasks": tasks} for index, tasks in enumerate(phases)
            ],
        }
        path.write_text(json.dumps(document, indent=2), "utf-8")
        return path

    return _write


@pytest.fixture()
def echo_agent_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Route every backend role to the local echo agent."""

    monkeypatch.setenv(
        "TASKGRAPH_BACKENDS",
        f"claude={ECHO_AGENT_COMMAND_TEMPLATE};codex={ECHO_AGENT_COMMAND_TEMPLATE}",
    )
    monkeypatch.setenv("TASKGRAPH_TICK_SECONDS", "0.05")


@pytest.fixture()
def make_engine(settings: Settings, repository: AuditLogRepository):
    """Build an engine over the shared repository; dispatch threads are shut down after."""

    engines: list[TaskGraphEngine] = []

    def _make(
        graph_path: Path,
        registry: BackendRegistry,
        *,
        clock: Clock | None = None,
    ) -> TaskGraphEngine:
        engine = TaskGraphEngine(
            settings=settings,
            repository=repository,
            graph_store=TaskGraphStore(graph_path),
            registry=registry,
            clock=clock,
        )
        engines.append(engine)
        return engine

    try:
        yield _make
    finally:
        for engine in engines:
            engine.dispatcher.shutdown(cancel=True)


@pytest.fixture()
def echo_agent_command() -> str:
    return ECHO_AGENT_COMMAND_TEMPLATE
